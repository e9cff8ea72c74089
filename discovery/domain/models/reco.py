from __future__ import annotations
from typing import Iterator, List, Optional
from pydantic import BaseModel, Field, field_validator


class RecoItem(BaseModel):
    product_id: str
    score: float = Field(ge=0)
    reason: str
    explanation: Optional[str] = None
    # Carried so the blender can break ties without another store round-trip
    trending_score: float = 0.0
    upvotes: int = 0
    created_at_ts: float = 0.0
    category_id: Optional[str] = None
    model_config = {"frozen": True} # immuable = safe


class StrategyResult(BaseModel):
    """
    Ranked output of one strategy engine. Scores are only comparable inside the
    same result; `reason` is set when the engine degraded (unavailable, cold_start).
    Re-invoking the engine restarts the sequence.
    """
    strategy: str
    items: List[RecoItem] = []
    reason: Optional[str] = None
    model_config = {"frozen": True}

    def __iter__(self) -> Iterator[RecoItem]:  # type: ignore[override]
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def unavailable(self) -> bool:
        return self.reason == "unavailable"


class RecoResult(BaseModel):
    strategy: str
    items: List[RecoItem]
    count: int
    partial: bool = False
    cache_hit: bool = False
    degraded_from: Optional[str] = None
    model_config = {"frozen": True}


class UserCtx(BaseModel):
    user_id: Optional[str] = None
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    model_config = {"frozen": True}

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)


class RecoParams(BaseModel):
    limit: int = Field(20, ge=1, le=100)
    offset: int = Field(0, ge=0, le=1000)
    days: Optional[int] = Field(None, ge=1, le=365)
    category_id: Optional[str] = None
    product_id: Optional[str] = None
    maker_id: Optional[str] = None
    tags: Optional[List[str]] = None
    blend: Optional[str] = None
    model_config = {"frozen": True}

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            v = v.split(",")
        out = sorted({str(t).strip().lower() for t in v if str(t).strip()})
        return out or None


class SearchFilters(BaseModel):
    category_id: Optional[str] = None
    limit: int = Field(20, ge=1, le=100)
    model_config = {"frozen": True}
