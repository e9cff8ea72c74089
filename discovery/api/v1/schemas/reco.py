# discovery/api/v1/schemas/reco.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from discovery.domain.models.interaction import EngagementEvent, EventKind


class RecoItemOut(BaseModel):
    product_id: str
    score: float
    reason: str
    explanation: Optional[str] = None


class RecoResultOut(BaseModel):
    strategy: str
    items: List[RecoItemOut]
    count: int
    partial: bool = False
    cache_hit: bool = False
    degraded_from: Optional[str] = None


class EngagementIn(BaseModel):
    kind: EventKind
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    category_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    client_id: Optional[str] = None
    is_bot: bool = False
    slug: Optional[str] = None
    previous_slug: Optional[str] = None
    previous_category_id: Optional[str] = None
    previous_tags: List[str] = Field(default_factory=list)
    reason: Optional[str] = Field(None, max_length=200)
    source: Optional[str] = None
    at: Optional[datetime] = None

    def to_event(self) -> EngagementEvent:
        data = self.model_dump(exclude_none=True)
        return EngagementEvent.model_validate(data)


class EngagementOut(BaseModel):
    ok: bool
    kind: str
    queued: bool
    unique: Optional[bool] = None
    active: Optional[bool] = None
    launched: Optional[bool] = None
    dismissed: Optional[bool] = None
