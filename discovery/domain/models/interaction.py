from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from discovery.domain.models.product import as_utc


class InteractionKind(str, Enum):
    VIEW = "view"
    UPVOTE = "upvote"
    BOOKMARK = "bookmark"
    COMMENT = "comment"
    DISMISS = "dismiss"


# Weight of each interaction when scoring collaborative candidates
INTERACTION_WEIGHTS = {
    InteractionKind.UPVOTE: 1.0,
    InteractionKind.BOOKMARK: 0.7,
    InteractionKind.VIEW: 0.3,
}


class Interaction(BaseModel):
    """One document of the `events` collection."""
    user_id: Optional[str] = None
    client_id: Optional[str] = None
    product_id: str
    kind: InteractionKind = Field(alias="event_type")
    timestamp: datetime
    is_bot: bool = False

    model_config = {"frozen": True, "populate_by_name": True}

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)


class EventKind(str, Enum):
    VIEW = "view"
    UPVOTE = "upvote"
    BOOKMARK = "bookmark"
    COMMENT = "comment"
    DISMISS = "dismiss"
    PRODUCT_PUBLISHED = "product-published"
    PRODUCT_UPDATED = "product-updated"


class EngagementEvent(BaseModel):
    """
    Write-path event consumed by the invalidation router.
    `previous_*` fields are only meaningful on product-updated events.
    """
    kind: EventKind
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    category_id: Optional[str] = None
    tags: List[str] = []
    client_id: Optional[str] = None
    is_bot: bool = False
    slug: Optional[str] = None
    previous_slug: Optional[str] = None
    previous_category_id: Optional[str] = None
    previous_tags: List[str] = []
    # Dismissals only: why, and which strategy served the product
    reason: Optional[str] = None
    source: Optional[str] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}

    @field_validator("tags", "previous_tags", mode="before")
    @classmethod
    def _lower(cls, v):
        return sorted({str(t).strip().lower() for t in (v or []) if str(t).strip()})

    @field_validator("at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)

    @model_validator(mode="after")
    def _requires_product(self):
        if self.product_id is None and self.kind != EventKind.VIEW:
            raise ValueError(f"{self.kind.value} event requires product_id")
        if self.product_id is None and self.kind == EventKind.VIEW and not self.user_id:
            raise ValueError("view event requires product_id or user_id")
        return self

    @property
    def interaction_kind(self) -> Optional[InteractionKind]:
        try:
            return InteractionKind(self.kind.value)
        except ValueError:
            return None
