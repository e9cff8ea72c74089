from __future__ import annotations
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

MAX_TAGS = 10
MAX_HISTORY_DAYS = 90


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes; make everything tz-aware."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def day_of(dt: datetime) -> datetime:
    dt = as_utc(dt)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def coerce_count(value: Any, field: str) -> int:
    """Non-numeric or negative observations become 0 (with a warning), never an exception."""
    if value is None:
        return 0
    if isinstance(value, bool):
        logger.warning("engagement coerce field=%s value=%r -> 0", field, value)
        return 0
    if isinstance(value, (int, float)):
        if value != value or value < 0:  # NaN or negative
            logger.warning("engagement coerce field=%s value=%r -> 0", field, value)
            return 0
        return int(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            parsed = None
        if parsed is not None and parsed == parsed and parsed >= 0:
            return int(parsed)
    logger.warning("engagement coerce field=%s value=%r -> 0", field, value)
    return 0


class ProductStatus(str, Enum):
    DRAFT = "Draft"
    PUBLISHED = "Published"
    ARCHIVED = "Archived"


class ViewHistoryEntry(BaseModel):
    date: datetime
    count: int = 0

    model_config = {"frozen": True}

    @field_validator("date", mode="before")
    @classmethod
    def _truncate(cls, v):
        if isinstance(v, str):
            v = datetime.fromisoformat(v)
        return day_of(v)

    @field_validator("count", mode="before")
    @classmethod
    def _count(cls, v):
        return coerce_count(v, "views.history.count")


class ViewStats(BaseModel):
    """
    Engagement record stored under `views` on each product document:
      views = { count, unique, history: [{date, count}], recommendation_impressions,
                recommendation_clicks, last_recommended_at }
    """
    count: int = 0
    unique: int = 0
    history: List[ViewHistoryEntry] = []
    recommendation_impressions: int = 0
    recommendation_clicks: int = 0
    last_recommended_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @field_validator("count", "unique", "recommendation_impressions", "recommendation_clicks", mode="before")
    @classmethod
    def _numeric(cls, v, info):
        return coerce_count(v, f"views.{info.field_name}")

    @field_validator("last_recommended_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)

    @field_validator("history")
    @classmethod
    def _distinct_days(cls, v: List[ViewHistoryEntry]):
        # Merge duplicate days, newest first, bounded
        by_day: dict[datetime, int] = {}
        for entry in v:
            by_day[entry.date] = by_day.get(entry.date, 0) + entry.count
        merged = [ViewHistoryEntry(date=d, count=c) for d, c in sorted(by_day.items(), reverse=True)]
        return merged[:MAX_HISTORY_DAYS]

    @model_validator(mode="before")
    @classmethod
    def _unique_le_count(cls, data):
        if not isinstance(data, dict):
            return data
        count = coerce_count(data.get("count"), "views.count")
        unique = coerce_count(data.get("unique"), "views.unique")
        if unique > count:
            logger.warning("engagement unique=%s exceeds count=%s; clamping", unique, count)
            unique = count
        return {**data, "count": count, "unique": unique}

    def recent(self, now: datetime, days: int = 7) -> int:
        """Views recorded in the last `days` days (history is per day)."""
        cutoff = day_of(now) - timedelta(days=days - 1)
        return sum(e.count for e in self.history if e.date >= cutoff)


class Product(BaseModel):
    product_id: str
    slug: Optional[str] = None
    name: str
    tagline: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = []
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    maker_id: Optional[str] = None
    created_at: datetime
    launched_at: Optional[datetime] = None
    featured: bool = False
    status: ProductStatus = ProductStatus.DRAFT
    views: ViewStats = Field(default_factory=ViewStats)
    upvote_count: int = 0
    bookmark_count: int = 0
    comment_count: int = 0

    model_config = {"frozen": True}  # immuable = safe

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v):
        if not v:
            return []
        seen: list[str] = []
        for t in v:
            t = str(t).strip().lower()
            if t and t not in seen:
                seen.append(t)
        return seen[:MAX_TAGS]

    @field_validator("created_at", "launched_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)

    @field_validator("upvote_count", "bookmark_count", "comment_count", mode="before")
    @classmethod
    def _numeric(cls, v, info):
        return coerce_count(v, info.field_name)

    @property
    def is_published(self) -> bool:
        return self.status == ProductStatus.PUBLISHED
