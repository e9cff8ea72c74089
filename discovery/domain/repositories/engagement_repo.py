# discovery/domain/repositories/engagement_repo.py

from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError, WriteError

from discovery.core.errors import NotFound, Unavailable
from discovery.domain.models.interaction import InteractionKind
from discovery.domain.models.product import MAX_HISTORY_DAYS, ProductStatus, ViewStats, as_utc, day_of

logger = logging.getLogger(__name__)

_COUNT_FIELD = {
    InteractionKind.UPVOTE: "upvote_count",
    InteractionKind.BOOKMARK: "bookmark_count",
    InteractionKind.COMMENT: "comment_count",
}


class EngagementRepo:
    """
    Write path for engagement telemetry.

    Interactions go to 'events' ({event_type, user_id, client_id, product_id, timestamp, is_bot});
    the denormalized counters live on the product document:
      views = { count, unique, history: [{date, count}], recommendation_impressions,
                recommendation_clicks, last_recommended_at }
      upvote_count, bookmark_count, comment_count
    """

    def __init__(self, db: Optional[AsyncIOMotorDatabase], products: str = "products", events: str = "events"):
        self.products = db[products] if db is not None else None
        self.events = db[events] if db is not None else None

    def _require(self) -> None:
        if self.products is None:
            raise Unavailable("engagement store is not configured")

    async def ensure_indexes(self) -> None:
        """One upvote, one bookmark and one dismissal per (user, product)."""
        self._require()
        for kind in (InteractionKind.UPVOTE, InteractionKind.BOOKMARK, InteractionKind.DISMISS):
            await self.events.create_index(
                [("user_id", ASCENDING), ("product_id", ASCENDING), ("event_type", ASCENDING)],
                name=f"uniq_{kind.value}",
                unique=True,
                partialFilterExpression={"event_type": kind.value},
            )
        await self.events.create_index([("product_id", ASCENDING), ("event_type", ASCENDING), ("user_id", ASCENDING)])
        await self.events.create_index([("user_id", ASCENDING), ("timestamp", ASCENDING)])
        await self.products.create_index("product_id", unique=True)
        logger.info("engagement indexes ensured")

    # ----- Views -------------------------------------------------------------

    async def _has_prior_view(self, product_id: str, user_id: Optional[str], client_id: Optional[str]) -> bool:
        q: Dict[str, Any] = {"event_type": InteractionKind.VIEW.value, "product_id": product_id, "is_bot": {"$ne": True}}
        if user_id:
            q["user_id"] = user_id
        else:
            q["client_id"] = client_id
            q["user_id"] = None
        return await self.events.find_one(q, {"_id": 1}) is not None

    async def record_view(
        self,
        product_id: str,
        *,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        is_bot: bool = False,
        at: Optional[datetime] = None,
    ) -> bool:
        """
        Store the view and bump the product counters. Returns True when it counted as unique.

        Unique when the viewer is identified (user id, or client id for anonymous
        viewers) and has no earlier non-bot view of this product. Bot views and
        anonymous views without a client id are never unique.
        """
        self._require()
        at = as_utc(at) or datetime.now(timezone.utc)
        try:
            unique = False
            if not is_bot and (user_id or client_id):
                unique = not await self._has_prior_view(product_id, user_id, client_id)

            # Counters first: an unknown product raises NotFound before any event is stored
            await self._bump_views(product_id, day_of(at), 1 if unique else 0)
            await self.events.insert_one({
                "event_type": InteractionKind.VIEW.value,
                "user_id": user_id,
                "client_id": client_id,
                "product_id": product_id,
                "timestamp": at,
                "is_bot": bool(is_bot),
            })
        except PyMongoError as e:
            logger.error("record_view failed product_id=%s err=%s", product_id, e)
            raise Unavailable(f"record_view: {e}") from e
        logger.debug("record_view product_id=%s user_id=%s unique=%s bot=%s", product_id, user_id, unique, is_bot)
        return unique

    async def _bump_views(self, product_id: str, day: datetime, unique_inc: int, *, repaired: bool = False) -> None:
        inc = {"views.count": 1, "views.unique": unique_inc}
        try:
            # Today's history entry already exists: bump it in place
            res = await self.products.update_one(
                {"product_id": product_id, "views.history.date": day},
                {"$inc": {**inc, "views.history.$.count": 1}},
            )
            if res.matched_count:
                return
            res = await self.products.update_one(
                {"product_id": product_id},
                {
                    "$inc": inc,
                    "$push": {"views.history": {
                        "$each": [{"date": day, "count": 1}],
                        "$position": 0,
                        "$slice": MAX_HISTORY_DAYS,
                    }},
                },
            )
        except WriteError as e:
            # Non-numeric counters in storage: coerce once, then retry
            if repaired:
                raise
            logger.warning("views counters not numeric product_id=%s err=%s; coercing", product_id, e)
            await self._repair_views(product_id)
            await self._bump_views(product_id, day, unique_inc, repaired=True)
            return
        if not res.matched_count:
            raise NotFound(f"product {product_id} not found")

    async def _repair_views(self, product_id: str) -> None:
        doc = await self.products.find_one({"product_id": product_id}, {"_id": 0, "views": 1})
        raw = (doc or {}).get("views")
        stats = ViewStats.model_validate(raw if isinstance(raw, dict) else {})
        await self.products.update_one(
            {"product_id": product_id},
            {"$set": {"views": stats.model_dump()}},
        )

    # ----- Toggles -----------------------------------------------------------

    async def _toggle(self, kind: InteractionKind, product_id: str, user_id: str, at: Optional[datetime]) -> bool:
        self._require()
        at = as_utc(at) or datetime.now(timezone.utc)
        q = {"event_type": kind.value, "user_id": user_id, "product_id": product_id}
        try:
            if await self.products.find_one({"product_id": product_id}, {"_id": 1}) is None:
                raise NotFound(f"product {product_id} not found")
            existing = await self.events.find_one(q, {"_id": 1})
            if existing:
                await self.events.delete_many(q)
                active = False
            else:
                try:
                    await self.events.insert_one({**q, "client_id": None, "timestamp": at, "is_bot": False})
                except DuplicateKeyError:
                    logger.debug("%s already recorded user_id=%s product_id=%s", kind.value, user_id, product_id)
                active = True
            count = await self.events.count_documents({"event_type": kind.value, "product_id": product_id})
            res = await self.products.update_one({"product_id": product_id}, {"$set": {_COUNT_FIELD[kind]: count}})
        except PyMongoError as e:
            logger.error("toggle %s failed product_id=%s err=%s", kind.value, product_id, e)
            raise Unavailable(f"toggle {kind.value}: {e}") from e
        if not res.matched_count:
            raise NotFound(f"product {product_id} not found")
        logger.info("toggle %s user_id=%s product_id=%s active=%s count=%s", kind.value, user_id, product_id, active, count)
        return active

    async def toggle_upvote(self, product_id: str, user_id: str, *, at: Optional[datetime] = None) -> bool:
        return await self._toggle(InteractionKind.UPVOTE, product_id, user_id, at)

    async def toggle_bookmark(self, product_id: str, user_id: str, *, at: Optional[datetime] = None) -> bool:
        return await self._toggle(InteractionKind.BOOKMARK, product_id, user_id, at)

    async def record_comment(self, product_id: str, user_id: str, *, at: Optional[datetime] = None) -> None:
        self._require()
        at = as_utc(at) or datetime.now(timezone.utc)
        try:
            res = await self.products.update_one({"product_id": product_id}, {"$inc": {"comment_count": 1}})
            if not res.matched_count:
                raise NotFound(f"product {product_id} not found")
            await self.events.insert_one({
                "event_type": InteractionKind.COMMENT.value,
                "user_id": user_id,
                "client_id": None,
                "product_id": product_id,
                "timestamp": at,
                "is_bot": False,
            })
        except PyMongoError as e:
            raise Unavailable(f"record_comment: {e}") from e

    async def dismiss(
        self,
        product_id: str,
        user_id: str,
        *,
        reason: Optional[str] = None,
        source: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> bool:
        """
        Hide a product from one user's recommendations. Idempotent: the first
        dismissal is kept. Returns True when this call stored it.
        """
        self._require()
        at = as_utc(at) or datetime.now(timezone.utc)
        q = {"event_type": InteractionKind.DISMISS.value, "user_id": user_id, "product_id": product_id}
        try:
            if await self.products.find_one({"product_id": product_id}, {"_id": 1}) is None:
                raise NotFound(f"product {product_id} not found")
            res = await self.events.update_one(
                q,
                {"$setOnInsert": {"client_id": None, "timestamp": at, "is_bot": False, "reason": reason, "source": source}},
                upsert=True,
            )
            stored = res.upserted_id is not None
        except DuplicateKeyError:
            stored = False
        except PyMongoError as e:
            raise Unavailable(f"dismiss: {e}") from e
        logger.info("dismiss user_id=%s product_id=%s source=%s stored=%s", user_id, product_id, source, stored)
        return stored

    # ----- Lifecycle ---------------------------------------------------------

    async def publish_product(self, product_id: str, *, at: Optional[datetime] = None) -> bool:
        """Mark Published; stamps launched_at on the first transition. True when it was stamped."""
        self._require()
        at = as_utc(at) or datetime.now(timezone.utc)
        published = {"status": ProductStatus.PUBLISHED.value}
        try:
            res = await self.products.update_one(
                {"product_id": product_id, "launched_at": None},
                {"$set": {**published, "launched_at": at}},
            )
            if res.matched_count:
                logger.info("product published product_id=%s launched_at=%s", product_id, at.isoformat())
                return True
            res = await self.products.update_one({"product_id": product_id}, {"$set": published})
        except PyMongoError as e:
            raise Unavailable(f"publish_product: {e}") from e
        if not res.matched_count:
            raise NotFound(f"product {product_id} not found")
        return False

    # ----- Recommendation telemetry -----------------------------------------

    async def record_impressions(self, product_ids: Sequence[str], *, at: Optional[datetime] = None) -> int:
        if self.products is None or not product_ids:
            return 0
        at = as_utc(at) or datetime.now(timezone.utc)
        res = await self.products.update_many(
            {"product_id": {"$in": list(dict.fromkeys(product_ids))}},
            {"$inc": {"views.recommendation_impressions": 1}, "$set": {"views.last_recommended_at": at}},
        )
        return res.modified_count

    async def record_click(self, product_id: str) -> None:
        self._require()
        try:
            res = await self.products.update_one(
                {"product_id": product_id},
                {"$inc": {"views.recommendation_clicks": 1}},
            )
        except PyMongoError as e:
            raise Unavailable(f"record_click: {e}") from e
        if not res.matched_count:
            raise NotFound(f"product {product_id} not found")
