# discovery/domain/repositories/product_repo.py

from __future__ import annotations
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo.errors import ConnectionFailure, PyMongoError

from discovery.core.deadline import Deadline
from discovery.core.errors import NotFound, Unavailable
from discovery.domain.models.interaction import Interaction, InteractionKind
from discovery.domain.models.product import Product, ProductStatus
from discovery.domain.services.scoring import product_trending_score, rank_products

logger = logging.getLogger(__name__)

SORT_CREATED = "created_at"
SORT_TRENDING = "trending"
SORT_VIEWS = "views"
SORT_UPVOTES = "upvotes"
SORTS = {SORT_CREATED, SORT_TRENDING, SORT_VIEWS, SORT_UPVOTES}

# Pool fetched before ranking by trending score in process
TRENDING_POOL = 200


class ProductRepo:
    """
    Read-only Candidate Store Adapter over the 'products' and 'events' collections.

    Every call takes the caller's Deadline. Transient transport errors are retried
    once inside that deadline, then surface as Unavailable.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase],
        products: str = "products",
        events: str = "events",
        tie_breaks: Sequence[str] = ("upvotes", "created_at", "product_id"),
    ):
        self.db = db
        self.col = db[products] if db is not None else None
        self.events = db[events] if db is not None else None
        self.tie_breaks = tuple(tie_breaks)

    async def _call(self, what: str, op: Callable[[], Awaitable[Any]], deadline: Optional[Deadline]) -> Any:
        if self.col is None:
            raise Unavailable("product store is not configured")
        deadline = deadline or Deadline.never()
        attempt = 0
        while True:
            attempt += 1
            db_t0 = time.perf_counter()
            try:
                res = await deadline.run(op(), what)
                logger.debug("%s db_ok attempt=%s db_time=%.3fs", what, attempt, time.perf_counter() - db_t0)
                return res
            except ConnectionFailure as e:
                if attempt >= 2 or deadline.expired():
                    logger.error("%s store unavailable attempts=%s err=%s", what, attempt, e)
                    raise Unavailable(f"{what}: {e}") from e
                logger.warning("%s transient store error, retrying err=%s", what, e)
            except PyMongoError as e:
                logger.error("%s store error err=%s", what, e)
                raise Unavailable(f"{what}: {e}") from e

    @staticmethod
    def _to_products(docs: Iterable[dict]) -> List[Product]:
        out: List[Product] = []
        for doc in docs:
            try:
                out.append(Product.model_validate(doc))
            except ValidationError as e:
                logger.warning("skipping malformed product product_id=%s err=%s", doc.get("product_id"), e.errors()[:1])
        return out

    # ----- Products ----------------------------------------------------------

    async def get_product(self, product_id: str, *, deadline: Optional[Deadline] = None) -> Product:
        doc = await self._call(
            "get_product",
            lambda: self.col.find_one({"product_id": product_id}, {"_id": 0}),
            deadline,
        )
        if not doc:
            raise NotFound(f"product {product_id} not found")
        products = self._to_products([doc])
        if not products:
            raise NotFound(f"product {product_id} is malformed")
        return products[0]

    async def list_by_ids(self, ids: Sequence[str], *, deadline: Optional[Deadline] = None) -> Dict[str, Product]:
        """Missing ids are omitted."""
        ids = [i for i in dict.fromkeys(ids) if i]
        if not ids:
            return {}
        docs = await self._call(
            "list_by_ids",
            lambda: self.col.find({"product_id": {"$in": ids}}, {"_id": 0}).to_list(length=len(ids)),
            deadline,
        )
        return {p.product_id: p for p in self._to_products(docs)}

    async def list_published(
        self,
        *,
        category_id: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        maker_id: Optional[str] = None,
        since_days: Optional[int] = None,
        exclude_ids: Optional[Iterable[str]] = None,
        limit: int = 20,
        offset: int = 0,
        sort: str = SORT_CREATED,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[Product]:
        """
        Published products matching every given predicate. `tags` matches any tag.
        sort: created_at (desc), trending (kernel score, ranked in process),
        views (desc) or upvotes (desc).
        """
        if sort not in SORTS:
            raise ValueError(f"unknown sort {sort!r}")
        now = now or datetime.now(timezone.utc)
        q: Dict[str, Any] = {"status": ProductStatus.PUBLISHED.value}
        if category_id:
            q["category_id"] = category_id
        if tags:
            q["tags"] = {"$in": [t.lower() for t in tags]}
        if maker_id:
            q["maker_id"] = maker_id
        if since_days:
            q["created_at"] = {"$gte": now - timedelta(days=since_days)}
        excluded = [i for i in (exclude_ids or []) if i]
        if excluded:
            q["product_id"] = {"$nin": excluded}

        if sort == SORT_TRENDING:
            # Pre-sort on the stored counters, then rank the pool with the kernel
            pool = max(limit + offset, TRENDING_POOL)
            docs = await self._call(
                "list_published",
                lambda: self.col.find(q, {"_id": 0})
                .sort([("upvote_count", -1), ("created_at", -1)])
                .limit(pool)
                .to_list(length=pool),
                deadline,
            )
            products = self._to_products(docs)
            ranked = rank_products(((p, product_trending_score(p, now)) for p in products), self.tie_breaks)
            return [p for p, _ in ranked[offset: offset + limit]]

        order = {
            SORT_CREATED: [("created_at", -1), ("product_id", 1)],
            SORT_VIEWS: [("views.count", -1), ("product_id", 1)],
            SORT_UPVOTES: [("upvote_count", -1), ("created_at", -1), ("product_id", 1)],
        }[sort]
        docs = await self._call(
            "list_published",
            lambda: self.col.find(q, {"_id": 0}).sort(order).skip(offset).limit(limit).to_list(length=limit),
            deadline,
        )
        return self._to_products(docs)

    async def search_candidates(
        self,
        terms: Sequence[str],
        *,
        category_id: Optional[str] = None,
        limit: int = 200,
        deadline: Optional[Deadline] = None,
    ) -> List[Product]:
        """Published products whose name, tagline, category name or tags mention any term."""
        terms = [t.strip().lower() for t in terms if t and t.strip()]
        if not terms:
            return []
        ors: List[Dict[str, Any]] = [{"tags": {"$in": terms}}]
        pattern = "|".join(re.escape(t) for t in terms)
        for f in ("name", "tagline", "category_name"):
            ors.append({f: {"$regex": pattern, "$options": "i"}})
        q: Dict[str, Any] = {"status": ProductStatus.PUBLISHED.value, "$or": ors}
        if category_id:
            q["category_id"] = category_id
        docs = await self._call(
            "search_candidates",
            lambda: self.col.find(q, {"_id": 0}).limit(limit).to_list(length=limit),
            deadline,
        )
        return self._to_products(docs)

    # ----- Interactions ------------------------------------------------------

    async def get_user_interactions(
        self,
        user_id: str,
        kinds: Sequence[InteractionKind],
        since_days: int = 90,
        *,
        limit: int = 1000,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[Interaction]:
        """Non-bot interactions of one user, newest first."""
        now = now or datetime.now(timezone.utc)
        q = {
            "user_id": user_id,
            "event_type": {"$in": [InteractionKind(k).value for k in kinds]},
            "timestamp": {"$gte": now - timedelta(days=since_days)},
            "is_bot": {"$ne": True},
        }
        docs = await self._call(
            "get_user_interactions",
            lambda: self.events.find(q, {"_id": 0}).sort("timestamp", -1).limit(limit).to_list(length=limit),
            deadline,
        )
        return self._to_interactions(docs)

    async def get_dismissed(self, user_id: str, *, deadline: Optional[Deadline] = None) -> Set[str]:
        """Ids of the products a user asked not to be recommended again."""
        ids = await self._call(
            "get_dismissed",
            lambda: self.events.distinct("product_id", {"user_id": user_id, "event_type": InteractionKind.DISMISS.value}),
            deadline,
        )
        return set(ids)

    async def get_interactions_by_users(
        self,
        user_ids: Sequence[str],
        kinds: Sequence[InteractionKind],
        since_days: int = 90,
        *,
        limit: int = 5000,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[Interaction]:
        if not user_ids:
            return []
        now = now or datetime.now(timezone.utc)
        q = {
            "user_id": {"$in": list(user_ids)},
            "event_type": {"$in": [InteractionKind(k).value for k in kinds]},
            "timestamp": {"$gte": now - timedelta(days=since_days)},
            "is_bot": {"$ne": True},
        }
        docs = await self._call(
            "get_interactions_by_users",
            lambda: self.events.find(q, {"_id": 0}).limit(limit).to_list(length=limit),
            deadline,
        )
        return self._to_interactions(docs)

    async def get_collaborators(
        self,
        user_id: str,
        k: int = 25,
        *,
        min_shared: int = 1,
        since_days: int = 90,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[str]:
        """
        Up to `k` other users who interacted with at least `min_shared` of the
        products this user interacted with, most overlap first.
        """
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=since_days)
        kinds = [k_.value for k_ in (InteractionKind.UPVOTE, InteractionKind.BOOKMARK, InteractionKind.VIEW)]
        mine = await self.get_user_interactions(
            user_id, [InteractionKind(v) for v in kinds], since_days, now=now, deadline=deadline
        )
        product_ids = list(dict.fromkeys(i.product_id for i in mine))
        if not product_ids:
            return []

        pipeline = [
            {"$match": {
                "product_id": {"$in": product_ids},
                "event_type": {"$in": kinds},
                "timestamp": {"$gte": since},
                "is_bot": {"$ne": True},
                "user_id": {"$nin": [user_id, None]},
            }},
            {"$group": {"_id": "$user_id", "products": {"$addToSet": "$product_id"}}},
            {"$project": {"_id": 0, "user_id": "$_id", "shared": {"$size": "$products"}}},
            {"$match": {"shared": {"$gte": min_shared}}},
            {"$sort": {"shared": -1, "user_id": 1}},
            {"$limit": k},
        ]
        docs = await self._call(
            "get_collaborators",
            lambda: self.events.aggregate(pipeline).to_list(length=k),
            deadline,
        )
        collaborators = [d["user_id"] for d in docs if d.get("user_id")]
        logger.debug("collaborators user_id=%s found=%s", user_id, len(collaborators))
        return collaborators

    @staticmethod
    def _to_interactions(docs: Iterable[dict]) -> List[Interaction]:
        out: List[Interaction] = []
        for doc in docs:
            try:
                out.append(Interaction.model_validate(doc))
            except ValidationError:
                logger.warning("skipping malformed interaction product_id=%s", doc.get("product_id"))
        return out
