# discovery/domain/services/strategies.py
"""
Strategy engines. Each engine is `(ctx, params, deadline) -> StrategyResult` and
is looked up by strategy id in `StrategyEngines.table`.
"""
from __future__ import annotations
import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from discovery.core.config import Settings, get_settings
from discovery.core.deadline import Deadline
from discovery.core.errors import InvalidArgument, Unauthenticated, Unavailable
from discovery.domain.models.interaction import INTERACTION_WEIGHTS, InteractionKind
from discovery.domain.models.product import Product
from discovery.domain.models.reco import RecoItem, RecoParams, StrategyResult, UserCtx
from discovery.domain.repositories.product_repo import (
    SORT_CREATED,
    SORT_TRENDING,
    ProductRepo,
)
from discovery.domain.services import constants as C
from discovery.domain.services.scoring import jaccard, product_trending_score, rank_key

logger = logging.getLogger(__name__)

Engine = Callable[[UserCtx, RecoParams, Deadline], Awaitable[StrategyResult]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_item(product: Product, score: float, reason: str, explanation: Optional[str], trending: float) -> RecoItem:
    return RecoItem(
        product_id=product.product_id,
        score=max(0.0, score),
        reason=reason,
        explanation=explanation,
        trending_score=trending,
        upvotes=product.upvote_count,
        created_at_ts=product.created_at.timestamp(),
        category_id=product.category_id,
    )


class StrategyEngines:
    def __init__(
        self,
        repo: ProductRepo,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repo = repo
        self.settings = settings or get_settings()
        self.clock = clock
        self.tie_breaks = tuple(self.settings.score.tie_breaks)
        self.table: Dict[str, Engine] = {
            C.STRATEGY_TRENDING: self.trending,
            C.STRATEGY_NEW: self.new,
            C.STRATEGY_SIMILAR: self.similar,
            C.STRATEGY_PERSONALIZED: self.personalized,
            C.STRATEGY_COLLABORATIVE: self.collaborative,
            C.STRATEGY_CATEGORY: self.category,
            C.STRATEGY_TAG: self.tag,
            C.STRATEGY_POPULAR: self.popular,
        }

    async def run(self, strategy: str, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        """Dispatch by id. An unavailable store degrades to an empty result tagged `unavailable`."""
        engine = self.table.get(strategy)
        if engine is None:
            raise InvalidArgument(f"unknown strategy {strategy!r}")
        t0 = time.perf_counter()
        try:
            res = await engine(ctx, params, deadline)
        except Unavailable as e:
            logger.warning("strategy=%s unavailable err=%s", strategy, e)
            return StrategyResult(strategy=strategy, items=[], reason=C.REASON_UNAVAILABLE)
        logger.debug("strategy=%s items=%s reason=%s time=%.3fs", strategy, len(res), res.reason, time.perf_counter() - t0)
        return res

    # ----- helpers -----------------------------------------------------------

    def _rank(self, scored: Iterable[Tuple[Product, float, float, Optional[str]]]) -> List[Tuple[Product, float, float, Optional[str]]]:
        # (product, score, trending, explanation)
        return sorted(
            scored,
            key=lambda s: rank_key(
                s[1],
                upvotes=s[0].upvote_count,
                created_ts=s[0].created_at.timestamp(),
                product_id=s[0].product_id,
                tie_breaks=self.tie_breaks,
            ),
        )

    def _result(self, strategy: str, ranked, reason: str, limit: int, offset: int = 0, why: Optional[str] = None) -> StrategyResult:
        items = [make_item(p, s, reason, expl, t) for p, s, t, expl in ranked[offset: offset + limit]]
        return StrategyResult(strategy=strategy, items=items, reason=why)

    async def _ranked_listing(
        self,
        strategy: str,
        params: RecoParams,
        deadline: Deadline,
        *,
        since_days: Optional[int],
        explain: Callable[[Product], Optional[str]],
    ) -> StrategyResult:
        now = self.clock()
        products = await self.repo.list_published(
            category_id=params.category_id,
            tags=params.tags,
            maker_id=params.maker_id,
            since_days=since_days,
            limit=params.limit,
            offset=params.offset,
            sort=SORT_TRENDING,
            now=now,
            deadline=deadline,
        )
        scored = []
        for p in products:
            t = product_trending_score(p, now)
            scored.append((p, t, t, explain(p)))
        return self._result(strategy, self._rank(scored), strategy, params.limit)

    # ----- engines -----------------------------------------------------------

    async def trending(self, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        days = params.days or self.settings.trending.default_window_days
        return await self._ranked_listing(
            C.STRATEGY_TRENDING, params, deadline,
            since_days=days,
            explain=lambda p: f"Trending with {p.upvote_count} upvotes this {days}-day window",
        )

    async def new(self, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        now = self.clock()
        products = await self.repo.list_published(
            category_id=params.category_id,
            tags=params.tags,
            maker_id=params.maker_id,
            since_days=params.days or C.NEW_DEFAULT_DAYS,
            limit=params.limit,
            offset=params.offset,
            sort=SORT_CREATED,
            now=now,
            deadline=deadline,
        )
        rows = []
        for p in products:
            age_d = max(0.0, (now - p.created_at).total_seconds() / 86400.0)
            rows.append((p, 1.0 / (1.0 + age_d), product_trending_score(p, now)))
        # Newest first; same creation time falls back to trending score
        rows.sort(key=lambda r: (-r[0].created_at.timestamp(), -r[2], r[0].product_id))
        items = [make_item(p, s, C.STRATEGY_NEW, "Recently launched", t) for p, s, t in rows[: params.limit]]
        return StrategyResult(strategy=C.STRATEGY_NEW, items=items)

    async def similar(self, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        if not params.product_id:
            raise InvalidArgument("similar requires product_id")
        now = self.clock()
        anchor = await self.repo.get_product(params.product_id, deadline=deadline)

        lookups = []
        if anchor.tags:
            lookups.append(self.repo.list_published(
                tags=anchor.tags, exclude_ids=[anchor.product_id], limit=C.SIMILAR_POOL,
                sort=SORT_CREATED, now=now, deadline=deadline,
            ))
        if anchor.category_id:
            lookups.append(self.repo.list_published(
                category_id=anchor.category_id, exclude_ids=[anchor.product_id], limit=C.SIMILAR_POOL,
                sort=SORT_CREATED, now=now, deadline=deadline,
            ))
        if not lookups:
            return StrategyResult(strategy=C.STRATEGY_SIMILAR, items=[])

        pools = await asyncio.gather(*lookups)
        candidates: Dict[str, Product] = {}
        for pool in pools:
            for p in pool:
                if p.product_id != anchor.product_id:
                    candidates.setdefault(p.product_id, p)
        if not candidates:
            return StrategyResult(strategy=C.STRATEGY_SIMILAR, items=[])

        trend = {pid: product_trending_score(p, now) for pid, p in candidates.items()}
        top = max(trend.values()) or 1.0
        scored = []
        for pid, p in candidates.items():
            shared = sorted(set(anchor.tags) & set(p.tags))
            same_cat = bool(anchor.category_id) and p.category_id == anchor.category_id
            score = (
                C.SIMILAR_TAG_WEIGHT * jaccard(anchor.tags, p.tags)
                + C.SIMILAR_CATEGORY_WEIGHT * (1.0 if same_cat else 0.0)
                + C.SIMILAR_TRENDING_WEIGHT * (trend[pid] / top)
            )
            if shared:
                expl = "Shares tags: " + ", ".join(shared[:3])
            elif same_cat:
                expl = f"Also in {p.category_name or 'this category'}"
            else:
                expl = None
            scored.append((p, score, trend[pid], expl))
        return self._result(C.STRATEGY_SIMILAR, self._rank(scored), C.STRATEGY_SIMILAR, params.limit, params.offset)

    async def personalized(self, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        if not ctx.user_id:
            raise Unauthenticated("personalized recommendations need a signed-in user")
        now = self.clock()
        interactions = await self.repo.get_user_interactions(
            ctx.user_id,
            [InteractionKind.UPVOTE, InteractionKind.BOOKMARK, InteractionKind.COMMENT, InteractionKind.VIEW],
            C.INTEREST_WINDOW_DAYS,
            now=now,
            deadline=deadline,
        )
        if not interactions:
            return await self._cold_start(C.STRATEGY_PERSONALIZED, ctx, params, deadline)

        seen = await self.repo.list_by_ids([i.product_id for i in interactions], deadline=deadline)
        tag_interest: Dict[str, float] = defaultdict(float)
        cat_interest: Dict[str, float] = defaultdict(float)
        owned = set()
        for i in interactions:
            w = C.INTEREST_WEIGHTS.get(i.kind.value, 0.0)
            if i.kind in (InteractionKind.UPVOTE, InteractionKind.BOOKMARK):
                owned.add(i.product_id)
            p = seen.get(i.product_id)
            if p is None:
                continue
            for t in p.tags:
                tag_interest[t] += w
            if p.category_id:
                cat_interest[p.category_id] += w * C.CATEGORY_INTEREST_FACTOR
        if not tag_interest and not cat_interest:
            return await self._cold_start(C.STRATEGY_PERSONALIZED, ctx, params, deadline)

        top_tags = [t for t, _ in sorted(tag_interest.items(), key=lambda kv: (-kv[1], kv[0]))[:10]]
        top_cats = [c for c, _ in sorted(cat_interest.items(), key=lambda kv: (-kv[1], kv[0]))[:3]]
        lookups = []
        if top_tags:
            lookups.append(self.repo.list_published(
                tags=top_tags, exclude_ids=owned, limit=C.CANDIDATE_POOL, sort=SORT_CREATED, now=now, deadline=deadline,
            ))
        for cat in top_cats:
            lookups.append(self.repo.list_published(
                category_id=cat, exclude_ids=owned, limit=C.CANDIDATE_POOL // 4, sort=SORT_CREATED, now=now, deadline=deadline,
            ))
        candidates: Dict[str, Product] = {}
        for pool in await asyncio.gather(*lookups):
            for p in pool:
                if p.product_id not in owned:
                    candidates.setdefault(p.product_id, p)
        if not candidates:
            return await self._cold_start(C.STRATEGY_PERSONALIZED, ctx, params, deadline)

        scored = []
        for p in candidates.values():
            matched = [t for t in p.tags if t in tag_interest]
            score = sum(tag_interest[t] for t in matched)
            if p.category_id in cat_interest:
                score += cat_interest[p.category_id]
            age_d = max(0.0, (now - p.created_at).total_seconds() / 86400.0)
            score += C.PERSONALIZED_RECENCY_WEIGHT / (1.0 + age_d / 7.0)
            expl = ("Because you like " + ", ".join(sorted(matched, key=lambda t: -tag_interest[t])[:2])) if matched else None
            scored.append((p, score, product_trending_score(p, now), expl))
        return self._result(C.STRATEGY_PERSONALIZED, self._rank(scored), C.STRATEGY_PERSONALIZED, params.limit, params.offset)

    async def collaborative(self, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        if not ctx.user_id:
            raise Unauthenticated("collaborative recommendations need a signed-in user")
        now = self.clock()
        req = self.settings.request
        peers = await self.repo.get_collaborators(
            ctx.user_id, req.collaborators_k, since_days=req.interaction_window_days, now=now, deadline=deadline,
        )
        if not peers:
            return StrategyResult(strategy=C.STRATEGY_COLLABORATIVE, items=[], reason=C.REASON_COLD_START)

        kinds = [InteractionKind.UPVOTE, InteractionKind.BOOKMARK, InteractionKind.VIEW]
        mine, theirs = await asyncio.gather(
            self.repo.get_user_interactions(
                ctx.user_id, [InteractionKind.UPVOTE, InteractionKind.BOOKMARK],
                req.interaction_window_days, now=now, deadline=deadline,
            ),
            self.repo.get_interactions_by_users(peers, kinds, req.interaction_window_days, now=now, deadline=deadline),
        )
        owned = {i.product_id for i in mine}

        # Best interaction weight per (collaborator, product)
        best: Dict[Tuple[str, str], float] = {}
        candidate_ids = set()
        for i in theirs:
            if i.product_id in owned or not i.user_id:
                continue
            w = INTERACTION_WEIGHTS.get(i.kind, 0.0)
            k = (i.user_id, i.product_id)
            best[k] = max(best.get(k, 0.0), w)
            if i.kind in (InteractionKind.UPVOTE, InteractionKind.BOOKMARK):
                candidate_ids.add(i.product_id)
        score_by_pid: Dict[str, float] = defaultdict(float)
        peers_by_pid: Dict[str, int] = defaultdict(int)
        for (_, pid), w in best.items():
            if pid in candidate_ids:
                score_by_pid[pid] += w
                peers_by_pid[pid] += 1
        if not score_by_pid:
            return StrategyResult(strategy=C.STRATEGY_COLLABORATIVE, items=[], reason=C.REASON_COLD_START)

        products = await self.repo.list_by_ids(list(score_by_pid), deadline=deadline)
        scored = []
        for pid, score in score_by_pid.items():
            p = products.get(pid)
            if p is None or not p.is_published:
                continue
            n = peers_by_pid[pid]
            expl = f"Liked by {n} people with similar taste" if n > 1 else "Liked by someone with similar taste"
            scored.append((p, score, product_trending_score(p, now), expl))
        return self._result(C.STRATEGY_COLLABORATIVE, self._rank(scored), C.STRATEGY_COLLABORATIVE, params.limit, params.offset)

    async def category(self, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        if not params.category_id:
            raise InvalidArgument("category requires category_id")
        return await self._ranked_listing(
            C.STRATEGY_CATEGORY, params, deadline,
            since_days=params.days,
            explain=lambda p: f"Top in {p.category_name or p.category_id}",
        )

    async def tag(self, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        if not params.tags:
            raise InvalidArgument("tag requires tags")
        wanted = set(params.tags)
        return await self._ranked_listing(
            C.STRATEGY_TAG, params, deadline,
            since_days=params.days,
            explain=lambda p: "Tagged " + ", ".join(sorted(wanted & set(p.tags))[:3]),
        )

    async def popular(self, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        return await self._ranked_listing(
            C.STRATEGY_POPULAR, params, deadline,
            since_days=params.days or C.POPULAR_DEFAULT_DAYS,
            explain=lambda p: f"Popular with {p.upvote_count} upvotes",
        )

    async def _cold_start(self, strategy: str, ctx: UserCtx, params: RecoParams, deadline: Deadline) -> StrategyResult:
        logger.info("strategy=%s cold_start user_id=%s; serving trending", strategy, ctx.user_id)
        res = await self.trending(ctx, params, deadline)
        return StrategyResult(strategy=strategy, items=res.items, reason=C.REASON_COLD_START)


def lane_params(params: RecoParams, limit: int) -> RecoParams:
    """Copy of params for one blend lane: no offset, wider limit (not bound by the request cap)."""
    return params.model_copy(update={"limit": max(1, limit), "offset": 0})
