# discovery/domain/services/recommendation_svc.py
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from redis.exceptions import RedisError

from discovery.core.config import Settings, get_settings
from discovery.core.deadline import Deadline
from discovery.core.errors import DeadlineExceeded, Internal, InvalidArgument, RecoError, Unauthenticated, Unavailable
from discovery.domain.models.reco import RecoItem, RecoParams, RecoResult, UserCtx
from discovery.domain.repositories.engagement_repo import EngagementRepo
from discovery.domain.repositories.reco_cache_repo import CacheStatus, RecoCacheRepo, is_fallback_key
from discovery.domain.services import constants as C
from discovery.domain.services.blender import HybridBlender
from discovery.domain.services.strategies import StrategyEngines
from discovery.domain.services.tracker import TrackerRegistry
from discovery.utils.locks import RedisLock
from discovery.utils.singleflight import Singleflight

logger = logging.getLogger(__name__)

# How long a replica waits for another one computing the same key
LOCK_WAIT_S = 5.0


@dataclass
class _Loaded:
    items: List[RecoItem]
    partial: bool = False
    cache_hit: bool = False
    degraded_from: Optional[str] = None


class RecommendationService:
    """
    Request orchestrator: cache key -> singleflight(cache get -> strategy or
    blend -> cache set) -> per-session dedup -> ranked list.
    """

    def __init__(
        self,
        engines: StrategyEngines,
        blender: HybridBlender,
        cache: RecoCacheRepo,
        trackers: TrackerRegistry,
        engagement: Optional[EngagementRepo] = None,
        settings: Optional[Settings] = None,
        flights: Optional[Singleflight] = None,
    ):
        self.engines = engines
        self.blender = blender
        self.cache = cache
        self.trackers = trackers
        self.engagement = engagement
        self.settings = settings or get_settings()
        self.flights = flights or Singleflight()
        self._background: Set[asyncio.Task] = set()

    def ttl_for(self, strategy: str) -> int:
        ttls = self.settings.strategy_ttls
        return getattr(ttls, strategy, None) or self.settings.cache.default_ttl_seconds

    @staticmethod
    def key_params(strategy: str, params: RecoParams, ctx: UserCtx) -> Dict[str, Any]:
        return {
            "strategy": strategy,
            "blend": params.blend if strategy == C.STRATEGY_HYBRID else None,
            "category_id": params.category_id,
            "product_id": params.product_id,
            "maker_id": params.maker_id,
            "limit": params.limit,
            "offset": params.offset,
            "days": params.days,
            "tags": params.tags,
            "user_id": ctx.user_id,
            "visitor_id": ctx.visitor_id,
            "session_id": ctx.session_id,
        }

    async def recommend(
        self,
        strategy: str,
        params: RecoParams,
        ctx: UserCtx,
        deadline: Optional[Deadline] = None,
        *,
        new_cycle: bool = False,
    ) -> RecoResult:
        t0 = time.perf_counter()
        if strategy not in C.ALL_STRATEGIES:
            raise InvalidArgument(f"unknown strategy {strategy!r}")
        if strategy in C.AUTH_STRATEGIES and not ctx.authenticated:
            raise Unauthenticated(f"{strategy} recommendations need a signed-in user")
        deadline = deadline or Deadline.after(self.settings.request.default_timeout_s)

        key = self.cache.key(strategy, self.key_params(strategy, params, ctx))
        # Callers joining the flight are bounded only by their own wait below
        budget = Deadline.latest(deadline, Deadline.after(self.settings.request.default_timeout_s))
        logger.info("recommend start strategy=%s key=%s", strategy, key)
        try:
            loaded, shared = await self.flights.do(
                key,
                lambda: self._load(key, strategy, params, ctx, budget),
                timeout=deadline.remaining(),
            )
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded(f"recommend {strategy}: deadline exceeded") from e
        except RecoError:
            raise
        except Exception as e:
            logger.exception("recommend failed strategy=%s", strategy)
            raise Internal(f"recommend {strategy}: {e}") from e

        items = loaded.items
        if ctx.authenticated and items:
            items = await self._without_dismissed(items, ctx.user_id, deadline)
        tracker = self.trackers.get(ctx.session_id)
        if tracker is not None:
            if new_cycle:
                await tracker.reset()
            items = await tracker.filter(items)

        self._record_impressions([i.product_id for i in items])
        logger.info(
            "recommend done strategy=%s items=%s cache_hit=%s shared=%s partial=%s total_time=%.3fs",
            strategy, len(items), loaded.cache_hit, shared, loaded.partial, time.perf_counter() - t0,
        )
        return RecoResult(
            strategy=strategy,
            items=items,
            count=len(items),
            partial=loaded.partial,
            cache_hit=loaded.cache_hit,
            degraded_from=loaded.degraded_from,
        )

    async def _without_dismissed(self, items: List[RecoItem], user_id: str, deadline: Deadline) -> List[RecoItem]:
        # Cached lists are shared across users; dismissals apply per request
        try:
            dismissed = await self.engines.repo.get_dismissed(user_id, deadline=deadline)
        except Unavailable as e:
            logger.warning("dismissed lookup failed user_id=%s err=%s; serving unfiltered", user_id, e)
            return items
        return [i for i in items if i.product_id not in dismissed]

    async def reset_session(self, session_id: str) -> None:
        if not session_id:
            raise InvalidArgument("session_id is required")
        await self.trackers.reset(session_id)

    async def record_click(self, product_id: str) -> None:
        if not product_id:
            raise InvalidArgument("product_id is required")
        if self.engagement is None:
            raise Unavailable("engagement store not configured", retry_after=self.settings.request.retry_after_s)
        await self.engagement.record_click(product_id)
        logger.info("recommendation_click product_id=%s", product_id)

    # ----- load path (runs once per key under singleflight) ------------------

    async def _read(self, key: str, deadline: Deadline) -> Optional[List[RecoItem]]:
        found = await deadline.run(self.cache.lookup(key), "cache get")
        if found.status == CacheStatus.CORRUPTED:
            # Bad entry was deleted; retry once
            found = await deadline.run(self.cache.lookup(key), "cache get")
        return found.items if found.hit else None

    async def _load(self, key: str, strategy: str, params: RecoParams, ctx: UserCtx, deadline: Deadline) -> _Loaded:
        cached = await self._read(key, deadline)
        if cached is not None:
            logger.info("cache_hit key=%s items=%s", key, len(cached))
            return _Loaded(items=cached, cache_hit=True)
        logger.info("cache_miss key=%s", key)

        lock = None
        if self.cache.cache is not None and not is_fallback_key(key):
            lock = RedisLock(self.cache.cache, key, ttl=self.settings.cache.lock_ttl)
            try:
                if not await lock.acquire():
                    # Another replica is computing this key
                    rem = deadline.remaining()
                    await lock.wait(timeout=LOCK_WAIT_S if rem is None else min(LOCK_WAIT_S, rem))
                    lock = None
                    cached = await self._read(key, deadline)
                    if cached is not None:
                        return _Loaded(items=cached, cache_hit=True)
            except (RedisError, OSError) as e:
                logger.warning("reco lock unavailable key=%s err=%s", key, e)
                lock = None

        try:
            loaded = await self._compute(strategy, params, ctx, deadline)
            if not loaded.partial and loaded.degraded_from is None and not is_fallback_key(key):
                await self.cache.set(key, loaded.items, self.ttl_for(strategy))
            return loaded
        finally:
            if lock is not None:
                try:
                    await lock.release()
                except (RedisError, OSError) as e:
                    logger.warning("reco lock release failed key=%s err=%s", key, e)

    async def _compute(self, strategy: str, params: RecoParams, ctx: UserCtx, deadline: Deadline) -> _Loaded:
        retry_after = self.settings.request.retry_after_s
        if strategy == C.STRATEGY_HYBRID:
            outcome = await self.blender.blend(ctx, params, deadline)
            if not outcome.items and outcome.lanes and len(outcome.unavailable) == len(outcome.lanes):
                raise Unavailable("every blend lane is unavailable", retry_after=retry_after)
            return _Loaded(items=outcome.items, partial=outcome.partial)

        res = await self.engines.run(strategy, ctx, params, deadline)
        if res.reason == C.REASON_COLD_START and res.items:
            # Engine already served its own fallback
            return _Loaded(items=res.items, degraded_from=strategy)
        if res.items or res.reason not in (C.REASON_UNAVAILABLE, C.REASON_COLD_START):
            return _Loaded(items=res.items)

        if strategy == C.STRATEGY_TRENDING:
            raise Unavailable("product store unavailable", retry_after=retry_after)
        logger.warning("strategy=%s empty reason=%s; substituting trending", strategy, res.reason)
        fallback = await self.engines.run(C.STRATEGY_TRENDING, ctx, params, deadline)
        if fallback.unavailable:
            raise Unavailable("product store unavailable", retry_after=retry_after)
        return _Loaded(items=fallback.items, degraded_from=strategy)

    # ----- telemetry ---------------------------------------------------------

    def _record_impressions(self, product_ids: List[str]) -> None:
        if self.engagement is None or not product_ids:
            return
        task = asyncio.create_task(self.engagement.record_impressions(product_ids))
        self._background.add(task)
        task.add_done_callback(self._impressions_done)

    def _impressions_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("record_impressions failed err=%s", exc)

    async def drain(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
