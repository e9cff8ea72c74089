# discovery/domain/services/invalidation_svc.py
from __future__ import annotations
import asyncio
import logging
import time
from typing import Dict, List, Optional

from discovery.domain.models.interaction import EngagementEvent, EventKind
from discovery.domain.repositories.reco_cache_repo import RecoCacheRepo
from discovery.domain.services import constants as C

logger = logging.getLogger(__name__)

# Long family names used in event-driven patterns, mapped to the key prefix in use
FAMILIES = {
    "trending": C.CACHE_PREFIXES[C.STRATEGY_TRENDING],
    "new": C.CACHE_PREFIXES[C.STRATEGY_NEW],
    "personalized": C.CACHE_PREFIXES[C.STRATEGY_PERSONALIZED],
    "collaborative": C.CACHE_PREFIXES[C.STRATEGY_COLLABORATIVE],
    "popular": C.CACHE_PREFIXES[C.STRATEGY_POPULAR],
    "similar": C.CACHE_PREFIXES[C.STRATEGY_SIMILAR],
    "category": C.CACHE_PREFIXES[C.STRATEGY_CATEGORY],
    "tag": C.CACHE_PREFIXES[C.STRATEGY_TAG],
    "feed": C.CACHE_PREFIXES[C.STRATEGY_FEED],
}

_ENGAGEMENT = {EventKind.UPVOTE, EventKind.BOOKMARK, EventKind.COMMENT}
_CATALOG = {EventKind.PRODUCT_PUBLISHED, EventKind.PRODUCT_UPDATED}


def _family(name: str, rest: str = "") -> List[str]:
    """`rec:<name><rest>` and, when it differs, the same pattern on the live prefix."""
    out = [f"rec:{name}{rest}"]
    live = FAMILIES[name] + rest
    if live != out[0]:
        out.append(live)
    return out


def _tag_patterns(tags: List[str]) -> List[str]:
    if not tags:
        return []
    out = _family("tag", ":t:" + ".".join(sorted(tags)))
    for t in tags:
        out += _family("tag", f":t:{t}")
    return out


def patterns_for(event: EngagementEvent) -> List[str]:
    """Cache key prefixes an engagement event makes stale, de-duplicated, in emission order."""
    out: List[str] = []
    user = f":auth:u:{event.user_id}" if event.user_id else None

    if event.kind == EventKind.VIEW:
        if user:
            out += _family("feed", user)

    elif event.kind in _ENGAGEMENT:
        if user:
            out += _family("personalized", user)
            out += _family("feed", user)
            out += _family("collaborative", user)
        out += _family("trending")
        out += _family("popular")
        if event.product_id:
            out += _family("similar", f":p:{event.product_id}")

    elif event.kind in _CATALOG:
        out += _family("trending")
        out += _family("new")
        categories = [event.category_id]
        tag_sets = [list(event.tags)]
        if event.kind == EventKind.PRODUCT_UPDATED:
            if event.previous_category_id != event.category_id:
                categories.append(event.previous_category_id)
            if event.previous_tags and event.previous_tags != event.tags:
                tag_sets.append(list(event.previous_tags))
            out += _family("similar", f":p:{event.product_id}")
            if event.previous_slug and event.previous_slug != event.slug:
                out += _family("similar", f":p:{event.previous_slug}")
        for cat in categories:
            if cat:
                out += _family("category", f":c:{cat}")
        for tags in tag_sets:
            out += _tag_patterns(tags)

    return list(dict.fromkeys(out))


class InvalidationRouter:
    """
    Single-consumer queue of engagement events. Each event becomes a set of
    prefix deletes against the recommendation cache. Events touching the same
    product are applied in arrival order (one lock per product id).
    Failures are logged; affected keys fall back to TTL expiry.
    """

    def __init__(self, cache: RecoCacheRepo, maxsize: int = 10_000):
        self.cache = cache
        self.queue: "asyncio.Queue[Optional[EngagementEvent]]" = asyncio.Queue(maxsize=maxsize)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._worker: Optional[asyncio.Task] = None

    async def apply(self, event: EngagementEvent) -> Dict[str, int]:
        """Run every prefix delete for one event. Returns deleted counts per prefix."""
        pid = event.product_id
        if not pid:
            return await self._apply(event)
        lock = self._locks.setdefault(pid, asyncio.Lock())
        self._holders[pid] = self._holders.get(pid, 0) + 1
        try:
            async with lock:
                return await self._apply(event)
        finally:
            self._holders[pid] -= 1
            if not self._holders[pid]:
                del self._holders[pid]
                del self._locks[pid]

    async def _apply(self, event: EngagementEvent) -> Dict[str, int]:
        t0 = time.perf_counter()
        deleted: Dict[str, int] = {}
        for prefix in patterns_for(event):
            deleted[prefix] = await self.cache.delete_pattern(prefix)
        logger.info(
            "invalidate kind=%s product_id=%s user_id=%s prefixes=%s deleted=%s time=%.3fs",
            event.kind.value, event.product_id, event.user_id, len(deleted), sum(deleted.values()),
            time.perf_counter() - t0,
        )
        return deleted

    def submit(self, event: EngagementEvent) -> bool:
        """Fire-and-forget enqueue. False when the queue is full (TTL takes over)."""
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning("invalidation queue full; dropping kind=%s product_id=%s", event.kind.value, event.product_id)
            return False

    # ----- worker lifecycle --------------------------------------------------

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="invalidation-worker")
            logger.info("invalidation worker started")

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain what is queued (bounded by `timeout`), then stop the worker."""
        if self._worker is None:
            return
        await self.queue.put(None)
        try:
            await asyncio.wait_for(self._worker, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("invalidation worker did not drain in %.1fs; cancelling", timeout)
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
        self._worker = None
        logger.info("invalidation worker stopped")

    async def join(self) -> None:
        await self.queue.join()

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                if event is None:
                    return
                await self.apply(event)
            except Exception as e:
                logger.error("invalidation failed kind=%s err=%s", getattr(event, "kind", None), e, exc_info=True)
            finally:
                self.queue.task_done()
