# discovery/domain/services/tracker.py
from __future__ import annotations
import asyncio
import logging
import time
from typing import Iterable, List, Optional, Set, TypeVar

from cachetools import TTLCache

from discovery.domain.models.reco import RecoItem

logger = logging.getLogger(__name__)

T = TypeVar("T", RecoItem, str)


def _pid(x) -> str:
    return x if isinstance(x, str) else x.product_id


class SessionTracker:
    """
    Products already shown in one session's current render cycle.
    All access goes through the session lock, so concurrent sections of the
    same page cannot both claim a product.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._seen: Set[str] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._seen

    async def mark_seen(self, ids: Iterable[str]) -> None:
        async with self._lock:
            self._seen.update(ids)

    async def filter(self, candidates: Iterable[T]) -> List[T]:
        """Unseen candidates, in order. What is returned is marked seen in the same step."""
        async with self._lock:
            out: List[T] = []
            for c in candidates:
                pid = _pid(c)
                if pid in self._seen:
                    continue
                self._seen.add(pid)
                out.append(c)
            return out

    async def reset(self) -> None:
        async with self._lock:
            self._seen.clear()


class TrackerRegistry:
    """
    In-process sessions keyed by session id. Least recently used sessions are
    evicted first; a session idle for `idle_ttl_s` starts over.
    """

    def __init__(self, max_sessions: int = 10_000, idle_ttl_s: float = 1800.0, timer=time.monotonic):
        self.max_sessions = max_sessions
        self.idle_ttl_s = idle_ttl_s
        self._sessions: TTLCache = TTLCache(maxsize=max_sessions, ttl=idle_ttl_s, timer=timer)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: Optional[str]) -> Optional[SessionTracker]:
        if not session_id:
            return None
        tracker = self._sessions.get(session_id)
        if tracker is None:
            tracker = SessionTracker(session_id)
            logger.debug("tracker new session_id=%s sessions=%s", session_id, len(self._sessions))
        # Re-inserting restarts the idle clock
        self._sessions[session_id] = tracker
        return tracker

    async def reset(self, session_id: str) -> None:
        tracker = self.get(session_id)
        if tracker is not None:
            await tracker.reset()
            logger.debug("tracker reset session_id=%s", session_id)
