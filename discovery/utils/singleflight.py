# discovery/utils/singleflight.py
from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Singleflight(Generic[T]):
    """
    Collapses concurrent calls for the same key into one execution of `compute`.

    The first caller for a key starts `compute` as a task; everyone arriving
    while it runs awaits the same task and receives the same value (or the same
    exception). The entry is dropped as soon as the task settles, so the next
    call after completion computes again.

    A caller that times out or is cancelled stops waiting but does not cancel
    the shared task; the remaining waiters still get its result.
    """

    def __init__(self) -> None:
        self._inflight: Dict[str, asyncio.Task] = {}

    def inflight(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def do(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        *,
        timeout: Optional[float] = None,
    ) -> Tuple[T, bool]:
        """
        Returns (value, shared). `shared` is False for the caller that ran compute.
        Raises asyncio.TimeoutError when `timeout` elapses first.
        """
        task = self._inflight.get(key)
        shared = task is not None
        if task is None:
            task = asyncio.ensure_future(compute())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug("singleflight join key=%s", key)

        value = await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return value, shared

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Retrieve the exception so an unobserved failure is not reported twice
        if not task.cancelled():
            task.exception()
