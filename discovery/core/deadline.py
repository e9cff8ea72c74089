# discovery/core/deadline.py
from __future__ import annotations
import asyncio
import time
from typing import Awaitable, Optional, TypeVar

from discovery.core.errors import DeadlineExceeded

T = TypeVar("T")


class Deadline:
    """
    Absolute point in (monotonic) time by which a public call must finish.
    Passed explicitly from the API boundary down to every Adapter and Cache call.
    """

    __slots__ = ("_at",)

    def __init__(self, at: Optional[float] = None):
        self._at = at

    @classmethod
    def after(cls, seconds: Optional[float]) -> "Deadline":
        if seconds is None:
            return cls(None)
        return cls(time.monotonic() + max(0.0, float(seconds)))

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    @classmethod
    def latest(cls, *deadlines: "Deadline") -> "Deadline":
        """The deadline furthest away. An unbounded one wins."""
        if not deadlines or any(d._at is None for d in deadlines):
            return cls(None)
        return cls(max(d._at for d in deadlines))

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded. Never negative."""
        if self._at is None:
            return None
        return max(0.0, self._at - time.monotonic())

    def expired(self) -> bool:
        rem = self.remaining()
        return rem is not None and rem <= 0.0

    def check(self, what: str = "request") -> None:
        if self.expired():
            raise DeadlineExceeded(f"{what}: deadline exceeded")

    async def run(self, aw: Awaitable[T], what: str = "operation") -> T:
        """Await `aw` within the remaining budget; cancel it and raise DeadlineExceeded on expiry."""
        rem = self.remaining()
        if rem is not None and rem <= 0.0:
            # Close un-started coroutines so they do not warn
            if asyncio.iscoroutine(aw):
                aw.close()
            raise DeadlineExceeded(f"{what}: deadline exceeded")
        try:
            return await asyncio.wait_for(aw, timeout=rem)
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded(f"{what}: deadline exceeded") from e

    def __repr__(self) -> str:
        rem = self.remaining()
        return "Deadline(never)" if rem is None else f"Deadline(remaining={rem:.3f}s)"
