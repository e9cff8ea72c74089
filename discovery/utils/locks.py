# discovery/utils/locks.py
from __future__ import annotations
from typing import Optional
from redis.asyncio import Redis
import uuid, asyncio

# Compare-and-delete so a slow holder never releases a lock it no longer owns
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisLock:
    """
    Single-instance lock using SET NX EX.
    Keeps replicas from recomputing the same recommendation key at once;
    in-process coalescing is the job of Singleflight.
    """
    def __init__(self, redis: Redis, key: str, ttl: int = 20):
        self.redis = redis
        self.key = f"lock:{key}"
        self.ttl = ttl
        self._token: Optional[str] = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        ok = await self.redis.set(self.key, token, nx=True, ex=self.ttl)
        if ok:
            self._token = token
            return True
        return False

    async def release(self) -> None:
        if self._token is None:
            return
        await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None

    async def wait(self, timeout: float = 10) -> bool:
        """Wait for another worker to release the lock. True if it was released in time."""
        steps = max(1, int(timeout * 10))
        for _ in range(steps):
            if not await self.redis.exists(self.key):
                return True
            await asyncio.sleep(0.1)
        return False
