from __future__ import annotations
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from discovery.core.config import CacheOptions
from discovery.domain.models.reco import RecoItem
from discovery.domain.services.constants import ANCHORED, CACHE_PREFIXES, MISC_PREFIX

logger = logging.getLogger(__name__)

# Context pairs in key order, with their single-letter discriminator
_CONTEXT_FIELDS = (
    ("s", "strategy"),
    ("b", "blend"),
    ("c", "category_id"),
    ("p", "product_id"),
    ("m", "maker_id"),
    ("l", "limit"),
    ("o", "offset"),
    ("d", "days"),
    ("t", "tags"),
)
_DISCRIMINATOR = {name: letter for letter, name in _CONTEXT_FIELDS}
_GLOB_SPECIAL = set("*?[]\\")


def prefix_for(strategy: str) -> str:
    return CACHE_PREFIXES.get(strategy, MISC_PREFIX)


def is_fallback_key(key: str) -> bool:
    return ":fallback:" in key


def _segment(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        s = ".".join(sorted(str(v) for v in value))
    else:
        s = str(value)
    if not s or any(ch.isspace() or ord(ch) < 32 for ch in s):
        raise ValueError(f"invalid cache key component {value!r}")
    return s


def _escape_glob(prefix: str) -> str:
    return "".join("\\" + ch if ch in _GLOB_SPECIAL else ch for ch in prefix)


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    CORRUPTED = "corrupted"


@dataclass(frozen=True)
class CacheLookup:
    status: CacheStatus
    items: Optional[List[RecoItem]] = None

    @property
    def hit(self) -> bool:
        return self.status == CacheStatus.HIT


class RecoCacheRepo:
    """
    Recommendation cache over Redis (or anything with the same async get/set/delete/scan).
    Values are JSON lists of RecoItem in ranked order.
    A None client turns every read into a miss and every write into a no-op.
    """

    def __init__(self, redis, options: Optional[CacheOptions] = None):
        self.cache = redis
        self.options = options or CacheOptions()

    # ----- Key derivation ----------------------------------------------------

    def key(self, strategy: str, params: Mapping[str, Any], *, now_ms: Optional[int] = None) -> str:
        """
        rec:<strategy>:<auth-scope>:<context>:time:<bucket>

        auth-scope is `auth:u:<userId>` or `anon:<visitorId[:8]>`; the bucket is
        floor(now_ms / window) with a shorter window for signed-in users so
        personalization refreshes faster. Anchored strategies (similar, category,
        tag) put their anchor right after the prefix so prefix invalidation can
        reach them.
        """
        prefix = prefix_for(strategy)
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        try:
            parts = [prefix]
            anchor_field = ANCHORED.get(strategy)
            if anchor_field and params.get(anchor_field):
                parts.append(f"{_DISCRIMINATOR[anchor_field]}:{_segment(params[anchor_field])}")

            user_id = params.get("user_id")
            if user_id:
                parts.append(f"auth:u:{_segment(user_id)}")
                window = self.options.auth_time_window_ms
            else:
                visitor = params.get("visitor_id") or params.get("session_id") or "anon"
                parts.append(f"anon:{_segment(visitor)[:8]}")
                window = self.options.anon_time_window_ms

            for letter, name in _CONTEXT_FIELDS:
                if name == anchor_field:
                    continue
                value = params.get(name)
                if value is None or value == "" or value == [] or (name == "offset" and value == 0):
                    continue
                parts.append(f"{letter}:{_segment(value)}")

            parts.append(f"time:{now_ms // window}")
            key = ":".join(parts)
        except (ValueError, TypeError, ZeroDivisionError) as e:
            logger.error("cache key generation failed strategy=%s err=%s", strategy, e)
            return f"{prefix}:fallback:{now_ms}"

        raw = key.encode("utf-8")
        if len(raw) > self.options.max_key_len:
            logger.warning("long cache key (%s bytes), truncating to %s", len(raw), self.options.max_key_len)
            key = raw[: self.options.max_key_len].decode("utf-8", errors="ignore")
        return key

    # ----- Reads -------------------------------------------------------------

    async def lookup(self, key: str) -> CacheLookup:
        """Hit, miss, or corrupted (wrong-typed value; the key is deleted before returning)."""
        if self.cache is None:
            return CacheLookup(CacheStatus.MISS)
        try:
            raw = await self.cache.get(key)
        except (RedisError, OSError) as e:
            logger.warning("reco cache get error key=%s err=%s", key, e)
            return CacheLookup(CacheStatus.MISS)
        if raw is None:
            return CacheLookup(CacheStatus.MISS)

        try:
            data = json.loads(raw)
            if not isinstance(data, list):
                raise TypeError(f"expected list, got {type(data).__name__}")
            items = [RecoItem.model_validate(x) for x in data]
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning("invalid cached data for %s (%s), clearing", key, e)
            await self.delete(key)
            return CacheLookup(CacheStatus.CORRUPTED)
        return CacheLookup(CacheStatus.HIT, items)

    async def get(self, key: str) -> Optional[List[RecoItem]]:
        res = await self.lookup(key)
        return res.items if res.hit else None

    # ----- Writes ------------------------------------------------------------

    async def set(self, key: str, items: Iterable[RecoItem], ttl: Optional[int] = None) -> bool:
        """Store a ranked list. Non-list values are rejected. Write failures are logged, never raised."""
        if not isinstance(items, (list, tuple)):
            logger.warning("refusing to cache non-list value type=%s key=%s", type(items).__name__, key)
            return False
        if self.cache is None:
            return False
        ttl = ttl or self.options.default_ttl_seconds
        try:
            payload = [
                (i.model_dump(mode="json") if isinstance(i, RecoItem) else RecoItem.model_validate(i).model_dump(mode="json"))
                for i in items
            ]
        except ValidationError as e:
            logger.warning("refusing to cache malformed items key=%s err=%s", key, e)
            return False
        try:
            await self.cache.set(key, json.dumps(payload, separators=(",", ":")), ex=ttl)
        except (RedisError, OSError) as e:
            logger.warning("reco cache set error key=%s err=%s", key, e)
            return False
        logger.debug("cached %s recommendations key=%s ttl=%ss", len(payload), key, ttl)
        return True

    async def delete(self, key: str) -> int:
        if self.cache is None:
            return 0
        try:
            return int(await self.cache.delete(key) or 0)
        except (RedisError, OSError) as e:
            logger.warning("reco cache delete error key=%s err=%s", key, e)
            return 0

    async def delete_pattern(self, prefix: str) -> int:
        """
        Delete every key that starts with `prefix`.

        Bounded by scan budget: at most `max_scan_batches` SCAN round-trips of
        `scan_batch_size` keys each. Keys beyond the budget, or any failure to
        enumerate, are left to TTL expiry; the call still succeeds.
        """
        if self.cache is None or not prefix:
            return 0
        match = _escape_glob(prefix) + "*"
        cursor = 0
        deleted = 0
        batches = 0
        try:
            while True:
                cursor, keys = await self.cache.scan(cursor=cursor, match=match, count=self.options.scan_batch_size)
                batches += 1
                doomed = [k for k in keys if str(k).startswith(prefix)]
                if doomed:
                    deleted += int(await self.cache.delete(*doomed) or 0)
                if int(cursor) == 0:
                    break
                if batches >= self.options.max_scan_batches:
                    logger.warning(
                        "pattern delete budget exhausted prefix=%s batches=%s deleted=%s; rest expires by TTL",
                        prefix, batches, deleted,
                    )
                    break
        except (RedisError, OSError, NotImplementedError) as e:
            logger.warning("pattern delete failed prefix=%s err=%s; relying on TTL", prefix, e)
            return deleted
        if deleted:
            logger.debug("deleted %s cached recommendations for prefix %s", deleted, prefix)
        return deleted
