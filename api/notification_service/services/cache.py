"""Read-through cache for list, unread-count and grouped queries.

The cache is an accelerator, never a source of truth: every backend failure is
logged and treated as a miss, and every write to a recipient drops that
recipient's whole namespace.
"""

import hashlib
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import redis.asyncio as redis

from notification_service.config import Settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "notif"
_REDIS_GLOB_SPECIALS = re.compile(r"([*?\[\]\\])")


class CacheBackend(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def close(self) -> None: ...


class MemoryCacheBackend:
    """
    Process-local TTL map. Each worker keeps its own copy.

    Expired entries are purged on writes at most once per ``purge_interval``
    seconds; beyond ``max_entries`` the least recently written keys go first.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        *,
        max_entries: int = 10_000,
        purge_interval: float = 30.0,
    ):
        self._entries: dict[str, tuple[float, str]] = {}
        self._clock = clock
        self.max_entries = max_entries
        self.purge_interval = purge_interval
        self._next_purge = clock() + purge_interval

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        now = self._clock()
        self._entries.pop(key, None)
        self._entries[key] = (now + ttl, value)
        if now >= self._next_purge or len(self._entries) > self.max_entries:
            self._purge_expired(now)
        while len(self._entries) > self.max_entries:
            del self._entries[next(iter(self._entries))]

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._next_purge = now + self.purge_interval

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def close(self) -> None:
        self._entries.clear()


class RedisCacheBackend:
    """Shared cache in Redis, visible to every worker."""

    def __init__(self, url: str):
        self._client = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._client.setex(key, ttl, value)

    async def delete_prefix(self, prefix: str) -> int:
        pattern = _REDIS_GLOB_SPECIALS.sub(r"\\\1", prefix) + "*"
        doomed = [key async for key in self._client.scan_iter(match=pattern, count=500)]
        if not doomed:
            return 0
        return await self._client.delete(*doomed)

    async def close(self) -> None:
        await self._client.aclose()


def _params_hash(params: dict[str, Any]) -> str:
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(canonical.encode()).hexdigest()[:16]


class NotificationCache:
    """Recipient-namespaced read-through cache."""

    def __init__(
        self,
        backend: CacheBackend | None,
        *,
        list_ttl: int = 300,
        unread_ttl: int = 60,
        grouped_ttl: int = 300,
    ):
        self.backend = backend
        self.list_ttl = list_ttl
        self.unread_ttl = unread_ttl
        self.grouped_ttl = grouped_ttl
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    @staticmethod
    def namespace(recipient: str) -> str:
        return f"{KEY_PREFIX}:{recipient}:"

    def list_key(self, recipient: str, params: dict[str, Any]) -> str:
        return f"{self.namespace(recipient)}list:{_params_hash(params)}"

    def unread_key(self, recipient: str, kind: str | None) -> str:
        return f"{self.namespace(recipient)}unread:{kind or '*'}"

    def grouped_key(self, recipient: str, params: dict[str, Any]) -> str:
        return f"{self.namespace(recipient)}grouped:{_params_hash(params)}"

    async def get_or_load(
        self,
        key: str,
        ttl: int,
        loader: Callable[[], Awaitable[Any]],
    ) -> tuple[Any, bool]:
        """
        Return ``(value, cached)``.

        Values must be JSON-serializable; the loader runs on a miss, on a
        backend error, or when the cache is disabled.
        """
        if self.backend is None:
            return await loader(), False

        try:
            raw = await self.backend.get(key)
        except Exception as exc:
            logger.warning("Cache get error for key %s: %s", key, exc)
            raw = None

        if raw is not None:
            self.hits += 1
            return json.loads(raw), True

        self.misses += 1
        value = await loader()
        try:
            await self.backend.set(key, json.dumps(value, default=str), ttl)
        except Exception as exc:
            logger.warning("Cache set error for key %s: %s", key, exc)
        return value, False

    async def invalidate_recipient(self, recipient: str) -> int:
        """Drop every cached entry for ``recipient``; returns how many went."""
        if self.backend is None:
            return 0
        try:
            removed = await self.backend.delete_prefix(self.namespace(recipient))
        except Exception as exc:
            logger.error("Cache invalidation error for recipient %s: %s", recipient, exc)
            return 0
        if removed:
            logger.debug("Invalidated %d cache entries for recipient %s", removed, recipient)
        return removed

    async def clear_all(self) -> int:
        """Drop every notification entry, for every recipient."""
        if self.backend is None:
            return 0
        removed = await self.backend.delete_prefix(f"{KEY_PREFIX}:")
        logger.info("Cleared %d cache entries", removed)
        return removed

    async def close(self) -> None:
        if self.backend is not None:
            await self.backend.close()

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "enabled": self.enabled,
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": round(self.hits / total * 100, 2) if total else 0.0,
        }


def build_cache(config: Settings) -> NotificationCache:
    """Pick the backend named by the settings."""
    if not config.cache_enabled:
        backend: CacheBackend | None = None
    elif config.cache_url:
        backend = RedisCacheBackend(config.cache_url)
    else:
        backend = MemoryCacheBackend(max_entries=config.cache_max_entries)
    return NotificationCache(
        backend,
        list_ttl=config.cache_list_ttl_seconds,
        unread_ttl=config.cache_unread_ttl_seconds,
        grouped_ttl=config.cache_grouped_ttl_seconds,
    )
