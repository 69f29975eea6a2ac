"""In-memory TTL cache with tag and pattern invalidation.

A single process-wide ``cache_service`` memoizes role-scoped collections.
Entries expire once their age reaches their TTL; a periodic sweep evicts
entries nobody reads again, and a size bound evicts the oldest entries.

Hit/miss accounting is explicit: callers record a hit or miss around each
cache-assisted fetch (``cached_fetch`` does this for them).
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Pattern, Union

from stazama.app.config import get_settings

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float
    tags: set[str] = field(default_factory=set)


@dataclass
class CacheStats:
    size: int
    expired_count: int
    hit_rate: float
    total_size: int
    tag_count: int

    def as_dict(self) -> dict:
        return {
            "size": self.size,
            "expired_count": self.expired_count,
            "hit_rate": self.hit_rate,
            "total_size": self.total_size,
            "tag_count": self.tag_count,
        }


class CacheService:
    """TTL cache keyed by caller-supplied strings."""

    def __init__(
        self,
        default_ttl_ms: float = 5 * 60 * 1000,
        max_size: int = 500,
        sweep_interval_s: float = 60.0,
        clock: Callable[[], float] = _now_ms,
    ):
        self.default_ttl_ms = default_ttl_ms
        self.max_size = max_size
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._tag_index: dict[str, set[str]] = {}
        self._hits = 0
        self._misses = 0
        self._sweep_task: Optional[asyncio.Task] = None

    # -- core operations ----------------------------------------------------

    def set(
        self,
        key: str,
        data: Any,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        """Store ``data`` under ``key``, replacing any previous entry."""
        if key in self._entries:
            self._remove(key)

        entry = CacheEntry(
            data=data,
            timestamp=self._clock(),
            ttl=self.default_ttl_ms if ttl is None else ttl,
            tags=set(tags or ()),
        )
        self._entries[key] = entry
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(key)

        self._enforce_size_limit()

    def get(self, key: str) -> Any:
        """Return the stored object (not a copy), or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry):
            self._remove(key)
            return None
        return entry.data

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        if key not in self._entries:
            return False
        self._remove(key)
        return True

    def invalidate_by_tag(self, tag: str) -> int:
        keys = self._tag_index.pop(tag, set())
        removed = 0
        for key in list(keys):
            if key in self._entries:
                self._remove(key)
                removed += 1
        if removed:
            logger.debug("Cache: invalidated %d entries tagged %r", removed, tag)
        return removed

    def invalidate_by_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matched = [key for key in self._entries if regex.search(key)]
        for key in matched:
            self._remove(key)
        return len(matched)

    def clear(self) -> None:
        self._entries.clear()
        self._tag_index.clear()

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # -- statistics -----------------------------------------------------------

    def record_hit(self) -> None:
        self._hits += 1

    def record_miss(self) -> None:
        self._misses += 1

    @property
    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total else 0.0

    def get_stats(self) -> CacheStats:
        expired = sum(1 for entry in self._entries.values() if self._is_expired(entry))
        total_size = 0
        for key, entry in self._entries.items():
            total_size += len(key) + len(json.dumps(entry.data, default=str))
        return CacheStats(
            size=len(self._entries),
            expired_count=expired,
            hit_rate=self.hit_rate,
            total_size=total_size,
            tag_count=len(self._tag_index),
        )

    # -- expiry ---------------------------------------------------------------

    def sweep(self) -> int:
        """Evict every expired entry. Returns the number evicted."""
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry)]
        for key in expired:
            self._remove(key)
        if expired:
            logger.debug("Cache sweep: evicted %d expired entries", len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                self.sweep()
            except Exception as e:
                logger.error("Cache sweep error: %s", e)

    def start(self) -> None:
        """Schedule the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    def destroy(self) -> None:
        """Cancel the sweep task and drop every entry."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None
        self.clear()

    # -- internals ------------------------------------------------------------

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.timestamp >= entry.ttl

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_index[tag]

    def _enforce_size_limit(self) -> None:
        overflow = len(self._entries) - self.max_size
        if overflow <= 0:
            return
        # Stable sort: equal timestamps keep insertion order, earliest evicted first
        oldest = sorted(self._entries.items(), key=lambda item: item[1].timestamp)
        for key, _ in oldest[:overflow]:
            self._remove(key)


# ---------------------------------------------------------------------------
# Key builders and tags
# ---------------------------------------------------------------------------


class CACHE_KEYS:
    """Qualified key builders, so features never collide on a bare key."""

    @staticmethod
    def user_profile(user_id: str) -> str:
        return f"user_profile:{user_id}"

    @staticmethod
    def user_permissions(user_id: str) -> str:
        return f"user_permissions:{user_id}"

    @staticmethod
    def inspection_requests(scope: str, filters: Optional[str] = None) -> str:
        return f"inspection_requests:{scope}{':' + filters if filters else ''}"

    @staticmethod
    def users(scope: str) -> str:
        return f"users:{scope}"

    @staticmethod
    def clients(scope: str) -> str:
        return f"clients:{scope}"

    @staticmethod
    def agents(scope: str) -> str:
        return f"agents:{scope}"

    @staticmethod
    def dashboard_stats(scope: str, period: str) -> str:
        return f"dashboard_stats:{scope}:{period}"

    SYSTEM_CONFIG = "system_config"


class CACHE_TAGS:
    USER = "user"
    INSPECTION_REQUESTS = "inspection_requests"
    PERMISSIONS = "permissions"
    DASHBOARD = "dashboard"
    DIRECTORY = "directory"
    SYSTEM = "system"


_settings = get_settings()

cache_service = CacheService(
    default_ttl_ms=_settings.cache_default_ttl_ms,
    max_size=_settings.cache_max_size,
    sweep_interval_s=_settings.cache_sweep_interval_seconds,
)


def invalidate_cache(
    tags: Optional[Iterable[str]] = None,
    pattern: Union[str, Pattern[str], None] = None,
    cache: Optional[CacheService] = None,
) -> int:
    """Invalidate by any number of tags and/or one key pattern."""
    cache = cache or cache_service
    removed = 0
    for tag in tags or ():
        removed += cache.invalidate_by_tag(tag)
    if pattern is not None:
        removed += cache.invalidate_by_pattern(pattern)
    return removed


class cache_invalidation:
    """Preset invalidations for common mutations."""

    @staticmethod
    def user_related(user_id: str, cache: Optional[CacheService] = None) -> int:
        return invalidate_cache(
            [CACHE_TAGS.USER], re.compile(rf"user_.*:{re.escape(user_id)}$"), cache
        )

    @staticmethod
    def inspection_requests(cache: Optional[CacheService] = None) -> int:
        return invalidate_cache(
            [CACHE_TAGS.INSPECTION_REQUESTS, CACHE_TAGS.DASHBOARD], cache=cache
        )

    @staticmethod
    def permissions(cache: Optional[CacheService] = None) -> int:
        return invalidate_cache([CACHE_TAGS.PERMISSIONS], cache=cache)

    @staticmethod
    def directory(cache: Optional[CacheService] = None) -> int:
        return invalidate_cache([CACHE_TAGS.DIRECTORY], cache=cache)


async def cached_fetch(
    key: str,
    fetcher: Callable[[], Awaitable[Any]],
    ttl: Optional[float] = None,
    tags: Optional[Iterable[str]] = None,
    cache: Optional[CacheService] = None,
) -> Any:
    """Return the cached value for ``key`` or fetch, store and return it.

    Records a hit or miss on every call. A falsy but present value (an empty
    list) counts as a hit.
    """
    cache = cache or cache_service
    cached = cache.get(key)
    if cached is not None:
        cache.record_hit()
        return cached

    cache.record_miss()
    data = await fetcher()
    cache.set(key, data, ttl=ttl, tags=tags)
    return data


def track_cache_performance(cache: Optional[CacheService] = None) -> CacheStats:
    """Push current cache statistics into the monitoring buffers."""
    from stazama.services.monitoring import monitoring

    cache = cache or cache_service
    stats = cache.get_stats()
    monitoring.record_metric("cache_size", stats.size)
    monitoring.record_metric("cache_hit_rate", stats.hit_rate)
    monitoring.record_metric("cache_memory_usage", stats.total_size)
    return stats
