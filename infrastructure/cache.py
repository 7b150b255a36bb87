"""Two-tier response cache for merged inference results.

Tiers:
    1. Primary (Redis) — shared across workers, TTL-native, JSON payloads.
    2. Local fallback (in-process) — bounded ordered map with its own TTL,
       used when Redis is missing, errors, or misses.

Writes always go to both tiers. Reads try Redis first and fall back to the
local map on miss or error, so a Redis outage degrades to per-process caching
instead of no caching at all.

Cache key = ``inference:`` + normalized image URL. Same URL ⇒ same key ⇒ same
cached merged result.

Usage::

    from infrastructure.cache import ResponseCache, inference_cache_key

    cache = ResponseCache(client=redis_client)
    key = inference_cache_key(image_url)
    hit = await cache.get(key)
    if hit is None:
        result = ...  # run the pipeline
        await cache.set(key, result, ttl_seconds=300)
"""

from __future__ import annotations

import copy
import fnmatch
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from infrastructure.metrics import record_cache_hit, record_cache_miss

logger = logging.getLogger(__name__)

# Primary-tier TTL: 5 minutes. Detector output for a given upload never changes.
_DEFAULT_TTL_SECONDS = 300
_DEFAULT_LOCAL_MAX_ENTRIES = 1000
_DEFAULT_LOCAL_TTL_SECONDS = 60
_NS = "inference:"


def inference_cache_key(image_url: str) -> str:
    """Deterministic cache key for an image reference.

    Scheme and host are lower-cased and the fragment dropped. Path and query
    are kept verbatim: storage paths are case-sensitive.

    Args:
        image_url: The image URL from the request.

    Returns:
        Namespaced cache key.
    """
    parts = urlsplit(image_url.strip())
    normalized = urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, "")
    )
    return f"{_NS}{normalized}"


@dataclass
class _LocalEntry:
    value: Any
    expires_at: float


class ResponseCache:
    """Redis-backed cache with a bounded in-process fallback tier.

    Args:
        client: Connected ``redis.asyncio`` client, or ``None`` to run on the
            local tier only.
        ttl_seconds: Default TTL for ``set`` when none is given (default: 300).
        local_max_entries: Capacity of the local tier (default: 1000).
        local_ttl_seconds: Upper bound on local entry lifetime (default: 60).
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        client: Any = None,
        *,
        ttl_seconds: int = _DEFAULT_TTL_SECONDS,
        local_max_entries: int = _DEFAULT_LOCAL_MAX_ENTRIES,
        local_ttl_seconds: float = _DEFAULT_LOCAL_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if local_max_entries <= 0:
            raise ValueError(f"local_max_entries must be positive, got {local_max_entries}")
        self._client = client
        self._ttl = ttl_seconds
        self._local_max = local_max_entries
        self._local_ttl = local_ttl_seconds
        self._clock = clock
        self._local: OrderedDict[str, _LocalEntry] = OrderedDict()

    @property
    def available(self) -> bool:
        """True if the primary (Redis) tier is configured."""
        return self._client is not None

    async def get(self, key: str) -> Any | None:
        """Return the cached value or None on miss.

        Args:
            key: Cache key (see ``inference_cache_key``).

        Returns:
            The cached value, or None if neither tier holds a live entry.
        """
        if self._client is not None:
            try:
                raw = await self._client.get(key)
                if raw is not None:
                    logger.info("Cache hit (redis): %s", key)
                    record_cache_hit("redis")
                    return json.loads(raw)
            except Exception as exc:  # noqa: BLE001
                logger.warning("ResponseCache.get redis error for %s: %s", key, exc)

        entry = self._local.get(key)
        if entry is not None:
            if entry.expires_at > self._clock():
                logger.info("Cache hit (local): %s", key)
                record_cache_hit("local")
                return copy.deepcopy(entry.value)
            del self._local[key]

        logger.debug("Cache miss: %s", key)
        record_cache_miss()
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a value in both tiers.

        Redis errors are logged and swallowed; the local tier is always written.

        Args:
            key: Cache key.
            value: JSON-serializable value.
            ttl_seconds: Entry lifetime; defaults to the cache TTL.
        """
        ttl = self._ttl if ttl_seconds is None else ttl_seconds

        if self._client is not None:
            try:
                await self._client.setex(key, ttl, json.dumps(value))
                logger.debug("Cache set (redis): %s ttl=%ds", key, ttl)
            except Exception as exc:  # noqa: BLE001
                logger.warning("ResponseCache.set redis error for %s: %s", key, exc)

        self._purge_local()
        self._local[key] = _LocalEntry(
            value=copy.deepcopy(value),
            expires_at=self._clock() + min(ttl, self._local_ttl),
        )
        self._local.move_to_end(key)
        while len(self._local) > self._local_max:
            evicted, _ = self._local.popitem(last=False)
            logger.debug("Local cache evicted %s", evicted)

    async def invalidate(self, pattern: str) -> int:
        """Delete every entry whose key matches a glob pattern.

        Args:
            pattern: Redis-style glob, e.g. ``inference:*``.

        Returns:
            Number of entries deleted across both tiers.
        """
        deleted = 0
        if self._client is not None:
            try:
                keys = [k async for k in self._client.scan_iter(match=pattern)]
                if keys:
                    deleted += int(await self._client.delete(*keys))
            except Exception as exc:  # noqa: BLE001
                logger.warning("ResponseCache.invalidate redis error for %s: %s", pattern, exc)

        local_keys = [k for k in self._local if fnmatch.fnmatchcase(k, pattern)]
        for key in local_keys:
            del self._local[key]
        deleted += len(local_keys)

        logger.info("ResponseCache: invalidated %d entries for pattern '%s'", deleted, pattern)
        return deleted

    def _purge_local(self) -> None:
        """Drop expired local entries."""
        now = self._clock()
        expired = [k for k, entry in self._local.items() if entry.expires_at <= now]
        for key in expired:
            del self._local[key]

    def stats(self) -> dict[str, Any]:
        """Return basic cache statistics.

        Returns:
            Dict with keys: available, local_entries, local_max_entries.
        """
        return {
            "available": self.available,
            "local_entries": len(self._local),
            "local_max_entries": self._local_max,
        }
