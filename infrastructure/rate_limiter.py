"""Per-client fixed-window rate limiter.

Guards ``POST /infer`` against clients hammering the detectors (each request
fans out to three paid inference APIs).

One Redis MULTI round trip per check:
    INCR   rate_limit:<identity>
    EXPIRE rate_limit:<identity> <window> NX   — arms the window on first hit
    TTL    rate_limit:<identity>

The counter expires by itself at the end of the window. The increment is
atomic at the Redis level, so concurrent requests never lose counts.

Fails open when Redis is unavailable: availability beats strict enforcement.

Usage::

    from infrastructure.rate_limiter import RateLimiter, rate_limit_headers

    limiter = RateLimiter(client=redis_client)
    result = await limiter.check_and_increment("203.0.113.7", limit=50, window="1h")
    if not result.allowed:
        return JSONResponse(status_code=429, headers=rate_limit_headers(result), ...)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

_NS = "rate_limit:"
_WINDOW_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate-limit check."""

    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int


def parse_window(window: str | int) -> int:
    """Convert a window such as "15m" or "1h" to seconds.

    Args:
        window: Seconds as int, or a string like ``"30s"``, ``"1m"``, ``"1h"``, ``"1d"``.

    Returns:
        Window length in seconds.

    Raises:
        ValueError: If the format is not recognized or the window is not positive.
    """
    if isinstance(window, int):
        seconds = window
    else:
        match = _WINDOW_RE.match(window.strip())
        if not match:
            raise ValueError(f"Invalid window format {window!r}, expected e.g. '1h' or '30s'")
        num, unit = match.groups()
        seconds = int(num) * _UNIT_SECONDS[unit]
    if seconds <= 0:
        raise ValueError(f"window must be positive, got {window!r}")
    return seconds


def client_identity(headers: Mapping[str, str]) -> str:
    """Derive the rate-limit identity from request headers.

    Uses the first hop of ``X-Forwarded-For``, then ``X-User-Id``, then
    ``"anonymous"``.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return headers.get("x-user-id") or "anonymous"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Standard ``X-RateLimit-*`` response headers for a check result."""
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": result.reset_at.isoformat(),
    }


class RateLimiter:
    """Fixed-window counter backed by Redis.

    Args:
        client: Connected ``redis.asyncio`` client, or ``None`` (allow-all).
        bypass: When True every request is allowed without touching Redis
            (test mode).
    """

    def __init__(self, client: Any = None, *, bypass: bool = False) -> None:
        self._client = client
        self._bypass = bypass

    @property
    def available(self) -> bool:
        """True if Redis backend is configured."""
        return self._client is not None

    def _allow_all(self, limit: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=limit,
            reset_at=datetime.now(timezone.utc),
            limit=limit,
        )

    async def check_and_increment(
        self,
        identity: str,
        limit: int,
        window: str | int,
    ) -> RateLimitResult:
        """Count one request for ``identity`` and decide whether it is allowed.

        Args:
            identity: Client identifier (IP, user id, ...).
            limit: Maximum requests per window.
            window: Window length (see ``parse_window``).

        Returns:
            RateLimitResult. ``allowed`` is True for the first ``limit``
            requests of a window; ``remaining`` decreases with each request.
        """
        window_seconds = parse_window(window)

        if self._bypass:
            return self._allow_all(limit)

        if self._client is None:
            logger.warning("Rate limiting skipped — Redis not available")
            return self._allow_all(limit)

        key = f"{_NS}{identity}"
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            pipe.ttl(key)
            results = await pipe.execute()

            count = int(results[0])
            ttl = int(results[2])
            if ttl < 0:
                # Key exists without TTL (should not happen); treat as a fresh window.
                ttl = window_seconds
        except Exception as exc:  # noqa: BLE001
            logger.warning("RateLimiter check failed for '%s': %s — failing open", identity, exc)
            return self._allow_all(limit)

        allowed = count <= limit
        if not allowed:
            logger.warning(
                "RateLimiter: '%s' exceeded %d req/%ds",
                identity,
                limit,
                window_seconds,
            )
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=datetime.now(timezone.utc) + timedelta(seconds=ttl),
            limit=limit,
        )
