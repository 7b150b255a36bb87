"""Shared async Redis connection for the cache, rate limiter and job queue.

Accepts both URL-style connection strings (``redis://``, ``rediss://``) and the
comma-separated form emitted by Azure Cache for Redis::

    myhost.redis.cache.windows.net:6380,password=secret,ssl=True,abortConnect=False

Connection failures are never fatal. Without a connection string
``connect_redis`` returns ``None`` and every consumer degrades (cache → local
tier only, limiter → fail open, queue → synchronous processing). A server that
is down at startup only degrades them until it comes back.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import redis.asyncio as redis_lib

logger = logging.getLogger(__name__)

_SOCKET_TIMEOUT_SECONDS = 0.5


def normalize_connection_string(connection_string: str) -> str:
    """Convert an Azure-style connection string into a Redis URL.

    Args:
        connection_string: ``redis://`` URL or ``host:port,password=..,ssl=..``.

    Returns:
        A URL accepted by ``redis.asyncio.from_url``.
    """
    value = connection_string.strip()
    if value.startswith(("redis://", "rediss://", "unix://")):
        return value

    parts = [p.strip() for p in value.split(",") if p.strip()]
    host_part = next((p for p in parts if ":" in p and "=" not in p), "localhost:6379")
    password = ""
    ssl = False
    for part in parts:
        key, _, val = part.partition("=")
        if key.lower() == "password":
            password = val
        elif key.lower() == "ssl":
            ssl = val.lower() == "true"

    host, _, port = host_part.partition(":")
    scheme = "rediss" if ssl else "redis"
    return f"{scheme}://:{quote(password, safe='')}@{host}:{port or 6379}"


async def connect_redis(connection_string: str | None) -> Any:
    """Create a Redis client and check it with a ping.

    A failed ping is logged but the client is still returned: redis-py
    reconnects on the next command, so the cache and rate limiter pick Redis
    back up once it recovers. Their per-call error handling covers the outage.

    Args:
        connection_string: URL or Azure-style string. ``None``/empty disables Redis.

    Returns:
        A ``redis.asyncio.Redis`` client, or ``None`` if Redis is not
        configured or the connection string cannot be parsed.
    """
    if not connection_string:
        logger.warning("Redis connection string not configured — cache and rate limiting degraded")
        return None

    url = normalize_connection_string(connection_string)
    try:
        client = redis_lib.from_url(
            url,
            decode_responses=True,
            socket_timeout=_SOCKET_TIMEOUT_SECONDS,
        )
    except ValueError as exc:
        logger.error("Invalid Redis connection string: %s", exc)
        return None

    try:
        await client.ping()
        logger.info("Redis connected")
    except Exception as exc:  # noqa: BLE001
        logger.warning("Redis unavailable at startup (%s) — will retry on each command", exc)
    return client
