"""Redis list job queue for asynchronous (``sync=false``) inference requests."""

from __future__ import annotations

import json
import logging
import secrets
import string
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def new_job_id(now_ms: int | None = None) -> str:
    """Job id of the form ``inf-<epoch ms>-<9 base36 chars>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"inf-{now_ms}-{suffix}"


class RedisJobQueue:
    """Push JSON job descriptors onto a Redis list (``LPUSH``).

    Workers consume from the other end; this service only produces.

    Args:
        client: ``redis.asyncio`` client.
        name: Redis list key.
        id_factory: Job id generator; injectable for tests.
    """

    def __init__(
        self,
        client: Any,
        name: str = "inference-queue",
        *,
        id_factory: Callable[[], str] = new_job_id,
    ) -> None:
        self._client = client
        self.name = name
        self._id_factory = id_factory

    async def enqueue(
        self,
        image_url: str,
        *,
        user_id: str | None = None,
        webhook_url: str | None = None,
    ) -> str:
        """Queue one inference job and return its id.

        Raises:
            redis.RedisError: If the push fails.
        """
        job_id = self._id_factory()
        job = {
            "jobId": job_id,
            "imageUrl": image_url,
            "userId": user_id,
            "webhookUrl": webhook_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        await self._client.lpush(self.name, json.dumps(job))
        logger.info("Queued inference job %s on %s", job_id, self.name)
        return job_id
