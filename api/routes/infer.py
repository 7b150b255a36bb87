"""
Inference route.

``POST /infer`` — rate limit, validate, then return a cached or freshly
orchestrated skin analysis.

The body is accepted as raw JSON and validated inside the orchestrator, so a
rate-limited caller gets 429 before any validation work is done.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from api.deps import get_orchestrator
from inference.orchestrator import InferenceOrchestrator
from infrastructure.metrics import LatencyTimer, record_infer
from infrastructure.rate_limiter import client_identity

logger = logging.getLogger(__name__)

router = APIRouter(tags=["inference"])

Orchestrator = Annotated[InferenceOrchestrator, Depends(get_orchestrator)]


@router.post("/infer")
async def infer(
    request: Request,
    orchestrator: Orchestrator,
    payload: Annotated[Any, Body()] = None,
) -> JSONResponse:
    """
    Analyze an image for acne, redness and wrinkles.

    Responses:
        200 — merged result, ``X-Cache: HIT|MISS|FALLBACK``.
        202 — queued (``sync=false`` with a job queue configured).
        400 — invalid body or untrusted image URL.
        429 — rate limited, ``X-RateLimit-*`` headers.
        503 — dependencies exhausted, ``retryAfter`` in body.
    """
    identity = client_identity(request.headers)
    with LatencyTimer() as timer:
        outcome = await orchestrator.handle(payload, identity)
    record_infer(status=outcome.label, latency_seconds=timer.elapsed)
    logger.info(
        "POST /infer %d %s in %.1fms [client=%s]",
        outcome.status_code,
        outcome.label,
        timer.elapsed * 1000,
        identity,
    )
    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.body,
        headers=outcome.headers,
    )
