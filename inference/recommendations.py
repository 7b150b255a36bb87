"""
Skincare recommendation enrichment.

Maps the acne metrics and optional user profile to the recommendation
service's flat payload, calls the service, and attaches either its routine
or a fallback routine to the inference result. Enrichment never fails the
request: errors are reported in ``recommendations_meta``.

Usage::

    client = RecommendationClient(http, url=settings.recommendations_url)
    enriched = await client.enrich(result, user_data)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any

import httpx

from infrastructure.metrics import record_recommendations

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Recommendations temporarily unavailable"

_DEFAULTS: dict[str, Any] = {
    "first_name": "User",
    "last_name": "",
    "birthdate": "1990-01-01",
    "gender": "female",
    "budget_level": "Medium",
    "shop_domain": "dermaself",
}


def acne_type(counts: Mapping[str, int]) -> str:
    """Dominant acne type for the recommendation service."""
    if counts.get("Cysts", 0) > 0 or counts.get("Nodules", 0) > 0:
        return "nodulocystic"
    if counts.get("Papules", 0) > 0 or counts.get("Pustules", 0) > 0:
        return "papulopustular"
    if counts.get("Comedones", 0) > 0:
        return "comedonic"
    return "mild"


def build_recommendation_payload(
    acne: Mapping[str, Any] | None,
    user_data: Mapping[str, Any] | None = None,
    erythema: bool = False,
) -> dict[str, Any]:
    """Flatten acne metrics and the user profile into the service payload.

    Args:
        acne: Acne metrics dict (``counts``, ``severity``).
        user_data: Optional profile fields supplied by the caller.
        erythema: Redness result, used when the profile does not state it.

    Returns:
        Payload dict with every field populated.
    """
    acne = acne or {}
    user = dict(user_data or {})
    severity = str(acne.get("severity") or "mild").lower()

    payload = {key: user.get(key) or default for key, default in _DEFAULTS.items()}
    payload["acne_type"] = acne_type(acne.get("counts") or {})
    payload["acne_severity"] = severity
    payload["erythema"] = bool(user["erythema"]) if "erythema" in user else bool(erythema)
    return payload


def fallback_recommendations(user_data: Mapping[str, Any] | None = None) -> dict[str, Any]:
    user = user_data or {}
    return {
        "user": {
            "first_name": user.get("first_name") or _DEFAULTS["first_name"],
            "last_name": user.get("last_name") or _DEFAULTS["last_name"],
            "age": "25",
            "gender": user.get("gender") or _DEFAULTS["gender"],
        },
        "skincare_routine": [],
        "message": FALLBACK_MESSAGE,
    }


class RecommendationClient:
    """Client for the downstream recommendation service.

    Args:
        http: Shared async HTTP client.
        url: Service endpoint. Empty means not configured: every call falls back.
        timeout_seconds: Per-call deadline.
    """

    def __init__(self, http: httpx.AsyncClient, *, url: str, timeout_seconds: float = 30.0) -> None:
        self._http = http
        self._url = url
        self._timeout = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self._url)

    async def fetch(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """POST the payload and return the service response.

        Raises:
            RuntimeError: If the service is not configured.
            httpx.HTTPError: On transport errors or non-2xx responses.
        """
        if not self.configured:
            raise RuntimeError("recommendations service is not configured")
        response = await self._http.post(
            self._url,
            json=dict(payload),
            headers={"Accept": "application/json"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        return response.json()

    async def enrich(
        self,
        result: Mapping[str, Any],
        user_data: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Return a copy of ``result`` with ``recommendations`` attached."""
        redness = result.get("redness") or {}
        payload = build_recommendation_payload(
            result.get("acne"), user_data, erythema=bool(redness.get("erythema"))
        )

        t_start = time.perf_counter()
        error: str | None = None
        try:
            data = await self.fetch(payload)
            routine = data.get("skincare_routine") or []
            logger.info("Recommendations received: %d routine steps", len(routine))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Recommendations failed, using fallback: %s", exc)
            error = str(exc) or type(exc).__name__
            data = fallback_recommendations(user_data)
        duration_ms = round((time.perf_counter() - t_start) * 1000, 2)

        record_recommendations(error is None)
        return {
            **result,
            "recommendations": data,
            "recommendations_meta": {
                "success": error is None,
                "duration_ms": duration_ms,
                "error": error,
            },
        }
