"""
HTTP clients for the external detectors.

All clients share one ``httpx.AsyncClient`` owned by the application lifespan.
Deadlines are enforced by the circuit breaker (or, for redness, by the
orchestrator), so the clients themselves only translate transport errors and
non-2xx responses into ``DetectorError``.

Wire formats::

    acne      GET  {endpoint}?api_key=&image=<url>&confidence=20&overlap=50
              → {predictions, image: {width, height}, inference_id?, time?}
    redness   POST {url} {"base64image": ..., "code": api_key}
              → {num_polygons, polygons, analysis_width, analysis_height}
    wrinkles  POST {url} {"base64image": ..., "code": api_key}
              → {predictions, image, inference_id, time}
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from core.config import DetectorSettings

logger = logging.getLogger(__name__)

ACNE_CONFIDENCE = 20
ACNE_OVERLAP = 50


class DetectorError(Exception):
    """A detector call failed (transport error, non-2xx, or bad body).

    Args:
        detector: Detector name ("acne", "redness", "wrinkles").
        message: Failure detail.
        status_code: HTTP status if the detector answered.
    """

    def __init__(self, detector: str, message: str, status_code: int | None = None) -> None:
        self.detector = detector
        self.status_code = status_code
        super().__init__(f"{detector}: {message}")


class ImageFetchError(Exception):
    """The source image could not be downloaded."""


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} in detector response")


def _json_body(detector: str, response: httpx.Response) -> dict[str, Any]:
    if response.status_code >= 400:
        raise DetectorError(
            detector,
            f"HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
    try:
        body = response.json(parse_constant=_reject_constant)
    except ValueError as exc:
        raise DetectorError(detector, f"response is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise DetectorError(detector, f"expected a JSON object, got {type(body).__name__}")
    return body


class AcneDetectorClient:
    """Hosted acne detection model, queried by image URL."""

    def __init__(self, http: httpx.AsyncClient, settings: DetectorSettings) -> None:
        self._http = http
        self._settings = settings

    @property
    def configured(self) -> bool:
        return self._settings.configured

    async def detect(self, image_url: str) -> dict[str, Any]:
        if not self.configured:
            raise DetectorError("acne", "detector is not configured")
        params = {
            "api_key": self._settings.api_key,
            "image": image_url,
            "confidence": ACNE_CONFIDENCE,
            "overlap": ACNE_OVERLAP,
        }
        try:
            response = await self._http.get(self._settings.url, params=params)
        except httpx.HTTPError as exc:
            raise DetectorError("acne", f"request failed: {exc}") from exc
        body = _json_body("acne", response)
        logger.info("Acne detector: %d predictions", len(body.get("predictions") or []))
        return body


class _Base64Detector:
    """Detector that takes a base64 image and an access code in a JSON body."""

    name = "detector"

    def __init__(self, http: httpx.AsyncClient, settings: DetectorSettings) -> None:
        self._http = http
        self._settings = settings

    @property
    def configured(self) -> bool:
        return self._settings.configured

    async def detect(self, image_base64: str) -> dict[str, Any]:
        if not self.configured:
            raise DetectorError(self.name, "detector is not configured")
        payload = {"base64image": image_base64, "code": self._settings.api_key}
        try:
            response = await self._http.post(self._settings.url, json=payload)
        except httpx.HTTPError as exc:
            raise DetectorError(self.name, f"request failed: {exc}") from exc
        return _json_body(self.name, response)


class RednessDetectorClient(_Base64Detector):
    """Redness segmentation service; returns polygons in its analysis space."""

    name = "redness"


class WrinklesDetectorClient(_Base64Detector):
    """Wrinkle detection service."""

    name = "wrinkles"


class ImageFetcher:
    """Download the source image once per request, enforcing a size cap.

    Args:
        http: Shared async HTTP client.
        max_bytes: Largest accepted image body.
    """

    def __init__(self, http: httpx.AsyncClient, max_bytes: int) -> None:
        self._http = http
        self._max_bytes = max_bytes

    async def fetch_base64(self, image_url: str) -> str:
        """Return the image at ``image_url`` base64-encoded.

        Raises:
            ImageFetchError: On transport errors, non-2xx, or oversize bodies.
        """
        try:
            async with self._http.stream("GET", image_url) as response:
                if response.status_code >= 400:
                    raise ImageFetchError(f"image download returned HTTP {response.status_code}")
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self._max_bytes:
                    raise ImageFetchError(
                        f"image is {declared} bytes, limit is {self._max_bytes}"
                    )
                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self._max_bytes:
                        raise ImageFetchError(f"image exceeds {self._max_bytes} bytes")
                    chunks.append(chunk)
        except httpx.HTTPError as exc:
            raise ImageFetchError(f"image download failed: {exc}") from exc

        data = b"".join(chunks)
        if not data:
            raise ImageFetchError("image download returned an empty body")
        logger.debug("Fetched image: %d bytes", len(data))
        return base64.b64encode(data).decode("ascii")
