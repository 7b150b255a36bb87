"""
Shared fixtures for the test suite.

Centralizes reusable test infrastructure so individual test files
don't need to repeat fake-Redis / fake-detector boilerplate.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable
from typing import Any

import pytest
from fastapi.testclient import TestClient

from api.deps import get_breakers, get_orchestrator, get_redis, get_response_cache, get_settings
from api.main import app
from core.config import DetectorSettings, Settings
from inference.orchestrator import InferenceOrchestrator, build_breakers
from infrastructure.cache import ResponseCache
from infrastructure.rate_limiter import RateLimiter
from infrastructure.retry import RetryPolicy

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

IMAGE_URL = "https://acct.blob.core.windows.net/uploads/face.jpg?sp=r&sig=abc"
"""Trusted storage URL with a read-permission SAS token."""

IMAGE_BASE64 = "aW1hZ2U="

ACNE_RESULT: dict[str, Any] = {
    "predictions": [
        {"class": "Papules", "confidence": 0.9, "x": 10, "y": 10},
        {"class": "Papules", "confidence": 0.8, "x": 20, "y": 20},
        {"class": "Pustules", "confidence": 0.7, "x": 30, "y": 30},
        {"class": "Freckles", "confidence": 0.9, "x": 40, "y": 40},
    ],
    "image": {"width": 1000, "height": 800},
    "inference_id": "acne-123",
}

REDNESS_RESULT: dict[str, Any] = {
    "num_polygons": 1,
    "polygons": [[[0, 0], [20, 0], [20, 20], [0, 20]]],
    "analysis_width": 100,
    "analysis_height": 100,
}

WRINKLES_RESULT: dict[str, Any] = {
    "predictions": [
        {"class": "forehead", "confidence": 0.8},
        {"class": "crows_feet", "confidence": 0.6},
        {"class": "background", "confidence": 0.9},
    ],
    "image": {"width": 500, "height": 400},
    "inference_id": "wr-1",
    "time": 0.2,
}


# ---------------------------------------------------------------------------
# Fake Redis
# ---------------------------------------------------------------------------


class FakePipeline:
    """Queues commands and runs them against a FakeRedis on ``execute``."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def incr(self, key: str) -> FakePipeline:
        self._ops.append(("incr", (key,), {}))
        return self

    def expire(self, key: str, seconds: int, nx: bool = False) -> FakePipeline:
        self._ops.append(("expire", (key, seconds), {"nx": nx}))
        return self

    def ttl(self, key: str) -> FakePipeline:
        self._ops.append(("ttl", (key,), {}))
        return self

    async def execute(self) -> list[Any]:
        if self._redis.fail:
            raise ConnectionError("redis down")
        return [getattr(self._redis, f"_{op}")(*args, **kwargs) for op, args, kwargs in self._ops]


class FakeRedis:
    """Minimal in-memory stand-in for ``redis.asyncio.Redis``.

    TTLs are recorded but never elapse. Set ``fail = True`` to make every
    command raise ``ConnectionError``.
    """

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.ttls: dict[str, int] = {}
        self.lists: dict[str, list[str]] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis down")

    # synchronous primitives used by the pipeline
    def _incr(self, key: str) -> int:
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]

    def _expire(self, key: str, seconds: int, nx: bool = False) -> bool:
        if nx and key in self.ttls:
            return False
        self.ttls[key] = seconds
        return True

    def _ttl(self, key: str) -> int:
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> Any:
        self._check()
        return self.data.get(key)

    async def setex(self, key: str, seconds: int, value: Any) -> bool:
        self._check()
        self.data[key] = value
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self.ttls.pop(key, None)
                deleted += 1
        return deleted

    async def scan_iter(self, match: str = "*"):
        self._check()
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def lpush(self, name: str, *values: str) -> int:
        self._check()
        items = self.lists.setdefault(name, [])
        for value in values:
            items.insert(0, value)
        return len(items)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


# ---------------------------------------------------------------------------
# Fake detectors
# ---------------------------------------------------------------------------


class FakeDetector:
    """Detector double that replays a script of results and exceptions.

    The last script entry repeats once the script is exhausted.
    """

    def __init__(self, *script: Any, configured: bool = True) -> None:
        self._script = list(script) or [{}]
        self.configured = configured
        self.calls: list[Any] = []

    async def detect(self, arg: Any) -> Any:
        self.calls.append(arg)
        index = min(len(self.calls) - 1, len(self._script) - 1)
        item = self._script[index]
        if isinstance(item, BaseException):
            raise item
        return dict(item)


class FakeImageFetcher:
    def __init__(self, result: str | BaseException = IMAGE_BASE64) -> None:
        self._result = result
        self.calls: list[str] = []

    async def fetch_base64(self, image_url: str) -> str:
        self.calls.append(image_url)
        if isinstance(self._result, BaseException):
            raise self._result
        return self._result


# ---------------------------------------------------------------------------
# Settings and orchestrator factories
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Test-mode settings with every detector configured."""
    defaults: dict[str, Any] = {
        "environment": "test",
        "acne": DetectorSettings(
            name="acne", url="https://detect.example.com/acne/1", api_key="k", retries=2
        ),
        "redness": DetectorSettings(
            name="redness", url="https://redness.example.com", api_key="k", retries=0
        ),
        "wrinkles": DetectorSettings(
            name="wrinkles", url="https://wrinkles.example.com", api_key="k", retries=3
        ),
    }
    defaults.update(overrides)
    return Settings(**defaults)


FAST_RETRY = RetryPolicy(retries=2, base_seconds=0.0, jitter=False)


def make_orchestrator(
    *,
    settings: Settings | None = None,
    cache: ResponseCache | None = None,
    limiter: RateLimiter | None = None,
    acne: FakeDetector | None = None,
    redness: FakeDetector | None = None,
    wrinkles: FakeDetector | None = None,
    fetcher: FakeImageFetcher | None = None,
    recommendations: Any = None,
    queue: Any = None,
    acne_retries: int = 2,
    wrinkles_retries: int = 3,
    listeners: Iterable[Any] = (),
) -> InferenceOrchestrator:
    """Orchestrator wired with fakes and zero-delay retries."""
    settings = settings or make_settings()
    cache = cache or ResponseCache()
    return InferenceOrchestrator(
        settings=settings,
        cache=cache,
        limiter=limiter or RateLimiter(bypass=True),
        breakers=build_breakers(settings, cache, listeners),
        acne=acne or FakeDetector(ACNE_RESULT),
        redness=redness or FakeDetector(REDNESS_RESULT),
        wrinkles=wrinkles or FakeDetector(WRINKLES_RESULT),
        image_fetcher=fetcher or FakeImageFetcher(),
        recommendations=recommendations,
        queue=queue,
        acne_retry=RetryPolicy(retries=acne_retries, base_seconds=0.0, jitter=False),
        wrinkles_retry=RetryPolicy(retries=wrinkles_retries, base_seconds=0.0, jitter=False),
    )


# ---------------------------------------------------------------------------
# FastAPI test client fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def api_client():
    """FastAPI ``TestClient`` with the orchestrator and its parts overridden.

    The orchestrator is built from fakes; tests can replace it through
    ``client.app_state`` before issuing requests.
    """
    settings = make_settings()
    cache = ResponseCache()
    orchestrator = make_orchestrator(settings=settings, cache=cache)
    state: dict[str, Any] = {
        "settings": settings,
        "cache": cache,
        "orchestrator": orchestrator,
        "breakers": orchestrator._breakers,
        "redis": None,
    }

    app.dependency_overrides[get_settings] = lambda: state["settings"]
    app.dependency_overrides[get_response_cache] = lambda: state["cache"]
    app.dependency_overrides[get_orchestrator] = lambda: state["orchestrator"]
    app.dependency_overrides[get_breakers] = lambda: state["breakers"]
    app.dependency_overrides[get_redis] = lambda: state["redis"]

    with TestClient(app) as c:
        c.app_state = state  # type: ignore[attr-defined]
        yield c

    app.dependency_overrides.clear()
