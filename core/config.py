"""
Configuration dataclasses for the inference orchestrator.

Immutable settings objects built once at process start by ``load_settings()``
(environment variables, optionally from a ``.env`` file) and passed down to
every component. Nothing else in the codebase reads ``os.environ``.

Durations coming from the environment are in milliseconds (matching the
detector provider documentation); the dataclasses store seconds.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from dotenv import load_dotenv

from core.validation import DEFAULT_TRUSTED_SUFFIXES

VALID_ENVIRONMENTS: frozenset[str] = frozenset({"production", "development", "test"})

DEFAULT_ROBOFLOW_BASE_URL = "https://detect.roboflow.com"

# Wrinkle detector retries are fixed; only the acne detector's are configurable.
WRINKLES_RETRIES = 3


@dataclass(frozen=True)
class DetectorSettings:
    """
    Connection and resilience settings for one external detector.

    Attributes:
        name: Dependency name; also the circuit breaker name.
        url: Endpoint URL (for the acne detector, the model endpoint base).
        api_key: Credential sent to the detector. Empty means not configured.
        timeout_seconds: Per-call deadline enforced by the breaker.
        retries: Retries after the first attempt.
        error_threshold_percentage: Breaker trip threshold.
        reset_timeout_seconds: Breaker OPEN → HALF-OPEN delay.
        volume_threshold: Calls needed in the window before the breaker may trip.
    """

    name: str
    url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0
    retries: int = 3
    error_threshold_percentage: float = 50.0
    reset_timeout_seconds: float = 30.0
    volume_threshold: int = 5

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.timeout_seconds <= 0:
            raise ValueError(f"{self.name}: timeout_seconds must be positive, got {self.timeout_seconds}")
        if self.retries < 0:
            raise ValueError(f"{self.name}: retries must be non-negative, got {self.retries}")
        if self.volume_threshold < 1:
            raise ValueError(
                f"{self.name}: volume_threshold must be at least 1, got {self.volume_threshold}"
            )
        if not 0 <= self.error_threshold_percentage <= 100:
            raise ValueError(
                f"{self.name}: error_threshold_percentage must be in [0, 100], "
                f"got {self.error_threshold_percentage}"
            )

    @property
    def configured(self) -> bool:
        """True if both endpoint and credential are set."""
        return bool(self.url and self.api_key)


@dataclass(frozen=True)
class Settings:
    """
    Process-wide settings.

    Attributes:
        environment: "production", "development" or "test".
        redis_url: Redis URL or Azure-style connection string; None disables Redis.
        acne: Acne detector (Roboflow hosted model) settings.
        redness: Redness detector settings.
        wrinkles: Wrinkle detector settings.
        recommendations_url: Recommendation service endpoint; empty disables it.
        recommendations_timeout_seconds: Recommendation call deadline.
        rate_limit: Requests allowed per window per client.
        rate_limit_window: Window length, e.g. "1h".
        rate_limit_bypass: Allow every request (implied by test mode).
        cache_ttl_seconds: TTL of merged results in the primary cache tier.
        local_cache_max_entries: Capacity of the in-process cache tier.
        local_cache_ttl_seconds: Upper bound on in-process entry lifetime.
        max_image_bytes: Largest image the orchestrator will download.
        trusted_storage_suffixes: Host suffixes accepted as object storage.
        queue_enabled: Accept ``sync=false`` requests onto the job queue.
        queue_name: Redis list used as the job queue.
    """

    environment: str = "development"
    redis_url: str | None = None
    acne: DetectorSettings = field(default_factory=lambda: DetectorSettings(name="acne"))
    redness: DetectorSettings = field(
        default_factory=lambda: DetectorSettings(name="redness", timeout_seconds=15.0, retries=0)
    )
    wrinkles: DetectorSettings = field(
        default_factory=lambda: DetectorSettings(
            name="wrinkles", timeout_seconds=15.0, retries=WRINKLES_RETRIES
        )
    )
    recommendations_url: str = ""
    recommendations_timeout_seconds: float = 30.0
    rate_limit: int = 50
    rate_limit_window: str = "1h"
    rate_limit_bypass: bool = False
    cache_ttl_seconds: int = 300
    local_cache_max_entries: int = 1000
    local_cache_ttl_seconds: float = 60.0
    max_image_bytes: int = 5 * 1024 * 1024
    trusted_storage_suffixes: tuple[str, ...] = DEFAULT_TRUSTED_SUFFIXES
    queue_enabled: bool = False
    queue_name: str = "inference-queue"

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.environment not in VALID_ENVIRONMENTS:
            raise ValueError(
                f"Unknown environment {self.environment!r}, "
                f"valid options: {sorted(VALID_ENVIRONMENTS)}"
            )
        if self.rate_limit <= 0:
            raise ValueError(f"rate_limit must be positive, got {self.rate_limit}")
        if self.cache_ttl_seconds <= 0:
            raise ValueError(f"cache_ttl_seconds must be positive, got {self.cache_ttl_seconds}")
        if self.local_cache_max_entries <= 0:
            raise ValueError(
                f"local_cache_max_entries must be positive, got {self.local_cache_max_entries}"
            )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def bypass_rate_limit(self) -> bool:
        """Rate limiting is skipped in test mode or when explicitly bypassed."""
        return self.rate_limit_bypass or self.is_test


# ---------------------------------------------------------------------------
# Environment loading
# ---------------------------------------------------------------------------


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _ms(env: Mapping[str, str], name: str, default_ms: int) -> float:
    return _int(env, name, default_ms) / 1000.0


def _bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _roboflow_endpoint(env: Mapping[str, str]) -> str:
    model = env.get("ROBOFLOW_MODEL", "").strip()
    if not model:
        return ""
    base = env.get("ROBOFLOW_BASE_URL", DEFAULT_ROBOFLOW_BASE_URL).rstrip("/")
    version = env.get("ROBOFLOW_VERSION", "1").strip() or "1"
    return f"{base}/{model}/{version}"


def settings_from_env(env: Mapping[str, str]) -> Settings:
    """Build Settings from an environment mapping.

    Args:
        env: Environment variables (``os.environ`` or a test dict).

    Returns:
        Validated Settings.

    Raises:
        ValueError: If a variable is malformed or a value fails validation.
    """
    threshold = float(env.get("BREAKER_ERROR_THRESHOLD", "") or 50.0)
    reset_timeout = _ms(env, "BREAKER_RESET_TIMEOUT", 30_000)
    volume = _int(env, "BREAKER_VOLUME_THRESHOLD", 5)
    suffixes = tuple(
        s.strip() for s in env.get("TRUSTED_STORAGE_SUFFIXES", "").split(",") if s.strip()
    )

    return Settings(
        environment=env.get("ENVIRONMENT", "development").strip().lower() or "development",
        redis_url=env.get("REDIS_URL") or env.get("REDIS_CONNECTION_STRING") or None,
        acne=DetectorSettings(
            name="acne",
            url=_roboflow_endpoint(env),
            api_key=env.get("ROBOFLOW_API_KEY", ""),
            timeout_seconds=_ms(env, "ROBOFLOW_TIMEOUT", 10_000),
            retries=_int(env, "ROBOFLOW_MAX_RETRIES", 3),
            error_threshold_percentage=threshold,
            reset_timeout_seconds=reset_timeout,
            volume_threshold=volume,
        ),
        redness=DetectorSettings(
            name="redness",
            url=env.get("REDNESS_API_URL", ""),
            api_key=env.get("REDNESS_API_KEY", ""),
            timeout_seconds=_ms(env, "REDNESS_API_TIMEOUT", 15_000),
            retries=0,
            error_threshold_percentage=threshold,
            reset_timeout_seconds=reset_timeout,
            volume_threshold=volume,
        ),
        wrinkles=DetectorSettings(
            name="wrinkles",
            url=env.get("WRINKLES_API_URL", ""),
            api_key=env.get("WRINKLES_API_KEY", ""),
            timeout_seconds=_ms(env, "WRINKLES_API_TIMEOUT", 15_000),
            retries=WRINKLES_RETRIES,
            error_threshold_percentage=threshold,
            reset_timeout_seconds=reset_timeout,
            volume_threshold=volume,
        ),
        recommendations_url=env.get("RECOMMENDATIONS_API_URL", ""),
        recommendations_timeout_seconds=_ms(env, "RECOMMENDATIONS_TIMEOUT", 30_000),
        rate_limit=_int(env, "INFER_RATE_LIMIT", 50),
        rate_limit_window=env.get("INFER_RATE_LIMIT_WINDOW", "1h") or "1h",
        rate_limit_bypass=_bool(env, "RATE_LIMIT_BYPASS"),
        cache_ttl_seconds=_int(env, "CACHE_TTL_SECONDS", 300),
        local_cache_max_entries=_int(env, "LOCAL_CACHE_MAX_ENTRIES", 1000),
        local_cache_ttl_seconds=float(_int(env, "LOCAL_CACHE_TTL_SECONDS", 60)),
        max_image_bytes=_int(env, "MAX_IMAGE_BYTES", 5 * 1024 * 1024),
        trusted_storage_suffixes=suffixes or DEFAULT_TRUSTED_SUFFIXES,
        queue_enabled=_bool(env, "INFERENCE_QUEUE_ENABLED"),
        queue_name=env.get("INFERENCE_QUEUE_NAME", "inference-queue") or "inference-queue",
    )


def load_settings() -> Settings:
    """Load Settings from the process environment (and ``.env`` if present)."""
    load_dotenv()
    return settings_from_env(os.environ)
