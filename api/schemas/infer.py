"""
Pydantic schemas for the ``/infer`` endpoint.

Field names follow the public camelCase contract (``imageUrl``, ``userData``
...). Python attributes are snake_case with aliases.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.validation import MAX_URL_LENGTH


def _require_http_url(value: str, field_name: str) -> str:
    parts = urlsplit(value.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"{field_name} must be a valid http(s) URL")
    return value.strip()


class UserData(BaseModel):
    """Optional profile used for product recommendations."""

    model_config = ConfigDict(extra="allow")

    first_name: str | None = None
    last_name: str | None = None
    birthdate: str | None = None
    gender: str | None = None
    budget_level: str | None = None
    shop_domain: str | None = None
    erythema: bool | None = None


class InferRequest(BaseModel):
    """Request body for ``POST /infer``."""

    model_config = ConfigDict(populate_by_name=True)

    image_url: str = Field(
        ...,
        alias="imageUrl",
        min_length=1,
        max_length=MAX_URL_LENGTH,
        description="HTTP(S) URL of the image to analyze.",
    )
    sync: bool = Field(default=True, description="False queues the job and returns 202.")
    user_id: str | None = Field(default=None, alias="userId")
    webhook_url: str | None = Field(
        default=None, alias="webhookUrl", description="Callback for queued jobs."
    )
    user_data: UserData | None = Field(default=None, alias="userData")
    include_recommendations: bool = Field(default=False, alias="includeRecommendations")
    metadata: dict[str, Any] | None = Field(default=None, description="Free-form tracking fields.")

    @field_validator("image_url")
    @classmethod
    def image_url_must_be_http(cls, v: str) -> str:
        """Validate that imageUrl is an absolute http(s) URL."""
        return _require_http_url(v, "imageUrl")

    @field_validator("webhook_url")
    @classmethod
    def webhook_url_must_be_http(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _require_http_url(v, "webhookUrl")

    def user_profile(self) -> dict[str, Any]:
        """User data as a plain dict without unset fields."""
        if self.user_data is None:
            return {}
        return self.user_data.model_dump(exclude_none=True)


def validation_message(exc: ValidationError) -> str:
    """First validation error rendered as ``field: message``."""
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    msg = str(first.get("msg", "invalid value"))
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, ") :]
    return f"{loc}: {msg}" if loc else msg
