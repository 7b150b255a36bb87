"""
core/validation.py — Image reference trust rules.

The orchestrator only hands URLs it trusts to the detectors:

    production      — host must end with a trusted object-storage suffix
                      (Azure Blob Storage by default).
    non-production  — additionally accepts any public http(s) URL whose path
                      ends with an image extension, so test fixtures work.

If the URL carries a storage SAS token (``sp`` query parameter), the token
must grant read permission (``r``). A URL without a token is treated as
public.

Pure: no I/O, no state.
"""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import parse_qs, urlsplit

MAX_URL_LENGTH = 2048

DEFAULT_TRUSTED_SUFFIXES: tuple[str, ...] = (".blob.core.windows.net",)

IMAGE_EXTENSIONS: tuple[str, ...] = (".jpg", ".jpeg", ".png", ".webp", ".bmp", ".gif")


class ImageValidationError(ValueError):
    """The image reference is malformed, untrusted or not readable.

    Args:
        error: Short error category for the response body.
        message: Human-readable detail.
    """

    def __init__(self, error: str, message: str) -> None:
        self.error = error
        self.message = message
        super().__init__(message)


def is_trusted_storage_host(host: str, suffixes: Iterable[str]) -> bool:
    """True if ``host`` belongs to one of the trusted storage domains."""
    host = host.lower()
    return any(host.endswith(s.lower()) for s in suffixes)


def has_read_permission(url: str) -> bool:
    """Check the SAS ``sp`` permission string for read access.

    Absence of a token counts as public (readable).
    """
    params = parse_qs(urlsplit(url).query)
    permissions = params.get("sp")
    if not permissions:
        return True
    return "r" in permissions[0]


def validate_image_url(
    url: str,
    *,
    production: bool,
    trusted_suffixes: Iterable[str] = DEFAULT_TRUSTED_SUFFIXES,
) -> str:
    """Validate an image reference and return it stripped.

    Args:
        url: Image URL from the request.
        production: Apply the strict (storage-only) policy.
        trusted_suffixes: Host suffixes accepted as object storage.

    Returns:
        The validated URL.

    Raises:
        ImageValidationError: If the URL is malformed, untrusted or lacks
            read permission.
    """
    value = (url or "").strip()
    if not value:
        raise ImageValidationError("Validation Error", "imageUrl is required")
    if len(value) > MAX_URL_LENGTH:
        raise ImageValidationError(
            "Validation Error", f"imageUrl must be at most {MAX_URL_LENGTH} characters"
        )

    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ImageValidationError("Validation Error", "imageUrl must be a valid http(s) URL")

    suffixes = tuple(trusted_suffixes)
    trusted = is_trusted_storage_host(parts.hostname, suffixes)
    if not trusted:
        looks_like_image = parts.path.lower().endswith(IMAGE_EXTENSIONS)
        if production or not looks_like_image:
            raise ImageValidationError(
                "Validation Error",
                "imageUrl must point to a trusted storage account"
                if production
                else "imageUrl must point to trusted storage or a public image file",
            )

    if not has_read_permission(value):
        raise ImageValidationError(
            "Invalid Permissions", "imageUrl token does not grant read permission"
        )
    return value
