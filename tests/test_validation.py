"""Tests for core/validation.py."""

from __future__ import annotations

import pytest

from core.validation import (
    MAX_URL_LENGTH,
    ImageValidationError,
    has_read_permission,
    validate_image_url,
)

BLOB = "https://acct.blob.core.windows.net/uploads/face.jpg"


class TestReadPermission:
    def test_no_token_is_public(self) -> None:
        assert has_read_permission(BLOB) is True

    def test_read_token(self) -> None:
        assert has_read_permission(BLOB + "?sp=rl&sig=x") is True

    def test_write_only_token(self) -> None:
        assert has_read_permission(BLOB + "?sp=w&sig=x") is False


class TestProductionPolicy:
    def test_trusted_storage_accepted(self) -> None:
        assert validate_image_url(f"  {BLOB}  ", production=True) == BLOB

    def test_host_match_is_case_insensitive(self) -> None:
        url = "https://ACCT.Blob.Core.Windows.Net/x.png"
        assert validate_image_url(url, production=True) == url

    def test_public_image_rejected(self) -> None:
        with pytest.raises(ImageValidationError) as exc_info:
            validate_image_url("https://example.com/face.jpg", production=True)
        assert exc_info.value.error == "Validation Error"

    def test_custom_suffix(self) -> None:
        url = "https://cdn.example.org/face"
        assert (
            validate_image_url(url, production=True, trusted_suffixes=(".example.org",)) == url
        )


class TestNonProductionPolicy:
    def test_public_image_extension_accepted(self) -> None:
        url = "https://example.com/fixtures/Face.JPEG"
        assert validate_image_url(url, production=False) == url

    def test_public_non_image_rejected(self) -> None:
        with pytest.raises(ImageValidationError):
            validate_image_url("https://example.com/page.html", production=False)


class TestMalformed:
    @pytest.mark.parametrize("url", ["", "   ", "ftp://acct.blob.core.windows.net/x.jpg", "not a url"])
    def test_rejected(self, url: str) -> None:
        with pytest.raises(ImageValidationError):
            validate_image_url(url, production=False)

    def test_too_long(self) -> None:
        url = BLOB + "?" + "a" * MAX_URL_LENGTH
        with pytest.raises(ImageValidationError):
            validate_image_url(url, production=True)

    def test_missing_read_permission(self) -> None:
        with pytest.raises(ImageValidationError) as exc_info:
            validate_image_url(BLOB + "?sp=w&sig=x", production=True)
        assert exc_info.value.error == "Invalid Permissions"
