"""
Shared validation functions for Pydantic schemas.

Values are trimmed before checking, so whitespace-only input counts as empty.
"""
from urllib.parse import urlparse

from core.config import get_settings


def validate_required_text(value: str, field: str) -> str:
    """
    Trim a required text value and reject it if nothing is left.

    Args:
        value: The raw input.
        field: Field name used in the error message.

    Returns:
        The trimmed value.

    Raises:
        ValueError: If the value is empty after trimming.
    """
    trimmed = value.strip()
    if not trimmed:
        raise ValueError(f"{field.capitalize()} cannot be empty")
    return trimmed


def validate_title_length(title: str) -> str:
    """Validate that title doesn't exceed maximum length."""
    settings = get_settings()
    if len(title) > settings.max_title_length:
        raise ValueError(
            f"Title exceeds maximum length of {settings.max_title_length:,} characters "
            f"(got {len(title):,} characters).",
        )
    return title


def validate_url(url: str) -> str:
    """
    Validate URL length and shape.

    Only absolute http(s) URLs are accepted, matching what a browser `type="url"`
    input lets through for bookmarks.
    """
    settings = get_settings()
    if len(url) > settings.max_url_length:
        raise ValueError(
            f"URL exceeds maximum length of {settings.max_url_length:,} characters "
            f"(got {len(url):,} characters).",
        )
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid URL: '{url}'. Use a full address such as https://example.com")
    return url
