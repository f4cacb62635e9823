"""Syntactic validation of source URLs. No network access."""

from __future__ import annotations

from urllib.parse import urlparse

from core.errors import InvalidURLError

_ALLOWED_SCHEMES = frozenset(["http", "https"])


def validate_url(url: str) -> str:
    """Check that *url* is an absolute http(s) URL with a host.

    Args:
        url: Candidate URL string.

    Returns:
        The URL, stripped of surrounding whitespace.

    Raises:
        InvalidURLError: If the URL cannot be parsed, uses another scheme,
            or has an empty host.

    Examples:
        >>> validate_url("https://example.com/feed")
        'https://example.com/feed'
        >>> validate_url("ftp://x.com")
        Traceback (most recent call last):
        ...
        core.errors.InvalidURLError: URL must use http or https scheme: 'ftp://x.com'
    """
    candidate = (url or "").strip()
    if not candidate:
        raise InvalidURLError("URL must not be empty")

    try:
        parsed = urlparse(candidate)
        # Accessing .port validates the port component.
        parsed.port
    except ValueError as exc:
        raise InvalidURLError(f"invalid URL format: {candidate!r} ({exc})") from exc

    if parsed.scheme.lower() not in _ALLOWED_SCHEMES:
        raise InvalidURLError(f"URL must use http or https scheme: {candidate!r}")
    if not parsed.hostname:
        raise InvalidURLError(f"URL must have a host: {candidate!r}")

    return candidate


def is_valid_url(url: str) -> bool:
    """Boolean form of :func:`validate_url`."""
    try:
        validate_url(url)
    except InvalidURLError:
        return False
    return True
