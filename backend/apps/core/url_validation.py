"""
URL validation utilities for open-redirect protection.

The payment confirmation page accepts a `redirect` URL that the browser is
sent to once the payment is handled. Only URLs pointing back at the host
that served the request are accepted.
"""

from urllib.parse import urlparse

ALLOWED_SCHEMES = ("http", "https")


class RedirectHostMismatchError(Exception):
    """Raised when a redirect URL does not point at the requesting host."""

    pass


def _strip_port(host: str) -> str:
    """Return the hostname part of a `host[:port]` string, lowercased."""
    host = host.strip().lower()
    if host.startswith("["):
        # IPv6 literal, e.g. [::1]:8000
        return host[1:].split("]", 1)[0]
    return host.rsplit(":", 1)[0] if host.count(":") == 1 else host


def validate_redirect_url(url: str | None, request_host: str) -> str | None:
    """
    Validate a redirect URL against the host of the current request.

    Checks:
    1. Empty/absent redirect is allowed (nothing to validate)
    2. The URL uses an http or https scheme
    3. The URL has a hostname (relative URLs are rejected)
    4. The hostname exactly matches the requesting host (port ignored)

    Args:
        url: The redirect URL supplied by the client, or None
        request_host: Host of the incoming request, e.g. request.get_host()

    Returns:
        The validated URL (unchanged if valid), or None when absent

    Raises:
        RedirectHostMismatchError: If the URL fails validation
    """
    if not url:
        return None

    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise RedirectHostMismatchError(f"Invalid redirect URL: {e}") from e

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise RedirectHostMismatchError("Redirect host mismatch.")

    hostname = parsed.hostname
    if not hostname:
        raise RedirectHostMismatchError("Redirect host mismatch.")

    if hostname.lower() != _strip_port(request_host):
        raise RedirectHostMismatchError("Redirect host mismatch.")

    return url
