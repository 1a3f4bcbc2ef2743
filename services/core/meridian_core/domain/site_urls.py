"""Site URL normalization helpers."""

import hmac
from typing import Optional
from urllib.parse import urlparse


def normalize_site_url(url: Optional[str]) -> str:
    """Normalize a site URL so that trailing slashes never matter.

    ``https://a.example`` and ``https://a.example/`` both become
    ``https://a.example/``. Empty input stays empty.
    """
    if not url:
        return ""
    url = url.strip()
    if not url:
        return ""
    return url.rstrip("/") + "/"


def site_host(url: Optional[str]) -> str:
    """Return the lowercase host of a URL, or an empty string."""
    if not url:
        return ""
    return (urlparse(url.strip()).hostname or "").lower()


def same_host(first: Optional[str], second: Optional[str]) -> bool:
    """Constant-time host comparison. Empty hosts never match."""
    a, b = site_host(first), site_host(second)
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def join_endpoint(base_url: str, path: str) -> str:
    """Join a site base URL and an API path."""
    return normalize_site_url(base_url) + path.lstrip("/")
