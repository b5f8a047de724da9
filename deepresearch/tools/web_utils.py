from __future__ import annotations

import re
from urllib.parse import urlparse


def hostname(url: str) -> str:
    """Lowercased hostname of an absolute URL.

    Raises ValueError when the URL has no scheme or host.
    """
    parsed = urlparse(url)
    host = parsed.hostname
    if not parsed.scheme or not host:
        raise ValueError(f"Not an absolute URL: {url!r}")
    return host.lower()


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
