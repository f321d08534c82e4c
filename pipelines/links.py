"""URL normalization helpers shared by the parser and the crawl scheduler."""

from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

ALLOWED_SCHEMES = ("http", "https")


def normalize_url(raw_url: str, base_url: Optional[str] = None) -> Optional[str]:
    """Normalize a URL for de-duplication.

    Resolves ``raw_url`` against ``base_url`` when given, drops the fragment and
    sorts query parameters by key. Returns None for anything that is not an
    absolute http(s) URL.
    """
    if not raw_url or not raw_url.strip():
        return None

    try:
        absolute = urljoin(base_url, raw_url.strip()) if base_url else raw_url.strip()
        parts = urlsplit(absolute)
        # Accessing .port validates it
        parts.port
    except ValueError:
        return None

    if parts.scheme.lower() not in ALLOWED_SCHEMES or not parts.hostname:
        return None

    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True),
                             key=lambda pair: pair[0]))
    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        parts.path or "/",
        query,
        "",
    ))


def safe_hostname(url: str) -> Optional[str]:
    """Return the lower-cased hostname of ``url`` or None if it has none."""
    try:
        return urlsplit(url).hostname or None
    except ValueError:
        return None
