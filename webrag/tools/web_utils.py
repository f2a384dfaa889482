from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAMS = {"gclid", "fbclid", "igshid"}


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlsplit(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except Exception:
        return False


def extract_domain(url: str) -> str:
    """Host of a URL without the `www.` prefix, for display and `source` fields."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except Exception:
        return url
    if host.startswith("www."):
        host = host[4:]
    return host


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def normalize_link(url: str) -> str:
    """Identity key for a result link.

    Tracking parameters and the fragment are dropped and the whole key is
    lower-cased, so `https://a.com/x?utm_source=y` and `https://A.com/x/#top`
    collapse to the same value.
    """
    raw = url.strip()
    try:
        parsed = urlsplit(raw)
    except ValueError:
        return raw.lower()
    query = urlencode(
        [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if not _is_tracking_param(k)]
    )
    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    rebuilt = urlunsplit(
        ((parsed.scheme or "https").lower(), parsed.netloc.lower(), path, query, "")
    )
    return rebuilt.lower()


def looks_like_pdf_url(url: str) -> bool:
    try:
        path = urlsplit(url).path
    except ValueError:
        return False
    return path.lower().endswith(".pdf")


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
