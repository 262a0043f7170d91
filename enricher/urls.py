"""URL canonicalisation used for duplicate detection."""

from __future__ import annotations

import logging
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

LOGGER = logging.getLogger(__name__)

TRACKING_PARAMS: frozenset[str] = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
        "msclkid",
        "mc_cid",
        "mc_eid",
        "_ga",
        "ref",
        "source",
    }
)


# Reserved and already-escaped characters stay as they are, so encoding an
# encoded path is a no-op.
PATH_SAFE_CHARS = "/%:@!$&'()*+,;=~"


def normalize_url(url: str) -> str:
    """Return a comparable identity for ``url``.

    Drops the fragment and tracking parameters, percent-encodes the path,
    sorts the remaining query parameters and lowercases the result. Input
    that does not parse as an absolute URL is only lowercased.
    """

    try:
        parts = urlsplit(url.strip())
    except ValueError:
        LOGGER.debug("Failed to parse URL for normalization: %s", url)
        return url.lower()
    if not parts.scheme or not parts.netloc:
        return url.lower()

    # Keys compare case-insensitively so lowercasing never changes which
    # parameters survive or their order on a second pass.
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS
    ]
    query.sort(key=lambda item: (item[0].lower(), item[1].lower()))
    path = quote(parts.path, safe=PATH_SAFE_CHARS) or "/"
    return urlunsplit((parts.scheme, parts.netloc, path, urlencode(query), "")).lower()
