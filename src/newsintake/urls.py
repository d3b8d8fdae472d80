from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


_TRACKING_PREFIXES = ("utm_",)
_TRACKING_KEYS = {
    "gclid",
    "fbclid",
    "dclid",
    "msclkid",
    "yclid",
    "mc_cid",
    "mc_eid",
    "igshid",
    "_hsenc",
    "_hsmi",
    "mkt_tok",
    "ref_src",
}
_DEFAULT_PORTS = {"http": "80", "https": "443"}


def is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith(_TRACKING_PREFIXES) or lowered in _TRACKING_KEYS


def canonicalize_url(url: str) -> str:
    """Reduce ``url`` to a stable dedup key.

    Tracking parameters are dropped, the remaining ones sorted and the
    fragment removed. Anything that is not an absolute http(s) URL, or that
    fails to parse, comes back unchanged.
    """
    if not url:
        return url
    try:
        split = urlsplit(url.strip())
        scheme = split.scheme.lower()
        if scheme not in _DEFAULT_PORTS or not split.netloc:
            return url
        netloc = split.netloc.lower()
        if "@" not in netloc and netloc.endswith(f":{_DEFAULT_PORTS[scheme]}"):
            netloc = netloc.rsplit(":", 1)[0]
        path = split.path or "/"
        query_pairs = [
            (key, value)
            for key, value in parse_qsl(split.query, keep_blank_values=True)
            if key and not is_tracking_param(key)
        ]
        query = urlencode(sorted(query_pairs)) if query_pairs else ""
        # Dropping the fragment or query can expose trailing whitespace.
        return urlunsplit((scheme, netloc, path, query, "")).strip()
    except ValueError:
        return url
