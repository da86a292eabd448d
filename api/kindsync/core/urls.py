from urllib.parse import parse_qsl, urlencode, urlsplit

TRACKING_PREFIXES = ("utm_", "mc_")
TRACKING_KEYS = {"ref", "fbclid", "gclid", "si"}
DEFAULT_PORTS = {80, 443}


def _keeps(key: str) -> bool:
    return key not in TRACKING_KEYS and not key.startswith(TRACKING_PREFIXES)


def bookmark_url_key(raw_url: str) -> str:
    """Dedupe key for a bookmarked URL.

    Two saves of the same page share a key when they differ only in scheme, a leading `www.`,
    a default port, a trailing slash, the fragment or tracking parameters.
    """
    parts = urlsplit(raw_url.strip())
    host = (parts.hostname or "").removeprefix("www.")
    if parts.port is not None and parts.port not in DEFAULT_PORTS:
        host = f"{host}:{parts.port}"

    path = parts.path.rstrip("/") or "/"
    query = urlencode([(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if _keeps(key)])
    return f"{host}{path}?{query}" if query else f"{host}{path}"
