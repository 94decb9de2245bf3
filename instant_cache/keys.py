"""
Cache key helpers.
"""
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# Query parameters that only exist to defeat HTTP caches
CACHE_BUSTING_PARAMS = frozenset({"_", "timestamp", "cache_bust"})

DEFAULT_NAMESPACE = "default"


def make_cache_key(url: str, method: str = "GET") -> str:
    """
    Deterministic key for a URL resource.

    Cache-busting parameters are dropped and the remaining query is sorted,
    so equivalent requests share one entry.
    """
    parts = urlsplit(url)
    query = sorted(
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in CACHE_BUSTING_PARAMS
    )
    clean = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))
    return f"{method.upper()}:{clean}"


def namespace_of(key: str) -> str:
    """
    Group a key for metrics breakdowns.

    "GET:https://host/path" -> "host", "weather:london" -> "weather",
    anything else -> "default".
    """
    method, sep, rest = key.partition(":")
    if not sep:
        return DEFAULT_NAMESPACE
    if rest.startswith(("http://", "https://")):
        return urlsplit(rest).netloc or DEFAULT_NAMESPACE
    return method or DEFAULT_NAMESPACE
