"""Canonical comparison keys for source URLs."""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urlsplit

from .metadata import clean_string

DEFAULT_PORTS = {"http": 80, "https": 443}

# Characters left as-is when re-encoding; "%" keeps existing escapes intact.
_PATH_SAFE = "/%:@!$&'()*+,;=~"
_QUERY_SAFE = _PATH_SAFE + "?"


def _remove_dot_segments(path: str) -> str:
    """Resolve ``.`` and ``..`` segments of an absolute path."""
    segments = path.split("/")[1:]
    output = []
    for segment in segments:
        if segment == ".":
            continue
        if segment == "..":
            if output:
                output.pop()
            continue
        output.append(segment)
    resolved = "/" + "/".join(output)
    if segments and segments[-1] in (".", "..") and not resolved.endswith("/"):
        resolved += "/"
    return resolved


def normalize_url(value: Optional[str]) -> Optional[str]:
    """Return ``scheme://host[:port]path[?query]`` for ``value`` or ``None``.

    Scheme and host are lower-cased, the scheme's default port, user info and
    the fragment are dropped, dot segments are resolved and path and query are
    percent-encoded. Anything that does not parse as an absolute URL with a
    host yields ``None``.
    """
    cleaned = clean_string(value)
    if not cleaned:
        return None

    try:
        parts = urlsplit(cleaned)
        port = parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    hostname = parts.hostname
    if not scheme or not hostname:
        return None

    host = f"[{hostname}]" if ":" in hostname else hostname
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"

    path = quote(_remove_dot_segments(parts.path or "/"), safe=_PATH_SAFE)
    query = f"?{quote(parts.query, safe=_QUERY_SAFE)}" if parts.query else ""
    return f"{scheme}://{host}{path}{query}"
