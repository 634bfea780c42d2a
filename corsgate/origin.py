"""Origin header parsing and allowlist matching.

A browser sends ``Origin: scheme://host[:port]``. parse_origin() accepts only
that serialized form for http/https and returns None for anything else, so a
missing, ``null`` or garbled header can never satisfy the allowlist.
"""
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

from corsgate.domains import AllowlistEntry, CompiledAllowlist
from corsgate.errors import OriginRejected

_DEFAULT_PORTS = {"http": 80, "https": 443}
_HOSTNAME_RE = re.compile(r"^[a-z0-9_-]+(\.[a-z0-9_-]+)*$")
_PORT_SUFFIX_RE = re.compile(r":[0-9]{1,5}$")


@dataclass(frozen=True)
class ParsedOrigin:
    """Normalized Origin: lower-cased scheme and host, effective port."""
    scheme: str
    host: str
    port: int
    raw: str = field(default="", compare=False)


def _valid_host(netloc: str, host: str) -> bool:
    if netloc.startswith("["):
        try:
            ipaddress.IPv6Address(host)
        except ValueError:
            return False
        return True
    return bool(_HOSTNAME_RE.match(host))


def parse_origin(raw: Optional[str]) -> Optional[ParsedOrigin]:
    """Parse a raw Origin header value.

    Returns:
        ParsedOrigin, or None when the header is absent, empty, ``null`` or
        not a well-formed http/https origin.
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value or value.lower() == "null":
        return None
    if any(c.isspace() for c in value):
        return None
    if value.endswith("/"):
        value = value[:-1]

    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        return None
    # Rejects path, query, fragment and a dangling ':'.
    if value.lower() != f"{scheme}://{parts.netloc}".lower() or parts.netloc.endswith(":"):
        return None
    if "@" in parts.netloc:
        return None
    if port is not None and not _PORT_SUFFIX_RE.search(parts.netloc):
        return None

    host = parts.hostname
    if not host or not _valid_host(parts.netloc, host):
        return None
    if port == 0:
        return None

    return ParsedOrigin(
        scheme=scheme,
        host=host,
        port=port if port is not None else _DEFAULT_PORTS[scheme],
        raw=raw.strip(),
    )


def entry_matches(entry: AllowlistEntry, origin: ParsedOrigin) -> bool:
    """Host test, then port test, for a single allowlist entry."""
    if entry.wildcard:
        suffix = "." + entry.host_pattern
        # At least one label must precede the suffix.
        if len(origin.host) <= len(suffix) or not origin.host.endswith(suffix):
            return False
    elif origin.host != entry.host_pattern:
        return False
    return entry.port is None or entry.port == origin.port


def matches(origin: Optional[ParsedOrigin], allowlist: CompiledAllowlist) -> bool:
    """True if any entry admits the origin. None never matches."""
    if origin is None:
        return False
    return any(entry_matches(entry, origin) for entry in allowlist)


def check_origin(raw: Optional[str], allowlist: CompiledAllowlist) -> ParsedOrigin:
    """Parse and match in one step.

    Raises:
        OriginRejected: with reason ``missing_origin``, ``malformed_origin``
            or ``origin_not_allowed``.
    """
    if raw is None or not raw.strip():
        raise OriginRejected(raw or "", "missing_origin")
    origin = parse_origin(raw)
    if origin is None:
        raise OriginRejected(raw, "malformed_origin")
    if not matches(origin, allowlist):
        raise OriginRejected(raw, "origin_not_allowed")
    return origin
