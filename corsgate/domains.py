"""
ALLOWED_DOMAINS compiler.

Turns the operator's comma-separated domain list into an immutable
CompiledAllowlist. Each token is a bare ``host[:port]`` pattern:

    example.com          exact host, any port
    example.com:8443     exact host, port 8443 only
    *.example.com        any host under example.com (not example.com itself)
    [::1]:3000           IPv6 literal in brackets

Schemes are not part of a pattern; ``http://example.com`` is rejected.

Thread-safe: the compiled structures are frozen and shared read-only.
"""
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Iterator, Optional

from corsgate.errors import ConfigError

_PORT_RE = re.compile(r"^[0-9]{1,5}$")
_FORBIDDEN_CHARS = ("/", "?", "#", "@", "\\")


@dataclass(frozen=True)
class AllowlistEntry:
    """One compiled ALLOWED_DOMAINS token.

    Attributes:
        host_pattern: Lower-cased host. For wildcard entries this is the
            suffix after the leading ``*.``.
        wildcard: True for ``*.suffix`` entries.
        port: Explicit port, or None when any port is accepted.
    """
    host_pattern: str
    wildcard: bool = False
    port: Optional[int] = None

    @property
    def has_explicit_port(self) -> bool:
        return self.port is not None

    def __str__(self) -> str:
        host = self.host_pattern
        if ":" in host:
            host = f"[{host}]"
        if self.wildcard:
            host = "*." + host
        if self.port is not None:
            return f"{host}:{self.port}"
        return host


@dataclass(frozen=True)
class CompiledAllowlist:
    """Ordered, immutable collection of AllowlistEntry.

    Order is kept for diagnostics only; matching treats the entries as a set.
    """
    entries: tuple[AllowlistEntry, ...]
    source: str = field(default="", compare=False)

    def __iter__(self) -> Iterator[AllowlistEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def describe(self) -> list[str]:
        """Entries rendered back to their pattern form."""
        return [str(e) for e in self.entries]

    def matches(self, origin) -> bool:
        """True when any entry admits the parsed origin (None never matches)."""
        from corsgate.origin import matches
        return matches(origin, self)


def _invalid(token: str, why: str) -> ConfigError:
    return ConfigError(f"ALLOWED_DOMAINS entry {token!r} is invalid: {why}")


def _parse_port(port_str: str, token: str) -> int:
    if not _PORT_RE.match(port_str):
        raise _invalid(token, "port must be numeric")
    port = int(port_str)
    if not 1 <= port <= 65535:
        raise _invalid(token, "port must be between 1 and 65535")
    return port


def _split_host_port(body: str, token: str) -> tuple[str, Optional[int], bool]:
    """Split ``host[:port]`` into (host, port, is_ipv6)."""
    if body.startswith("["):
        end = body.find("]")
        if end == -1:
            raise _invalid(token, "unterminated IPv6 bracket")
        host = body[1:end]
        rest = body[end + 1:]
        port = None
        if rest:
            if not rest.startswith(":"):
                raise _invalid(token, "unexpected text after IPv6 literal")
            port = _parse_port(rest[1:], token)
        try:
            ipaddress.IPv6Address(host)
        except ValueError:
            raise _invalid(token, "not a valid IPv6 address") from None
        return host.lower(), port, True

    if body.count(":") > 1:
        raise _invalid(token, "IPv6 literals must be wrapped in brackets")
    if ":" in body:
        host, port_str = body.rsplit(":", 1)
        return host, _parse_port(port_str, token), False
    return body, None, False


def _compile_token(token: str) -> AllowlistEntry:
    if "://" in token:
        raise _invalid(token, "scheme prefixes are not allowed, use host[:port]")
    if any(c in token for c in _FORBIDDEN_CHARS):
        raise _invalid(token, "only host[:port] is allowed")
    if any(c.isspace() for c in token):
        raise _invalid(token, "contains whitespace")

    wildcard = token.startswith("*.")
    body = token[2:] if wildcard else token
    host, port, is_ipv6 = _split_host_port(body, token)

    if not host:
        raise _invalid(token, "empty host")
    if "*" in host:
        raise _invalid(token, "'*' is only allowed as a leading '*.' label")
    if is_ipv6:
        if wildcard:
            raise _invalid(token, "wildcards cannot apply to IP literals")
        return AllowlistEntry(host_pattern=host, port=port)

    if any(not label for label in host.split(".")):
        raise _invalid(token, "empty domain label")
    return AllowlistEntry(host_pattern=host.lower(), wildcard=wildcard, port=port)


def compile_allowlist(raw: Optional[str]) -> CompiledAllowlist:
    """Compile a comma-separated ALLOWED_DOMAINS value.

    Args:
        raw: e.g. ``"*.example.com, localhost, api.test:8443"``.

    Returns:
        CompiledAllowlist preserving the configured order.

    Raises:
        ConfigError: empty input, an empty token, or a malformed pattern.
    """
    if raw is None or not raw.strip():
        raise ConfigError("ALLOWED_DOMAINS is required and must not be empty")

    entries = []
    for position, token in enumerate(raw.split(","), start=1):
        token = token.strip()
        if not token:
            raise ConfigError(
                f"ALLOWED_DOMAINS contains an empty entry at position {position}"
            )
        entries.append(_compile_token(token))
    return CompiledAllowlist(entries=tuple(entries), source=raw)
