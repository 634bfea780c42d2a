"""
CORS decision engine.

Every inbound request goes through CORSEngine.decide() before anything
touches the backend:

    CLASSIFY  health check / preflight / actual request
    MATCH     parse Origin and test it against the compiled allowlist
    DECIDE    403 rejection, 204 preflight answer, or "forward with headers"

The proxy server performs the RESPOND step from the returned CorsDecision.
Allowed responses always echo the literal Origin value and never "*",
because Access-Control-Allow-Credentials is always "true".

Thread-safe: EngineConfig is frozen and decide() keeps no state.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit

from corsgate.domains import CompiledAllowlist, compile_allowlist
from corsgate.errors import ConfigError, OriginRejected
from corsgate.origin import check_origin

DEFAULT_ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD")
DEFAULT_ALLOWED_HEADERS = (
    "Authorization",
    "Content-Type",
    "X-Requested-With",
    "Accept",
    "Origin",
    "Cache-Control",
    "X-Auth-Token",
)
DEFAULT_MAX_AGE = 86400
DEFAULT_HEALTH_PATH = "/cors/health"

REJECTION_BODY = b"CORS origin not allowed"
HEALTH_BODY = b"OK"
TEXT_PLAIN = "text/plain; charset=utf-8"

KIND_HEALTH = "health"
KIND_PREFLIGHT = "preflight"
KIND_ACTUAL = "actual"


@dataclass(frozen=True)
class EngineConfig:
    """Immutable engine configuration.

    Attributes:
        allowlist: Compiled ALLOWED_DOMAINS.
        allowed_methods: Methods advertised on preflight responses.
        allowed_headers: Request headers advertised on preflight responses.
        max_age: Preflight cache lifetime in seconds.
        health_path: Path answered with 200 "OK" without any origin check.
    """
    allowlist: CompiledAllowlist
    allowed_methods: tuple[str, ...] = DEFAULT_ALLOWED_METHODS
    allowed_headers: tuple[str, ...] = DEFAULT_ALLOWED_HEADERS
    max_age: int = DEFAULT_MAX_AGE
    health_path: str = DEFAULT_HEALTH_PATH


@dataclass
class CorsDecision:
    """Outcome of one request's CORS evaluation.

    status_code is None for allowed actual requests: the status comes from
    the backend response the headers get merged into.
    """
    allowed: bool
    is_preflight: bool
    kind: str
    status_code: Optional[int]
    response_headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    content_type: Optional[str] = None
    forward: bool = False
    reason: str = ""
    origin: str = ""


def _split_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def merge_allowed_headers(extra: Optional[str] = "",
                          defaults: Iterable[str] = DEFAULT_ALLOWED_HEADERS) -> tuple[str, ...]:
    """Append operator headers to the defaults, skipping case-insensitive duplicates."""
    merged = list(defaults)
    seen = {h.lower() for h in merged}
    for header in _split_csv(extra):
        if header.lower() not in seen:
            seen.add(header.lower())
            merged.append(header)
    return tuple(merged)


def resolve_allowed_methods(override: Optional[str] = "") -> tuple[str, ...]:
    """ALLOWED_METHODS replaces the default set; blank keeps the defaults."""
    methods = []
    for method in _split_csv(override):
        method = method.upper()
        if method not in methods:
            methods.append(method)
    return tuple(methods) if methods else DEFAULT_ALLOWED_METHODS


def create_engine_config(
    allowed_domains: str,
    allowed_headers: str = "",
    allowed_methods: str = "",
    max_age: int = DEFAULT_MAX_AGE,
    health_path: str = DEFAULT_HEALTH_PATH,
) -> EngineConfig:
    """Build an EngineConfig from raw configuration strings.

    Raises:
        ConfigError: invalid domain list, negative max_age or a health path
            that is not absolute.
    """
    allowlist = compile_allowlist(allowed_domains)
    if max_age < 0:
        raise ConfigError("CORS_MAX_AGE must not be negative")
    if not health_path or not health_path.startswith("/"):
        raise ConfigError(f"HEALTH_PATH must start with '/': {health_path!r}")
    return EngineConfig(
        allowlist=allowlist,
        allowed_methods=resolve_allowed_methods(allowed_methods),
        allowed_headers=merge_allowed_headers(allowed_headers),
        max_age=max_age,
        health_path=health_path,
    )


def merge_vary(existing: Optional[str], value: str = "Origin") -> str:
    """Add a token to a Vary header value without duplicating it."""
    tokens = _split_csv(existing)
    if any(t == "*" or t.lower() == value.lower() for t in tokens):
        return ", ".join(tokens)
    tokens.append(value)
    return ", ".join(tokens)


def _header_values(headers: Mapping[str, str], name: str) -> list[str]:
    """All values of a header, case-insensitively (works for dicts and Message)."""
    get_all = getattr(headers, "get_all", None)
    if get_all is not None:
        return list(get_all(name) or [])
    lname = name.lower()
    return [v for k, v in headers.items() if k.lower() == lname]


class CORSEngine:
    """Per-request CORS decisions over one EngineConfig snapshot."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def classify(self, method: str, path: str, headers: Mapping[str, str]) -> str:
        if urlsplit(path).path == self.config.health_path:
            return KIND_HEALTH
        if method.upper() == "OPTIONS" and _header_values(headers, "Access-Control-Request-Method"):
            return KIND_PREFLIGHT
        return KIND_ACTUAL

    def preflight_headers(self, origin: str) -> dict[str, str]:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Methods": ", ".join(self.config.allowed_methods),
            "Access-Control-Allow-Headers": ", ".join(self.config.allowed_headers),
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Max-Age": str(self.config.max_age),
        }

    def actual_headers(self, origin: str) -> dict[str, str]:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Credentials": "true",
            "Vary": "Origin",
        }

    def decide(self, method: str, path: str, headers: Mapping[str, str]) -> CorsDecision:
        """Run CLASSIFY, MATCH and DECIDE for one request.

        Args:
            method: HTTP method.
            path: Request target (query string allowed).
            headers: Request headers; dict or email.message.Message.

        Returns:
            CorsDecision. Denials carry status 403 and the rejection body.
        """
        kind = self.classify(method, path, headers)
        if kind == KIND_HEALTH:
            return CorsDecision(
                allowed=True,
                is_preflight=False,
                kind=kind,
                status_code=200,
                body=HEALTH_BODY,
                content_type=TEXT_PLAIN,
            )

        is_preflight = kind == KIND_PREFLIGHT
        origins = _header_values(headers, "Origin")
        raw_origin = origins[0] if origins else None
        try:
            if len(origins) > 1:
                raise OriginRejected(", ".join(origins), "malformed_origin")
            check_origin(raw_origin, self.config.allowlist)
        except OriginRejected as exc:
            return CorsDecision(
                allowed=False,
                is_preflight=is_preflight,
                kind=kind,
                status_code=403,
                body=REJECTION_BODY,
                content_type=TEXT_PLAIN,
                reason=exc.reason,
                origin=exc.origin,
            )

        # Echo the header exactly as sent (minus surrounding whitespace).
        echoed = raw_origin.strip()
        if is_preflight:
            return CorsDecision(
                allowed=True,
                is_preflight=True,
                kind=kind,
                status_code=204,
                response_headers=self.preflight_headers(echoed),
                origin=echoed,
            )
        return CorsDecision(
            allowed=True,
            is_preflight=False,
            kind=kind,
            status_code=None,
            response_headers=self.actual_headers(echoed),
            forward=True,
            origin=echoed,
        )


class EngineHolder:
    """Indirection to the current CORSEngine.

    Handlers read ``holder.engine`` once per request. swap() rebinds the
    attribute in a single assignment, so a request sees either the old or
    the new engine, never a mix.
    """

    def __init__(self, engine: CORSEngine):
        self._engine = engine
        self._swap_lock = threading.Lock()
        self.generation = 1

    @property
    def engine(self) -> CORSEngine:
        return self._engine

    def swap(self, engine: CORSEngine) -> CORSEngine:
        """Install a new engine and return the previous one."""
        with self._swap_lock:
            previous = self._engine
            self._engine = engine
            self.generation += 1
        return previous
