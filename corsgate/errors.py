"""Exception types shared by the corsgate modules.

ConfigError is fatal at startup. OriginRejected never escapes a request:
the engine turns it into a 403. UpstreamError subclasses carry the status
code the proxy answers with, so a 5xx always means the backend side failed.
"""
from __future__ import annotations


class ConfigError(Exception):
    """Missing or malformed configuration. The proxy must not start."""


class OriginRejected(Exception):
    """The request's Origin is absent, malformed or not on the allowlist."""

    def __init__(self, origin: str, reason: str):
        super().__init__(f"{reason}: {origin!r}")
        self.origin = origin
        self.reason = reason


class UpstreamError(Exception):
    """Forwarding to the backend failed."""

    status_code = 502
    body = "Bad Gateway: upstream unavailable"


class UpstreamUnavailable(UpstreamError):
    """Backend refused the connection or the transport broke."""


class UpstreamTimeout(UpstreamError):
    """Backend did not answer within the configured timeout."""

    status_code = 504
    body = "Gateway Timeout: upstream did not respond in time"
