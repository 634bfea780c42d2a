"""Upstream request forwarding.

Relays requests the CORS engine allowed to the configured backend with
``requests`` and hands the response back for streaming. Transport failures
become UpstreamTimeout (504) or UpstreamUnavailable (502), so they can never
be mistaken for the engine's own 403.

Thread-safety: one requests.Session per thread (threading.local).
"""
from __future__ import annotations

import threading
from typing import Iterable, Iterator, Optional

import requests
import urllib3

from corsgate.errors import UpstreamTimeout, UpstreamUnavailable
from logging_config import get_logger

logger = get_logger("forwarder")

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

_STREAM_CHUNK_SIZE = 65536


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    """Header names listed in Connection, which are hop-by-hop too."""
    tokens = set()
    for name, value in headers:
        if name.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def filter_response_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Drop hop-by-hop and backend Access-Control-* headers.

    The proxy supplies its own CORS headers; a backend that adds permissive
    ones must not widen the policy.
    """
    headers = list(headers)
    drop = HOP_BY_HOP_HEADERS | _connection_tokens(headers)
    return [
        (name, value) for name, value in headers
        if name.lower() not in drop and not name.lower().startswith("access-control-")
    ]


class UpstreamResponse:
    """Backend response with an undecoded, streamable body."""

    def __init__(self, response: requests.Response):
        self._response = response
        self.status_code = response.status_code
        self.reason = response.reason or ""
        self.headers = filter_response_headers(response.raw.headers.iteritems())

    def iter_body(self, chunk_size: int = _STREAM_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield raw body bytes (Content-Encoding is preserved)."""
        try:
            for chunk in self._response.raw.stream(chunk_size, decode_content=False):
                if chunk:
                    yield chunk
        except urllib3.exceptions.ReadTimeoutError as e:
            raise UpstreamTimeout(str(e)) from e
        except urllib3.exceptions.HTTPError as e:
            raise UpstreamUnavailable(str(e)) from e

    def close(self) -> None:
        self._response.close()


class Forwarder:
    """Forwards requests to ``base_url`` (scheme://host:port)."""

    def __init__(self, base_url: str, timeout: float = 60.0, session_factory=requests.Session):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session_factory = session_factory
        self._local = threading.local()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            # No python-requests defaults (User-Agent, Accept-Encoding) leak upstream.
            session.headers.clear()
            session.trust_env = False
            self._local.session = session
        return session

    def target_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path

    def build_request_headers(
        self,
        headers: Iterable[tuple[str, str]],
        client_ip: str,
    ) -> dict[str, str]:
        """Copy client headers for the upstream request.

        Hop-by-hop headers and Content-Length are dropped (requests recomputes
        the length). Host is kept; X-Forwarded-* and X-Real-IP are set.
        """
        headers = list(headers)
        drop = HOP_BY_HOP_HEADERS | _connection_tokens(headers) | {"content-length"}

        merged: dict[str, list[str]] = {}
        names: dict[str, str] = {}
        for name, value in headers:
            key = name.lower()
            if key in drop:
                continue
            names.setdefault(key, name)
            merged.setdefault(key, []).append(value)

        out = {}
        for key, values in merged.items():
            sep = "; " if key == "cookie" else ", "
            out[names[key]] = sep.join(values)

        forwarded_for = out.pop(names.get("x-forwarded-for", "X-Forwarded-For"), "")
        out["X-Forwarded-For"] = f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip
        for key in ("x-real-ip", "x-forwarded-host", "x-forwarded-proto"):
            out.pop(names.get(key, ""), None)
        out["X-Real-IP"] = client_ip
        host = merged.get("host")
        if host:
            out["X-Forwarded-Host"] = host[0]
        # Listener is plain HTTP; a client-sent value is discarded.
        out["X-Forwarded-Proto"] = "http"
        return out

    def forward(
        self,
        method: str,
        path: str,
        headers: Iterable[tuple[str, str]],
        body: Optional[bytes],
        client_ip: str,
    ) -> UpstreamResponse:
        """Send one request upstream and return the streaming response.

        Raises:
            UpstreamTimeout: connect or read timeout.
            UpstreamUnavailable: any other transport failure.
        """
        url = self.target_url(path)
        upstream_headers = self.build_request_headers(headers, client_ip)
        logger.debug("forwarding %s %s", method, url)
        try:
            response = self._session().request(
                method,
                url,
                headers=upstream_headers,
                data=body,
                stream=True,
                allow_redirects=False,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise UpstreamTimeout(str(e)) from e
        except requests.exceptions.RequestException as e:
            raise UpstreamUnavailable(str(e)) from e
        return UpstreamResponse(response)
