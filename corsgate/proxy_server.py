"""
corsgate HTTP front end.

Every request runs through the CORS engine first. Health checks, preflight
answers and rejections are written here directly; allowed actual requests
are relayed through the Forwarder with the engine's CORS headers merged
into the backend response.

Usage:
    from corsgate.proxy_server import ProxyServer
    server = ProxyServer(holder, forwarder, host="0.0.0.0", port=8080)
    server.serve_forever()
"""
from __future__ import annotations

import http.server
import threading
from typing import Optional
from urllib.parse import urlsplit

from corsgate.cors import CorsDecision, EngineHolder, TEXT_PLAIN, merge_vary
from corsgate.errors import UpstreamError
from corsgate.forwarder import Forwarder
from logging_config import get_logger

logger = get_logger("proxy")

_MAX_CHUNK_LINE = 65537

# send_response() already writes these.
_OWN_HEADERS = frozenset({"date", "server"})


class _RequestBodyError(Exception):
    """Request body could not be read; answered without contacting the backend."""

    def __init__(self, status_code: int, body: str):
        super().__init__(body)
        self.status_code = status_code
        self.body = body


class CORSProxyHandler(http.server.BaseHTTPRequestHandler):
    """CORS-enforcing reverse proxy handler."""

    server_version = "corsgate/1.0"

    # ---- dispatch ----

    def _handle(self):
        # One engine snapshot for the whole request.
        engine = self.server.holder.engine
        decision = engine.decide(self.command, self.path, self.headers)

        if not decision.allowed:
            logger.warning(
                "CORS origin rejected: reason=%s origin=%r method=%s path=%s client=%s",
                decision.reason, decision.origin, self.command,
                self._request_path(), self.client_address[0],
                extra={"cors_reason": decision.reason, "cors_origin": decision.origin},
            )
            return self._send_decision(decision)

        if decision.forward:
            return self._forward(decision)
        return self._send_decision(decision)

    def __getattr__(self, name):
        # handle_one_request() looks up do_<METHOD>; every verb goes through the engine.
        if name.startswith("do_"):
            return self._handle
        raise AttributeError(name)

    def version_string(self) -> str:
        return self.server_version

    # ---- helpers ----

    def _request_path(self) -> str:
        """Origin-form target (path + query), also for absolute-form requests."""
        if self.path.startswith("/"):
            return self.path
        parts = urlsplit(self.path)
        path = parts.path or "/"
        return f"{path}?{parts.query}" if parts.query else path

    def _send_text(self, status: int, body: bytes, headers: Optional[dict] = None,
                   content_type: Optional[str] = TEXT_PLAIN):
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        if status != 204:
            if content_type:
                self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body and self.command != "HEAD":
            self.wfile.write(body)

    def _send_decision(self, decision: CorsDecision):
        """Write a response the engine fully determined (health, preflight, 403)."""
        self._send_text(
            decision.status_code,
            decision.body,
            decision.response_headers,
            decision.content_type,
        )

    def _read_request_body(self) -> Optional[bytes]:
        """Read the client body by Content-Length or chunked framing.

        Returns None when the request carries no body.

        Raises:
            _RequestBodyError: malformed framing (400) or too large (413).
        """
        limit = self.server.max_body_size
        transfer_encoding = self.headers.get("Transfer-Encoding", "")
        if "chunked" in transfer_encoding.lower():
            return self._read_chunked_body(limit)

        length_header = self.headers.get("Content-Length")
        if length_header is None:
            return None
        try:
            length = int(length_header.strip())
        except ValueError:
            raise _RequestBodyError(400, "Bad Request: invalid Content-Length") from None
        if length < 0:
            raise _RequestBodyError(400, "Bad Request: invalid Content-Length")
        if limit and length > limit:
            raise _RequestBodyError(413, "Request Entity Too Large")
        if length == 0:
            return b""
        data = self.rfile.read(length)
        if len(data) != length:
            raise _RequestBodyError(400, "Bad Request: truncated body")
        return data

    def _read_chunked_body(self, limit: int) -> bytes:
        chunks = []
        total = 0
        while True:
            line = self.rfile.readline(_MAX_CHUNK_LINE)
            if not line:
                raise _RequestBodyError(400, "Bad Request: truncated chunked body")
            size_field = line.split(b";", 1)[0].strip()
            try:
                size = int(size_field, 16)
            except ValueError:
                raise _RequestBodyError(400, "Bad Request: invalid chunk size") from None
            if size < 0:
                raise _RequestBodyError(400, "Bad Request: invalid chunk size")
            if size == 0:
                # Trailer section ends with an empty line.
                while True:
                    trailer = self.rfile.readline(_MAX_CHUNK_LINE)
                    if trailer in (b"\r\n", b"\n", b""):
                        break
                return b"".join(chunks)
            total += size
            if limit and total > limit:
                raise _RequestBodyError(413, "Request Entity Too Large")
            data = self.rfile.read(size)
            if len(data) != size:
                raise _RequestBodyError(400, "Bad Request: truncated chunked body")
            self.rfile.readline(_MAX_CHUNK_LINE)
            chunks.append(data)

    # ---- forwarding ----

    def _forward(self, decision: CorsDecision):
        try:
            body = self._read_request_body()
        except _RequestBodyError as e:
            logger.info("bad request body from %s: %s", self.client_address[0], e.body)
            self.close_connection = True
            return self._send_text(e.status_code, e.body.encode("utf-8"), decision.response_headers)

        forwarder: Forwarder = self.server.forwarder
        try:
            upstream = forwarder.forward(
                self.command,
                self._request_path(),
                self.headers.items(),
                body,
                client_ip=self.client_address[0],
            )
        except UpstreamError as e:
            logger.error(
                "upstream failure: %s %s -> %d (%s)",
                self.command, self._request_path(), e.status_code, e,
                extra={"upstream_status": e.status_code},
            )
            return self._send_text(e.status_code, e.body.encode("utf-8"), decision.response_headers)

        try:
            self.send_response(upstream.status_code, upstream.reason or None)
            vary_values = []
            for name, value in upstream.headers:
                lowered = name.lower()
                if lowered == "vary":
                    vary_values.append(value)
                elif lowered not in _OWN_HEADERS:
                    self.send_header(name, value)
            for name, value in decision.response_headers.items():
                if name == "Vary":
                    value = merge_vary(", ".join(vary_values), value)
                self.send_header(name, value)
            self.end_headers()
            if self.command != "HEAD":
                for chunk in upstream.iter_body():
                    self.wfile.write(chunk)
        except UpstreamError as e:
            # Headers are already on the wire; only the connection can signal it.
            logger.error("upstream failure while streaming %s %s: %s",
                         self.command, self._request_path(), e)
            self.close_connection = True
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("client %s disconnected during %s %s",
                         self.client_address[0], self.command, self._request_path())
            self.close_connection = True
        finally:
            upstream.close()

    def log_message(self, format, *args):
        """Route the access log through the corsgate logger tree."""
        logger.info("%s - %s", self.address_string(), format % args)


class CORSProxyServer(http.server.ThreadingHTTPServer):
    """ThreadingHTTPServer carrying the engine holder and forwarder."""

    daemon_threads = True

    def __init__(self, server_address, holder: EngineHolder, forwarder: Forwarder,
                 max_body_size: int = 1_048_576):
        self.holder = holder
        self.forwarder = forwarder
        self.max_body_size = max_body_size
        super().__init__(server_address, CORSProxyHandler)


class ProxyServer:
    """Owns the listening socket; foreground or background serving."""

    def __init__(self, holder: EngineHolder, forwarder: Forwarder,
                 host: str = "0.0.0.0", port: int = 8080,
                 max_body_size: int = 1_048_576):
        self.host = host
        self._server = CORSProxyServer((host, port), holder, forwarder, max_body_size)
        self._thread = None

    @property
    def port(self) -> int:
        """Bound port (useful when constructed with port 0)."""
        return self._server.server_address[1]

    @property
    def holder(self) -> EngineHolder:
        return self._server.holder

    def serve_forever(self):
        self._server.serve_forever()

    def start_background(self):
        """Serve on a daemon thread."""
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="corsgate-proxy",
        )
        self._thread.start()

    def shutdown(self):
        """Stop serve_forever(); must not be called from the serving thread."""
        self._server.shutdown()

    def close(self):
        self._server.server_close()

    def stop(self):
        """Stop the background thread (if any) and close the socket."""
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self._server.server_close()
