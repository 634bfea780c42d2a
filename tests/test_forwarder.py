"""forwarder module tests: header filtering, request building, error mapping."""
from unittest.mock import MagicMock

import pytest
import requests
import urllib3

from corsgate.errors import UpstreamTimeout, UpstreamUnavailable
from corsgate.forwarder import Forwarder, UpstreamResponse, filter_response_headers


def _fake_response(status=200, reason="OK", headers=None, chunks=(b"hello",)):
    response = MagicMock()
    response.status_code = status
    response.reason = reason
    response.raw.headers = urllib3.HTTPHeaderDict()
    for name, value in (headers or []):
        response.raw.headers.add(name, value)
    response.raw.stream.return_value = iter(chunks)
    return response


@pytest.fixture
def session():
    """requests.Session 대역"""
    s = MagicMock()
    s.headers = {"User-Agent": "python-requests", "Accept-Encoding": "gzip"}
    s.request.return_value = _fake_response()
    return s


@pytest.fixture
def forwarder(session):
    return Forwarder("http://backend:8000/", timeout=5.0, session_factory=lambda: session)


# ---------------------------------------------------------------------------
# Response header filtering
# ---------------------------------------------------------------------------

class TestFilterResponseHeaders:
    """filter_response_headers tests."""

    def test_drops_hop_by_hop(self):
        """Connection, Transfer-Encoding, Keep-Alive are removed."""
        headers = [
            ("Content-Type", "text/html"),
            ("Connection", "keep-alive"),
            ("Transfer-Encoding", "chunked"),
            ("Keep-Alive", "timeout=5"),
        ]
        assert filter_response_headers(headers) == [("Content-Type", "text/html")]

    def test_drops_connection_listed_headers(self):
        """Headers named by Connection are hop-by-hop too."""
        headers = [("Connection", "close, X-Internal"), ("X-Internal", "1"), ("ETag", '"a"')]
        assert filter_response_headers(headers) == [("ETag", '"a"')]

    def test_drops_backend_cors_headers(self):
        """Backend Access-Control-* headers never reach the client."""
        headers = [
            ("Access-Control-Allow-Origin", "*"),
            ("access-control-allow-credentials", "true"),
            ("Vary", "Accept-Encoding"),
        ]
        assert filter_response_headers(headers) == [("Vary", "Accept-Encoding")]

    def test_keeps_repeated_headers(self):
        """Repeated headers such as Set-Cookie are kept individually."""
        headers = [("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")]
        assert filter_response_headers(headers) == headers


# ---------------------------------------------------------------------------
# Request header building
# ---------------------------------------------------------------------------

class TestBuildRequestHeaders:
    """Forwarder.build_request_headers tests."""

    def test_copies_end_to_end_headers(self, forwarder):
        """Ordinary headers are copied; Host is preserved."""
        out = forwarder.build_request_headers(
            [("Host", "api.example.com"), ("Authorization", "Bearer t"), ("Origin", "http://a.com")],
            "10.0.0.1",
        )
        assert out["Host"] == "api.example.com"
        assert out["Authorization"] == "Bearer t"
        assert out["Origin"] == "http://a.com"

    def test_drops_hop_by_hop_and_length(self, forwarder):
        """Hop-by-hop headers and Content-Length are not forwarded."""
        out = forwarder.build_request_headers(
            [("Connection", "keep-alive"), ("Transfer-Encoding", "chunked"),
             ("Content-Length", "12"), ("Upgrade", "websocket"), ("Accept", "*/*")],
            "10.0.0.1",
        )
        lowered = {k.lower() for k in out}
        assert not lowered & {"connection", "transfer-encoding", "content-length", "upgrade"}
        assert out["Accept"] == "*/*"

    def test_forwarded_headers(self, forwarder):
        """X-Forwarded-For/Host/Proto and X-Real-IP are set."""
        out = forwarder.build_request_headers([("Host", "api.example.com")], "10.0.0.1")
        assert out["X-Forwarded-For"] == "10.0.0.1"
        assert out["X-Real-IP"] == "10.0.0.1"
        assert out["X-Forwarded-Host"] == "api.example.com"
        assert out["X-Forwarded-Proto"] == "http"

    def test_forwarded_for_appended(self, forwarder):
        """An existing X-Forwarded-For chain is extended."""
        out = forwarder.build_request_headers([("x-forwarded-for", "1.2.3.4")], "10.0.0.1")
        assert out["X-Forwarded-For"] == "1.2.3.4, 10.0.0.1"
        assert "x-forwarded-for" not in out

    def test_client_forwarded_host_replaced(self, forwarder):
        """A client-supplied X-Forwarded-Host is overwritten with Host."""
        out = forwarder.build_request_headers(
            [("Host", "real.example.com"), ("X-Forwarded-Host", "spoofed.com")], "10.0.0.1",
        )
        assert out["X-Forwarded-Host"] == "real.example.com"
        assert "spoofed.com" not in out.values()

    def test_client_forwarding_headers_overwritten(self, forwarder):
        """Client X-Forwarded-Proto and X-Real-IP never survive, in any case."""
        out = forwarder.build_request_headers(
            [("x-forwarded-proto", "https"), ("X-REAL-IP", "6.6.6.6"), ("Host", "h")], "10.0.0.1",
        )
        assert out["X-Forwarded-Proto"] == "http"
        assert out["X-Real-IP"] == "10.0.0.1"
        lowered = [k.lower() for k in out]
        assert lowered.count("x-forwarded-proto") == 1
        assert lowered.count("x-real-ip") == 1
        assert "6.6.6.6" not in out.values()

    def test_repeated_headers_joined(self, forwarder):
        """Repeated headers are joined; cookies with '; '."""
        out = forwarder.build_request_headers(
            [("Cookie", "a=1"), ("Cookie", "b=2"), ("Accept", "text/html"), ("Accept", "*/*")],
            "10.0.0.1",
        )
        assert out["Cookie"] == "a=1; b=2"
        assert out["Accept"] == "text/html, */*"


# ---------------------------------------------------------------------------
# forward()
# ---------------------------------------------------------------------------

class TestForward:
    """Forwarder.forward tests."""

    def test_target_url(self, forwarder):
        """Path and query are appended to the base URL."""
        assert forwarder.target_url("/api/items?page=2") == "http://backend:8000/api/items?page=2"
        assert forwarder.target_url("x") == "http://backend:8000/x"

    def test_request_arguments(self, forwarder, session):
        """Streaming, no redirects, configured timeout."""
        forwarder.forward("POST", "/api", [("Host", "h")], b"{}", client_ip="10.0.0.1")
        args, kwargs = session.request.call_args
        assert args == ("POST", "http://backend:8000/api")
        assert kwargs["data"] == b"{}"
        assert kwargs["stream"] is True
        assert kwargs["allow_redirects"] is False
        assert kwargs["timeout"] == 5.0

    def test_session_defaults_cleared(self, forwarder, session):
        """requests default headers do not leak upstream; env proxies ignored."""
        forwarder.forward("GET", "/", [], None, client_ip="10.0.0.1")
        assert session.headers == {}
        assert session.trust_env is False

    def test_session_reused_per_thread(self, session):
        """One session per thread."""
        factory = MagicMock(return_value=session)
        fwd = Forwarder("http://backend", session_factory=factory)
        fwd.forward("GET", "/", [], None, client_ip="1.1.1.1")
        fwd.forward("GET", "/", [], None, client_ip="1.1.1.1")
        assert factory.call_count == 1

    def test_response_wrapped(self, forwarder, session):
        """UpstreamResponse exposes status, reason, filtered headers, raw body."""
        session.request.return_value = _fake_response(
            status=201, reason="Created",
            headers=[("Content-Type", "application/json"), ("Transfer-Encoding", "chunked"),
                     ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")],
            chunks=(b"ab", b"", b"cd"),
        )
        upstream = forwarder.forward("GET", "/", [], None, client_ip="1.1.1.1")
        assert isinstance(upstream, UpstreamResponse)
        assert upstream.status_code == 201
        assert upstream.reason == "Created"
        assert upstream.headers == [
            ("Content-Type", "application/json"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2"),
        ]
        assert list(upstream.iter_body()) == [b"ab", b"cd"]
        upstream.close()

    def test_body_not_decoded(self, forwarder, session):
        """Body bytes are streamed with decode_content=False."""
        upstream = forwarder.forward("GET", "/", [], None, client_ip="1.1.1.1")
        list(upstream.iter_body())
        response = session.request.return_value
        response.raw.stream.assert_called_once_with(65536, decode_content=False)

    def test_timeout_maps_to_504(self, forwarder, session):
        """requests Timeout -> UpstreamTimeout (504)."""
        session.request.side_effect = requests.exceptions.ReadTimeout("slow")
        with pytest.raises(UpstreamTimeout) as exc_info:
            forwarder.forward("GET", "/", [], None, client_ip="1.1.1.1")
        assert exc_info.value.status_code == 504

    def test_connect_timeout_maps_to_504(self, forwarder, session):
        """ConnectTimeout is a timeout, not an outage."""
        session.request.side_effect = requests.exceptions.ConnectTimeout("slow connect")
        with pytest.raises(UpstreamTimeout):
            forwarder.forward("GET", "/", [], None, client_ip="1.1.1.1")

    def test_connection_error_maps_to_502(self, forwarder, session):
        """ConnectionError -> UpstreamUnavailable (502)."""
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(UpstreamUnavailable) as exc_info:
            forwarder.forward("GET", "/", [], None, client_ip="1.1.1.1")
        assert exc_info.value.status_code == 502

    def test_streaming_failure_mapped(self, forwarder, session):
        """urllib3 errors while streaming the body become UpstreamError."""
        response = _fake_response()
        response.raw.stream.side_effect = urllib3.exceptions.ProtocolError("reset")
        session.request.return_value = response
        upstream = forwarder.forward("GET", "/", [], None, client_ip="1.1.1.1")
        with pytest.raises(UpstreamUnavailable):
            list(upstream.iter_body())
