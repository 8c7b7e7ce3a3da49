"""
Brief: Tests for adsift.servers.proxy_server parsing helpers and the live proxy.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading

import pytest

from adsift.blocklist import BlocklistStore
from adsift.errors import InvalidHttpRequest, UpstreamUnavailable
from adsift.pipeline import ClassificationPipeline
from adsift.servers.proxy_server import (
    CONNECT_ESTABLISHED,
    ProxyHandler,
    ProxyRequest,
    ProxyServer,
    build_origin_request,
    parse_request_head,
    render_block_page,
    simple_response,
)
from adsift.stats import StatsCollector
from adsift.verdict import Category, Verdict


# Parsing ---------------------------------------------------------------------


def test_parse_connect():
    r = parse_request_head(b"CONNECT Ads.Example.com:8443 HTTP/1.1\r\nHost: x\r\n\r\n")
    assert r.is_connect
    assert (r.host, r.port, r.path) == ("ads.example.com", 8443, "")
    assert r.target_url == "https://ads.example.com/"
    assert r.authority == "ads.example.com:8443"


def test_parse_connect_default_port_and_ipv6():
    assert parse_request_head(b"CONNECT example.com HTTP/1.1\r\n\r\n").port == 443
    r = parse_request_head(b"CONNECT [::1]:8443 HTTP/1.1\r\n\r\n")
    assert (r.host, r.port, r.authority) == ("::1", 8443, "[::1]:8443")
    assert r.target_url == "https://[::1]/"


def test_parse_absolute_uri():
    r = parse_request_head(
        b"GET http://Example.com:8080/a/b?x=1 HTTP/1.1\r\nUser-Agent: t\r\n\r\n"
    )
    assert r.method == "GET"
    assert (r.host, r.port, r.path) == ("example.com", 8080, "/a/b?x=1")
    assert r.target_url == "http://Example.com:8080/a/b?x=1"
    assert r.header("user-agent") == "t"
    assert r.header("missing") is None


def test_parse_origin_form_uses_host_header():
    r = parse_request_head(b"get /index.html HTTP/1.0\r\nHost: example.com\r\n\r\n")
    assert r.method == "GET"
    assert r.target_url == "http://example.com/index.html"
    assert (r.host, r.port, r.version) == ("example.com", 80, "HTTP/1.0")


def test_parse_keeps_body_bytes():
    r = parse_request_head(
        b"POST http://example.com/submit HTTP/1.1\r\nContent-Length: 3\r\n\r\nabc"
    )
    assert r.body == b"abc"


@pytest.mark.parametrize(
    "data",
    [
        b"garbage\r\n\r\n",
        b"GET /x HTTP/1.1\r\n\r\n",
        b"GET ftp://example.com/ HTTP/1.1\r\n\r\n",
        b"CONNECT example.com:99999 HTTP/1.1\r\n\r\n",
        b"CONNECT example.com:abc HTTP/1.1\r\n\r\n",
        b"CONNECT :443 HTTP/1.1\r\n\r\n",
    ],
)
def test_parse_rejects_malformed_heads(data):
    with pytest.raises(InvalidHttpRequest):
        parse_request_head(data)


def test_build_origin_request_strips_hop_by_hop_headers():
    req = ProxyRequest(
        "GET",
        "http://example.com/a",
        "example.com",
        80,
        "/a",
        "HTTP/1.1",
        [
            ("Host", "example.com"),
            ("Proxy-Connection", "keep-alive"),
            ("Connection", "X-Custom"),
            ("X-Custom", "1"),
            ("Accept", "*/*"),
            ("Keep-Alive", "300"),
            ("Proxy-Authorization", "Basic eA=="),
        ],
    )
    assert build_origin_request(req) == (
        b"GET /a HTTP/1.1\r\nHost: example.com\r\nAccept: */*\r\nConnection: close\r\n\r\n"
    )


def test_build_origin_request_adds_host_and_body():
    req = ProxyRequest(
        "POST", "http://example.com:8080/p", "example.com", 8080, "/p", "HTTP/1.1", [], b"xy"
    )
    out = build_origin_request(req)
    assert out.startswith(b"POST /p HTTP/1.1\r\nHost: example.com:8080\r\n")
    assert out.endswith(b"Connection: close\r\n\r\nxy")


def test_build_origin_request_keeps_body_framing_headers():
    body = b"5\r\nhello\r\n0\r\n\r\n"
    req = ProxyRequest(
        "POST",
        "http://example.com/up",
        "example.com",
        80,
        "/up",
        "HTTP/1.1",
        [("Host", "example.com"), ("Transfer-Encoding", "chunked"), ("TE", "trailers")],
        body,
    )
    out = build_origin_request(req)
    assert b"Transfer-Encoding: chunked\r\n" in out
    assert b"TE:" not in out
    assert out.endswith(b"\r\n\r\n" + body)


def test_render_block_page_escapes_and_reports_category():
    verdict = Verdict.blocked("Domain in blocklist", Category.MALWARE, "evil.example")
    page = render_block_page("http://evil.example/<script>", verdict)
    head, _, body = page.partition(b"\r\n\r\n")
    assert head.startswith(b"HTTP/1.1 200 OK")
    assert f"Content-Length: {len(body)}".encode() in head
    assert b"&lt;script&gt;" in body
    assert b"Malware" in body and b"Domain in blocklist" in body


def test_simple_response():
    assert simple_response("502 Bad Gateway") == (
        b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
    )


# Live proxy ------------------------------------------------------------------


class _TCPOrigin:
    """Brief: One-shot loopback origin; echo mode relays bytes back, otherwise
    a canned HTTP response is sent once the received bytes end with `until`."""

    def __init__(self, echo=False, until=b"\r\n\r\n"):
        self.echo = echo
        self.until = until
        self.received = b""
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(1)
        self.port = self.sock.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        try:
            conn, _ = self.sock.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(3.0)
            try:
                if self.echo:
                    while True:
                        chunk = conn.recv(4096)
                        if not chunk:
                            break
                        self.received += chunk
                        conn.sendall(chunk)
                else:
                    while not self.received.endswith(self.until):
                        chunk = conn.recv(4096)
                        if not chunk:
                            break
                        self.received += chunk
                    conn.sendall(
                        b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\nConnection: close\r\n\r\nhello"
                    )
            except OSError:
                pass

    def close(self):
        self.sock.close()
        self.thread.join(timeout=2.0)


@pytest.fixture
def proxy():
    """
    Brief: Start a ProxyServer that blocks ads.example.com on an ephemeral port.

    Inputs:
      - None

    Outputs:
      - (ProxyServer, StatsCollector)
    """
    stats = StatsCollector()
    pipeline = ClassificationPipeline(
        blocklist=BlocklistStore({"ads.example.com"}), stats=stats
    )
    server = ProxyServer(
        "127.0.0.1", 0, pipeline, connect_timeout_ms=1000, stats_collector=stats
    )
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    yield server, stats
    server.stop()
    t.join(timeout=2.0)


def _connect(server):
    c = socket.create_connection(server.server_address[:2], timeout=3.0)
    return c


def _read_all(sock):
    out = b""
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return out
        out += chunk


def test_forward_plain_http(proxy):
    server, stats = proxy
    origin = _TCPOrigin()
    try:
        with _connect(server) as c:
            c.sendall(
                f"GET http://127.0.0.1:{origin.port}/hello HTTP/1.1\r\n"
                f"Host: 127.0.0.1:{origin.port}\r\n"
                "Proxy-Connection: keep-alive\r\n\r\n".encode()
            )
            reply = _read_all(c)
    finally:
        origin.close()

    assert reply.startswith(b"HTTP/1.1 200 OK")
    assert reply.endswith(b"hello")
    assert origin.received.startswith(b"GET /hello HTTP/1.1\r\n")
    assert b"Proxy-Connection" not in origin.received
    assert b"Connection: close\r\n" in origin.received
    assert stats.snapshot().proxy == {"forwarded": 1}


def test_forward_chunked_upload_keeps_transfer_encoding(proxy):
    server, stats = proxy
    origin = _TCPOrigin(until=b"0\r\n\r\n")
    try:
        with _connect(server) as c:
            c.sendall(
                f"POST http://127.0.0.1:{origin.port}/up HTTP/1.1\r\n"
                f"Host: 127.0.0.1:{origin.port}\r\n"
                "Transfer-Encoding: chunked\r\n\r\n"
                "5\r\nhello\r\n0\r\n\r\n".encode()
            )
            reply = _read_all(c)
    finally:
        origin.close()

    assert reply.startswith(b"HTTP/1.1 200 OK")
    head, _, body = origin.received.partition(b"\r\n\r\n")
    assert head.startswith(b"POST /up HTTP/1.1\r\n")
    assert b"\r\nTransfer-Encoding: chunked" in head
    assert body == b"5\r\nhello\r\n0\r\n\r\n"


def test_blocked_http_gets_block_page(proxy, monkeypatch):
    server, stats = proxy

    def no_upstream(self, req):
        raise AssertionError("blocked requests must not reach the origin")

    monkeypatch.setattr(ProxyHandler, "_open_upstream", no_upstream)
    with _connect(server) as c:
        c.sendall(b"GET http://ads.example.com/banner.js HTTP/1.1\r\nHost: ads.example.com\r\n\r\n")
        reply = _read_all(c)

    assert reply.startswith(b"HTTP/1.1 200 OK")
    assert b"Request blocked" in reply
    assert b"Domain in blocklist" in reply
    snap = stats.snapshot()
    assert snap.proxy == {"blocked": 1}
    assert snap.blocked_requests == 1


def test_blocked_connect_gets_403(proxy, monkeypatch):
    server, stats = proxy

    def no_upstream(self, req):
        raise AssertionError("blocked tunnels must not reach the origin")

    monkeypatch.setattr(ProxyHandler, "_open_upstream", no_upstream)
    with _connect(server) as c:
        c.sendall(b"CONNECT ads.example.com:443 HTTP/1.1\r\nHost: ads.example.com:443\r\n\r\n")
        reply = _read_all(c)
    assert reply.startswith(b"HTTP/1.1 403 Forbidden\r\n")
    assert stats.snapshot().proxy == {"blocked": 1}


def test_connect_tunnel_relays_both_directions(proxy):
    server, stats = proxy
    origin = _TCPOrigin(echo=True)
    try:
        with _connect(server) as c:
            c.sendall(f"CONNECT 127.0.0.1:{origin.port} HTTP/1.1\r\n\r\n".encode())
            established = b""
            while len(established) < len(CONNECT_ESTABLISHED):
                chunk = c.recv(len(CONNECT_ESTABLISHED) - len(established))
                assert chunk
                established += chunk
            assert established == CONNECT_ESTABLISHED

            c.sendall(b"\x16\x03\x01ping")
            echoed = b""
            while len(echoed) < 7:
                chunk = c.recv(64)
                assert chunk
                echoed += chunk
            assert echoed == b"\x16\x03\x01ping"
    finally:
        origin.close()
    assert stats.snapshot().proxy == {"tunneled": 1}


def test_unreachable_origin_gets_502(proxy, closed_tcp_port):
    server, stats = proxy
    with _connect(server) as c:
        c.sendall(f"GET http://127.0.0.1:{closed_tcp_port}/ HTTP/1.1\r\n\r\n".encode())
        reply = _read_all(c)
    assert reply.startswith(b"HTTP/1.1 502 Bad Gateway\r\n")
    assert stats.snapshot().proxy == {"bad_gateway": 1}


def test_open_upstream_failure_maps_to_502(proxy, monkeypatch):
    server, stats = proxy

    def refuse(self, req):
        raise UpstreamUnavailable(f"cannot connect to {req.authority}")

    monkeypatch.setattr(ProxyHandler, "_open_upstream", refuse)
    with _connect(server) as c:
        c.sendall(b"CONNECT www.python.org:443 HTTP/1.1\r\n\r\n")
        reply = _read_all(c)
    assert reply.startswith(b"HTTP/1.1 502 Bad Gateway")


def test_malformed_request_closes_without_reply(proxy):
    server, stats = proxy
    with _connect(server) as c:
        c.sendall(b"GET /no-host HTTP/1.1\r\n\r\n")
        assert _read_all(c) == b""
    assert stats.snapshot().total_requests == 0
