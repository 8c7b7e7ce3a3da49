"""HTTP/HTTPS filtering proxy.

Brief:
  Reads one request head per connection, classifies the target with the
  shared ClassificationPipeline and then either answers locally (block page,
  403 for CONNECT, 502 when the origin is unreachable) or connects to the
  origin and relays bytes in both directions until either side closes.

Inputs:
  - Client TCP connections speaking HTTP/1.x proxy requests

Outputs:
  - Block pages, tunnel/forward relays, and proxy outcome stats
"""

from __future__ import annotations

import html
import logging
import socket
import socketserver
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from ..errors import InvalidHttpRequest, UpstreamUnavailable
from ..pipeline import ClassificationPipeline
from ..stats import StatsCollector
from ..verdict import Verdict

logger = logging.getLogger("adsift.proxy")

MAX_HEAD_BYTES = 64 * 1024
RELAY_CHUNK = 64 * 1024
DEFAULT_CONNECT_PORT = 443

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "proxy-connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "upgrade",
    }
)

CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"

BLOCK_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>Blocked</title></head>
<body style="font-family: sans-serif; margin: 3em;">
<h1>Request blocked</h1>
<p><code>{url}</code></p>
<p>Category: {category}<br>Reason: {reason}</p>
</body>
</html>
"""


@dataclass(frozen=True)
class ProxyRequest:
    """Brief: Parsed proxy request head.

    Inputs (constructor fields):
      - method: Request method, upper-cased.
      - target_url: URL handed to the classifier ("https://host/" for CONNECT).
      - host, port: Origin authority.
      - path: Origin-form request target ("" for CONNECT).
      - version: HTTP version token from the request line.
      - headers: Header (name, value) pairs in arrival order.
      - body: Bytes that followed the head in the initial read.

    Outputs:
      - Immutable ProxyRequest instance.
    """

    method: str
    target_url: str
    host: str
    port: int
    path: str
    version: str = "HTTP/1.1"
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    @property
    def is_connect(self) -> bool:
        return self.method == "CONNECT"

    @property
    def authority(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None


def _split_authority(authority: str, default_port: int) -> Tuple[str, int]:
    """Brief: Split "host[:port]" (IPv6 in brackets) into host and port.

    Example:
      >>> _split_authority("example.com:8443", 443)
      ('example.com', 8443)
      >>> _split_authority("[::1]", 80)
      ('::1', 80)
    """
    text = authority.strip()
    if not text:
        raise InvalidHttpRequest("empty authority")
    if text.startswith("["):
        end = text.find("]")
        if end < 0:
            raise InvalidHttpRequest(f"bad IPv6 authority {authority!r}")
        host = text[1:end]
        rest = text[end + 1 :]
        port_text = rest[1:] if rest.startswith(":") else ""
    elif text.count(":") == 1:
        host, port_text = text.split(":", 1)
    else:
        host, port_text = text, ""
    if not host:
        raise InvalidHttpRequest(f"missing host in {authority!r}")
    if not port_text:
        return host.lower(), default_port
    try:
        port = int(port_text)
    except ValueError as e:
        raise InvalidHttpRequest(f"bad port in {authority!r}") from e
    if not 0 < port < 65536:
        raise InvalidHttpRequest(f"port out of range in {authority!r}")
    return host.lower(), port


def parse_request_head(data: bytes) -> ProxyRequest:
    """Brief: Parse the request line and headers of a proxy request.

    Inputs:
      - data: Bytes from a single read of the client socket.

    Outputs:
      - ProxyRequest. CONNECT authorities become "https://host/" targets;
        absolute URIs are used as-is; origin-form targets are joined with the
        Host header as "http://host/path".

    Raises:
      - InvalidHttpRequest: no request line, unknown target form, or a
        relative target without a Host header.

    Example:
      >>> r = parse_request_head(b"CONNECT ads.example.com:443 HTTP/1.1\\r\\n\\r\\n")
      >>> r.target_url, r.port
      ('https://ads.example.com/', 443)
    """
    head, sep, body = data.partition(b"\r\n\r\n")
    if not sep:
        head, sep, body = data.partition(b"\n\n")
    text = head.decode("iso-8859-1")
    lines = text.replace("\r\n", "\n").split("\n")
    parts = lines[0].split() if lines else []
    if len(parts) != 3:
        raise InvalidHttpRequest(f"malformed request line {lines[0][:80]!r}")
    method, target, version = parts[0].upper(), parts[1], parts[2]

    headers: List[Tuple[str, str]] = []
    for line in lines[1:]:
        if not line or ":" not in line:
            continue
        name, value = line.split(":", 1)
        headers.append((name.strip(), value.strip()))

    if method == "CONNECT":
        host, port = _split_authority(target, DEFAULT_CONNECT_PORT)
        url_host = f"[{host}]" if ":" in host else host
        return ProxyRequest(
            method, f"https://{url_host}/", host, port, "", version, headers, body
        )

    lowered = target.lower()
    if lowered.startswith("http://") or lowered.startswith("https://"):
        split = urlsplit(target)
        default_port = 443 if split.scheme.lower() == "https" else 80
        host, port = _split_authority(split.netloc.rsplit("@", 1)[-1], default_port)
        path = split.path or "/"
        if split.query:
            path = f"{path}?{split.query}"
        return ProxyRequest(method, target, host, port, path, version, headers, body)

    if target.startswith("/"):
        host_header = None
        for name, value in headers:
            if name.lower() == "host":
                host_header = value
                break
        if not host_header:
            raise InvalidHttpRequest("relative request target without Host header")
        host, port = _split_authority(host_header, 80)
        return ProxyRequest(
            method,
            f"http://{host_header.strip()}{target}",
            host,
            port,
            target,
            version,
            headers,
            body,
        )

    raise InvalidHttpRequest(f"unsupported request target {target[:80]!r}")


def build_origin_request(req: ProxyRequest) -> bytes:
    """Brief: Rewrite a proxy request for the origin server.

    Inputs:
      - req: Parsed non-CONNECT request.

    Outputs:
      - bytes: Origin-form request line, end-to-end headers only (hop-by-hop
        headers and any header listed in Connection: removed), a Host header,
        "Connection: close", then whatever body bytes arrived with the head.
    """
    named_in_connection = set()
    for name, value in req.headers:
        if name.lower() in ("connection", "proxy-connection"):
            named_in_connection.update(
                token.strip().lower() for token in value.split(",") if token.strip()
            )
    drop = HOP_BY_HOP_HEADERS | named_in_connection

    lines = [f"{req.method} {req.path or '/'} {req.version}"]
    has_host = False
    for name, value in req.headers:
        lname = name.lower()
        if lname in drop:
            continue
        if lname == "host":
            has_host = True
        lines.append(f"{name}: {value}")
    if not has_host:
        default = 443 if req.target_url.lower().startswith("https://") else 80
        host = req.authority if req.port != default else req.host
        lines.append(f"Host: {host}")
    lines.append("Connection: close")
    head = "\r\n".join(lines) + "\r\n\r\n"
    return head.encode("iso-8859-1") + req.body


def render_block_page(url: str, verdict: Verdict) -> bytes:
    body = BLOCK_PAGE_TEMPLATE.format(
        url=html.escape(url),
        category=html.escape(verdict.category.value),
        reason=html.escape(verdict.reason),
    ).encode("utf-8")
    head = (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Cache-Control: no-store\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode("ascii") + body


def simple_response(status: str) -> bytes:
    """Brief: Build a bodyless "HTTP/1.1 <status>" response with Connection: close.

    Example:
      >>> simple_response("403 Forbidden").split(b"\\r\\n")[0]
      b'HTTP/1.1 403 Forbidden'
    """
    return (
        f"HTTP/1.1 {status}\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
    ).encode("ascii")


def _shutdown_quietly(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # Already closed by the peer or the other relay direction.
        pass


def _pump(src: socket.socket, dst: socket.socket, both: Tuple[socket.socket, ...]) -> int:
    total = 0
    try:
        while True:
            chunk = src.recv(RELAY_CHUNK)
            if not chunk:
                break
            dst.sendall(chunk)
            total += len(chunk)
    except OSError as e:
        logger.debug("Relay direction ended: %s", e)
    finally:
        for s in both:
            _shutdown_quietly(s)
    return total


def relay(client: socket.socket, upstream: socket.socket) -> None:
    """Brief: Copy bytes both ways until either side closes.

    Inputs:
      - client: Client socket.
      - upstream: Origin socket.

    Outputs:
      - None. Upstream-to-client runs on a helper thread and client-to-upstream
        on the calling thread; when either direction ends both sockets are
        shut down so the other direction unblocks.
    """
    client.settimeout(None)
    upstream.settimeout(None)
    both = (client, upstream)
    helper = threading.Thread(
        target=_pump, args=(upstream, client, both), name="proxy-relay", daemon=True
    )
    helper.start()
    _pump(client, upstream, both)
    helper.join()


class ProxyHandler(socketserver.BaseRequestHandler):
    """
    Handles one proxy client connection.

    Example use:
        This handler is used internally by ProxyServer and is not
        typically instantiated directly by users.
    """

    pipeline: Optional[ClassificationPipeline] = None
    connect_timeout_ms = 10000
    read_timeout_ms = 30000
    stats_collector: Optional[StatsCollector] = None

    def _record(self, outcome: str) -> None:
        if self.stats_collector is not None:
            self.stats_collector.record_proxy_result(outcome)

    def _open_upstream(self, req: ProxyRequest) -> socket.socket:
        try:
            return socket.create_connection(
                (req.host, req.port), timeout=self.connect_timeout_ms / 1000.0
            )
        except OSError as e:
            raise UpstreamUnavailable(f"cannot connect to {req.authority}: {e}") from e

    def handle(self) -> None:
        client: socket.socket = self.request
        client_ip = self.client_address[0]
        client.settimeout(self.read_timeout_ms / 1000.0)
        try:
            data = client.recv(MAX_HEAD_BYTES)
        except OSError as e:
            logger.debug("Read from %s failed: %s", client_ip, e)
            return
        if not data:
            return

        try:
            req = parse_request_head(data)
        except InvalidHttpRequest as e:
            logger.debug("Closing connection from %s: %s", client_ip, e)
            return

        try:
            self._dispatch(client, client_ip, req)
        except Exception:  # pragma: no cover - outermost guard
            logger.exception("Unhandled error while proxying %s", req.target_url)

    def _dispatch(self, client: socket.socket, client_ip: str, req: ProxyRequest) -> None:
        verdict = (
            self.pipeline.classify(req.target_url)
            if self.pipeline is not None
            else Verdict.clean()
        )
        if verdict.should_block:
            logger.info(
                "Blocked %s %s from %s (%s)",
                req.method,
                req.target_url,
                client_ip,
                verdict.reason,
            )
            self._record("blocked")
            if req.is_connect:
                client.sendall(simple_response("403 Forbidden"))
            else:
                client.sendall(render_block_page(req.target_url, verdict))
            return

        try:
            upstream = self._open_upstream(req)
        except UpstreamUnavailable as e:
            logger.warning("%s", e)
            self._record("bad_gateway")
            client.sendall(simple_response("502 Bad Gateway"))
            return

        with upstream:
            if req.is_connect:
                logger.debug("Tunneling %s for %s", req.authority, client_ip)
                client.sendall(CONNECT_ESTABLISHED)
                if req.body:
                    upstream.sendall(req.body)
                self._record("tunneled")
            else:
                logger.debug("Forwarding %s %s for %s", req.method, req.target_url, client_ip)
                upstream.sendall(build_origin_request(req))
                self._record("forwarded")
            relay(client, upstream)


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


class ProxyServer:
    """A threaded HTTP/HTTPS filtering proxy.

    Example use:
        >>> import threading
        >>> from adsift.pipeline import ClassificationPipeline
        >>> server = ProxyServer("127.0.0.1", 0, ClassificationPipeline())
        >>> t = threading.Thread(target=server.serve_forever, daemon=True)
        >>> t.start()
        >>> server.stop()
    """

    def __init__(
        self,
        host: str,
        port: int,
        pipeline: ClassificationPipeline,
        connect_timeout_ms: int = 10000,
        stats_collector: Optional[StatsCollector] = None,
    ) -> None:
        handler = type(
            "BoundProxyHandler",
            (ProxyHandler,),
            {
                "pipeline": pipeline,
                "connect_timeout_ms": max(1, int(connect_timeout_ms)),
                "stats_collector": stats_collector,
            },
        )
        try:
            self.server = _ThreadingTCPServer((host, port), handler)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise
        logger.debug("Proxy server bound to %s:%d", *self.server_address[:2])

    @property
    def server_address(self) -> Tuple[str, int]:
        return self.server.server_address

    def serve_forever(self) -> None:
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:  # pragma: no cover
            pass

    def stop(self) -> None:
        try:
            self.server.shutdown()
        except Exception:  # pragma: no cover
            logger.exception("Error while shutting down proxy server")
        try:
            self.server.server_close()
        except Exception:  # pragma: no cover
            logger.exception("Error while closing proxy server socket")
