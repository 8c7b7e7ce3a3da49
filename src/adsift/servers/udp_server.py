import logging
import socketserver
from typing import Dict, List, Optional, Tuple

from dnslib import QTYPE

from ..errors import InvalidDnsQuery, UpstreamUnavailable
from ..pipeline import ClassificationPipeline
from ..stats import StatsCollector
from . import dns_wire
from .transports.udp import udp_query

logger = logging.getLogger("adsift.server")


def _upstream_id(up: Dict) -> str:
    """Brief: Stable "host:port" identifier for an upstream mapping.

    Inputs:
      - up: Upstream mapping with 'host' and optional 'port'.

    Outputs:
      - str: Identifier used in logs and stats.
    """
    host = up.get("host", "")
    try:
        port = int(up.get("port", 53))
    except (TypeError, ValueError):
        port = 53
    return f"{host}:{port}"


def _qtype_name(qtype: Optional[int]) -> str:
    if qtype is None:
        return "?"
    return str(QTYPE.get(qtype, str(qtype)))


def send_query_with_failover(
    query: bytes,
    upstreams: List[Dict],
    timeout_ms: int,
    qname: str,
    qtype: Optional[int] = None,
    stats_collector: Optional[StatsCollector] = None,
) -> Tuple[Optional[bytes], Optional[Dict], str]:
    """
    Sends a raw DNS query to each upstream in order until one answers.

    Args:
        query: The query datagram, forwarded unmodified.
        upstreams: Upstream mappings ({'host': ..., 'port': ...}) in priority
            order.
        timeout_ms: Timeout in milliseconds for each attempt.
        qname: The query name (for logging).
        qtype: The query type (for logging).
        stats_collector: Optional StatsCollector receiving per-upstream
            'ok'/'failed' outcomes and an aggregate 'all_failed'.

    Returns:
        A tuple of (response_wire_bytes, used_upstream, reason).
        reason is 'ok', 'no_upstreams', or 'all_failed'. Worst-case latency
        is len(upstreams) * timeout_ms.
    """
    if not upstreams:
        return None, None, "no_upstreams"

    last_exception: Optional[Exception] = None
    for upstream in upstreams:
        up_id = _upstream_id(upstream)
        host = str(upstream.get("host", ""))
        try:
            port = int(upstream.get("port", 53))
        except (TypeError, ValueError):
            port = 53
        try:
            logger.debug(
                "Forwarding %s type %s to %s", qname, _qtype_name(qtype), up_id
            )
            response_wire = udp_query(host, port, query, timeout_ms=timeout_ms)
        except UpstreamUnavailable as e:
            last_exception = e
            logger.debug("Upstream %s failed for %s: %s; trying next", up_id, qname, e)
            if stats_collector is not None:
                stats_collector.record_upstream_result(up_id, "failed")
            continue

        if stats_collector is not None:
            stats_collector.record_upstream_result(up_id, "ok")
        return response_wire, upstream, "ok"

    logger.warning(
        "All upstreams failed for %s type %s, last error: %s",
        qname,
        _qtype_name(qtype),
        last_exception,
    )
    if stats_collector is not None:
        stats_collector.record_upstream_result("all", "all_failed")
    return None, None, "all_failed"


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles UDP DNS requests.
    This class is instantiated for each incoming DNS query.

    Blocked names get a synthesized 0.0.0.0 answer; everything else is
    forwarded byte-for-byte to the configured upstreams. Malformed datagrams
    and fully failed forwards get no reply at all.

    Example use:
        This handler is used internally by the DNSServer and is not
        typically instantiated directly by users.
    """

    pipeline: Optional[ClassificationPipeline] = None
    upstream_addrs: List[Dict] = []
    timeout_ms = 2000
    stats_collector: Optional[StatsCollector] = None

    def handle(self):
        """Process a single UDP DNS query.

        Inputs:
          - None (called by socketserver for each UDP datagram).
        Outputs:
          - None; sends at most one datagram back to the client.
        """
        data, sock = self.request
        client_ip = self.client_address[0]

        try:
            qname = dns_wire.extract_query_name(data)
        except InvalidDnsQuery as e:
            logger.debug("Dropping malformed query from %s: %s", client_ip, e)
            return

        qtype = dns_wire.query_type(data)
        try:
            if qname and self.pipeline is not None:
                verdict = self.pipeline.classify(qname)
                if verdict.should_block:
                    logger.info(
                        "Blocked DNS %s %s from %s (%s)",
                        qname,
                        _qtype_name(qtype),
                        client_ip,
                        verdict.reason,
                    )
                    try:
                        reply = dns_wire.build_block_response(data)
                    except InvalidDnsQuery as e:
                        logger.debug("Dropping malformed query from %s: %s", client_ip, e)
                        return
                    sock.sendto(reply, self.client_address)
                    return

            wire, _used, reason = send_query_with_failover(
                data,
                self.upstream_addrs,
                self.timeout_ms,
                qname,
                qtype,
                stats_collector=self.stats_collector,
            )
            if wire is None:
                logger.debug("No upstream answer for %s (%s)", qname, reason)
                return
            sock.sendto(wire, self.client_address)
        except Exception:  # pragma: no cover - outermost guard
            logger.exception("Unhandled error while answering %s from %s", qname, client_ip)


class DNSServer:
    """A UDP DNS responder wrapper.

    Example use:
        >>> import threading
        >>> from adsift.pipeline import ClassificationPipeline
        >>> server = DNSServer("127.0.0.1", 0, ClassificationPipeline(), [{"host": "8.8.8.8", "port": 53}])
        >>> t = threading.Thread(target=server.serve_forever, daemon=True)
        >>> t.start()
        >>> server.stop()
    """

    def __init__(
        self,
        host: str,
        port: int,
        pipeline: ClassificationPipeline,
        upstreams: List[Dict],
        timeout_ms: int = 2000,
        stats_collector: Optional[StatsCollector] = None,
    ) -> None:
        """Initialize a UDP DNSServer.

        Inputs:
            host: The host to listen on.
            port: The port to listen on (0 picks a free port).
            pipeline: ClassificationPipeline deciding block vs forward.
            upstreams: Upstream resolver mappings in priority order.
            timeout_ms: Per-upstream timeout in milliseconds.
            stats_collector: Optional StatsCollector for upstream outcomes.
        """
        # Per-server handler class so several servers can coexist in one
        # process (tests start more than one).
        handler = type(
            "BoundDNSUDPHandler",
            (DNSUDPHandler,),
            {
                "pipeline": pipeline,
                "upstream_addrs": list(upstreams),
                "timeout_ms": max(1, int(timeout_ms)),
                "stats_collector": stats_collector,
            },
        )
        try:
            self.server = socketserver.ThreadingUDPServer((host, port), handler)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise

        # Ensure request handler threads do not block shutdown
        self.server.daemon_threads = True
        logger.debug("DNS UDP server bound to %s:%d", *self.server_address[:2])

    @property
    def server_address(self) -> Tuple[str, int]:
        return self.server.server_address

    def serve_forever(self) -> None:
        """Start the UDP server loop; returns after stop() or KeyboardInterrupt."""
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:  # pragma: no cover
            pass

    def stop(self) -> None:
        """Request graceful shutdown and close the underlying UDP socket.

        Inputs:
          - None
        Outputs:
          - None; best-effort shutdown suitable for use from signal handlers.
        """
        try:
            self.server.shutdown()
        except Exception:  # pragma: no cover
            logger.exception("Error while shutting down UDP server")
        try:
            self.server.server_close()
        except Exception:  # pragma: no cover
            logger.exception("Error while closing UDP server socket")
