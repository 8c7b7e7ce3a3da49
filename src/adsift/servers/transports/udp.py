import socket
import time
from typing import Optional

from ...errors import UpstreamUnavailable


class UDPError(UpstreamUnavailable):
    """
    Brief: DNS-over-UDP transport error (timeout, refusal, unreachable host).

    Inputs:
    - message: description including the upstream address

    Outputs:
    - Exception instance
    """

    pass


def _family_for(host: str) -> int:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def udp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    timeout_ms: int = 2000,
    source_ip: Optional[str] = None,
) -> bytes:
    """
    Brief: Send one DNS datagram upstream and wait for the matching reply.

    Inputs:
    - host: upstream resolver IP (IPv4 or IPv6 literal)
    - port: upstream UDP port
    - query: wire-format DNS query bytes, sent unmodified
    - timeout_ms: total time to wait for a reply, in milliseconds
    - source_ip: optional source address to bind

    Outputs:
    - bytes: wire-format DNS response whose ID matches the query ID.
      Datagrams with a different ID are discarded while time remains.

    Example:
        >>> try:
        ...     udp_query('127.0.0.1', 9, b'\\x00\\x01', timeout_ms=50)
        ... except UDPError:
        ...     pass
    """
    deadline = time.monotonic() + max(1, int(timeout_ms)) / 1000.0
    want_id = query[:2]
    try:
        with socket.socket(_family_for(host), socket.SOCK_DGRAM) as s:
            if source_ip:
                s.bind((source_ip, 0))
            s.sendto(query, (host, int(port)))
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise socket.timeout("timed out")
                s.settimeout(remaining)
                data, _ = s.recvfrom(4096)
                if len(want_id) < 2 or data[:2] == want_id:
                    return data
    except OSError as e:
        raise UDPError(f"UDP error from {host}:{port}: {e}") from e
