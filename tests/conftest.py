"""
Brief: Global pytest configuration enforcing per-test 10s timeout and
providing loopback stub servers.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import socket
import sys
import threading
import time

import pytest

# Ensure 'src' is on sys.path so 'adsift' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


class UDPStub:
    """
    Brief: Loopback UDP server answering each datagram via a callable.

    Inputs:
      - responder: callable(bytes) -> Optional[bytes]; None means stay silent.

    Outputs:
      - UDPStub with .addr (host, port) and .received (list of datagrams)
    """

    def __init__(self, responder=None):
        self.responder = responder
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.addr = self.sock.getsockname()
        self.received = []
        self._stop = False
        self.thread = threading.Thread(target=self._loop, daemon=True)

    def start(self):
        self.thread.start()
        time.sleep(0.02)
        return self

    def _loop(self):
        while not self._stop:
            try:
                self.sock.settimeout(0.1)
                data, peer = self.sock.recvfrom(4096)
            except OSError:
                continue
            self.received.append(data)
            if self.responder is None:
                continue
            reply = self.responder(data)
            if reply is not None:
                try:
                    self.sock.sendto(reply, peer)
                except OSError:
                    pass

    def close(self):
        self._stop = True
        self.thread.join(timeout=1.0)
        self.sock.close()

    @property
    def upstream(self):
        return {"host": self.addr[0], "port": self.addr[1]}


@pytest.fixture
def udp_stub_factory():
    """
    Brief: Factory fixture creating started UDPStub instances, closed on teardown.

    Inputs:
      - None

    Outputs:
      - callable(responder=None) -> UDPStub
    """
    stubs = []

    def _make(responder=None):
        stub = UDPStub(responder).start()
        stubs.append(stub)
        return stub

    yield _make
    for stub in stubs:
        stub.close()


@pytest.fixture
def closed_tcp_port():
    """Brief: A loopback TCP port that nothing is listening on."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port
