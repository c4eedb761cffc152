"""Shared fixtures: a stub FastCGI peer and a controllable clock."""

from __future__ import annotations

import socket
import threading
from collections.abc import Callable, Iterator

import pytest

from fpmtop.fastcgi import FCGI_STDIN, pack_header

_END_OF_REQUEST = pack_header(FCGI_STDIN, 0)


class StubPeer:
    """Accepts one connection, reads the request, sends a canned reply, closes."""

    def __init__(self, reply: bytes) -> None:
        self.reply = reply
        self.received = b""
        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(1)
        self._server.settimeout(5)
        host, port = self._server.getsockname()
        self.target = f"{host}:{port}"
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _serve(self) -> None:
        try:
            conn, _ = self._server.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(5)
            buf = b""
            while not buf.endswith(_END_OF_REQUEST):
                chunk = conn.recv(4096)
                if not chunk:
                    break
                buf += chunk
            self.received = buf
            conn.sendall(self.reply)

    def close(self) -> None:
        self._server.close()
        self._thread.join(timeout=5)


@pytest.fixture
def stub_peer() -> Iterator[Callable[[bytes], StubPeer]]:
    peers: list[StubPeer] = []

    def start(reply: bytes) -> StubPeer:
        peer = StubPeer(reply)
        peer.start()
        peers.append(peer)
        return peer

    yield start
    for peer in peers:
        peer.close()


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
