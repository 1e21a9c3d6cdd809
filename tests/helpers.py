"""
Test doubles shared across the test suite.
"""

import os
import socket
from collections import deque
from typing import Any

from gearqueue.constants import MAGIC_RESPONSE
from gearqueue.exceptions import ReadTimeoutError, ServerConnectionError
from gearqueue.protocol.codec import Frame, encode
from gearqueue.protocol.connection import Connection

# Live job server for integration tests, e.g. "127.0.0.1:4730"
GEARMAN_TEST_SERVER = os.getenv("GEARMAN_TEST_SERVER")


def response(command: str, **fields: Any) -> bytes:
    """Encode a server response frame."""
    return encode(command, fields, magic=MAGIC_RESPONSE)


class FakeConnection:
    """
    Stand-in for a Connection that records what is sent.

    Frames queued with ``reply`` are returned by ``blocking_read`` in
    order; an exception instance in the queue is raised instead.
    """

    def __init__(self, server: str = "fake:4730", timeout_ms: int = 250):
        self.server = server
        self.timeout_ms = timeout_ms
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.replies: deque[Frame | Exception | None] = deque()
        self.waiting: deque[Any] = deque()
        self.closed = False
        self.fail_on: set[str] = set()

    def reply(self, command: str, **fields: Any) -> "FakeConnection":
        self.replies.append(Frame(command, fields, MAGIC_RESPONSE))
        return self

    def send(self, command: str, params: dict[str, Any] | None = None) -> None:
        if command in self.fail_on:
            raise ServerConnectionError(f"send {command} failed")
        self.sent.append((command, dict(params or {})))

    def commands(self) -> list[str]:
        return [command for command, _ in self.sent]

    def blocking_read(self, timeout_ms: int | None = None) -> Frame | None:
        if not self.replies:
            raise ReadTimeoutError(f"Socket timeout ({timeout_ms}ms) waiting on {self.server}")
        item = self.replies.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    def add_waiting_task(self, task: Any) -> None:
        self.waiting.append(task)

    def next_waiting_task(self) -> Any:
        return self.waiting.popleft() if self.waiting else None

    @property
    def waiting_count(self) -> int:
        return len(self.waiting)

    def is_connected(self) -> bool:
        return not self.closed

    def socket_error(self) -> int:
        return 0

    def close(self) -> None:
        self.closed = True


class FakeServers:
    """Connection factory over a fixed set of reachable servers."""

    def __init__(self, reachable: list[str] | None = None):
        self.reachable = set(reachable or [])
        self.opened: dict[str, FakeConnection] = {}
        self.attempts: list[str] = []

    def __call__(self, server: str, timeout_ms: int) -> FakeConnection:
        self.attempts.append(server)
        if server not in self.reachable:
            raise ServerConnectionError(f"Can't connect to server ({server})")
        conn = FakeConnection(server, timeout_ms)
        self.opened[server] = conn
        return conn


class PairedServers:
    """
    Connection factory backed by local socket pairs.

    Bytes scripted for a server are written to its end of the pair as
    soon as the connection is opened, so they are waiting for the client.
    """

    def __init__(self, scripts: dict[str, bytes] | None = None, half_close: set[str] | None = None):
        self.scripts = dict(scripts or {})
        self.half_close = set(half_close or [])
        self.peers: dict[str, socket.socket] = {}
        self.connections: dict[str, Connection] = {}

    def __call__(self, server: str, timeout_ms: int) -> Connection:
        client_sock, server_sock = socket.socketpair()
        server_sock.settimeout(0.5)

        conn = Connection(timeout_ms=timeout_ms, version_lookup=None)
        conn.socket = client_sock
        client_sock.settimeout(timeout_ms / 1000)
        conn.server = server

        if self.scripts.get(server):
            server_sock.sendall(self.scripts[server])
        if server in self.half_close:
            server_sock.shutdown(socket.SHUT_WR)

        self.peers[server] = server_sock
        self.connections[server] = conn
        return conn

    def received(self, server: str) -> bytes:
        """Everything the client has written to a server so far."""
        peer = self.peers[server]
        peer.settimeout(0.05)
        data = b""
        while True:
            try:
                chunk = peer.recv(65536)
            except TimeoutError:
                break
            if not chunk:
                break
            data += chunk
        return data

    def close(self) -> None:
        for conn in self.connections.values():
            conn.close()
        for peer in self.peers.values():
            peer.close()
