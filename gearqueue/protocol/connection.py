"""
A single TCP session to one job server.

The connection speaks the binary protocol from ``gearqueue.protocol.codec``
and keeps the FIFO of submitted tasks still waiting for a handle, which is
how job_created answers (they carry no task identity) are matched back to
the task that caused them.
"""

import errno
import logging
import select
import socket
import struct
import time
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from packaging.version import InvalidVersion, Version

from gearqueue.constants import (
    CLOSE_LINGER_SECONDS,
    DEFAULT_CONNECT_TIMEOUT_MS,
    HEADER_SIZE,
    TIMEOUT_IN_MS_SINCE_VERSION,
)
from gearqueue.exceptions import (
    GearmanError,
    ProtocolError,
    ReadTimeoutError,
    ServerConnectionError,
    WriteError,
)
from gearqueue.protocol.admin import AdminClient, split_server
from gearqueue.protocol.codec import Frame, decode, decode_header, encode, is_known_command

if TYPE_CHECKING:
    from gearqueue.types.task import Task

logger = logging.getLogger(__name__)

_CONNECT_IN_PROGRESS = frozenset({errno.EINPROGRESS, errno.EALREADY, errno.EWOULDBLOCK})

# Upper bound on reads used to flush a socket while closing it
_MAX_CLOSE_DRAIN_READS = 16

VersionLookup = Callable[[str], str]


def fetch_server_version(server: str) -> str:
    """Ask a server for its version over the administrative channel."""
    with AdminClient(server) as admin:
        return admin.version()


class Connection:
    """
    Connection to a job server.

    Example:
        with Connection("127.0.0.1:4730") as conn:
            conn.send("echo_req", {"text": b"ping"})
            frame = conn.blocking_read(1000)
    """

    def __init__(
        self,
        server: str | None = None,
        timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        version_lookup: VersionLookup | None = fetch_server_version,
    ):
        """
        Create the connection, connecting right away if a server is given.

        Args:
            server: ``host`` or ``host:port``; the port defaults to 4730.
            timeout_ms: Connect timeout, also used as send/receive timeout.
            version_lookup: Returns the server version for a server address.
        """
        self.socket: socket.socket | None = None
        self.server = server
        self.timeout_ms = timeout_ms
        self._version_lookup = version_lookup
        self._server_version: str | None = None
        self._waiting: deque["Task"] = deque()

        if server:
            self.connect(server, timeout_ms)

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "connected" if self.is_connected() else "closed"
        return f"<Connection {self.server} {state}>"

    def fileno(self) -> int:
        """File descriptor of the socket, so connections can be passed to select()."""
        if self.socket is None:
            raise ServerConnectionError(f"Not connected to {self.server}")
        return self.socket.fileno()

    def connect(self, server: str, timeout_ms: int | None = None) -> None:
        """
        Open the socket to the job server.

        The connect is issued in non-blocking mode and retried while the
        OS reports it in progress, until ``timeout_ms`` has elapsed.

        Raises:
            ServerConnectionError: If the server cannot be reached in time.
        """
        self.close()

        if timeout_ms is not None:
            self.timeout_ms = timeout_ms
        self.server = server

        host, port = split_server(server)
        deadline = time.monotonic() + self.timeout_ms / 1000

        try:
            family, sock_type, proto, _, address = socket.getaddrinfo(
                host, port, type=socket.SOCK_STREAM
            )[0]
        except OSError as e:
            raise ServerConnectionError(
                f"Can't connect to server ({e.errno}: {e.strerror})"
            ) from e

        sock = socket.socket(family, sock_type, proto)
        sock.setblocking(False)

        err = sock.connect_ex(address)
        while err in _CONNECT_IN_PROGRESS and time.monotonic() < deadline:
            remaining = max(0.0, deadline - time.monotonic())
            _, writable, _ = select.select([], [sock], [], remaining)
            if writable:
                err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
            else:
                err = sock.connect_ex(address)

        if err == errno.EISCONN:
            err = 0
        elif err in _CONNECT_IN_PROGRESS:
            err = errno.ETIMEDOUT

        if err != 0:
            sock.close()
            raise ServerConnectionError(
                f"Can't connect to server ({err}: {errno.errorcode.get(err, 'unknown')})"
            )

        sock.setblocking(True)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        sock.settimeout(self.timeout_ms / 1000)

        self.socket = sock
        self._server_version = None
        self._waiting.clear()

        logger.debug("Connected to job server", extra={"server": server})

    @property
    def server_version(self) -> str | None:
        """Version reported by the server, fetched on first use."""
        if self._server_version is None and self.server and self._version_lookup:
            try:
                self._server_version = self._version_lookup(self.server).strip()
            except (GearmanError, OSError) as e:
                logger.warning(
                    "Could not determine server version",
                    extra={"server": self.server, "error": str(e)},
                )
                self._server_version = ""
        return self._server_version

    @server_version.setter
    def server_version(self, version: str | None) -> None:
        self._server_version = version

    def add_waiting_task(self, task: "Task") -> None:
        """Queue a submitted task until its job_created answer arrives."""
        self._waiting.append(task)

    def next_waiting_task(self) -> "Task | None":
        """Pop the oldest task still waiting for a handle."""
        if not self._waiting:
            return None
        return self._waiting.popleft()

    @property
    def waiting_count(self) -> int:
        return len(self._waiting)

    def send(self, command: str, params: dict[str, Any] | None = None) -> None:
        """
        Send a command to the job server.

        Args:
            command: Command name (e.g. ``"can_do"``).
            params: Field values keyed by field name.

        Raises:
            ProtocolError: On an unknown command.
            WriteError: If the frame could not be written.
        """
        if not is_known_command(command):
            raise ProtocolError(f"Invalid command: {command}")

        params = dict(params or {})
        if command == "can_do_timeout" and params.get("timeout") is not None:
            params = self.fix_timeout(params)

        self._write(encode(command, params))

    def fix_timeout(self, params: dict[str, Any]) -> dict[str, Any]:
        """
        Rescale a can_do_timeout value for the connected server.

        Servers before 1.1.19 take the timeout in seconds, later ones in
        milliseconds. An unknown version is treated as a current server.
        """
        if self._expects_milliseconds():
            params = {**params, "timeout": int(params["timeout"]) * 1000}
        return params

    def _expects_milliseconds(self) -> bool:
        version = self.server_version
        try:
            return Version(version or "") >= Version(TIMEOUT_IN_MS_SINCE_VERSION)
        except InvalidVersion:
            return True

    def _write(self, data: bytes) -> None:
        if self.socket is None:
            raise ServerConnectionError(f"Not connected to {self.server}")

        view = memoryview(data)
        written = 0
        while written < len(data):
            try:
                written += self.socket.send(view[written:])
            except (BlockingIOError, InterruptedError):
                select.select([], [self.socket], [], self.timeout_ms / 1000)
            except OSError as e:
                raise WriteError(
                    f"Could not write command to socket ({e.errno}: {e.strerror or e})"
                ) from e

    def read(self) -> Frame | None:
        """
        Read one frame from the server.

        Returns:
            The decoded frame, or None if no data was available.

        Raises:
            ServerConnectionError: If the connection was reset.
            ServerError: If the server answered with an error frame.
            ProtocolError: On an invalid header or unknown opcode.
        """
        header = self._recv_exactly(HEADER_SIZE, allow_empty=True)
        if header is None:
            return None

        _, _, length = decode_header(header)
        payload = self._recv_exactly(length) if length else b""

        return decode(header, payload)

    def blocking_read(self, timeout_ms: int | None = None) -> Frame | None:
        """
        Wait up to ``timeout_ms`` for a frame and read it.

        Raises:
            ReadTimeoutError: If nothing arrived in time.
        """
        if self.socket is None:
            raise ServerConnectionError(f"Not connected to {self.server}")

        if timeout_ms is None:
            timeout_ms = self.timeout_ms

        try:
            readable, _, _ = select.select([self.socket], [], [], timeout_ms / 1000)
        except (OSError, ValueError) as e:
            raise ServerConnectionError(f"Socket error: {e}") from e

        if not readable:
            raise ReadTimeoutError(f"Socket timeout ({timeout_ms}ms) waiting on {self.server}")

        return self.read()

    def has_pending_data(self) -> bool:
        """Check, without waiting, whether the socket has data to read."""
        if self.socket is None:
            return False
        readable, _, _ = select.select([self.socket], [], [], 0)
        return bool(readable)

    def socket_error(self) -> int:
        """Pending socket error code, 0 if there is none."""
        if self.socket is None:
            return 0
        try:
            return self.socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        except OSError as e:
            return e.errno or errno.EBADF

    def _recv_exactly(self, size: int, allow_empty: bool = False) -> bytes | None:
        if self.socket is None:
            raise ServerConnectionError(f"Not connected to {self.server}")

        if allow_empty and not self.has_pending_data():
            return None

        buf = bytearray()
        while len(buf) < size:
            try:
                chunk = self.socket.recv(size - len(buf))
            except InterruptedError:
                continue
            except (BlockingIOError, TimeoutError) as e:
                raise ReadTimeoutError(
                    f"Timed out after {len(buf)} of {size} bytes from {self.server}"
                ) from e
            except OSError as e:
                raise ServerConnectionError(f"Connection was reset ({e.errno}: {e.strerror})") from e

            if not chunk:
                raise ServerConnectionError("Connection was reset")
            buf += chunk

        return bytes(buf)

    def close(self) -> None:
        """
        Close the connection.

        Safe to call more than once. A socket that is no longer connected
        is simply released.

        Raises:
            ServerConnectionError: If the socket reports an error on shutdown.
        """
        sock = self.socket
        if sock is None:
            return

        self.socket = None
        self._waiting.clear()

        try:
            sock.settimeout(CLOSE_LINGER_SECONDS)
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                if e.errno == errno.ENOTCONN:
                    return
                raise ServerConnectionError(f"Socket error: ({e.errno}) {e.strerror}") from e

            # Flush anything left in the receive buffer
            for _ in range(_MAX_CLOSE_DRAIN_READS):
                try:
                    if not sock.recv(8192):
                        break
                except (BlockingIOError, TimeoutError, InterruptedError):
                    break
                except OSError:
                    # Abort the connection instead of lingering on a broken socket
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
                    break
        finally:
            sock.close()

    def is_connected(self) -> bool:
        """Check if the connection holds a live socket."""
        return self.socket is not None and self.socket.fileno() != -1
