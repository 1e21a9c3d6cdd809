"""
Unit tests for the server connection.
"""

import socket
import struct

import pytest

from gearqueue.constants import MAGIC_RESPONSE
from gearqueue.exceptions import (
    ProtocolError,
    ReadTimeoutError,
    ServerConnectionError,
    ServerError,
)
from gearqueue.protocol.codec import encode
from gearqueue.protocol.connection import Connection
from gearqueue.types.task import Task
from tests.helpers import response


class TestSend:
    """Tests for writing commands."""

    def test_send_writes_frame(self, socket_pair):
        """Test that a command arrives encoded at the server."""
        conn, server = socket_pair

        conn.send("can_do", {"func": "reverse"})

        assert server.recv(1024) == encode("can_do", {"func": "reverse"})

    def test_send_unknown_command(self, socket_pair):
        """Test that an unknown command is refused before writing."""
        conn, _ = socket_pair

        with pytest.raises(ProtocolError):
            conn.send("bogus")

    def test_send_when_closed(self):
        """Test that sending without a socket fails."""
        conn = Connection(version_lookup=None)

        with pytest.raises(ServerConnectionError):
            conn.send("grab_job")


class TestTimeoutRescale:
    """Tests for the can_do_timeout rescaling."""

    @pytest.mark.parametrize(
        "version,expected",
        [
            ("1.1.19", 5000),
            ("1.1.20", 5000),
            ("1.1.18", 5),
            ("0.34", 5),
            ("", 5000),
            ("not a version", 5000),
        ],
    )
    def test_fix_timeout(self, version, expected):
        """Test rescaling by server version."""
        conn = Connection(version_lookup=None)
        conn.server_version = version

        assert conn.fix_timeout({"func": "f", "timeout": 5})["timeout"] == expected

    def test_send_can_do_timeout_old_server(self, socket_pair):
        """Test that old servers get the timeout in seconds."""
        conn, server = socket_pair
        conn.server_version = "1.1.18"

        conn.send("can_do_timeout", {"func": "f", "timeout": 5})

        assert server.recv(1024) == encode("can_do_timeout", {"func": "f", "timeout": 5})

    def test_send_can_do_timeout_new_server(self, socket_pair):
        """Test that current servers get the timeout in milliseconds."""
        conn, server = socket_pair
        conn.server_version = "1.1.19"

        conn.send("can_do_timeout", {"func": "f", "timeout": 5})

        assert server.recv(1024) == encode("can_do_timeout", {"func": "f", "timeout": 5000})

    def test_server_version_is_fetched_once(self):
        """Test that the version lookup is lazy and cached."""
        calls = []

        def lookup(server):
            calls.append(server)
            return "1.1.19\n"

        conn = Connection(version_lookup=lookup)
        conn.server = "example:4730"

        assert calls == []
        assert conn.server_version == "1.1.19"
        assert conn.server_version == "1.1.19"
        assert calls == ["example:4730"]

    def test_server_version_lookup_failure(self):
        """Test that a failed lookup yields an empty version."""

        def lookup(server):
            raise ServerConnectionError("unreachable")

        conn = Connection(version_lookup=lookup)
        conn.server = "example:4730"

        assert conn.server_version == ""
        assert conn.fix_timeout({"timeout": 2})["timeout"] == 2000


class TestRead:
    """Tests for reading frames."""

    def test_read_nothing_pending(self, socket_pair):
        """Test that read returns None when no data is waiting."""
        conn, _ = socket_pair

        assert conn.read() is None

    def test_read_frame(self, socket_pair):
        """Test reading one frame written by the server."""
        conn, server = socket_pair
        server.sendall(response("job_created", handle="H:1"))

        frame = conn.read()

        assert frame.command == "job_created"
        assert frame["handle"] == "H:1"

    def test_read_zero_length_payload(self, socket_pair):
        """Test that an empty payload reads as a frame without fields."""
        conn, server = socket_pair
        server.sendall(response("noop"))

        frame = conn.read()

        assert frame.command == "noop"
        assert frame.fields == {}

    def test_read_consecutive_frames(self, socket_pair):
        """Test that back to back frames are read one at a time."""
        conn, server = socket_pair
        server.sendall(response("noop") + response("no_job"))

        assert conn.read().command == "noop"
        assert conn.has_pending_data()
        assert conn.read().command == "no_job"
        assert not conn.has_pending_data()

    def test_read_reset_mid_frame(self, socket_pair):
        """Test that EOF inside a frame is a connection error."""
        conn, server = socket_pair
        server.sendall(MAGIC_RESPONSE + struct.pack(">II", 8, 10) + b"H:1")
        server.shutdown(socket.SHUT_WR)

        with pytest.raises(ServerConnectionError, match="reset"):
            conn.read()

    def test_read_error_frame(self, socket_pair):
        """Test that an error frame raises ServerError."""
        conn, server = socket_pair
        server.sendall(response("error", err_code="ERR", err_text="bad"))

        with pytest.raises(ServerError):
            conn.read()

    def test_blocking_read_timeout(self, socket_pair):
        """Test that a blocking read gives up after its timeout."""
        conn, _ = socket_pair

        with pytest.raises(ReadTimeoutError):
            conn.blocking_read(10)

    def test_blocking_read(self, socket_pair):
        """Test a blocking read of an available frame."""
        conn, server = socket_pair
        server.sendall(response("no_job"))

        assert conn.blocking_read(100).command == "no_job"


class TestWaitingQueue:
    """Tests for the queue of tasks awaiting a handle."""

    def test_fifo_order(self):
        """Test that tasks come back in submission order."""
        conn = Connection(version_lookup=None)
        first, second = Task("a", 1), Task("b", 2)

        conn.add_waiting_task(first)
        conn.add_waiting_task(second)

        assert conn.waiting_count == 2
        assert conn.next_waiting_task() is first
        assert conn.next_waiting_task() is second
        assert conn.next_waiting_task() is None


class TestLifecycle:
    """Tests for connecting and closing."""

    def test_connect_and_close(self):
        """Test connecting to a listening socket."""
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        try:
            conn = Connection(f"127.0.0.1:{port}", 500, version_lookup=None)
            assert conn.is_connected()
            assert conn.socket_error() == 0

            conn.close()
            assert not conn.is_connected()
        finally:
            listener.close()

    def test_connect_refused(self):
        """Test that connecting to a closed port fails."""
        placeholder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        placeholder.bind(("127.0.0.1", 0))
        port = placeholder.getsockname()[1]
        placeholder.close()

        with pytest.raises(ServerConnectionError, match="Can't connect"):
            Connection(f"127.0.0.1:{port}", 200, version_lookup=None)

    def test_close_is_idempotent(self, socket_pair):
        """Test that closing twice is harmless and drops waiting tasks."""
        conn, _ = socket_pair
        conn.add_waiting_task(Task("a", 1))

        conn.close()
        conn.close()

        assert not conn.is_connected()
        assert conn.waiting_count == 0

    def test_context_manager_closes(self, socket_pair):
        """Test that leaving the with block closes the socket."""
        conn, _ = socket_pair

        with conn:
            assert conn.is_connected()

        assert not conn.is_connected()
