"""
Client for the job server's line based administrative protocol.

Commands are single lines terminated by CRLF. Multi-line answers end with
a line holding a lone ".", and failures come back as
``ERR <code> <url-encoded message>``.
"""

import logging
import re
import socket
from typing import Any
from urllib.parse import unquote

from gearqueue.config import get_settings
from gearqueue.constants import DEFAULT_PORT
from gearqueue.exceptions import GearmanError, ServerConnectionError, ServerError

logger = logging.getLogger(__name__)

_WORKER_LINE = re.compile(r"^(.+?) (.+?) (.+?) :(.*)$")
_FUNCTION_NAME = re.compile(r"^[A-Za-z0-9_]+$")


def split_server(server: str) -> tuple[str, int]:
    """Split ``host[:port]`` into host and port, defaulting the port."""
    host, sep, port = server.rpartition(":")
    if sep and host and port.isdigit():
        return host, int(port)
    return server, DEFAULT_PORT


class AdminClient:
    """
    Administrative connection to one job server.

    Example:
        with AdminClient("127.0.0.1:4730") as admin:
            print(admin.version())
    """

    def __init__(self, server: str, timeout: float | None = None):
        """
        Connect to the administrative port.

        Args:
            server: ``host`` or ``host:port``.
            timeout: Connect and read timeout in seconds.

        Raises:
            ServerConnectionError: If the server cannot be reached.
        """
        if timeout is None:
            timeout = get_settings().admin_timeout_seconds

        self.server = server
        self._shutdown = False

        host, port = split_server(server)
        try:
            self._sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise ServerConnectionError(f"Could not connect to {host}:{port}") from e

        self._reader = self._sock.makefile("rb")

    def __enter__(self) -> "AdminClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.disconnect()

    def version(self) -> str:
        """Get the server's version string."""
        self._send_command("version")
        return self._read_line().strip()

    def shutdown(self, graceful: bool = False) -> bool:
        """
        Shut the server down.

        Args:
            graceful: Let running jobs finish first.

        Returns:
            True if the server acknowledged the shutdown.
        """
        self._send_command("shutdown graceful" if graceful else "shutdown")
        self._shutdown = self._read_line().strip() == "OK"
        return self._shutdown

    def workers(self) -> list[dict[str, Any]]:
        """List connected workers with their abilities."""
        self._send_command("workers")
        return self.parse_workers_response(self._read_block())

    @staticmethod
    def parse_workers_response(response: str) -> list[dict[str, Any]]:
        workers = []
        for line in response.splitlines():
            match = _WORKER_LINE.match(line.strip())
            if not match:
                continue

            abilities = match.group(4).strip()
            workers.append(
                {
                    "fd": match.group(1),
                    "ip": match.group(2),
                    "id": match.group(3),
                    "abilities": abilities.split(" ") if abilities else [],
                }
            )
        return workers

    def set_max_queue_size(self, function: str, size: int) -> bool:
        """
        Limit the queue length for a function.

        Raises:
            ValueError: On a non-numeric size or an invalid function name.
        """
        if not isinstance(size, int) or isinstance(size, bool):
            raise ValueError("Queue size must be numeric")
        if not _FUNCTION_NAME.match(function):
            raise ValueError("Invalid function name")

        self._send_command(f"maxqueue {function} {size}")
        return self._read_line().strip() == "OK"

    def status(self) -> dict[str, dict[str, int]]:
        """Get queue statistics keyed by function name."""
        self._send_command("status")

        status = {}
        for line in self._read_block().splitlines():
            if not line.strip():
                continue
            func, in_queue, running, capable = line.split("\t")[:4]
            status[func] = {
                "in_queue": int(in_queue),
                "jobs_running": int(running),
                "capable_workers": int(capable),
            }
        return status

    def disconnect(self) -> None:
        """Close the administrative connection."""
        if self._sock is None:
            return
        try:
            self._reader.close()
            self._sock.close()
        finally:
            self._sock = None

    def _send_command(self, command: str) -> None:
        if self._shutdown:
            raise GearmanError("This server has been shut down")
        if self._sock is None:
            raise ServerConnectionError(f"Not connected to {self.server}")

        try:
            self._sock.sendall(f"{command}\r\n".encode("utf-8"))
        except OSError as e:
            raise ServerConnectionError(f"Could not send {command!r} to {self.server}") from e

    def _read_line(self) -> str:
        try:
            raw = self._reader.readline(4096)
        except OSError as e:
            raise ServerConnectionError(f"Could not read from {self.server}") from e

        if not raw:
            raise ServerConnectionError(f"Connection to {self.server} was closed")

        line = raw.decode("utf-8", "replace")
        self._check_for_error(line)
        return line

    def _read_block(self) -> str:
        lines = []
        while True:
            line = self._read_line()
            if line.rstrip("\r\n") == ".":
                break
            lines.append(line)
        return "".join(lines)

    @staticmethod
    def _check_for_error(line: str) -> None:
        line = line.strip()
        if not line.startswith("ERR"):
            return

        parts = line.split(" ", 2)
        code = parts[1] if len(parts) > 1 else ""
        message = unquote(parts[2]) if len(parts) > 2 else ""
        raise ServerError(code, message or code)
