"""
Client for submitting jobs to job servers.

The client fans the tasks of a TaskSet out across its servers, routing
each task to a server chosen from its uniqueness key, then multiplexes
reads over every open connection until the set finishes or the timeout
elapses.
"""

import hashlib
import json
import logging
import random
import select
import time
from collections.abc import Callable
from typing import Any

from gearqueue.config import get_settings
from gearqueue.constants import (
    BACKGROUND_TYPE_FOR_PRIORITY,
    MAX_DISPATCH_WAIT_SECONDS,
    SPAN_DISPATCH_SET,
    JobPriority,
)
from gearqueue.exceptions import (
    AllConnectionsFailed,
    GearmanError,
    ProtocolError,
    ServerConnectionError,
)
from gearqueue.observability.metrics import MetricsCollector, get_metrics
from gearqueue.observability.tracing import create_span
from gearqueue.protocol.codec import Frame
from gearqueue.protocol.connection import Connection
from gearqueue.types.events import ConnectionAttempt
from gearqueue.types.task import Task, TaskSet

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str, int], Connection]
ConnectionListener = Callable[[ConnectionAttempt], Any]


def decode_result(raw: str | bytes | None) -> Any:
    """Decode a work_complete result, falling back to the raw text."""
    if raw is None or raw == b"" or raw == "":
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw


def server_index(uniq: str, candidates: int) -> int:
    """Pick a candidate slot from the last hex character of the key's md5."""
    return ord(hashlib.md5(uniq.encode("utf-8")).hexdigest()[-1]) % candidates


class Client:
    """
    Job submission client.

    Example:
        with Client(["127.0.0.1:4730", "127.0.0.1:4731"]) as client:
            task_set = TaskSet([Task("sum", [1, 2])])
            client.dispatch(task_set, timeout=5)
    """

    def __init__(
        self,
        servers: list[str] | str | None = None,
        timeout_ms: int | None = None,
        connection_factory: ConnectionFactory = Connection,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the client.

        Args:
            servers: Server addresses (``host[:port]``). Defaults to settings.
            timeout_ms: Connect timeout per server. If several servers have
                to be tried, the total connect time is this times the number
                of servers tried.
            connection_factory: Opens a connection to ``(server, timeout_ms)``.
            metrics: Metrics collector. Defaults to the process collector.

        Raises:
            ValueError: If the server list is empty.
        """
        settings = get_settings()

        if servers is None:
            servers = settings.gearman_servers
        if isinstance(servers, str):
            servers = [servers]
        if not servers:
            raise ValueError("Invalid servers specified")

        self.servers: list[str] = list(servers)
        self.timeout_ms = timeout_ms or settings.client_connect_timeout_ms
        self._max_wait = settings.client_dispatch_timeout_seconds or MAX_DISPATCH_WAIT_SECONDS
        self._connection_factory = connection_factory
        self._connections: dict[str, Connection] = {}
        self._listeners: list[ConnectionListener] = []
        self._metrics = metrics or get_metrics()

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.disconnect()

    @property
    def connections(self) -> dict[str, Connection]:
        return dict(self._connections)

    def attach_callback(self, callback: ConnectionListener) -> None:
        """
        Register a listener for connection attempts.

        Raises:
            TypeError: If the callback is not callable.
        """
        if not callable(callback):
            raise TypeError("Invalid callback specified")
        self._listeners.append(callback)

    def run(
        self,
        func: str,
        payload: Any = None,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> str:
        """
        Fire off a background job.

        Args:
            func: Function name.
            payload: Job argument; non-scalars are sent as JSON.
            priority: Queue priority for the job.

        Returns:
            The handle the server assigned.
        """
        task = Task(func, payload, type=BACKGROUND_TYPE_FOR_PRIORITY[JobPriority(priority)])
        return self.submit(task)

    def submit(self, task: Task) -> str:
        """
        Submit one task as a background job and return its handle.

        Non-background types are switched to the background variant of
        the same priority.
        """
        if not task.is_background:
            task.type = BACKGROUND_TYPE_FOR_PRIORITY[_priority_of(task)]

        self.dispatch(TaskSet([task]))
        return task.handle

    def dispatch(self, task_set: TaskSet, timeout: float | None = None) -> None:
        """
        Run a set of tasks.

        Returns once every task has finished and every submission has
        received its handle, or when ``timeout`` seconds have passed.

        Args:
            task_set: The tasks to run.
            timeout: Overall timeout in seconds; each wait on the sockets
                is capped at 10 seconds.

        Raises:
            ServerConnectionError: If no server can take a task.
            AllConnectionsFailed: If every open connection failed in one round.
            ProtocolError: On an unexpected response.
        """
        if timeout is not None:
            wait_cap = min(self._max_wait, timeout)
        else:
            wait_cap = self._max_wait

        start = time.monotonic()

        with create_span(SPAN_DISPATCH_SET, tasks=len(task_set)):
            for task in task_set:
                self.submit_task(task)
                if task.is_background:
                    task_set.finish(task)

            while not task_set.finished() or self._awaiting_handles():
                wait = wait_cap
                if timeout is not None:
                    elapsed = time.monotonic() - start
                    if elapsed >= timeout:
                        logger.warning(
                            "Dispatch timed out",
                            extra={"timeout": timeout, "remaining": task_set.remaining},
                        )
                        self._discard_pending(task_set)
                        break
                    wait = min(wait_cap, timeout - elapsed)

                self._poll(task_set, wait)

    def _awaiting_handles(self) -> bool:
        return any(conn.waiting_count for conn in self._connections.values())

    def _discard_pending(self, task_set: TaskSet) -> None:
        """
        Close connections that may still deliver frames for an abandoned set.

        Handles and results keep arriving for timed out submissions; on a
        reused connection they would be matched to the next set's tasks.
        """
        if task_set.finished():
            stale = [server for server, conn in self._connections.items() if conn.waiting_count]
        else:
            stale = list(self._connections)

        for server in stale:
            logger.info("Closing connection with pending responses", extra={"server": server})
            self._close_connection(server)

    def _poll(self, task_set: TaskSet, wait: float) -> None:
        """One multiplexed wait over every open connection."""
        connections = {
            server: conn for server, conn in self._connections.items() if conn.is_connected()
        }
        if not connections:
            raise AllConnectionsFailed("No open connections left to read from")

        try:
            readable, _, _ = select.select(list(connections.values()), [], [], wait)
        except (OSError, ValueError) as e:
            raise AllConnectionsFailed(f"socket select failed: {e}") from e

        errors: list[str] = []
        for server, conn in connections.items():
            err = conn.socket_error()
            if err:
                errors.append(f"socket select failed: ({err}); server: {server}")
                continue

            if conn not in readable:
                continue

            try:
                self._drain(conn, task_set)
            except ServerConnectionError as e:
                errors.append(f"{e}; server: {server}")
                self._drop(server)

        if errors and len(errors) == len(connections):
            raise AllConnectionsFailed("; ".join(errors))

        for message in errors:
            logger.warning("Connection error during dispatch", extra={"error": message})

    def _drain(self, conn: Connection, task_set: TaskSet) -> None:
        while True:
            frame = conn.read()
            if frame is None:
                return
            self.handle_response(frame, conn, task_set)
            if not conn.has_pending_data():
                return

    def _drop(self, server: str) -> None:
        if server not in self._connections:
            return
        self._metrics.record_connection_failure(server, "client")
        self._close_connection(server)

    def _close_connection(self, server: str) -> None:
        conn = self._connections.pop(server, None)
        if conn is None:
            return
        try:
            conn.close()
        except GearmanError:
            logger.debug("Error closing failed connection", extra={"server": server})

    def submit_task(self, task: Task) -> None:
        """Send a task to the server chosen for it."""
        conn = self.select_connection(task.uniq, task.servers or None)
        conn.send(
            task.type.submit_command,
            {"func": task.func, "uniq": task.uniq, "arg": task.payload},
        )
        conn.add_waiting_task(task)
        task.server = conn.server or ""

        self._metrics.record_job_submitted(task.func, task.type.name.lower())
        logger.debug(
            "Submitted task",
            extra={"function": task.func, "uniq": task.uniq, "server": task.server},
        )

    def select_connection(
        self,
        uniq: str | None = None,
        servers: list[str] | None = None,
    ) -> Connection:
        """
        Get a connection for a task.

        Identical uniqueness keys always map to the same server of a given
        candidate list, since servers only coalesce duplicate jobs they
        see themselves. Servers that cannot be reached are dropped from
        the candidates and the pick is repeated.

        Args:
            uniq: The task's uniqueness key; None picks at random.
            servers: Candidate servers; defaults to all configured servers.

        Raises:
            ServerConnectionError: If no candidate could be connected to.
        """
        candidates = list(servers) if servers else list(self.servers)
        tried: list[str] = []

        while candidates:
            if len(candidates) == 1:
                index = 0
            elif uniq is None:
                index = random.randrange(len(candidates))
            else:
                index = server_index(uniq, len(candidates))

            server = candidates[index]
            tried.append(server)

            conn = self._connections.get(server)
            if conn is not None and conn.is_connected():
                return conn

            started = time.monotonic()
            error: GearmanError | None = None
            try:
                conn = self._connection_factory(server, self.timeout_ms)
            except GearmanError as e:
                conn = None
                error = e

            connected = conn is not None and conn.is_connected()
            self._notify(
                ConnectionAttempt(
                    server=server,
                    connected=connected,
                    timeout_ms=self.timeout_ms,
                    elapsed_seconds=time.monotonic() - started,
                    error=str(error) if error else None,
                )
            )

            if connected:
                self._connections[server] = conn
                return conn

            logger.warning("Could not connect to server", extra={"server": server, "error": str(error)})
            self._metrics.record_connection_failure(server, "client")
            del candidates[index]

        message = f"Failed to connect to a Gearman server. Attempted to connect to {','.join(tried)}."
        if set(tried) != set(self.servers):
            message += f" Not all servers were tried. Full server list is {','.join(self.servers)}."
        raise ServerConnectionError(message)

    def _notify(self, attempt: ConnectionAttempt) -> None:
        for listener in self._listeners:
            listener(attempt)

    def handle_response(self, frame: Frame, conn: Connection, task_set: TaskSet) -> None:
        """
        Route one response frame to the task it belongs to.

        Raises:
            ProtocolError: On an unknown handle or an unexpected command.
        """
        if frame.command == "job_created":
            task = conn.next_waiting_task()
            if task is None:
                raise ProtocolError("Received job_created with no task waiting for a handle")

            task.handle = str(frame["handle"])
            if task.is_background:
                task_set.finish(task)
            task_set.register_handle(task.handle, task)
            return

        if frame.command not in ("work_complete", "work_status", "work_fail"):
            raise ProtocolError(f"Invalid function {frame.command}")

        task = task_set.get_task(str(frame.get("handle", "")))

        if frame.command == "work_complete":
            task_set.finish(task)
            task.complete(decode_result(frame.get("result")))
            self._metrics.record_task_finished(task.func, "complete")
        elif frame.command == "work_status":
            task.status(int(frame.get("numerator") or 0), int(frame.get("denominator") or 0))
        else:
            task_set.finish(task)
            task.fail()
            self._metrics.record_task_finished(task.func, "fail")

    def disconnect(self) -> None:
        """Close and forget every open connection."""
        for server, conn in list(self._connections.items()):
            try:
                conn.close()
            except GearmanError as e:
                logger.warning("Error closing connection", extra={"server": server, "error": str(e)})
        self._connections = {}


def _priority_of(task: Task) -> JobPriority:
    name = task.type.name
    if name.startswith("HIGH"):
        return JobPriority.HIGH
    if name.startswith("LOW"):
        return JobPriority.LOW
    return JobPriority.NORMAL


class ClientFactory:
    """
    Caller-owned cache of clients keyed by server list and timeout.

    Example:
        factory = ClientFactory()
        client = factory.get(["127.0.0.1:4730"])
        assert factory.get(["127.0.0.1:4730"]) is client
        factory.close()
    """

    def __init__(self, **client_kwargs: Any):
        self._client_kwargs = client_kwargs
        self._clients: dict[tuple[tuple[str, ...], int | None], Client] = {}

    def get(self, servers: list[str] | str, timeout_ms: int | None = None) -> Client:
        if isinstance(servers, str):
            servers = [servers]
        key = (tuple(servers), timeout_ms)
        if key not in self._clients:
            self._clients[key] = Client(servers, timeout_ms, **self._client_kwargs)
        return self._clients[key]

    def close(self) -> None:
        """Disconnect and forget every cached client."""
        for client in self._clients.values():
            client.disconnect()
        self._clients = {}
