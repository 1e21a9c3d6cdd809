"""
Worker process for executing jobs.

The worker keeps one connection per job server, announces the functions
it can run, asks each live connection for work in turn and reports each
result back. Servers that fail are put to sleep with exponential backoff
and retried once their deadline has passed.
"""

import json
import logging
import os
import random
import select
import signal
import time
import uuid
from collections.abc import Callable
from typing import Any

from gearqueue.config import get_settings
from gearqueue.constants import SPAN_EXECUTE_JOB, WorkerEvent
from gearqueue.exceptions import GearmanError, JobError, ProtocolError, ServerError
from gearqueue.observability.logging import bind_context, setup_logging
from gearqueue.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from gearqueue.observability.tracing import create_span, setup_tracing
from gearqueue.protocol.connection import Connection
from gearqueue.types.events import WorkerStatusEvent
from gearqueue.types.job import JobContext, normalize_result
from gearqueue.worker.handlers import HandlerRegistry, get_registry

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str, int], Connection]
Monitor = Callable[[bool, float], bool]


def default_worker_id() -> str:
    return f"pid_{os.getpid()}_{uuid.uuid4().hex[:13]}"


def decode_arguments(raw: str | bytes | None) -> Any:
    """
    Decode a job argument: JSON when it parses, the raw text otherwise.

    A missing or empty argument decodes to an empty list.
    """
    if raw is None or len(raw) == 0:
        return []
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw


class Worker:
    """
    Job worker that polls job servers for work.

    Features:
    - Eager connections to every server, opened in random order
    - Abilities replayed on every reconnect
    - Exponential backoff for failing servers
    - Quiet wait with pre_sleep between polls
    - Graceful shutdown via stop() or the monitor callback

    Example:
        with Worker(["127.0.0.1:4730"]) as worker:
            worker.add_ability("echo")
            worker.run()
    """

    def __init__(
        self,
        servers: list[str] | str | None = None,
        worker_id: str | None = None,
        socket_timeout_ms: int | None = None,
        registry: HandlerRegistry | None = None,
        connection_factory: ConnectionFactory = Connection,
        retry_seconds: int | None = None,
        max_retry_seconds: int | None = None,
        sleep_seconds: int | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        """
        Initialize the worker and connect to every server.

        Args:
            servers: Server addresses (``host[:port]``). Defaults to settings.
            worker_id: Identity sent with set_client_id. Defaults to pid and a random suffix.
            socket_timeout_ms: Connect and blocking-read timeout.
            registry: Handlers to run jobs with. Defaults to the default registry.
            connection_factory: Opens a connection to ``(server, timeout_ms)``.
            retry_seconds: Base backoff for a failing server.
            max_retry_seconds: Upper bound on the backoff.
            sleep_seconds: Length of the quiet wait between polls.
            metrics: Metrics collector. Defaults to the process collector.
            clock: Monotonic clock used for retry deadlines.
            sleep: Sleep function used while no server is reachable.

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
        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self.socket_timeout_ms = socket_timeout_ms or settings.worker_socket_timeout_ms
        self.retry_seconds = retry_seconds or settings.worker_retry_seconds
        self.max_retry_seconds = max_retry_seconds or settings.worker_max_retry_seconds
        self.sleep_seconds = sleep_seconds or settings.worker_sleep_seconds
        self.registry = registry if registry is not None else get_registry()

        self._connection_factory = connection_factory
        self._metrics = metrics or get_metrics()
        self._clock = clock
        self._sleep = sleep

        self.connections: dict[str, Connection] = {}
        self.retry_at: dict[str, float] = {}
        self.failures: dict[str, int] = {}
        self.stats: dict[str, int] = {}
        self.abilities: dict[str, int | None] = {}
        self.init_params: dict[str, dict[str, Any]] = {}
        self.min_retry_delay: float | None = None

        self._callbacks: dict[WorkerEvent, list[Callable[..., Any]]] = {
            event: [] for event in WorkerEvent
        }
        self._running = False
        self._stop_requested = False

        shuffled = list(self.servers)
        random.shuffle(shuffled)
        for server in shuffled:
            self._connect(server)

    def __enter__(self) -> "Worker":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.end_work()

    # ------------------------------------------------------------------
    # Abilities and callbacks
    # ------------------------------------------------------------------

    def add_ability(
        self,
        name: str,
        timeout: int | None = None,
        init_params: dict[str, Any] | None = None,
        connection: Connection | None = None,
    ) -> None:
        """
        Announce a function this worker can run.

        The ability is recorded so it can be replayed on reconnect, then
        sent to ``connection`` or to every open connection.

        Args:
            name: Function name.
            timeout: Seconds the server should allow per job; positive
                values use can_do_timeout.
            init_params: Extra parameters handed to the handler's context.
            connection: Announce on this connection only.
        """
        command = "can_do"
        params: dict[str, Any] = {"func": name}
        if timeout is not None and timeout > 0:
            command = "can_do_timeout"
            params["timeout"] = timeout

        self.abilities[name] = timeout
        self.init_params[name] = dict(init_params or {})

        targets = [connection] if connection is not None else list(self.connections.values())
        for conn in targets:
            conn.send(command, params)

    def _replay_abilities(self, connection: Connection) -> None:
        for name, timeout in self.abilities.items():
            self.add_ability(name, timeout, self.init_params.get(name), connection)

    def attach_callback(
        self,
        callback: Callable[..., Any],
        event: WorkerEvent = WorkerEvent.JOB_COMPLETE,
    ) -> None:
        """
        Register a listener for a worker event.

        JOB_START listeners get ``(handle, function, args)``, JOB_COMPLETE
        ``(handle, function, result)``, JOB_FAIL ``(handle, function, error)``
        and WORKER_STATUS a WorkerStatusEvent.

        Raises:
            TypeError: If the callback is not callable.
            ValueError: If the event is unknown.
        """
        if not callable(callback):
            raise TypeError("Invalid callback specified")
        try:
            event = WorkerEvent(event)
        except ValueError:
            raise ValueError(f"Invalid callback type specified: {event}") from None
        self._callbacks[event].append(callback)

    def _emit(self, event: WorkerEvent, *args: Any) -> None:
        for callback in self._callbacks[event]:
            callback(*args)

    def _status(self, message: str, server: str | None = None) -> None:
        logger.debug(message, extra={"server": server})

        if not self._callbacks[WorkerEvent.WORKER_STATUS]:
            return

        if server:
            conn = self.connections.get(server)
            status = WorkerStatusEvent(
                message=message,
                server=server,
                connected=conn is not None and conn.is_connected(),
                failure_count=self.failures.get(server, 0),
            )
        else:
            status = WorkerStatusEvent(message=message)

        self._emit(WorkerEvent.WORKER_STATUS, status)

    def connection_status(self) -> dict[str, Any]:
        """
        Summarize connection state.

        Returns:
            Counts of connected and disconnected servers, a per-server
            connected flag and per-server completed-job counts.
        """
        servers = {server: True for server in self.connections}
        servers.update({server: False for server in self.retry_at})
        return {
            "connected": len(self.connections),
            "disconnected": len(self.retry_at),
            "servers": servers,
            "stats": dict(self.stats),
        }

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self, monitor: Monitor | None = None) -> None:
        """
        Poll for work until stopped.

        Each iteration retries sleeping servers whose deadline passed,
        asks every open connection for work, then waits quietly if nothing
        happened, or sleeps if no server is reachable at all.

        Args:
            monitor: Called as ``monitor(idle, last_job_time)`` after every
                iteration and during waits; returning True stops the loop.
        """
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "abilities": list(self.abilities)},
        )

        self._running = True
        self._stop_requested = False
        last_job_time = time.time()

        while not self._stop_requested:
            worked = False
            reconnected = self.retry_connections()

            if self.connections:
                worked = self.ask_for_work()
                if worked:
                    last_job_time = time.time()

            if not reconnected and not worked and self.connections:
                self.wait_quietly(monitor, last_job_time)

            if not self.connections:
                self.deep_sleep(monitor, last_job_time)

            if monitor is not None and monitor(not worked, last_job_time):
                break

        self._running = False
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    def stop(self) -> None:
        """Ask the main loop to stop after the current iteration."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._stop_requested = True

    def _should_stop(self, monitor: Monitor | None, last_job_time: float) -> bool:
        if self._stop_requested:
            return True
        return monitor is not None and bool(monitor(True, last_job_time))

    def ask_for_work(self, monitor: Monitor | None = None, last_job_time: float = 0.0) -> bool:
        """
        Ask each open connection, in random order, for one job.

        Connection-level failures put that server to sleep.

        Returns:
            True if any job ran.
        """
        work_done = False
        servers = list(self.connections)
        random.shuffle(servers)

        for server in servers:
            conn = self.connections.get(server)
            if conn is None:
                continue

            try:
                self._status(f"Asking {server} for work", server)
                if self.do_work(conn, server):
                    work_done = True
                    self.stats[server] = self.stats.get(server, 0) + 1
            except ServerError as e:
                self._status(f"Server error while doing work: {e}", server)
                self.sleep_connection(server)
            except ProtocolError:
                raise
            except (GearmanError, OSError) as e:
                self._status(f"Exception caught while doing work: {e}", server)
                self.sleep_connection(server)

            if self._should_stop(monitor, last_job_time):
                break

        return work_done

    def do_work(self, conn: Connection, server: str | None = None) -> bool:
        """
        Grab and run one job from a connection.

        Returns:
            True if a job was run, False if the server had none.

        Raises:
            ProtocolError: If the server answers grab_job unexpectedly.
        """
        server = server or conn.server or ""

        conn.send("grab_job")
        frame = conn.blocking_read(self.socket_timeout_ms)
        while frame is not None and frame.command == "noop":
            frame = conn.blocking_read(self.socket_timeout_ms)

        if frame is None:
            self.sleep_connection(server)
            self._status("No job was returned from the server", server)
            return False

        if frame.command == "no_job":
            return False

        if frame.command != "job_assign":
            raise ProtocolError(f"Unexpected response to grab_job: {frame.command}")

        self._execute(
            conn,
            str(frame["handle"]),
            str(frame["func"]),
            decode_arguments(frame.get("arg")),
        )
        return True

    def _execute(self, conn: Connection, handle: str, function: str, args: Any) -> None:
        """
        Run one assigned job and report the outcome.

        A JobError, including a missing handler, is reported with work_fail;
        any other exception propagates.
        """
        start_time = time.perf_counter()
        log_extra = {"handle": handle, "function": function, "server": conn.server}

        try:
            handler = self.registry.get(function)
            context = JobContext(
                handle=handle,
                function=function,
                args=args,
                connection=conn,
                init_params=self.init_params.get(function, {}),
            )

            self._emit(WorkerEvent.JOB_START, handle, function, args)
            logger.info("Executing job", extra=log_extra)

            with create_span(SPAN_EXECUTE_JOB, handle=handle, function=function, server=conn.server):
                result = normalize_result(handler.run(context))

            conn.send("work_complete", {"handle": handle, "result": json.dumps(result)})

        except JobError as e:
            duration = time.perf_counter() - start_time
            logger.warning("Job failed", extra={**log_extra, "error": str(e)})

            conn.send("work_fail", {"handle": handle})
            self._metrics.record_job_executed(function, "failed", duration)
            self._emit(WorkerEvent.JOB_FAIL, handle, function, e)
            return

        duration = time.perf_counter() - start_time
        logger.info(
            "Job completed successfully",
            extra={**log_extra, "duration": f"{duration:.2f}s"},
        )
        self._metrics.record_job_executed(function, "succeeded", duration)
        self._emit(WorkerEvent.JOB_COMPLETE, handle, function, result)

    # ------------------------------------------------------------------
    # Connections and backoff
    # ------------------------------------------------------------------

    def _connect(self, server: str) -> bool:
        """Open a connection, identify the worker and replay abilities."""
        try:
            existing = self.connections.pop(server, None)
            if existing is not None:
                existing.close()

            conn = self._connection_factory(server, self.socket_timeout_ms)
            self.connections[server] = conn
            conn.send("set_client_id", {"client_id": self.worker_id})
            self._replay_abilities(conn)

        except (GearmanError, OSError) as e:
            logger.warning("Connection failed", extra={"server": server, "error": str(e)})
            self._metrics.record_connection_failure(server, "worker")
            self.sleep_connection(server)
            self._status("Connection failed", server)
            return False

        if server in self.retry_at:
            del self.retry_at[server]
            self.failures.pop(server, None)
            self._status("Removing server from the retry list.", server)

        self._status(f"Connected to {server}", server)
        return True

    def retry_connections(self) -> bool:
        """
        Reconnect every sleeping server whose retry deadline has passed.

        Returns:
            True if any server was reconnected.
        """
        if not self.retry_at:
            return False

        reconnected = False
        now = self._clock()
        for server, deadline in list(self.retry_at.items()):
            if deadline <= now:
                self._status(f"Attempting to reconnect to {server}", server)
                if self._connect(server):
                    reconnected = True

        self._update_min_retry_delay()
        return reconnected

    def retry_time(self, failure_count: int) -> int:
        """Backoff in seconds after ``failure_count`` consecutive failures."""
        return min(self.max_retry_seconds, self.retry_seconds * 2 ** (failure_count - 1))

    def sleep_connection(self, server: str) -> None:
        """Close a server's connection and schedule a retry with backoff."""
        conn = self.connections.pop(server, None)
        if conn is not None:
            self._close(server, conn)

        self.failures[server] = self.failures.get(server, 0) + 1
        wait_time = self.retry_time(self.failures[server])
        self.retry_at[server] = self._clock() + wait_time

        self._update_min_retry_delay()
        self._status(f"Putting {server} connection to sleep for {wait_time} seconds", server)

    def _update_min_retry_delay(self) -> None:
        if not self.retry_at:
            self.min_retry_delay = None
            return
        self.min_retry_delay = max(0.0, min(self.retry_at.values()) - self._clock())

    def wait_quietly(self, monitor: Monitor | None = None, last_job_time: float = 0.0) -> bool:
        """
        Tell the servers the worker is going to sleep and wait for a wake-up.

        Waits up to the sleep window, or the nearest retry deadline if that
        is sooner, in socket-timeout slices.

        Returns:
            True if a connection became readable before the window ended.
        """
        for server, conn in list(self.connections.items()):
            try:
                conn.send("pre_sleep")
            except (GearmanError, OSError):
                self.sleep_connection(server)

        window = float(self.sleep_seconds)
        if self.min_retry_delay is not None:
            window = min(window, self.min_retry_delay)

        self._status(f"Worker going quiet for {window:g} seconds")

        wake_time = self._clock() + window
        slice_seconds = self.socket_timeout_ms / 1000

        while self.connections and self._clock() < wake_time:
            connections = list(self.connections.items())
            try:
                readable, _, _ = select.select([conn for _, conn in connections], [], [], slice_seconds)
            except (OSError, ValueError) as e:
                readable = []
                for server, conn in connections:
                    if not conn.is_connected() or conn.socket_error():
                        self._status(f"Error while listening for wake up; socket error: {e}", server)
                        self.sleep_connection(server)

            if self._should_stop(monitor, last_job_time):
                break

            if readable:
                return True

        return False

    def deep_sleep(self, monitor: Monitor | None = None, last_job_time: float = 0.0) -> None:
        """Sleep in one-second steps until the nearest retry deadline."""
        retry_delay = self.min_retry_delay if self.min_retry_delay is not None else self.retry_seconds
        self._status(f"No open connections. Sleeping for {retry_delay:g} seconds")

        started = self._clock()
        while True:
            self._sleep(1)
            if self._should_stop(monitor, last_job_time):
                break
            if self._clock() - started >= retry_delay:
                break

    def _close(self, server: str, conn: Connection) -> None:
        try:
            conn.send("reset_abilities")
        except (GearmanError, OSError):
            logger.debug("Could not reset abilities", extra={"server": server})
        try:
            conn.close()
        except GearmanError as e:
            logger.warning("Error closing connection", extra={"server": server, "error": str(e)})

    def end_work(self) -> None:
        """Reset abilities on and close every open connection."""
        for server, conn in list(self.connections.items()):
            self._close(server, conn)
        self.connections = {}


def run() -> None:
    """Run the worker."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    setup_metrics(settings.prometheus_port)

    worker = Worker()
    bind_context(worker_id=worker.worker_id)

    for name in worker.registry.names():
        worker.add_ability(name)

    # Handle shutdown signals
    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, lambda signum, frame: worker.stop())

    try:
        worker.run()
    finally:
        worker.end_work()


if __name__ == "__main__":
    run()
