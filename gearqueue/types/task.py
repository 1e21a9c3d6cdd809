"""
Client-side task and task set model.

A Task is one job submission; a TaskSet is a batch of tasks whose joint
completion fires an aggregate callback.
"""

import hashlib
import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from gearqueue.constants import JobType, TaskEvent
from gearqueue.exceptions import ProtocolError, UnknownHandleError

logger = logging.getLogger(__name__)

TaskCallback = Callable[..., Any]
SetCallback = Callable[[list[Any]], Any]

_SCALAR_TYPES = (str, bytes, int, float, bool)


def encode_argument(arg: Any) -> str | bytes:
    """Wire form of a task argument: scalars as-is, anything else as JSON."""
    if arg is None:
        return ""
    if isinstance(arg, bytes):
        return arg
    if isinstance(arg, _SCALAR_TYPES):
        return str(arg)
    return json.dumps(arg)


def derive_uniq(func: str, arg: Any, job_type: JobType) -> str:
    """Deterministic uniqueness key from function, argument and job type."""
    if isinstance(arg, bytes):
        serialized = arg.decode("utf-8", "replace")
    else:
        serialized = json.dumps(arg, sort_keys=True, default=str)
    return hashlib.md5(f"{func}{serialized}{int(job_type)}".encode("utf-8")).hexdigest()


@dataclass(eq=False)
class Task:
    """
    One job submission.

    Lifecycle: created, submitted (no handle yet), handle assigned, then
    completed or failed. Background types are finished as soon as they
    have been submitted and never see completion data.

    Example:
        task = Task("sum", [1, 2])
        task.attach_callback(lambda func, handle, result, uniq: print(result))
    """

    func: str
    arg: Any = None
    uniq: str | None = None
    type: JobType = JobType.NORMAL
    servers: list[str] = field(default_factory=list)
    handle: str = ""
    server: str = ""
    finished: bool = False
    result: Any = None
    _callbacks: dict[TaskEvent, list[TaskCallback]] = field(
        default_factory=lambda: {event: [] for event in TaskEvent},
        init=False,
        repr=False,
    )
    _owner: "TaskSet | None" = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        try:
            self.type = JobType(self.type)
        except ValueError:
            raise ValueError(f"Unknown job type: {self.type}") from None

        if self.uniq is None:
            self.uniq = derive_uniq(self.func, self.arg, self.type)

    @property
    def is_background(self) -> bool:
        return self.type.is_background

    @property
    def payload(self) -> str | bytes:
        """The argument as it goes on the wire."""
        return encode_argument(self.arg)

    def attach_callback(
        self,
        callback: TaskCallback,
        event: TaskEvent = TaskEvent.COMPLETE,
    ) -> "Task":
        """
        Register a listener for a task event.

        Complete listeners get ``(func, handle, result, uniq)``, fail
        listeners get the task, status listeners get
        ``(func, handle, numerator, denominator)``.

        Raises:
            TypeError: If the callback is not callable.
            ValueError: If the event is unknown.
        """
        if not callable(callback):
            raise TypeError("Invalid callback specified")
        try:
            event = TaskEvent(event)
        except ValueError:
            raise ValueError(f"Invalid callback type specified: {event}") from None

        self._callbacks[event].append(callback)
        return self

    def callbacks(self, event: TaskEvent) -> list[TaskCallback]:
        return list(self._callbacks[event])

    def complete(self, result: Any) -> None:
        """Record the result and run the complete listeners."""
        self.finished = True
        self.result = result

        for callback in self._callbacks[TaskEvent.COMPLETE]:
            callback(self.func, self.handle, result, self.uniq)

    def fail(self) -> None:
        """Mark the task failed and run the fail listeners."""
        self.finished = True

        for callback in self._callbacks[TaskEvent.FAIL]:
            callback(self)

    def status(self, numerator: int, denominator: int) -> None:
        """Run the status listeners with the reported progress."""
        for callback in self._callbacks[TaskEvent.STATUS]:
            callback(self.func, self.handle, numerator, denominator)


class TaskSet:
    """
    A batch of tasks keyed by uniqueness key.

    Adding a second task with an existing key is a no-op, so identical
    submissions are coalesced. The set keeps a live count of unfinished
    tasks and a map from server-assigned handles to keys.

    Example:
        task_set = TaskSet([Task("sum", [1, 2]), Task("sum", [3, 4])])
        task_set.attach_callback(lambda results: print(results))
        client.dispatch(task_set)
    """

    def __init__(self, tasks: list[Task] | None = None):
        self.tasks: dict[str, Task] = {}
        self.handles: dict[str, str] = {}
        self.tasks_count = 0
        self._callback: SetCallback | None = None
        self._callback_fired = False

        for task in tasks or []:
            self.add_task(task)

    def __iter__(self) -> Iterator[Task]:
        return iter(list(self.tasks.values()))

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, task: object) -> bool:
        return isinstance(task, Task) and self.tasks.get(task.uniq) is task

    def add_task(self, task: Task) -> None:
        """
        Add a task to the set.

        Raises:
            ValueError: If the task already belongs to another set.
        """
        if task._owner is not None and task._owner is not self:
            raise ValueError(f"Task {task.uniq} already belongs to another set")

        if task.uniq in self.tasks:
            return

        task._owner = self
        self.tasks[task.uniq] = task
        if not task.finished:
            self.tasks_count += 1

    def register_handle(self, handle: str, task: Task) -> None:
        """
        Map a server-assigned handle to a task of this set.

        Raises:
            ProtocolError: If the handle already names a different task.
        """
        known = self.handles.get(handle)
        if known is not None and known != task.uniq:
            raise ProtocolError(f"Handle {handle} was already assigned to task {known}")
        self.handles[handle] = task.uniq

    def get_task(self, handle: str) -> Task:
        """
        Look a task up by its handle.

        Raises:
            UnknownHandleError: If the handle was never registered.
        """
        if handle not in self.handles:
            raise UnknownHandleError(f"Unknown handle: {handle}")

        task = self.tasks.get(self.handles[handle])
        if task is None:
            raise UnknownHandleError(f"No task by that handle: {handle}")

        return task

    def finish(self, task: Task) -> None:
        """Flag a task finished, dropping it from the live count once."""
        if task.finished:
            return
        task.finished = True
        self.tasks_count -= 1

    @property
    def remaining(self) -> int:
        return self.tasks_count

    @property
    def results(self) -> list[Any]:
        return [task.result for task in self.tasks.values()]

    def attach_callback(self, callback: SetCallback) -> None:
        """
        Set the listener run once when every task has finished.

        The listener receives the task results in insertion order.
        """
        if not callable(callback):
            raise TypeError("Invalid callback specified")
        self._callback = callback

    def finished(self) -> bool:
        """
        Check if every task has finished.

        The first time this is true the set callback runs; later calls
        do not run it again.
        """
        if self.tasks_count > 0:
            return False

        if self._callback is not None and not self._callback_fired:
            self._callback_fired = True
            self._callback(self.results)

        return True
