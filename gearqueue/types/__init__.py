"""
Type definitions for the job queue client and worker.
Contains the task model, job execution context and event types.
"""

from gearqueue.types.events import (
    ConnectionAttempt,
    WorkerStatusEvent,
)
from gearqueue.types.job import (
    JobContext,
    normalize_result,
)
from gearqueue.types.task import (
    Task,
    TaskSet,
    derive_uniq,
    encode_argument,
)

__all__ = [
    # Task model
    "Task",
    "TaskSet",
    "derive_uniq",
    "encode_argument",
    # Job types
    "JobContext",
    "normalize_result",
    # Event types
    "ConnectionAttempt",
    "WorkerStatusEvent",
]
