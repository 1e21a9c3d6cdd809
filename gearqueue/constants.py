"""
Application constants.
Centralized location for all constant values used across the package.
"""

from enum import IntEnum, StrEnum


class JobType(IntEnum):
    """
    How a task is submitted to the job server.

    Background variants are fire-and-forget: the server answers with a
    handle and nothing else, so they are finished as soon as they are sent.
    """

    NORMAL = 1
    BACKGROUND = 2
    HIGH = 3
    HIGH_BACKGROUND = 4
    LOW = 5
    LOW_BACKGROUND = 6

    @property
    def is_background(self) -> bool:
        """Check if no completion data will ever arrive for this type."""
        return self in BACKGROUND_JOB_TYPES

    @property
    def submit_command(self) -> str:
        """Name of the wire command used to submit this type."""
        return SUBMIT_COMMANDS[self]


class JobPriority(StrEnum):
    """Priority levels accepted by the client convenience methods."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class TaskEvent(StrEnum):
    """Events a client-side task reports to its listeners."""

    COMPLETE = "complete"
    FAIL = "fail"
    STATUS = "status"


class WorkerEvent(StrEnum):
    """Events a worker reports to its listeners."""

    JOB_START = "job_start"
    JOB_COMPLETE = "job_complete"
    JOB_FAIL = "job_fail"
    WORKER_STATUS = "worker_status"


BACKGROUND_JOB_TYPES = frozenset(
    {JobType.BACKGROUND, JobType.HIGH_BACKGROUND, JobType.LOW_BACKGROUND}
)

SUBMIT_COMMANDS: dict[JobType, str] = {
    JobType.NORMAL: "submit_job",
    JobType.BACKGROUND: "submit_job_bg",
    JobType.HIGH: "submit_job_high",
    JobType.HIGH_BACKGROUND: "submit_job_high_bg",
    JobType.LOW: "submit_job_low",
    JobType.LOW_BACKGROUND: "submit_job_low_bg",
}

# Background job type used when a priority is run fire-and-forget
BACKGROUND_TYPE_FOR_PRIORITY: dict[JobPriority, JobType] = {
    JobPriority.LOW: JobType.LOW_BACKGROUND,
    JobPriority.NORMAL: JobType.BACKGROUND,
    JobPriority.HIGH: JobType.HIGH_BACKGROUND,
}

# Wire protocol
DEFAULT_PORT = 4730
MAGIC_REQUEST = b"\0REQ"
MAGIC_RESPONSE = b"\0RES"
HEADER_SIZE = 12
FIELD_SEPARATOR = b"\x00"
UNKNOWN_ERROR_TEXT = "Unknown error; see error code."

# Servers from this version on expect can_do_timeout in milliseconds
TIMEOUT_IN_MS_SINCE_VERSION = "1.1.19"

# Default timeouts
DEFAULT_CONNECT_TIMEOUT_MS = 250
DEFAULT_CLIENT_TIMEOUT_MS = 1000
MAX_DISPATCH_WAIT_SECONDS = 10
CLOSE_LINGER_SECONDS = 0.0005

# Metrics names
METRIC_JOBS_SUBMITTED = "gearman_jobs_submitted_total"
METRIC_TASKS_FINISHED = "gearman_tasks_finished_total"
METRIC_JOBS_EXECUTED = "gearman_jobs_executed_total"
METRIC_JOB_DURATION = "gearman_job_duration_seconds"
METRIC_CONNECTION_FAILURES = "gearman_connection_failures_total"

# Trace span names
SPAN_DISPATCH_SET = "dispatch_set"
SPAN_EXECUTE_JOB = "execute_job"
