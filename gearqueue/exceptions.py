"""
Exception hierarchy for protocol, connection and job failures.
"""


class GearmanError(Exception):
    """Base class for every error raised by this package."""


class ProtocolError(GearmanError):
    """Malformed frame, unknown command or unexpected response sequencing."""


class UnknownHandleError(ProtocolError):
    """A frame referenced a job handle the task set never registered."""


class ServerError(ProtocolError):
    """The job server answered with an error."""

    def __init__(self, code: str, text: str):
        self.code = code
        self.text = text
        super().__init__(f"({code}): {text}")


class ServerConnectionError(GearmanError, ConnectionError):
    """Could not connect to a server, or the connection was reset."""


class AllConnectionsFailed(ServerConnectionError):
    """Every open connection reported an error in the same dispatch round."""


class ReadTimeoutError(GearmanError, TimeoutError):
    """A blocking read did not see any data before its deadline."""


class WriteError(GearmanError, OSError):
    """Writing a frame to the socket failed."""


class JobError(GearmanError):
    """
    Recoverable job failure.

    Raised by job handlers to have the worker report work_fail to the
    server instead of completing the job.
    """


class HandlerNotFoundError(JobError):
    """No handler is registered for the requested function."""
