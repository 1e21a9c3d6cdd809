"""
Job-related type definitions for the worker side.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from gearqueue.protocol.connection import Connection


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.

    Carries the decoded arguments, the init parameters the ability was
    announced with, and the connection the job arrived on so a handler
    can report progress.
    """

    handle: str
    function: str
    args: Any
    connection: "Connection"
    init_params: dict[str, Any] = field(default_factory=dict)

    def status(self, numerator: int, denominator: int) -> None:
        """
        Report job progress to the server.

        Args:
            numerator: Work done so far (e.g. 1).
            denominator: Total work (e.g. 100).
        """
        self.connection.send(
            "work_status",
            {
                "handle": self.handle,
                "numerator": numerator,
                "denominator": denominator,
            },
        )


def normalize_result(result: Any) -> dict[str, Any]:
    """Wrap a non-mapping handler result as ``{"result": value}``."""
    if isinstance(result, dict):
        return result
    return {"result": result}
