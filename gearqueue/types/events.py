"""
Event type definitions for worker status reporting.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkerStatusEvent(BaseModel):
    """
    Event emitted when a worker's connection state changes.
    Delivered to WORKER_STATUS listeners.
    """

    message: str
    server: str | None = None
    connected: bool | None = None
    failure_count: int | None = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ConnectionAttempt(BaseModel):
    """
    Outcome of one client attempt to open a server connection.
    Delivered to client connection listeners.
    """

    server: str
    connected: bool
    timeout_ms: int
    elapsed_seconds: float
    error: str | None = None
