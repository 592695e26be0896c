from __future__ import annotations

from typing import Optional

__all__ = ["WorldPopError", "ValidationError", "ServiceError", "TaskTimeoutError"]


class WorldPopError(Exception):
    """Base class for every failure raised by the WorldPop client."""


class ValidationError(WorldPopError, ValueError):
    """Caller input violates a precondition. Raised before any request is sent."""


class ServiceError(WorldPopError, RuntimeError):
    """The service reported a failure or answered without the expected payload."""


class TaskTimeoutError(WorldPopError, TimeoutError):
    """A task never reached a terminal state within the polling budget."""

    def __init__(
        self,
        message: str = "Task did not complete within expected time",
        *,
        task_id: Optional[str] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.attempts = attempts
