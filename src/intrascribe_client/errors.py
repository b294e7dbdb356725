"""Exception hierarchy for the Intrascribe job-tracking client."""

from __future__ import annotations

from dataclasses import dataclass


class IntrascribeError(Exception):
    """Base exception for all Intrascribe client errors."""


class TransportError(IntrascribeError):
    """Raised when a realtime channel cannot be created or subscribed."""


class NetworkError(IntrascribeError):
    """Raised when an HTTP request to the Intrascribe API cannot be completed."""


class ApiStatusError(NetworkError):
    """Raised when the API answers with a non-success HTTP status."""

    def __init__(self, message: str, *, status_code: int) -> None:
        """Store the HTTP *status_code* alongside the error *message*."""
        super().__init__(message)
        self.status_code = status_code


class ResponseParsingError(NetworkError):
    """Raised when an API response cannot be parsed into typed models."""


class AuthenticationError(IntrascribeError):
    """Raised when the API rejects the bearer token (HTTP 401/403)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Store the optional HTTP *status_code* alongside the error *message*."""
        super().__init__(message)
        self.status_code = status_code


class TaskFailedError(IntrascribeError):
    """Raised when the backend reports a task as failed."""

    def __init__(self, task_id: str, message: str) -> None:
        """Record the failing *task_id* and the backend-supplied *message*."""
        super().__init__(message)
        self.task_id = task_id


class TaskCancelledError(IntrascribeError):
    """Raised when the backend reports a task as cancelled."""

    def __init__(self, task_id: str) -> None:
        """Record the cancelled *task_id*."""
        super().__init__(f"Task {task_id} was cancelled")
        self.task_id = task_id


class PollTimeoutError(IntrascribeError):
    """Raised when a task poll exhausts its attempt budget without a terminal status."""

    def __init__(self, task_id: str, attempts: int) -> None:
        """Record the *task_id* and the number of *attempts* made."""
        super().__init__(f"Task {task_id} did not finish after {attempts} attempts")
        self.task_id = task_id
        self.attempts = attempts


class PollCancelledError(IntrascribeError):
    """Raised when a caller abandons a poll through its cancellation token."""

    def __init__(self, task_id: str, attempts: int) -> None:
        """Record the *task_id* and the attempts made before cancellation."""
        super().__init__(f"Polling for task {task_id} abandoned after {attempts} attempts")
        self.task_id = task_id
        self.attempts = attempts


class JobRejectedError(IntrascribeError):
    """Raised when a job cannot be submitted for the record in its current state."""


@dataclass(frozen=True, slots=True)
class RetryHint:
    """Describes how long a failed operation should back off before retrying."""

    seconds: float
    reason: str
