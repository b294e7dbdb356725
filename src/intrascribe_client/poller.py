"""Task status poller with error-aware retry for background Intrascribe jobs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .api import TaskStatusSource
from .config import PollerConfig
from .errors import (
    AuthenticationError,
    NetworkError,
    PollCancelledError,
    PollTimeoutError,
    RetryHint,
    TaskCancelledError,
    TaskFailedError,
)
from .models import TaskResult, TaskStatus
from .telemetry import NullTelemetrySink, PollAttemptErrorEvent, TaskPollMetrics, TelemetrySink

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]

_IN_PROGRESS = frozenset({TaskStatus.PENDING, TaskStatus.PROCESSING})
_FAST_RETRY_STATUS = 403


class AsyncTaskPoller:
    """Polls the task-status endpoint until a task reaches a terminal status.

    Each call to :meth:`poll` is a single flight; concurrent polls for the same
    task id are not coalesced, so callers must avoid starting duplicates.
    """

    def __init__(
        self,
        source: TaskStatusSource,
        config: PollerConfig | None = None,
        *,
        telemetry: TelemetrySink | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        """Create a poller reading task status from *source*."""
        self._source = source
        self._config = config or PollerConfig()
        self._telemetry = telemetry or NullTelemetrySink()
        self._sleep = sleep or asyncio.sleep

    @property
    def config(self) -> PollerConfig:
        """Return the active poller configuration."""
        return self._config

    async def poll(
        self,
        task_id: str,
        *,
        max_attempts: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TaskResult:
        """Poll *task_id* until completion and return its result.

        Raises:
            TaskFailedError: The backend reported the task as failed.
            TaskCancelledError: The backend reported the task as cancelled.
            AuthenticationError: Authorization kept failing beyond the auth retry budget.
            NetworkError: A fetch failed with too few attempts left to retry.
            PollTimeoutError: The attempt budget ran out without a terminal status.
            PollCancelledError: *cancel* was set before the task finished.

        """
        attempts = self._config.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        consecutive_auth_failures = 0
        last_status = "unfetched"

        for attempt in range(attempts):
            if cancel is not None and cancel.is_set():
                self._record_finish(task_id, attempt, "abandoned")
                raise PollCancelledError(task_id, attempt)
            is_last = attempt == attempts - 1
            try:
                handle = await self._source.get_task(task_id)
            except AuthenticationError as exc:
                if exc.status_code != _FAST_RETRY_STATUS:
                    consecutive_auth_failures = 0
                    self._record_attempt_error(task_id, attempt, exc, auth_failure=False)
                    await self._retry_after_error(task_id, attempt, attempts, exc, cancel)
                    continue
                consecutive_auth_failures += 1
                self._record_attempt_error(task_id, attempt, exc, auth_failure=True)
                if consecutive_auth_failures > self._config.auth_retry_limit:
                    self._record_finish(task_id, attempt + 1, "auth_failed")
                    raise AuthenticationError(
                        f"Authorization failed while polling task {task_id}; sign in again: {exc}",
                        status_code=exc.status_code,
                    ) from exc
                hint = RetryHint(self._config.auth_retry_delay, "authorization failure")
                logger.warning(
                    "Auth error polling task %s (%d/%d), fast retry in %.1fs",
                    task_id,
                    consecutive_auth_failures,
                    self._config.auth_retry_limit,
                    hint.seconds,
                )
                if not is_last:
                    await self._pause(hint, cancel)
                continue
            except NetworkError as exc:
                consecutive_auth_failures = 0
                self._record_attempt_error(task_id, attempt, exc, auth_failure=False)
                await self._retry_after_error(task_id, attempt, attempts, exc, cancel)
                continue

            consecutive_auth_failures = 0
            last_status = handle.raw_status
            logger.debug(
                "Task %s poll %d/%d: %s", task_id, attempt + 1, attempts, handle.raw_status
            )

            if handle.status is TaskStatus.COMPLETED and handle.result is not None:
                logger.info("Task %s completed after %d attempt(s)", task_id, attempt + 1)
                self._record_finish(task_id, attempt + 1, handle.raw_status)
                return TaskResult(task_id=task_id, result=handle.result, attempts=attempt + 1)
            if handle.status is TaskStatus.FAILED:
                logger.error("Task %s failed: %s", task_id, handle.error)
                self._record_finish(task_id, attempt + 1, handle.raw_status)
                raise TaskFailedError(task_id, handle.error or f"Task {task_id} failed")
            if handle.status is TaskStatus.CANCELLED:
                logger.warning("Task %s was cancelled", task_id)
                self._record_finish(task_id, attempt + 1, handle.raw_status)
                raise TaskCancelledError(task_id)
            if handle.status in _IN_PROGRESS:
                logger.debug("Task %s in progress: %s", task_id, handle.progress)
                if not is_last:
                    await self._pause(RetryHint(self._config.base_delay, "in progress"), cancel)
                continue
            # Unrecognised status, or completed without a result payload.
            logger.warning("Task %s reported unexpected status %r", task_id, handle.raw_status)

        self._record_finish(task_id, attempts, last_status)
        raise PollTimeoutError(task_id, attempts)

    async def _retry_after_error(
        self,
        task_id: str,
        attempt: int,
        attempts: int,
        exc: NetworkError | AuthenticationError,
        cancel: asyncio.Event | None,
    ) -> None:
        """Wait the base delay before the next attempt, or re-raise *exc* near the budget end."""
        if attempt >= attempts - self._config.final_attempts_margin:
            self._record_finish(task_id, attempt + 1, "network_error")
            raise exc
        logger.warning(
            "Status fetch for task %s failed (attempt %d/%d): %s",
            task_id,
            attempt + 1,
            attempts,
            exc,
        )
        await self._pause(RetryHint(self._config.base_delay, "network error"), cancel)

    async def _pause(self, hint: RetryHint, cancel: asyncio.Event | None) -> None:
        """Wait for *hint*, returning early when *cancel* is set."""
        if cancel is None:
            await self._sleep(hint.seconds)
            return
        if cancel.is_set():
            return
        sleeper = asyncio.ensure_future(self._sleep(hint.seconds))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()

    def _record_attempt_error(
        self, task_id: str, attempt: int, exc: Exception, *, auth_failure: bool
    ) -> None:
        self._telemetry.record_event(
            PollAttemptErrorEvent(
                task_id=task_id,
                attempt=attempt + 1,
                error_type=exc.__class__.__name__,
                auth_failure=auth_failure,
                message=str(exc),
            )
        )

    def _record_finish(self, task_id: str, attempts: int, final_status: str) -> None:
        self._telemetry.record_metric(
            TaskPollMetrics(task_id=task_id, attempts=attempts, final_status=final_status)
        )
