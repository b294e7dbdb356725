"""Orchestrates push refreshes, task polling and fallback timers for submitted jobs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from .api import SessionSource
from .completion import CompletionStateMachine
from .config import CompletionConfig
from .errors import (
    AuthenticationError,
    NetworkError,
    PollCancelledError,
    PollTimeoutError,
    TaskCancelledError,
    TaskFailedError,
)
from .eventbus import EventBus
from .models import (
    Accepted,
    ChannelCallback,
    CompletionReason,
    Deferred,
    Immediate,
    JobOutcome,
    RealtimeEvent,
    SessionRecord,
    Submission,
    TerminalEvent,
)
from .poller import AsyncTaskPoller
from .telemetry import JobTerminalEvent, NullTelemetrySink, TelemetrySink

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


def _create_task_set() -> set[asyncio.Task[None]]:
    """Return a new empty set for tracking asyncio tasks."""
    return set()


@dataclass(slots=True, eq=False)
class JobWatch:
    """Caller-facing handle for one submitted job on a record."""

    record_id: str
    watch_id: str
    submission: Submission
    future: asyncio.Future[TerminalEvent] = field(repr=False)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    tasks: set[asyncio.Task[None]] = field(default_factory=_create_task_set, repr=False)

    @property
    def done(self) -> bool:
        """Return ``True`` once the terminal event was produced."""
        return self.future.done()

    async def wait(self, timeout: float | None = None) -> TerminalEvent:
        """Wait for the terminal event without cancelling the watch on timeout."""
        if timeout is None:
            return await asyncio.shield(self.future)
        return await asyncio.wait_for(asyncio.shield(self.future), timeout)

    def result(self) -> TerminalEvent:
        """Return the terminal event; raises ``asyncio.InvalidStateError`` if pending."""
        return self.future.result()


class CompletionTracker:
    """Turns submissions into watches and publishes each watch's terminal event once.

    ``Immediate`` submissions finish at once, ``Deferred`` ones are polled in the
    background and ``Accepted`` ones wait for push refreshes bounded by the
    fallback timer. Terminal events go to the watch future and to the
    ``jobs.terminal`` topics on the event bus.
    """

    def __init__(
        self,
        machine: CompletionStateMachine,
        poller: AsyncTaskPoller,
        records: SessionSource,
        *,
        config: CompletionConfig | None = None,
        event_bus: EventBus | None = None,
        telemetry: TelemetrySink | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        """Wire the tracker to its state machine, poller and record source."""
        self._machine = machine
        self._poller = poller
        self._records = records
        self._config = config or machine.config
        self._event_bus = event_bus or EventBus()
        self._telemetry = telemetry or NullTelemetrySink()
        self._sleep = sleep or asyncio.sleep
        self._watches: dict[str, JobWatch] = {}
        self._tasks: set[asyncio.Task[None]] = _create_task_set()

    @property
    def event_bus(self) -> EventBus:
        """Return the bus terminal events are published on."""
        return self._event_bus

    def in_flight(self, record_id: str) -> bool:
        """Return ``True`` while a job on *record_id* has not reached a terminal event."""
        return record_id in self._watches

    def watch_for(self, record_id: str) -> JobWatch | None:
        """Return the active watch on *record_id*, if any."""
        return self._watches.get(record_id)

    async def track(
        self,
        record_id: str,
        submission: Submission,
        current: SessionRecord | None = None,
        *,
        fallback: bool = True,
    ) -> JobWatch:
        """Start watching the job described by *submission* on *record_id*.

        *current* is the record as observed just before submitting and provides
        the signature baseline. A watch already active on the record is resolved
        as superseded first. Unless *fallback* is ``False`` a pending job is also
        forced terminal ``fallback_timeout`` seconds after submission, whether or
        not its task is still being polled. Accepted jobs always get the timer.
        """
        previous = self._watches.get(record_id)
        if previous is not None:
            await self._resolve(
                previous,
                JobOutcome.CANCELLED,
                CompletionReason.SUPERSEDED,
                error="Superseded by a newer job",
            )
        session = self._machine.begin(record_id, current)
        watch = JobWatch(
            record_id=record_id,
            watch_id=session.watch_id,
            submission=submission,
            future=asyncio.get_running_loop().create_future(),
        )
        self._watches[record_id] = watch
        logger.info(
            "Tracking %s on %s (watch %s)", type(submission).__name__, record_id, watch.watch_id
        )

        if isinstance(submission, Immediate):
            await self._resolve(
                watch,
                JobOutcome.SUCCESS,
                CompletionReason.IMMEDIATE_RESULT,
                result=submission.result,
            )
        else:
            if isinstance(submission, Deferred):
                self._spawn(watch, self._poll(watch, submission.task_id))
            if fallback or isinstance(submission, Accepted):
                self._spawn(watch, self._fallback(watch))
        return watch

    async def refresh(self, record: SessionRecord) -> TerminalEvent | None:
        """Evaluate a refreshed *record* from any source."""
        event = self._machine.observe(record)
        await self._deliver(event)
        return event

    async def refresh_record(self, record_id: str) -> TerminalEvent | None:
        """Fetch *record_id* and evaluate it when a job on it is in flight."""
        if not self._machine.in_flight(record_id):
            return None
        try:
            record = await self._records.get_session(record_id)
        except (NetworkError, AuthenticationError) as exc:
            logger.warning("Refresh of %s failed: %s", record_id, exc)
            return None
        return await self.refresh(record)

    def channel_callback(self, record_key: str) -> ChannelCallback:
        """Return a realtime callback refreshing the record named by *record_key* in each row."""

        async def _on_change(event: RealtimeEvent) -> None:
            record_id = event.row_value(record_key)
            if not isinstance(record_id, str):
                return
            watch = self._watches.get(record_id)
            if watch is None:
                return
            logger.debug(
                "%s on %s touched watched record %s", event.kind.value, event.table, record_id
            )
            self._spawn(watch, self._refresh_task(record_id))

        return _on_change

    async def cancel(self, record_id: str) -> bool:
        """Abandon the watch on *record_id*; returns ``False`` when none is active."""
        watch = self._watches.get(record_id)
        if watch is None:
            return False
        await self._resolve(
            watch, JobOutcome.CANCELLED, CompletionReason.ABANDONED, error="Watch abandoned"
        )
        return True

    async def shutdown(self) -> None:
        """Abandon every active watch and wait for background tasks to stop."""
        for record_id in list(self._watches):
            await self.cancel(record_id)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            await self._await_optional_task(task)
        logger.info("Completion tracker shut down")

    async def _poll(self, watch: JobWatch, task_id: str) -> None:
        try:
            result = await self._poller.poll(task_id, cancel=watch.cancel_event)
        except PollCancelledError:
            return
        except TaskFailedError as exc:
            await self._resolve(
                watch, JobOutcome.FAILURE, CompletionReason.TASK_FAILED, error=str(exc)
            )
        except TaskCancelledError as exc:
            await self._resolve(
                watch, JobOutcome.CANCELLED, CompletionReason.TASK_CANCELLED, error=str(exc)
            )
        except PollTimeoutError as exc:
            await self._resolve(
                watch, JobOutcome.TIMEOUT, CompletionReason.POLL_TIMEOUT, error=str(exc)
            )
        except (NetworkError, AuthenticationError) as exc:
            await self._resolve(
                watch, JobOutcome.FAILURE, CompletionReason.TRANSPORT_FAILURE, error=str(exc)
            )
        except Exception as exc:
            logger.exception("Polling task %s for %s failed unexpectedly", task_id, watch.record_id)
            await self._resolve(
                watch, JobOutcome.FAILURE, CompletionReason.TRANSPORT_FAILURE, error=str(exc)
            )
        else:
            await self._resolve(
                watch,
                JobOutcome.SUCCESS,
                CompletionReason.TASK_RESULT,
                result=result.result,
                status="completed",
            )

    async def _fallback(self, watch: JobWatch) -> None:
        await self._sleep(self._config.fallback_timeout)
        record: SessionRecord | None
        try:
            record = await self._records.get_session(watch.record_id)
        except (NetworkError, AuthenticationError) as exc:
            logger.warning("Fallback fetch of %s failed: %s", watch.record_id, exc)
            record = None
        except Exception:
            logger.exception("Fallback fetch of %s failed unexpectedly", watch.record_id)
            record = None
        await self._deliver(self._machine.expire(watch.record_id, watch.watch_id, record))

    async def _refresh_task(self, record_id: str) -> None:
        await self.refresh_record(record_id)

    async def _resolve(
        self,
        watch: JobWatch,
        outcome: JobOutcome,
        reason: CompletionReason,
        **details: Any,
    ) -> None:
        event = self._machine.resolve(watch.record_id, watch.watch_id, outcome, reason, **details)
        if event is None and self._watches.get(watch.record_id) is watch:
            # Session already gone from the machine; close the watch directly.
            event = TerminalEvent(
                record_id=watch.record_id,
                watch_id=watch.watch_id,
                outcome=outcome,
                reason=reason,
                **details,
            )
        await self._deliver(event)

    async def _deliver(self, event: TerminalEvent | None) -> None:
        if event is None:
            return
        watch = self._watches.get(event.record_id)
        if watch is None or watch.watch_id != event.watch_id or watch.future.done():
            logger.debug("Dropping terminal event for stale watch %s", event.watch_id)
            return
        del self._watches[event.record_id]
        watch.cancel_event.set()
        current = asyncio.current_task()
        for task in list(watch.tasks):
            if task is not current and not task.done():
                task.cancel()
        watch.future.set_result(event)
        self._telemetry.record_event(
            JobTerminalEvent(
                record_id=event.record_id,
                outcome=event.outcome,
                reason=event.reason,
                message=event.error,
            )
        )
        logger.info(
            "Job on %s terminal: %s (%s)", event.record_id, event.outcome.value, event.reason.value
        )
        failures = await self._event_bus.publish_terminal(event.record_id, event)
        if failures:
            logger.warning("%d terminal event consumer(s) failed for %s", failures, event.record_id)

    def _spawn(self, watch: JobWatch, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)

        def _remove(done: asyncio.Task[None]) -> None:
            watch.tasks.discard(done)
            self._tasks.discard(done)
            if not done.cancelled() and done.exception() is not None:
                logger.error(
                    "Background task for %s failed",
                    watch.record_id,
                    exc_info=done.exception(),
                )

        watch.tasks.add(task)
        self._tasks.add(task)
        task.add_done_callback(_remove)

    async def _await_optional_task(self, task: asyncio.Task[None] | None) -> None:
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
