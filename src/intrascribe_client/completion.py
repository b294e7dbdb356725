"""Completion inference for watched records from refreshes, poll results and timers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from uuid import uuid4

from .config import CompletionConfig
from .models import (
    CompletionReason,
    JobOutcome,
    SessionRecord,
    Signature,
    TerminalEvent,
    WatchSession,
)

logger = logging.getLogger(__name__)

_RESET_OUTCOMES = {
    "failed": JobOutcome.FAILURE,
    "cancelled": JobOutcome.CANCELLED,
}


def _new_watch_id() -> str:
    return uuid4().hex


class CompletionStateMachine:
    """Tracks one :class:`WatchSession` per record and decides when a job is terminal.

    A refresh is evaluated in a fixed order: the in-progress marker is recorded
    first, then a success marker after an observed intermediate state wins over
    the signature diff, which only decides when no intermediate state was seen.
    Every terminal transition discards the session, so later refreshes and
    stale watch ids are ignored.
    """

    def __init__(
        self,
        config: CompletionConfig | None = None,
        *,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        """Create a state machine; *id_factory* issues watch ids (uuid4 hex by default)."""
        self._config = config or CompletionConfig()
        self._new_id = id_factory or _new_watch_id
        self._sessions: dict[str, WatchSession] = {}

    @property
    def config(self) -> CompletionConfig:
        """Return the active completion configuration."""
        return self._config

    def begin(self, record_id: str, current: SessionRecord | None = None) -> WatchSession:
        """Start awaiting a job on *record_id*, capturing the baseline from *current*.

        Any session already tracked for the record is superseded and dropped.
        """
        previous = self._sessions.pop(record_id, None)
        if previous is not None:
            previous.terminal = True
            logger.info("Watch %s on %s superseded", previous.watch_id, record_id)
        session = WatchSession(
            watch_id=self._new_id(),
            record_id=record_id,
            baseline=Signature.of_session(current),
            baseline_status=current.status if current is not None else None,
        )
        self._sessions[record_id] = session
        logger.debug("Awaiting job on %s with baseline %s", record_id, session.baseline)
        return session

    def observe(self, record: SessionRecord) -> TerminalEvent | None:
        """Evaluate a refreshed *record* and return a terminal event when one is reached."""
        session = self._sessions.get(record.id)
        if session is None:
            return None
        status = record.status
        if status == self._config.in_progress_status:
            if not session.has_observed_intermediate_state:
                session.has_observed_intermediate_state = True
                logger.debug("Job on %s picked up (status %s)", record.id, status)
            return None
        if status == self._config.success_status:
            if session.has_observed_intermediate_state:
                return self._finish(
                    session,
                    JobOutcome.SUCCESS,
                    CompletionReason.STATUS_TRANSITION,
                    result=record,
                    status=status,
                )
            if Signature.of_session(record) != session.baseline:
                return self._finish(
                    session,
                    JobOutcome.SUCCESS,
                    CompletionReason.SIGNATURE_CHANGED,
                    result=record,
                    status=status,
                )
            return None
        if status == session.baseline_status:
            # Unchanged since submission; the job has not been picked up yet.
            return None
        return self._finish(
            session,
            _RESET_OUTCOMES.get(status, JobOutcome.FAILURE),
            CompletionReason.STATUS_RESET,
            error=f"Record {record.id} moved to status {status!r}",
            status=status,
        )

    def resolve(
        self,
        record_id: str,
        watch_id: str,
        outcome: JobOutcome,
        reason: CompletionReason,
        *,
        result: object | None = None,
        error: str | None = None,
        status: str | None = None,
    ) -> TerminalEvent | None:
        """Finish the watch from an external signal; stale *watch_id* values are ignored."""
        session = self._current(record_id, watch_id)
        if session is None:
            logger.debug("Ignoring %s for stale watch %s on %s", reason.value, watch_id, record_id)
            return None
        return self._finish(session, outcome, reason, result=result, error=error, status=status)

    def expire(
        self, record_id: str, watch_id: str, record: SessionRecord | None
    ) -> TerminalEvent | None:
        """Force the watch terminal once the fallback timer elapsed.

        *record* is the freshly fetched state, or ``None`` when it could not be
        fetched. It is evaluated like any refresh first; a success marker then
        completes the watch and anything else times it out.
        """
        session = self._current(record_id, watch_id)
        if session is None:
            return None
        if record is not None:
            event = self.observe(record)
            if event is not None:
                return event
            if record.status == self._config.success_status:
                return self._finish(
                    session,
                    JobOutcome.SUCCESS,
                    CompletionReason.FALLBACK_COMPLETED,
                    result=record,
                    status=record.status,
                )
        return self._finish(
            session,
            JobOutcome.TIMEOUT,
            CompletionReason.FALLBACK_TIMEOUT,
            error=f"No completion observed for {record_id}",
            status=record.status if record is not None else None,
        )

    def in_flight(self, record_id: str) -> bool:
        """Return ``True`` while a job on *record_id* is awaiting completion."""
        return record_id in self._sessions

    def session(self, record_id: str) -> WatchSession | None:
        """Return the active session for *record_id*, if any."""
        return self._sessions.get(record_id)

    def active_records(self) -> list[str]:
        """Return the record ids with an active session."""
        return list(self._sessions)

    def _current(self, record_id: str, watch_id: str) -> WatchSession | None:
        session = self._sessions.get(record_id)
        if session is None or session.watch_id != watch_id:
            return None
        return session

    def _finish(
        self,
        session: WatchSession,
        outcome: JobOutcome,
        reason: CompletionReason,
        *,
        result: object | None = None,
        error: str | None = None,
        status: str | None = None,
    ) -> TerminalEvent:
        session.terminal = True
        if self._sessions.get(session.record_id) is session:
            del self._sessions[session.record_id]
        logger.info(
            "Job on %s finished: %s (%s)", session.record_id, outcome.value, reason.value
        )
        return TerminalEvent(
            record_id=session.record_id,
            watch_id=session.watch_id,
            outcome=outcome,
            reason=reason,
            result=result,
            error=error,
            status=status,
        )
