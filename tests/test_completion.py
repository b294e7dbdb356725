"""Tests for completion inference over refreshed session records."""

from __future__ import annotations

import itertools

import pytest

from intrascribe_client.completion import CompletionStateMachine
from intrascribe_client.models import (
    CompletionReason,
    JobOutcome,
    SessionRecord,
    Signature,
    TranscriptionRecord,
)

RECORD_ID = "s1"


def _record(
    status: str, *, content: str | None = None, segments: list[object] | str | None = None
) -> SessionRecord:
    transcription = TranscriptionRecord(id="t1", content=content, segments=segments)
    return SessionRecord(id=RECORD_ID, status=status, transcriptions=(transcription,))


def _machine() -> CompletionStateMachine:
    counter = itertools.count(1)
    return CompletionStateMachine(id_factory=lambda: f"w{next(counter)}")


def test_signature_of_session_reads_first_transcription() -> None:
    """The signature covers id, content length and segment count."""
    record = _record("completed", content="hello", segments=[{"t": 0}, {"t": 1}])

    assert Signature.of_session(record) == Signature("t1", 5, 2)
    assert Signature.of_session(_record("completed", segments="abc")).segment_count == 3
    assert Signature.of_session(SessionRecord(id=RECORD_ID, status="x")) == Signature()
    assert Signature.of_session(None) == Signature()


def test_signature_rejects_negative_lengths() -> None:
    """Lengths are never negative."""
    with pytest.raises(ValueError):
        Signature("t1", -1, 0)


def test_signature_diff_completes_without_intermediate_state() -> None:
    """A changed signature with the success marker completes the job."""
    machine = _machine()
    machine.begin(RECORD_ID, _record("completed", content="", segments=[]))

    event = machine.observe(_record("completed", content="x" * 42, segments=[1, 2, 3]))

    assert event is not None
    assert event.outcome is JobOutcome.SUCCESS
    assert event.reason is CompletionReason.SIGNATURE_CHANGED
    assert machine.in_flight(RECORD_ID) is False


def test_processing_then_completed_is_status_transition() -> None:
    """Observing processing then completed completes by status transition."""
    machine = _machine()
    machine.begin(RECORD_ID, _record("completed", content="same"))

    assert machine.observe(_record("processing", content="same")) is None
    session = machine.session(RECORD_ID)
    assert session is not None and session.has_observed_intermediate_state

    event = machine.observe(_record("completed", content="changed"))

    assert event is not None
    assert event.outcome is JobOutcome.SUCCESS
    assert event.reason is CompletionReason.STATUS_TRANSITION


def test_completed_with_same_signature_keeps_waiting() -> None:
    """A success marker without intermediate state or content change is not completion."""
    machine = _machine()
    machine.begin(RECORD_ID, _record("completed", content="same", segments=[1]))

    assert machine.observe(_record("completed", content="same", segments=[1])) is None
    assert machine.in_flight(RECORD_ID)


def test_failed_status_without_baseline_resets_to_idle() -> None:
    """A failed refresh discards the session as a failure, never a success."""
    machine = _machine()
    machine.begin(RECORD_ID)

    event = machine.observe(SessionRecord(id=RECORD_ID, status="failed"))

    assert event is not None
    assert event.outcome is JobOutcome.FAILURE
    assert event.reason is CompletionReason.STATUS_RESET
    assert machine.in_flight(RECORD_ID) is False


def test_cancelled_status_resets_as_cancelled() -> None:
    """A cancelled record status maps onto the cancelled outcome."""
    machine = _machine()
    machine.begin(RECORD_ID)

    event = machine.observe(SessionRecord(id=RECORD_ID, status="cancelled"))

    assert event is not None
    assert event.outcome is JobOutcome.CANCELLED


def test_status_unchanged_since_submission_keeps_waiting() -> None:
    """A refresh repeating the status seen at submission means the job has not started."""
    machine = _machine()
    machine.begin(RECORD_ID, SessionRecord(id=RECORD_ID, status="recording"))

    assert machine.observe(SessionRecord(id=RECORD_ID, status="recording")) is None
    assert machine.observe(SessionRecord(id=RECORD_ID, status="processing")) is None
    event = machine.observe(SessionRecord(id=RECORD_ID, status="completed"))

    assert event is not None
    assert event.reason is CompletionReason.STATUS_TRANSITION


def test_refresh_for_unwatched_record_is_ignored() -> None:
    """Refreshes without an active session produce nothing."""
    machine = _machine()

    assert machine.observe(_record("completed", content="x")) is None


def test_begin_supersedes_previous_session() -> None:
    """A new submission replaces the prior session and its watch id."""
    machine = _machine()
    first = machine.begin(RECORD_ID)
    second = machine.begin(RECORD_ID)

    assert first.terminal is True
    assert machine.session(RECORD_ID) is second
    assert machine.resolve(
        RECORD_ID, first.watch_id, JobOutcome.SUCCESS, CompletionReason.TASK_RESULT
    ) is None
    assert machine.in_flight(RECORD_ID)


def test_resolve_finishes_current_watch_once() -> None:
    """External resolution closes the watch; a repeat is ignored."""
    machine = _machine()
    session = machine.begin(RECORD_ID)

    event = machine.resolve(
        RECORD_ID, session.watch_id, JobOutcome.SUCCESS, CompletionReason.TASK_RESULT, result=1
    )
    again = machine.resolve(
        RECORD_ID, session.watch_id, JobOutcome.FAILURE, CompletionReason.TASK_FAILED
    )

    assert event is not None and event.result == 1
    assert again is None
    assert machine.active_records() == []


def test_expire_completes_when_fresh_status_is_success() -> None:
    """The fallback timer reports success when the record already shows completed."""
    machine = _machine()
    session = machine.begin(RECORD_ID, _record("completed", content="same"))

    event = machine.expire(RECORD_ID, session.watch_id, _record("completed", content="same"))

    assert event is not None
    assert event.outcome is JobOutcome.SUCCESS
    assert event.reason is CompletionReason.FALLBACK_COMPLETED


def test_expire_times_out_otherwise() -> None:
    """The fallback timer times out when the record is still processing or unavailable."""
    machine = _machine()
    session = machine.begin(RECORD_ID)
    event = machine.expire(RECORD_ID, session.watch_id, _record("processing"))

    assert event is not None
    assert event.outcome is JobOutcome.TIMEOUT
    assert event.reason is CompletionReason.FALLBACK_TIMEOUT

    session = machine.begin(RECORD_ID)
    unavailable = machine.expire(RECORD_ID, session.watch_id, None)
    assert unavailable is not None and unavailable.outcome is JobOutcome.TIMEOUT


def test_expire_prefers_refresh_evaluation() -> None:
    """A fresh record that proves completion is reported by its own reason."""
    machine = _machine()
    session = machine.begin(RECORD_ID, _record("completed", content=""))

    event = machine.expire(RECORD_ID, session.watch_id, _record("completed", content="new"))

    assert event is not None
    assert event.reason is CompletionReason.SIGNATURE_CHANGED
