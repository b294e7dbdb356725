"""Typed data models for channels, tasks, watched records and completion events."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol


def _empty_mapping() -> Mapping[str, object]:
    """Return an immutable empty mapping for default row storage."""

    return MappingProxyType({})


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChannelStatus(str, Enum):
    """Lifecycle status of a realtime channel subscription."""

    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


class EventKind(str, Enum):
    """Row-change kinds delivered by the realtime transport."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    WILDCARD = "*"

    @classmethod
    def parse(cls, value: str) -> EventKind:
        """Return the kind matching *value* case-insensitively, defaulting to wildcard."""

        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.WILDCARD


@dataclass(frozen=True, slots=True)
class RealtimeEvent:
    """A single row-change notification; transient and delivered once."""

    kind: EventKind
    schema: str
    table: str
    new_row: Mapping[str, object] = field(default_factory=_empty_mapping)
    old_row: Mapping[str, object] = field(default_factory=_empty_mapping)
    commit_timestamp: str | None = None

    def row_value(self, column: str) -> object | None:
        """Return *column* from the new row, falling back to the old row."""

        value = self.new_row.get(column)
        if value is None:
            value = self.old_row.get(column)
        return value


@dataclass(frozen=True, slots=True)
class RowFilter:
    """Server-side equality filter rendered as ``column=eq.value``."""

    column: str
    value: str

    def render(self) -> str:
        """Return the filter expression understood by the realtime server."""

        return f"{self.column}=eq.{self.value}"


RowPredicate = Callable[[RealtimeEvent], bool]


@dataclass(frozen=True, slots=True)
class TopicSpec:
    """Describes which table changes a channel subscribes to."""

    table: str
    schema: str = "public"
    event: EventKind = EventKind.WILDCARD
    filter: RowFilter | None = None
    predicate: RowPredicate | None = None


def match_column(column: str, values: Sequence[str]) -> RowPredicate:
    """Return a predicate accepting events whose *column* value is one of *values*."""

    accepted = frozenset(values)

    def _predicate(event: RealtimeEvent) -> bool:
        value = event.row_value(column)
        return isinstance(value, str) and value in accepted

    return _predicate


class TaskStatus(str, Enum):
    """Status values reported by the task-status endpoint."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> TaskStatus:
        """Map a raw backend status string onto a known status or ``UNKNOWN``."""

        if not value:
            return cls.UNKNOWN
        try:
            status = cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN
        return status


@dataclass(frozen=True, slots=True)
class TaskHandle:
    """Snapshot of a backend task as returned by one status fetch."""

    task_id: str
    status: TaskStatus
    raw_status: str
    progress: object | None = None
    result: object | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Terminal success payload produced by the poller."""

    task_id: str
    result: object
    attempts: int


@dataclass(frozen=True, slots=True)
class TranscriptionRecord:
    """Transcription fields needed to fingerprint a session's content."""

    id: str | None
    content: str | None = None
    segments: Sequence[Any] | str | None = None


@dataclass(frozen=True, slots=True)
class SessionRecord:
    """The watched record: a recording session and its transcriptions."""

    id: str
    status: str
    title: str | None = None
    transcriptions: Sequence[TranscriptionRecord] = ()


@dataclass(frozen=True, slots=True)
class Signature:
    """Cheap structural fingerprint of a record's transcription content."""

    record_id: str | None = None
    content_length: int = 0
    segment_count: int = 0

    def __post_init__(self) -> None:
        if self.content_length < 0 or self.segment_count < 0:
            raise ValueError("Signature lengths must be non-negative")

    @classmethod
    def of_transcription(cls, transcription: TranscriptionRecord | None) -> Signature:
        """Fingerprint *transcription*, or return the zero signature when absent."""

        if transcription is None:
            return cls()
        segments = transcription.segments
        if isinstance(segments, str):
            segment_count = len(segments)
        elif isinstance(segments, Sequence):
            segment_count = len(segments)
        else:
            segment_count = 0
        return cls(
            record_id=transcription.id,
            content_length=len(transcription.content) if transcription.content else 0,
            segment_count=segment_count,
        )

    @classmethod
    def of_session(cls, record: SessionRecord | None) -> Signature:
        """Fingerprint the first transcription of *record*."""

        if record is None or not record.transcriptions:
            return cls()
        return cls.of_transcription(record.transcriptions[0])


@dataclass(frozen=True, slots=True)
class Immediate:
    """Submission answered synchronously with its final result."""

    result: object


@dataclass(frozen=True, slots=True)
class Deferred:
    """Submission accepted as a background task to be polled by id."""

    task_id: str
    poll_url: str | None = None


@dataclass(frozen=True, slots=True)
class Accepted:
    """Submission acknowledged without a task id; completion arrives via push."""

    message: str | None = None
    status: str | None = None


Submission = Immediate | Deferred | Accepted


class JobOutcome(str, Enum):
    """Terminal outcome published for a watched job."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class CompletionReason(str, Enum):
    """Which signal produced a terminal transition."""

    STATUS_TRANSITION = "status_transition"
    SIGNATURE_CHANGED = "signature_changed"
    TASK_RESULT = "task_result"
    IMMEDIATE_RESULT = "immediate_result"
    FALLBACK_COMPLETED = "fallback_completed"
    FALLBACK_TIMEOUT = "fallback_timeout"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"
    POLL_TIMEOUT = "poll_timeout"
    TRANSPORT_FAILURE = "transport_failure"
    STATUS_RESET = "status_reset"
    SUPERSEDED = "superseded"
    ABANDONED = "abandoned"


@dataclass(slots=True)
class WatchSession:
    """Working set of the completion state machine for one submitted job."""

    watch_id: str
    record_id: str
    baseline: Signature
    baseline_status: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    has_observed_intermediate_state: bool = False
    terminal: bool = False


@dataclass(frozen=True, slots=True)
class TerminalEvent:
    """Outbound terminal notification for a watched job."""

    record_id: str
    watch_id: str
    outcome: JobOutcome
    reason: CompletionReason
    result: object | None = None
    error: str | None = None
    status: str | None = None
    finished_at: datetime = field(default_factory=_utcnow)

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the job finished successfully."""

        return self.outcome is JobOutcome.SUCCESS


@dataclass(frozen=True, slots=True)
class ChannelSnapshot:
    """Point-in-time description of a tracked channel."""

    name: str
    table: str
    status: ChannelStatus
    created_at: datetime
    delivered: int
    discarded: int
    filtered: int
    failures: int


@dataclass(frozen=True, slots=True)
class ChannelHealthReport:
    """Advisory health summary of the channel manager."""

    healthy: bool
    channel_count: int
    channels: tuple[str, ...]
    stale: tuple[str, ...]
    checked_at: datetime


class ChannelCallback(Protocol):
    """Protocol describing consumer callbacks invoked for realtime events."""

    async def __call__(self, event: RealtimeEvent) -> None:  # pragma: no cover - protocol
        """Consume a single realtime event."""

        ...


EventCallback = Callable[[RealtimeEvent], Awaitable[None]]
StatusCallback = Callable[[ChannelStatus, str | None], Awaitable[None]]
