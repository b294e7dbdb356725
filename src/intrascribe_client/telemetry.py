"""Telemetry hook interfaces for structured diagnostics and metrics."""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock
from typing import Protocol, TypeVar

from .models import ChannelStatus, CompletionReason, JobOutcome


@dataclass(frozen=True, slots=True)
class TelemetrySignal:
    """Base class for telemetry signals."""

    emitted_at: datetime = field(init=False)

    def __post_init__(self) -> None:
        """Stamp the signal with the UTC time it was emitted."""
        object.__setattr__(self, "emitted_at", datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class TelemetryEvent(TelemetrySignal):
    """Represents a discrete telemetry event."""


EventT = TypeVar("EventT", bound=TelemetryEvent)


@dataclass(frozen=True, slots=True)
class TelemetryMetric(TelemetrySignal):
    """Represents a telemetry metric sample."""


@dataclass(frozen=True, slots=True)
class ChannelStatusEvent(TelemetryEvent):
    """Event emitted when a channel changes lifecycle status."""

    channel: str
    status: ChannelStatus
    message: str | None = None


@dataclass(frozen=True, slots=True)
class ChannelCallbackErrorEvent(TelemetryEvent):
    """Event emitted when a consumer callback raised and the error was isolated."""

    channel: str
    error_type: str
    message: str | None = None


@dataclass(frozen=True, slots=True)
class ChannelTeardownErrorEvent(TelemetryEvent):
    """Event emitted when tearing down a transport subscription failed."""

    channel: str
    error_type: str
    message: str | None = None


@dataclass(frozen=True, slots=True)
class PollAttemptErrorEvent(TelemetryEvent):
    """Event emitted when a task status fetch fails."""

    task_id: str
    attempt: int
    error_type: str
    auth_failure: bool
    message: str | None = None


@dataclass(frozen=True, slots=True)
class JobTerminalEvent(TelemetryEvent):
    """Event emitted once per watched job when it reaches a terminal outcome."""

    record_id: str
    outcome: JobOutcome
    reason: CompletionReason
    message: str | None = None


@dataclass(frozen=True, slots=True)
class TaskPollMetrics(TelemetryMetric):
    """Metric payload emitted when a poll finishes, successfully or not."""

    task_id: str
    attempts: int
    final_status: str


@dataclass(frozen=True, slots=True)
class ChannelCountGauge(TelemetryMetric):
    """Gauge measurement describing the number of tracked channels."""

    count: int
    stale: int


class TelemetrySink(Protocol):
    """Protocol for emitting structured telemetry signals."""

    def record_event(self, event: TelemetryEvent) -> None:  # pragma: no cover - protocol
        """Record a structured event for diagnostics."""
        ...

    def record_metric(self, metric: TelemetryMetric) -> None:  # pragma: no cover - protocol
        """Record a metric sample."""
        ...


class NullTelemetrySink(TelemetrySink):
    """Telemetry sink that drops all signals."""

    def record_event(self, event: TelemetryEvent) -> None:
        """Drop the event without side effects."""

    def record_metric(self, metric: TelemetryMetric) -> None:
        """Drop the metric without side effects."""


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Immutable snapshot of recently recorded telemetry."""

    generated_at: datetime
    events: list[TelemetryEvent]
    metrics: list[TelemetryMetric]
    totals: dict[str, int]


class RecordingTelemetrySink(TelemetrySink):
    """Thread-safe sink retaining recent signals and lifetime counts per signal type.

    Swallowed failures (consumer callbacks, teardown errors) are only observable
    through a sink, so this is the sink to inject when a caller needs failure
    counts.
    """

    def __init__(self, *, history: int = 200) -> None:
        """Initialise the sink with bounded history capacity."""
        self._events: deque[TelemetryEvent] = deque(maxlen=history)
        self._metrics: deque[TelemetryMetric] = deque(maxlen=history)
        self._totals: Counter[str] = Counter()
        self._lock = Lock()

    def record_event(self, event: TelemetryEvent) -> None:
        """Buffer a structured telemetry event."""
        with self._lock:
            self._events.append(event)
            self._totals[type(event).__name__] += 1

    def record_metric(self, metric: TelemetryMetric) -> None:
        """Buffer a metric sample."""
        with self._lock:
            self._metrics.append(metric)
            self._totals[type(metric).__name__] += 1

    def count(self, signal_type: type[TelemetrySignal]) -> int:
        """Return how many signals of *signal_type* were recorded in total."""
        with self._lock:
            return self._totals[signal_type.__name__]

    def events_of(self, event_type: type[EventT]) -> list[EventT]:
        """Return buffered events that are instances of *event_type*."""
        with self._lock:
            return [event for event in self._events if isinstance(event, event_type)]

    def snapshot(self) -> TelemetrySnapshot:
        """Return an immutable snapshot of recent telemetry buffers."""
        with self._lock:
            return TelemetrySnapshot(
                generated_at=datetime.now(UTC),
                events=list(self._events),
                metrics=list(self._metrics),
                totals=dict(self._totals),
            )
