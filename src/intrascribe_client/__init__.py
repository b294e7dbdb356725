"""Async job-completion tracking client for the Intrascribe backend."""

from __future__ import annotations

from .api import IntrascribeApi, SessionSource, TaskStatusSource
from .client import IntrascribeClient, IntrascribeClientDependencies
from .completion import CompletionStateMachine
from .config import (
    CompletionConfig,
    HttpClientConfig,
    PollerConfig,
    RealtimeConfig,
    load_access_token_from_environment,
)
from .errors import (
    ApiStatusError,
    AuthenticationError,
    IntrascribeError,
    JobRejectedError,
    NetworkError,
    PollCancelledError,
    PollTimeoutError,
    ResponseParsingError,
    TaskCancelledError,
    TaskFailedError,
    TransportError,
)
from .eventbus import TERMINAL_TOPIC, ConsumerCallback, EventBus, terminal_topic
from .models import (
    Accepted,
    ChannelHealthReport,
    ChannelSnapshot,
    ChannelStatus,
    CompletionReason,
    Deferred,
    EventKind,
    Immediate,
    JobOutcome,
    RealtimeEvent,
    RowFilter,
    SessionRecord,
    Signature,
    Submission,
    TaskHandle,
    TaskResult,
    TaskStatus,
    TerminalEvent,
    TopicSpec,
    TranscriptionRecord,
    WatchSession,
    match_column,
)
from .phoenix import PhoenixRealtimeTransport
from .poller import AsyncTaskPoller
from .realtime import (
    ChannelHandle,
    ChannelSubscriptionManager,
    RealtimeTransport,
    TransportSubscription,
)
from .telemetry import NullTelemetrySink, RecordingTelemetrySink, TelemetrySink
from .tracker import CompletionTracker, JobWatch

__all__ = [
    "TERMINAL_TOPIC",
    "Accepted",
    "ApiStatusError",
    "AsyncTaskPoller",
    "AuthenticationError",
    "ChannelHandle",
    "ChannelHealthReport",
    "ChannelSnapshot",
    "ChannelStatus",
    "ChannelSubscriptionManager",
    "CompletionConfig",
    "CompletionReason",
    "CompletionStateMachine",
    "CompletionTracker",
    "ConsumerCallback",
    "Deferred",
    "EventBus",
    "EventKind",
    "HttpClientConfig",
    "Immediate",
    "IntrascribeApi",
    "IntrascribeClient",
    "IntrascribeClientDependencies",
    "IntrascribeError",
    "JobOutcome",
    "JobRejectedError",
    "JobWatch",
    "NetworkError",
    "NullTelemetrySink",
    "PhoenixRealtimeTransport",
    "PollCancelledError",
    "PollTimeoutError",
    "PollerConfig",
    "RealtimeConfig",
    "RealtimeEvent",
    "RealtimeTransport",
    "RecordingTelemetrySink",
    "ResponseParsingError",
    "RowFilter",
    "SessionRecord",
    "SessionSource",
    "Signature",
    "Submission",
    "TaskCancelledError",
    "TaskFailedError",
    "TaskHandle",
    "TaskResult",
    "TaskStatus",
    "TaskStatusSource",
    "TelemetrySink",
    "TerminalEvent",
    "TopicSpec",
    "TranscriptionRecord",
    "TransportError",
    "TransportSubscription",
    "WatchSession",
    "load_access_token_from_environment",
    "match_column",
    "terminal_topic",
]
