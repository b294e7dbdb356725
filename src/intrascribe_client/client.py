"""Explicitly constructed client context wiring channels, polling and completion tracking."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from types import TracebackType

from .api import IntrascribeApi
from .completion import CompletionStateMachine
from .config import (
    CompletionConfig,
    HttpClientConfig,
    PollerConfig,
    RealtimeConfig,
    load_access_token_from_environment,
)
from .errors import JobRejectedError, TransportError
from .eventbus import EventBus
from .http import AsyncHttpClientProtocol, IntrascribeHttpClient, TokenProvider
from .models import ChannelHealthReport, RowFilter, TopicSpec, match_column
from .phoenix import PhoenixRealtimeTransport
from .poller import AsyncTaskPoller
from .realtime import ChannelHandle, ChannelSubscriptionManager, RealtimeTransport
from .telemetry import NullTelemetrySink, TelemetrySink
from .tracker import CompletionTracker, JobWatch

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]

SESSIONS_TABLE = "recording_sessions"
TRANSCRIPTIONS_TABLE = "transcriptions"


@dataclass(slots=True)
class IntrascribeClientDependencies:
    """Optional dependency overrides for :class:`IntrascribeClient`."""

    http_client: AsyncHttpClientProtocol | None = None
    http_config: HttpClientConfig | None = None
    token_provider: TokenProvider | None = None
    api: IntrascribeApi | None = None
    transport: RealtimeTransport | None = None
    realtime_config: RealtimeConfig | None = None
    poller_config: PollerConfig | None = None
    completion_config: CompletionConfig | None = None
    event_bus: EventBus | None = None
    telemetry: TelemetrySink | None = None
    sleep: Sleeper | None = None


class IntrascribeClient:
    """Owns every collaborator needed to submit jobs and observe their completion.

    Construct one per authenticated user session and use it as an async context
    manager; nothing is shared through module state.
    """

    def __init__(
        self,
        *,
        dependencies: IntrascribeClientDependencies | None = None,
    ) -> None:
        """Wire optional dependency overrides and prepare internal state."""
        deps = dependencies or IntrascribeClientDependencies()
        self._telemetry = deps.telemetry or NullTelemetrySink()
        self._sleep = deps.sleep or asyncio.sleep
        self._http_client = deps.http_client or IntrascribeHttpClient(
            deps.http_config, token_provider=deps.token_provider
        )
        self._api = deps.api or IntrascribeApi(self._http_client)
        self._realtime_config = deps.realtime_config or RealtimeConfig()
        transport = deps.transport
        if transport is None and self._realtime_config.url:
            transport = PhoenixRealtimeTransport(
                self._realtime_config, token_provider=deps.token_provider
            )
        self._transport = transport
        self._channels = (
            ChannelSubscriptionManager(
                transport, self._realtime_config, telemetry=self._telemetry
            )
            if transport is not None
            else None
        )
        self._poller = AsyncTaskPoller(
            self._api, deps.poller_config, telemetry=self._telemetry, sleep=self._sleep
        )
        self._machine = CompletionStateMachine(deps.completion_config)
        self._event_bus = deps.event_bus or EventBus()
        self._tracker = CompletionTracker(
            self._machine,
            self._poller,
            self._api,
            event_bus=self._event_bus,
            telemetry=self._telemetry,
            sleep=self._sleep,
        )
        self._health_task: asyncio.Task[None] | None = None
        self._started = False
        logger.debug("IntrascribeClient initialised")

    @classmethod
    def from_environment(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> IntrascribeClient:
        """Build a client from ``INTRASCRIBE_*`` environment variables."""
        token = load_access_token_from_environment(env=env)
        return cls(
            dependencies=IntrascribeClientDependencies(
                http_config=HttpClientConfig.from_environment(env=env),
                token_provider=lambda: token,
                realtime_config=RealtimeConfig.from_environment(env=env),
                poller_config=PollerConfig.from_environment(env=env),
                completion_config=CompletionConfig.from_environment(env=env),
                telemetry=telemetry,
            )
        )

    @property
    def api(self) -> IntrascribeApi:
        """Return the REST API adapter."""
        return self._api

    @property
    def poller(self) -> AsyncTaskPoller:
        """Return the task status poller."""
        return self._poller

    @property
    def tracker(self) -> CompletionTracker:
        """Return the completion tracker."""
        return self._tracker

    @property
    def event_bus(self) -> EventBus:
        """Return the bus carrying terminal job events."""
        return self._event_bus

    @property
    def telemetry(self) -> TelemetrySink:
        """Return the telemetry sink shared by all components."""
        return self._telemetry

    @property
    def realtime_enabled(self) -> bool:
        """Return ``True`` when a realtime transport is configured."""
        return self._channels is not None

    @property
    def channels(self) -> ChannelSubscriptionManager:
        """Return the channel manager.

        Raises:
            TransportError: No realtime transport is configured.

        """
        if self._channels is None:
            raise TransportError("Realtime transport is not configured")
        return self._channels

    def in_flight(self, session_id: str) -> bool:
        """Return ``True`` while a job on *session_id* is awaiting its terminal event."""
        return self._tracker.in_flight(session_id)

    async def __aenter__(self) -> IntrascribeClient:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    async def start(self) -> None:
        """Start the periodic channel health check when one is configured."""
        if self._started:
            return
        interval = self._realtime_config.health_check_interval
        if interval is not None and self._channels is not None:
            self._health_task = asyncio.create_task(self._run_health_checks(interval))
        self._started = True
        logger.info("IntrascribeClient started")

    async def shutdown(self) -> None:
        """Abandon watches, remove channels and close the transport and HTTP client."""
        self._started = False
        health_task, self._health_task = self._health_task, None
        if health_task is not None:
            health_task.cancel()
            await self._await_optional_task(health_task)
        await self._tracker.shutdown()
        if self._channels is not None:
            await self._channels.cleanup_all()
        if self._transport is not None:
            await self._transport.close()
        await self._http_client.close()
        logger.info("IntrascribeClient shutdown complete")

    async def watch_user_sessions(self, user_id: str) -> ChannelHandle:
        """Subscribe to changes of *user_id*'s recording sessions."""
        topic = TopicSpec(
            table=SESSIONS_TABLE,
            schema=self._realtime_config.schema_name,
            filter=RowFilter(column="user_id", value=user_id),
        )
        return await self.channels.subscribe(
            f"sessions-{user_id}", topic, self._tracker.channel_callback("id")
        )

    async def watch_transcriptions(
        self, session_ids: Sequence[str], *, name: str | None = None
    ) -> ChannelHandle:
        """Subscribe to transcription changes belonging to *session_ids*.

        The transcription table cannot be filtered by a set server-side, so rows
        are matched against *session_ids* on the client.
        """
        ids = sorted(set(session_ids))
        topic = TopicSpec(
            table=TRANSCRIPTIONS_TABLE,
            schema=self._realtime_config.schema_name,
            predicate=match_column("session_id", ids),
        )
        channel_name = name or f"transcriptions-{','.join(ids)}"
        return await self.channels.subscribe(
            channel_name, topic, self._tracker.channel_callback("session_id")
        )

    def health_check(self) -> ChannelHealthReport:
        """Run the advisory channel health check."""
        return self.channels.health_check()

    async def retranscribe(self, session_id: str) -> JobWatch:
        """Re-run transcription for a completed session.

        Raises:
            JobRejectedError: The session has not completed yet.

        """
        current = await self._api.get_session(session_id)
        success_status = self._machine.config.success_status
        if current.status != success_status:
            raise JobRejectedError(
                f"Session {session_id} is {current.status!r}; only {success_status!r} "
                "sessions can be re-transcribed"
            )
        submission = await self._api.retranscribe_session(session_id)
        return await self._tracker.track(session_id, submission, current)

    async def generate_ai_summary(
        self, session_id: str, *, template_id: str | None = None
    ) -> JobWatch:
        """Submit an AI summary job for *session_id*.

        The summary arrives as the task result, so the watch ends with the poll
        rather than with the record-status fallback timer.
        """
        current = await self._api.get_session(session_id)
        submission = await self._api.request_ai_summary(session_id, template_id=template_id)
        return await self._tracker.track(session_id, submission, current, fallback=False)

    async def summarize(
        self, session_id: str, transcription: str, *, template_id: str | None = None
    ) -> JobWatch:
        """Summarize *transcription* for *session_id*."""
        current = await self._api.get_session(session_id)
        submission = await self._api.summarize(session_id, transcription, template_id=template_id)
        return await self._tracker.track(session_id, submission, current, fallback=False)

    async def finalize_session(self, session_id: str) -> JobWatch:
        """Finalize *session_id* and watch any background processing it starts."""
        current = await self._api.get_session(session_id)
        submission = await self._api.finalize_session(session_id)
        return await self._tracker.track(session_id, submission, current)

    async def generate_title(
        self, session_id: str, transcription: str, *, summary: str | None = None
    ) -> JobWatch:
        """Generate a title for *session_id*."""
        current = await self._api.get_session(session_id)
        submission = await self._api.generate_title(session_id, transcription, summary=summary)
        return await self._tracker.track(session_id, submission, current, fallback=False)

    async def _run_health_checks(self, interval: float) -> None:
        try:
            while True:
                await self._sleep(interval)
                self.channels.health_check()
        except asyncio.CancelledError:
            return

    async def _await_optional_task(self, task: asyncio.Task[None] | None) -> None:
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
