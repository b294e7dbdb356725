"""Tests for the IntrascribeClient wiring and job helpers."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from intrascribe_client import (
    IntrascribeClient,
    IntrascribeClientDependencies,
    JobOutcome,
    RealtimeConfig,
)
from intrascribe_client.errors import JobRejectedError, TransportError
from intrascribe_client.eventbus import TERMINAL_TOPIC
from intrascribe_client.models import (
    Accepted,
    ChannelStatus,
    CompletionReason,
    EventCallback,
    EventKind,
    Immediate,
    RealtimeEvent,
    SessionRecord,
    StatusCallback,
    Submission,
    TopicSpec,
    TranscriptionRecord,
)
from intrascribe_client.phoenix import PhoenixRealtimeTransport


class StubHttpClient:
    """HTTP client double that only records closure."""

    def __init__(self) -> None:
        """Start open."""
        self.closed = False

    async def get_json(self, path: str, *, params: Any = None) -> Any:
        """Unused by these tests."""
        raise AssertionError(f"unexpected GET {path}")

    async def post_json(self, path: str, payload: Any = None) -> Any:
        """Unused by these tests."""
        raise AssertionError(f"unexpected POST {path}")

    async def close(self) -> None:
        """Record that the client was closed."""
        self.closed = True


class StubApi:
    """API double serving a mutable session record and scripted submissions."""

    def __init__(self, record: SessionRecord, submission: Submission) -> None:
        """Store the current *record* and the *submission* every job returns."""
        self.record = record
        self.submission = submission
        self.submitted: list[tuple[str, str]] = []

    async def get_session(self, session_id: str) -> SessionRecord:
        """Return the current record."""
        return self.record

    async def get_task(self, task_id: str) -> Any:
        """Unused by these tests."""
        raise AssertionError("unexpected task poll")

    async def retranscribe_session(self, session_id: str) -> Submission:
        """Record a retranscribe submission."""
        self.submitted.append(("retranscribe", session_id))
        return self.submission

    async def request_ai_summary(
        self, session_id: str, *, template_id: str | None = None
    ) -> Submission:
        """Record an AI summary submission."""
        self.submitted.append(("ai-summary", session_id))
        return self.submission

    async def finalize_session(self, session_id: str) -> Submission:
        """Record a finalize submission."""
        self.submitted.append(("finalize", session_id))
        return self.submission


class StubSubscription:
    """Subscription double counting teardowns."""

    def __init__(self) -> None:
        """Start without teardown."""
        self.unsubscribed = 0

    async def unsubscribe(self) -> None:
        """Count a teardown."""
        self.unsubscribed += 1


class StubTransport:
    """Realtime transport double capturing opened topics and callbacks."""

    def __init__(self) -> None:
        """Start with no channels."""
        self.topics: dict[str, TopicSpec] = {}
        self.on_event: dict[str, EventCallback] = {}
        self.on_status: dict[str, StatusCallback] = {}
        self.subscriptions: dict[str, StubSubscription] = {}
        self.closed = False

    async def open_channel(
        self,
        name: str,
        topic: TopicSpec,
        *,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> StubSubscription:
        """Record the channel and return its subscription."""
        self.topics[name] = topic
        self.on_event[name] = on_event
        self.on_status[name] = on_status
        subscription = StubSubscription()
        self.subscriptions[name] = subscription
        return subscription

    async def close(self) -> None:
        """Record the close."""
        self.closed = True


async def _no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


def _record(status: str, content: str = "text") -> SessionRecord:
    return SessionRecord(
        id="s1",
        status=status,
        transcriptions=(TranscriptionRecord(id="t1", content=content, segments=()),),
    )


def _transcription_row(session_id: str) -> RealtimeEvent:
    return RealtimeEvent(
        kind=EventKind.INSERT,
        schema="public",
        table="transcriptions",
        new_row={"session_id": session_id},
    )


def _client(
    api: StubApi, *, transport: StubTransport | None = None, sleep: bool = False
) -> tuple[IntrascribeClient, StubHttpClient]:
    http = StubHttpClient()
    client = IntrascribeClient(
        dependencies=IntrascribeClientDependencies(
            http_client=http,
            api=api,  # type: ignore[arg-type]
            transport=transport,
            sleep=_no_sleep if sleep else None,
        )
    )
    return client, http


@pytest.mark.asyncio
async def test_watch_user_sessions_subscribes_with_row_filter() -> None:
    """The sessions channel filters on the owning user."""
    transport = StubTransport()
    client, _ = _client(StubApi(_record("completed"), Accepted()), transport=transport)

    handle = await client.watch_user_sessions("u1")
    again = await client.watch_user_sessions("u1")

    assert handle is again
    topic = transport.topics["sessions-u1"]
    assert topic.table == "recording_sessions"
    assert topic.filter is not None and topic.filter.render() == "user_id=eq.u1"
    assert client.channels.channel_count == 1
    await client.shutdown()


@pytest.mark.asyncio
async def test_watch_transcriptions_matches_sessions_client_side() -> None:
    """Transcription rows are matched against the watched session ids."""
    transport = StubTransport()
    client, _ = _client(StubApi(_record("completed"), Accepted()), transport=transport)

    handle = await client.watch_transcriptions(["s2", "s1"])

    assert handle.name == "transcriptions-s1,s2"
    predicate = transport.topics[handle.name].predicate
    assert predicate is not None
    assert predicate(_transcription_row("s1")) is True
    assert predicate(_transcription_row("s9")) is False
    await client.shutdown()


@pytest.mark.asyncio
async def test_retranscribe_requires_completed_session() -> None:
    """Retranscription is rejected before submission when the session is not completed."""
    api = StubApi(_record("processing"), Accepted())
    client, _ = _client(api)

    with pytest.raises(JobRejectedError):
        await client.retranscribe("s1")

    assert api.submitted == []
    assert client.in_flight("s1") is False
    await client.shutdown()


@pytest.mark.asyncio
async def test_immediate_job_publishes_terminal_event() -> None:
    """A synchronous job result reaches event bus consumers."""
    api = StubApi(_record("completed"), Immediate(result={"summary": "ok"}))
    client, _ = _client(api)
    received: list[object] = []

    async def _consume(event: object) -> None:
        received.append(event)

    await client.event_bus.subscribe(TERMINAL_TOPIC, _consume)

    watch = await client.generate_ai_summary("s1")

    event = watch.result()
    assert event.outcome is JobOutcome.SUCCESS
    assert event.reason is CompletionReason.IMMEDIATE_RESULT
    assert received == [event]
    assert api.submitted == [("ai-summary", "s1")]
    await client.shutdown()


@pytest.mark.asyncio
async def test_realtime_update_completes_retranscription() -> None:
    """Row changes on the sessions channel drive completion of an accepted job."""
    transport = StubTransport()
    api = StubApi(_record("completed", content="old"), Accepted(message="restarted"))
    client, _ = _client(api, transport=transport)
    await client.watch_user_sessions("u1")
    await transport.on_status["sessions-u1"](ChannelStatus.SUBSCRIBED, None)

    watch = await client.retranscribe("s1")
    api.record = _record("processing", content="")
    await transport.on_event["sessions-u1"](
        RealtimeEvent(
            kind=EventKind.UPDATE,
            schema="public",
            table="recording_sessions",
            new_row={"id": "s1", "status": "processing"},
        )
    )
    await asyncio.sleep(0.01)
    api.record = _record("completed", content="new transcript")
    await transport.on_event["sessions-u1"](
        RealtimeEvent(
            kind=EventKind.UPDATE,
            schema="public",
            table="recording_sessions",
            new_row={"id": "s1", "status": "completed"},
        )
    )
    event = await watch.wait(timeout=1.0)

    assert event.outcome is JobOutcome.SUCCESS
    assert event.reason is CompletionReason.STATUS_TRANSITION
    await client.shutdown()


@pytest.mark.asyncio
async def test_shutdown_releases_channels_transport_and_http() -> None:
    """Shutdown abandons watches, tears down channels and closes resources."""
    transport = StubTransport()
    client, http = _client(StubApi(_record("recording"), Accepted()), transport=transport)

    async with client:
        await client.watch_user_sessions("u1")
        watch = await client.finalize_session("s1")
        assert client.in_flight("s1")

    assert watch.result().reason is CompletionReason.ABANDONED
    assert transport.subscriptions["sessions-u1"].unsubscribed == 1
    assert transport.closed is True
    assert http.closed is True
    assert client.channels.channel_count == 0


@pytest.mark.asyncio
async def test_channels_require_realtime_configuration() -> None:
    """Without a realtime endpoint the channel manager is unavailable."""
    client, _ = _client(StubApi(_record("completed"), Accepted()))

    assert client.realtime_enabled is False
    with pytest.raises(TransportError):
        await client.watch_user_sessions("u1")
    await client.shutdown()


@pytest.mark.asyncio
async def test_from_environment_builds_phoenix_transport() -> None:
    """A realtime URL in the environment enables the Phoenix transport."""
    client = IntrascribeClient.from_environment(
        env={
            "INTRASCRIBE_ACCESS_TOKEN": "jwt",
            "INTRASCRIBE_REALTIME_URL": "wss://rt.example.test/realtime/v1",
            "INTRASCRIBE_ANON_KEY": "anon",
        }
    )

    assert client.realtime_enabled is True
    assert isinstance(client._transport, PhoenixRealtimeTransport)
    await client.shutdown()


def test_from_environment_requires_access_token() -> None:
    """Building from the environment fails fast without a token."""
    with pytest.raises(ValueError):
        IntrascribeClient.from_environment(env={})


@pytest.mark.asyncio
async def test_realtime_config_health_check_task_runs() -> None:
    """A configured health interval starts the periodic check on start()."""
    transport = StubTransport()
    http = StubHttpClient()
    client = IntrascribeClient(
        dependencies=IntrascribeClientDependencies(
            http_client=http,
            api=StubApi(_record("completed"), Accepted()),  # type: ignore[arg-type]
            transport=transport,
            realtime_config=RealtimeConfig(health_check_interval=0.5),
            sleep=_no_sleep,
        )
    )

    await client.start()
    await asyncio.sleep(0.01)
    report = client.health_check()
    await client.shutdown()

    assert report.healthy is True
    assert report.channel_count == 0
