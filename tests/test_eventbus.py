"""Tests for the terminal-event bus."""

from __future__ import annotations

import pytest

from intrascribe_client.eventbus import TERMINAL_TOPIC, EventBus, terminal_topic


class Collector:
    """Consumer that records every event it receives."""

    def __init__(self) -> None:
        """Start with no events."""
        self.events: list[object] = []

    async def __call__(self, event: object) -> None:
        """Record *event*."""
        self.events.append(event)


async def _failing(event: object) -> None:
    raise RuntimeError("consumer exploded")


def test_terminal_topic_is_scoped_per_record() -> None:
    assert terminal_topic("s1") == f"{TERMINAL_TOPIC}.s1"
    assert terminal_topic("s1") != terminal_topic("s2")


@pytest.mark.asyncio
async def test_publish_reaches_every_subscriber() -> None:
    bus = EventBus()
    first, second = Collector(), Collector()
    await bus.subscribe(TERMINAL_TOPIC, first)
    await bus.subscribe(TERMINAL_TOPIC, second)
    await bus.subscribe(TERMINAL_TOPIC, first)

    failures = await bus.publish(TERMINAL_TOPIC, "done")

    assert failures == 0
    assert first.events == ["done"]
    assert second.events == ["done"]
    assert await bus.topics() == {TERMINAL_TOPIC: 2}


@pytest.mark.asyncio
async def test_failing_consumer_does_not_block_others() -> None:
    bus = EventBus()
    collector = Collector()
    await bus.subscribe(TERMINAL_TOPIC, _failing)
    await bus.subscribe(TERMINAL_TOPIC, collector)

    failures = await bus.publish(TERMINAL_TOPIC, {"outcome": "success"})

    assert failures == 1
    assert collector.events == [{"outcome": "success"}]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery_and_drops_empty_topics() -> None:
    bus = EventBus()
    collector = Collector()
    await bus.subscribe(terminal_topic("s1"), collector)

    await bus.unsubscribe(terminal_topic("s1"), collector)
    await bus.unsubscribe(terminal_topic("s1"), collector)

    assert await bus.publish(terminal_topic("s1"), "late") == 0
    assert collector.events == []
    assert await bus.topics() == {}


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_noop() -> None:
    bus = EventBus()

    assert await bus.publish("unknown.topic", object()) == 0


@pytest.mark.asyncio
async def test_publish_terminal_reaches_shared_and_record_topics() -> None:
    bus = EventBus()
    everyone, only_s1, only_s2 = Collector(), Collector(), Collector()
    await bus.subscribe(TERMINAL_TOPIC, everyone)
    await bus.subscribe(terminal_topic("s1"), only_s1)
    await bus.subscribe(terminal_topic("s2"), only_s2)
    await bus.subscribe(terminal_topic("s1"), _failing)

    failures = await bus.publish_terminal("s1", "finished")

    assert failures == 1
    assert everyone.events == ["finished"]
    assert only_s1.events == ["finished"]
    assert only_s2.events == []
