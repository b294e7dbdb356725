"""Async event bus used to fan terminal job events out to consumers."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

logger = logging.getLogger(__name__)

TERMINAL_TOPIC = "jobs.terminal"


def terminal_topic(record_id: str) -> str:
    """Return the topic carrying terminal events for a single record."""

    return f"{TERMINAL_TOPIC}.{record_id}"


class ConsumerCallback(Protocol):
    """Protocol describing consumer callbacks invoked for topic events."""

    async def __call__(self, event: object) -> None:  # pragma: no cover - protocol signature
        """Consume a single event dispatched by the event bus."""

        ...


class EventBus:
    """Topic-keyed fan-out of job events with per-consumer failure isolation."""

    def __init__(self) -> None:
        """Initialise the event bus without subscribers."""

        self._consumers: dict[str, list[ConsumerCallback]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str, callback: ConsumerCallback) -> None:
        """Register *callback* for *topic*; registering twice is a no-op."""

        async with self._lock:
            consumers = self._consumers.setdefault(topic, [])
            if callback not in consumers:
                consumers.append(callback)

    async def unsubscribe(self, topic: str, callback: ConsumerCallback) -> None:
        """Remove *callback* from *topic*, dropping the topic once it has no consumers."""

        async with self._lock:
            consumers = self._consumers.get(topic, [])
            if callback in consumers:
                consumers.remove(callback)
            if not consumers:
                self._consumers.pop(topic, None)

    async def publish(self, topic: str, event: object) -> int:
        """Dispatch *event* to all subscribers of *topic* and return the failure count.

        A failing consumer never prevents delivery to the others.
        """

        async with self._lock:
            consumers = tuple(self._consumers.get(topic, ()))
        if not consumers:
            logger.debug("No consumers for topic %s", topic)
            return 0
        outcomes = await asyncio.gather(
            *(consumer(event) for consumer in consumers), return_exceptions=True
        )
        errors = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
        for error in errors:
            logger.error("Consumer for topic %s failed: %s", topic, error, exc_info=error)
        return len(errors)

    async def publish_terminal(self, record_id: str, event: object) -> int:
        """Publish *event* on the shared terminal topic and on *record_id*'s topic."""

        failures = await self.publish(TERMINAL_TOPIC, event)
        failures += await self.publish(terminal_topic(record_id), event)
        return failures

    async def topics(self) -> dict[str, int]:
        """Return a snapshot of topics and subscriber counts."""

        async with self._lock:
            return {topic: len(consumers) for topic, consumers in self._consumers.items()}
