"""Deduplicated realtime channel subscriptions shared by all push consumers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from typing import Protocol

from .config import RealtimeConfig
from .errors import TransportError
from .models import (
    ChannelCallback,
    ChannelHealthReport,
    ChannelSnapshot,
    ChannelStatus,
    EventCallback,
    RealtimeEvent,
    StatusCallback,
    TopicSpec,
)
from .telemetry import (
    ChannelCallbackErrorEvent,
    ChannelCountGauge,
    ChannelStatusEvent,
    ChannelTeardownErrorEvent,
    NullTelemetrySink,
    TelemetrySink,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class TransportSubscription(Protocol):
    """Live transport-level subscription for a single channel."""

    async def unsubscribe(self) -> None:  # pragma: no cover - protocol
        """Tear the subscription down on the transport."""
        ...


class RealtimeTransport(Protocol):
    """Transport able to open named row-change channels."""

    async def open_channel(
        self,
        name: str,
        topic: TopicSpec,
        *,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> TransportSubscription:  # pragma: no cover - protocol
        """Open channel *name* for *topic*, reporting events and status changes."""
        ...

    async def close(self) -> None:  # pragma: no cover - protocol
        """Release the underlying connection."""
        ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True, eq=False)
class ChannelHandle:
    """Tracks one named channel, its consumer callback and delivery counters."""

    name: str
    topic: TopicSpec
    callback: ChannelCallback
    created_at: datetime
    status: ChannelStatus = ChannelStatus.CONNECTING
    subscription: TransportSubscription | None = field(default=None, repr=False)
    delivered: int = 0
    discarded: int = 0
    filtered: int = 0
    failures: int = 0
    _ready: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _open_error: TransportError | None = field(default=None, repr=False)
    _detached: bool = field(default=False, repr=False)

    @property
    def usable(self) -> bool:
        """Return ``True`` once the transport confirmed the subscription."""
        return self.status is ChannelStatus.SUBSCRIBED

    async def wait_opened(self) -> None:
        """Wait until the transport open call finished, re-raising its failure."""
        await self._ready.wait()
        if self._open_error is not None:
            raise self._open_error

    def snapshot(self) -> ChannelSnapshot:
        """Return an immutable description of this channel."""
        return ChannelSnapshot(
            name=self.name,
            table=self.topic.table,
            status=self.status,
            created_at=self.created_at,
            delivered=self.delivered,
            discarded=self.discarded,
            filtered=self.filtered,
            failures=self.failures,
        )


class ChannelSubscriptionManager:
    """Owns the channel-name to handle map and guarantees one live subscription per name.

    The map is only mutated synchronously between awaits, so on a single event
    loop the membership check and the placeholder insert in :meth:`subscribe`
    form one atomic step.
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        config: RealtimeConfig | None = None,
        *,
        telemetry: TelemetrySink | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Create a manager opening channels through *transport*."""
        self._transport = transport
        self._config = config or RealtimeConfig()
        self._telemetry = telemetry or NullTelemetrySink()
        self._clock = clock or _utcnow
        self._channels: dict[str, ChannelHandle] = {}
        self._delivery_active = True

    @property
    def channel_count(self) -> int:
        """Return the number of tracked channels."""
        return len(self._channels)

    @property
    def delivery_active(self) -> bool:
        """Return ``False`` while event delivery is suspended."""
        return self._delivery_active

    def suspend_delivery(self) -> None:
        """Discard incoming events until :meth:`resume_delivery` (consumer backgrounded)."""
        self._delivery_active = False
        logger.debug("Realtime delivery suspended")

    def resume_delivery(self) -> None:
        """Resume invoking consumer callbacks for incoming events."""
        self._delivery_active = True
        logger.debug("Realtime delivery resumed")

    def has_channel(self, name: str) -> bool:
        """Return ``True`` when *name* is tracked."""
        return name in self._channels

    def get_channel(self, name: str) -> ChannelHandle | None:
        """Return the handle tracked under *name*, if any."""
        return self._channels.get(name)

    def active_channels(self) -> list[str]:
        """Return the tracked channel names."""
        return list(self._channels)

    def subscription_info(self) -> list[ChannelSnapshot]:
        """Return a snapshot of every tracked channel."""
        return [handle.snapshot() for handle in self._channels.values()]

    async def subscribe(
        self, name: str, topic: TopicSpec, callback: ChannelCallback
    ) -> ChannelHandle:
        """Return the channel tracked as *name*, opening it on first request.

        Raises:
            TransportError: The transport failed to open the channel.

        """
        existing = self._channels.get(name)
        if existing is not None:
            logger.debug("Reusing channel %s", name)
            await existing.wait_opened()
            return existing

        handle = ChannelHandle(name=name, topic=topic, callback=callback, created_at=self._clock())
        self._channels[name] = handle
        try:
            subscription = await self._transport.open_channel(
                name,
                topic,
                on_event=partial(self._deliver, handle),
                on_status=partial(self._on_status, handle),
            )
        except asyncio.CancelledError:
            self._detach(handle)
            handle.status = ChannelStatus.CLOSED
            handle._open_error = TransportError(f"Opening channel {name} was cancelled")
            handle._ready.set()
            logger.warning("Opening channel %s was cancelled", name)
            raise
        except Exception as exc:
            self._detach(handle)
            handle.status = ChannelStatus.ERROR
            error = TransportError(f"Failed to open channel {name}: {exc}")
            handle._open_error = error
            handle._ready.set()
            logger.warning("Could not open channel %s: %s", name, exc)
            self._telemetry.record_event(
                ChannelStatusEvent(channel=name, status=ChannelStatus.ERROR, message=str(exc))
            )
            raise error from exc

        handle.subscription = subscription
        handle._ready.set()
        if handle._detached:
            # Removed while the open was in flight; release the late subscription.
            await self._teardown(handle)
        else:
            logger.info("Opened channel %s on table %s", name, topic.table)
        return handle

    async def unsubscribe(self, name: str) -> bool:
        """Stop tracking *name* and tear its subscription down best-effort.

        Returns ``False`` when *name* was not tracked. Teardown failures are
        reported to telemetry and never raised.
        """
        handle = self._channels.get(name)
        if handle is None:
            logger.debug("Channel %s not tracked; nothing to remove", name)
            return False
        self._detach(handle)
        handle.status = ChannelStatus.CLOSED
        await self._teardown(handle)
        logger.info("Removed channel %s", name)
        return True

    async def cleanup_all(self) -> None:
        """Remove every tracked channel."""
        names = list(self._channels)
        for name in names:
            await self.unsubscribe(name)
        self._channels.clear()
        logger.info("Cleaned up %d channel(s)", len(names))

    def health_check(self, *, now: datetime | None = None) -> ChannelHealthReport:
        """Report channel count and flag channels older than the stale threshold.

        Advisory only: stale channels are logged, not removed.
        """
        checked_at = now or self._clock()
        names = tuple(self._channels)
        stale: list[str] = []
        for handle in self._channels.values():
            age = checked_at - handle.created_at
            if age > self._config.stale_after:
                stale.append(handle.name)
                logger.warning(
                    "Stale channel %s has been open for %.2f hours",
                    handle.name,
                    age.total_seconds() / 3600.0,
                )
        report = ChannelHealthReport(
            healthy=len(names) < self._config.healthy_channel_limit,
            channel_count=len(names),
            channels=names,
            stale=tuple(stale),
            checked_at=checked_at,
        )
        self._telemetry.record_metric(ChannelCountGauge(count=len(names), stale=len(stale)))
        if not report.healthy:
            logger.warning("Channel health check failed: %d channels tracked", len(names))
        return report

    async def _on_status(
        self, handle: ChannelHandle, status: ChannelStatus, message: str | None = None
    ) -> None:
        handle.status = status
        self._telemetry.record_event(
            ChannelStatusEvent(channel=handle.name, status=status, message=message)
        )
        if status is ChannelStatus.SUBSCRIBED:
            logger.info("Channel %s subscribed", handle.name)
            return
        if status in (ChannelStatus.ERROR, ChannelStatus.TIMED_OUT):
            logger.warning("Channel %s reported %s: %s", handle.name, status.value, message)
            if self._detach(handle):
                await self._teardown(handle)
            return
        if status is ChannelStatus.CLOSED:
            logger.info("Channel %s closed", handle.name)
            self._detach(handle)

    async def _deliver(self, handle: ChannelHandle, event: RealtimeEvent) -> None:
        if not self._delivery_active:
            handle.discarded += 1
            logger.debug("Discarded %s event on %s (delivery suspended)", event.kind, handle.name)
            return
        predicate = handle.topic.predicate
        if predicate is not None and not predicate(event):
            handle.filtered += 1
            return
        try:
            await handle.callback(event)
        except Exception as exc:
            handle.failures += 1
            logger.exception("Consumer callback for channel %s failed", handle.name)
            self._telemetry.record_event(
                ChannelCallbackErrorEvent(
                    channel=handle.name,
                    error_type=exc.__class__.__name__,
                    message=str(exc),
                )
            )
            return
        handle.delivered += 1

    def _detach(self, handle: ChannelHandle) -> bool:
        """Drop *handle* from the map if it is still the tracked entry for its name."""
        handle._detached = True
        if self._channels.get(handle.name) is handle:
            del self._channels[handle.name]
            return True
        return False

    async def _teardown(self, handle: ChannelHandle) -> None:
        subscription = handle.subscription
        if subscription is None:
            return
        handle.subscription = None
        try:
            await subscription.unsubscribe()
        except Exception as exc:
            logger.warning("Teardown of channel %s failed: %s", handle.name, exc)
            self._telemetry.record_event(
                ChannelTeardownErrorEvent(
                    channel=handle.name,
                    error_type=exc.__class__.__name__,
                    message=str(exc),
                )
            )
