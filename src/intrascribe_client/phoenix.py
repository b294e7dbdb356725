"""Realtime transport speaking the Phoenix channel protocol over websockets."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from .config import RealtimeConfig
from .errors import TransportError
from .http import TokenProvider
from .models import ChannelStatus, EventCallback, StatusCallback, TopicSpec
from .realtime import RealtimeTransport, TransportSubscription
from .schemas import PhoenixMessage, PostgresChangeData

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"
HEARTBEAT_TOPIC = "phoenix"


class WebSocketConnection(Protocol):
    """Minimal websocket surface used by the transport."""

    async def send(self, message: str) -> None:  # pragma: no cover - protocol
        """Send a text frame."""
        ...

    async def recv(self) -> str | bytes:  # pragma: no cover - protocol
        """Receive the next frame."""
        ...

    async def close(self) -> None:  # pragma: no cover - protocol
        """Close the connection."""
        ...


Connector = Callable[[str], Awaitable[WebSocketConnection]]
Sleeper = Callable[[float], Awaitable[None]]


async def _websocket_connect(url: str) -> WebSocketConnection:
    # Phoenix heartbeats replace websocket-level pings.
    return await websockets.connect(url, ping_interval=None)


class PhoenixChannel(TransportSubscription):
    """A joined ``realtime:{name}`` topic on the shared socket."""

    def __init__(
        self,
        transport: PhoenixRealtimeTransport,
        name: str,
        spec: TopicSpec,
        *,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> None:
        self.name = name
        self.topic = f"realtime:{name}"
        self.spec = spec
        self.join_ref: str | None = None
        self.join_task: asyncio.Task[None] | None = None
        self.left = False
        self._transport = transport
        self._on_event = on_event
        self._on_status = on_status

    async def unsubscribe(self) -> None:
        """Leave the topic on the server and stop routing its messages."""
        await self._transport.leave(self)

    async def report(self, status: ChannelStatus, message: str | None = None) -> None:
        await self._on_status(status, message)

    async def deliver(self, payload: dict[str, Any]) -> None:
        data = payload.get("data", payload)
        try:
            event = PostgresChangeData.model_validate(data).to_event()
        except ValidationError as exc:
            logger.warning("Dropping malformed row change on %s: %s", self.topic, exc)
            return
        await self._on_event(event)


class PhoenixRealtimeTransport(RealtimeTransport):
    """Multiplexes realtime channels over one lazily opened websocket.

    Messages are read by a single task and dispatched inline, so events reach a
    channel's callback in arrival order.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        *,
        token_provider: TokenProvider | None = None,
        connect: Connector | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        """Create a transport for the endpoint described by *config*."""
        self._config = config
        self._token_provider = token_provider
        self._connect = connect or _websocket_connect
        self._sleep = sleep or asyncio.sleep
        self._socket: WebSocketConnection | None = None
        self._connect_lock = asyncio.Lock()
        self._channels: dict[str, PhoenixChannel] = {}
        self._replies: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._refs = itertools.count(1)
        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None

    @property
    def connected(self) -> bool:
        """Return ``True`` while the websocket is open."""
        return self._socket is not None

    def socket_url(self) -> str:
        """Return the websocket URL including the API key and protocol version."""
        if not self._config.url:
            raise TransportError("Realtime URL is not configured")
        base = self._config.url.rstrip("/")
        if base.startswith("http"):
            base = "ws" + base[len("http") :]
        query: dict[str, str] = {"vsn": PROTOCOL_VERSION}
        if self._config.api_key:
            query = {"apikey": self._config.api_key, **query}
        return f"{base}/websocket?{urlencode(query)}"

    async def open_channel(
        self,
        name: str,
        topic: TopicSpec,
        *,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> PhoenixChannel:
        """Join ``realtime:{name}``; the join outcome is reported through *on_status*."""
        await self._ensure_connected()
        channel = PhoenixChannel(self, name, topic, on_event=on_event, on_status=on_status)
        ref = self._next_ref()
        channel.join_ref = ref
        reply = asyncio.get_running_loop().create_future()
        self._replies[ref] = reply
        self._channels[channel.topic] = channel
        try:
            await self._send(
                channel.topic, "phx_join", self._join_payload(topic), ref=ref, join_ref=ref
            )
        except (ConnectionClosed, OSError) as exc:
            self._channels.pop(channel.topic, None)
            self._replies.pop(ref, None)
            raise TransportError(f"Could not join {channel.topic}: {exc}") from exc
        channel.join_task = asyncio.create_task(self._await_join(channel, reply))
        logger.debug("Sent phx_join for %s (ref=%s)", channel.topic, ref)
        return channel

    async def leave(self, channel: PhoenixChannel) -> None:
        """Stop routing *channel* and send ``phx_leave`` when still connected."""
        if channel.left:
            return
        channel.left = True
        if self._channels.get(channel.topic) is channel:
            del self._channels[channel.topic]
        task = channel.join_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if self._socket is None:
            return
        try:
            await self._send(
                channel.topic, "phx_leave", {}, ref=self._next_ref(), join_ref=channel.join_ref
            )
        except (ConnectionClosed, OSError) as exc:
            raise TransportError(f"Could not leave {channel.topic}: {exc}") from exc
        logger.debug("Left %s", channel.topic)

    async def close(self) -> None:
        """Stop background tasks and close the websocket."""
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._heartbeat_task, self._reader_task):
            await self._await_optional_task(task)
        self._heartbeat_task = None
        self._reader_task = None
        for channel in list(self._channels.values()):
            channel.left = True
            if channel.join_task is not None and not channel.join_task.done():
                channel.join_task.cancel()
        self._channels.clear()
        self._fail_pending_replies()
        socket, self._socket = self._socket, None
        if socket is not None:
            await socket.close()
            logger.info("Realtime websocket closed")

    async def _ensure_connected(self) -> WebSocketConnection:
        async with self._connect_lock:
            if self._socket is not None:
                return self._socket
            url = self.socket_url()
            try:
                socket = await self._connect(url)
            except (OSError, websockets.exceptions.WebSocketException) as exc:
                raise TransportError(f"Could not connect to realtime endpoint: {exc}") from exc
            self._socket = socket
            self._reader_task = asyncio.create_task(self._read_loop(socket))
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(socket))
            logger.info("Connected to realtime endpoint %s", self._config.url)
            return socket

    def _join_payload(self, topic: TopicSpec) -> dict[str, Any]:
        change: dict[str, Any] = {
            "event": topic.event.value,
            "schema": topic.schema,
            "table": topic.table,
        }
        if topic.filter is not None:
            change["filter"] = topic.filter.render()
        token = self._token_provider() if self._token_provider is not None else None
        payload: dict[str, Any] = {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [change],
            }
        }
        access_token = token or self._config.api_key
        if access_token:
            payload["access_token"] = access_token
        return payload

    async def _await_join(
        self, channel: PhoenixChannel, reply: asyncio.Future[dict[str, Any]]
    ) -> None:
        try:
            response = await asyncio.wait_for(reply, timeout=self._config.join_timeout)
        except TimeoutError:
            self._replies.pop(channel.join_ref or "", None)
            logger.warning("Join of %s timed out", channel.topic)
            await channel.report(ChannelStatus.TIMED_OUT, "join timed out")
            return
        except asyncio.CancelledError:
            if channel.left:
                return
            raise
        if channel.left:
            return
        if response.get("status") == "ok":
            await channel.report(ChannelStatus.SUBSCRIBED, None)
            return
        detail = response.get("response")
        reason = detail.get("reason") if isinstance(detail, dict) else None
        await channel.report(ChannelStatus.ERROR, str(reason or detail or "join rejected"))

    async def _read_loop(self, socket: WebSocketConnection) -> None:
        reason = "connection closed"
        try:
            while True:
                raw = await socket.recv()
                await self._dispatch(raw)
        except ConnectionClosed as exc:
            reason = f"connection closed: {exc}"
        except OSError as exc:
            reason = f"connection lost: {exc}"
        if self._socket is socket:
            await self._connection_lost(reason)

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = PhoenixMessage.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Ignoring undecodable realtime frame: %s", exc)
            return
        if message.event == "phx_reply":
            future = self._replies.pop(message.ref, None) if message.ref else None
            if future is not None and not future.done():
                future.set_result(message.payload)
            return
        channel = self._channels.get(message.topic)
        if channel is None:
            logger.debug("No channel for %s %s", message.topic, message.event)
            return
        if message.event == "postgres_changes":
            await channel.deliver(message.payload)
        elif message.event == "phx_close":
            self._channels.pop(channel.topic, None)
            channel.left = True
            await channel.report(ChannelStatus.CLOSED, None)
        elif message.event == "phx_error":
            await channel.report(ChannelStatus.ERROR, "channel error")
        elif message.event == "system" and message.payload.get("status") == "error":
            await channel.report(ChannelStatus.ERROR, str(message.payload.get("message")))
        else:
            logger.debug("Unhandled %s event on %s", message.event, message.topic)

    async def _connection_lost(self, reason: str) -> None:
        logger.warning("Realtime connection lost: %s", reason)
        self._socket = None
        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        if heartbeat is not None and not heartbeat.done():
            heartbeat.cancel()
        self._fail_pending_replies()
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            channel.left = True
            await channel.report(ChannelStatus.ERROR, reason)

    async def _heartbeat_loop(self, socket: WebSocketConnection) -> None:
        while self._socket is socket:
            await self._sleep(self._config.heartbeat_interval)
            try:
                await self._send(HEARTBEAT_TOPIC, "heartbeat", {}, ref=self._next_ref())
            except (ConnectionClosed, OSError, TransportError) as exc:
                logger.debug("Heartbeat failed: %s", exc)
                return

    async def _send(
        self,
        topic: str,
        event: str,
        payload: dict[str, Any],
        *,
        ref: str | None = None,
        join_ref: str | None = None,
    ) -> None:
        socket = self._socket
        if socket is None:
            raise TransportError("Realtime websocket is not connected")
        message = PhoenixMessage(
            topic=topic, event=event, payload=payload, ref=ref, join_ref=join_ref
        )
        await socket.send(message.model_dump_json())

    def _fail_pending_replies(self) -> None:
        replies = list(self._replies.values())
        self._replies.clear()
        for future in replies:
            if not future.done():
                future.set_result({"status": "error", "response": {"reason": "disconnected"}})

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _await_optional_task(self, task: asyncio.Task[None] | None) -> None:
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
