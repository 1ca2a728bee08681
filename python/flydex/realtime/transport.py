"""Realtime transport abstraction.

The transport owns the socket: connecting, joining channels, heartbeats and
reconnection. It yields two kinds of items on one async stream:
- RealtimeRecord: a normalised `postgres_changes` payload for a channel
- ConnectionSignal: a lifecycle transition (CONNECTING / CONNECTED / DISCONNECTED / CLOSED)

Transport errors never escape the stream; they are reported as
ConnectionSignal(DISCONNECTED, error=...).

The production transport speaks the Supabase Realtime (Phoenix channels)
protocol over an aiohttp websocket.
"""

import asyncio
import itertools
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Union

import aiohttp

from flydex.errors import TransportError
from flydex.logging import get_logger
from flydex.services.types import ConnectionState

logger = get_logger(__name__)

PHOENIX_TOPIC = "phoenix"
REALTIME_PROTOCOL_VSN = "1.0.0"


@dataclass(frozen=True)
class ChannelSpec:
    """A postgres_changes subscription.

    Attributes:
        topic: Channel name (without the `realtime:` prefix)
        table: Table to watch
        filter: PostgREST-style row filter (e.g. "recipient_id=eq.<uuid>")
        event: Change type to receive
        schema: Database schema
    """

    topic: str
    table: str
    filter: str
    event: str = "INSERT"
    schema: str = "public"

    def join_config(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "schema": self.schema,
            "table": self.table,
            "filter": self.filter,
        }


@dataclass(frozen=True)
class RealtimeRecord:
    """A change delivered on a channel, normalised to the supabase-js shape."""

    topic: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConnectionSignal:
    """A transport lifecycle transition."""

    state: ConnectionState
    error: Exception | None = None


TransportItem = Union[RealtimeRecord, ConnectionSignal]


class RealtimeTransportBase(ABC):
    """Abstract base class for realtime transports."""

    @abstractmethod
    def subscribe(self, channels: list[ChannelSpec]) -> AsyncIterator[TransportItem]:
        """Open the connection, join channels and yield items until unsubscribed.

        The stream ends after a ConnectionSignal(CLOSED).

        Args:
            channels: Channels to join on every (re)connect.

        Yields:
            RealtimeRecord and ConnectionSignal items in delivery order.
        """
        ...

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Leave all channels and close the connection.

        Idempotent. After this returns the subscribe() stream yields no
        further records.
        """
        ...


def normalize_change(topic: str, payload: dict[str, Any]) -> RealtimeRecord:
    """Convert a Realtime v2 postgres_changes payload to the supabase-js shape.

    Realtime sends {"data": {"type", "table", "schema", "record", "old_record", ...}};
    the rest of the core expects {"eventType", "table", "schema", "new", "old"}.
    """
    data = payload.get("data", payload)
    if not isinstance(data, dict):
        data = {}
    normalized = {
        "schema": data.get("schema", "public"),
        "table": data.get("table"),
        "commit_timestamp": data.get("commit_timestamp"),
        "eventType": data.get("type", data.get("eventType")),
        "new": data.get("record", data.get("new", {})),
        "old": data.get("old_record", data.get("old", {})),
    }
    return RealtimeRecord(topic=topic, payload=normalized)


class SupabaseRealtimeTransport(RealtimeTransportBase):
    """Supabase Realtime transport over an aiohttp websocket.

    Reconnect policy: up to reconnect_attempts consecutive failures, with a
    linearly growing delay; the counter resets after every successful join.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        realtime_url: str,
        anon_key: str,
        access_token: str,
        heartbeat_s: float = 25.0,
        reconnect_delay_s: float = 1.0,
        reconnect_attempts: int = 5,
    ):
        """Initialize the transport.

        Args:
            session: Shared aiohttp.ClientSession.
            realtime_url: wss://<project>.supabase.co/realtime/v1/websocket
            anon_key: Supabase anon key (sent as the apikey query param).
            access_token: The signed-in user's access token for RLS.
            heartbeat_s: Phoenix heartbeat interval.
            reconnect_delay_s: Base delay between reconnect attempts.
            reconnect_attempts: Consecutive failures tolerated before CLOSED.
        """
        self._session = session
        self._url = realtime_url
        self._anon_key = anon_key
        self._access_token = access_token
        self._heartbeat_s = heartbeat_s
        self._reconnect_delay_s = reconnect_delay_s
        self._reconnect_attempts = reconnect_attempts
        self._refs = itertools.count(1)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._closing = False

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _join(self, ws: aiohttp.ClientWebSocketResponse, channels: list[ChannelSpec]) -> None:
        for channel in channels:
            ref = self._next_ref()
            await ws.send_json(
                {
                    "topic": f"realtime:{channel.topic}",
                    "event": "phx_join",
                    "payload": {
                        "config": {
                            "broadcast": {"self": False},
                            "presence": {"key": ""},
                            "postgres_changes": [channel.join_config()],
                        },
                        "access_token": self._access_token,
                    },
                    "ref": ref,
                    "join_ref": ref,
                }
            )

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self._heartbeat_s)
            await ws.send_json(
                {"topic": PHOENIX_TOPIC, "event": "heartbeat", "payload": {}, "ref": self._next_ref()}
            )

    def _decode(self, raw: str) -> RealtimeRecord | None:
        """Decode one socket frame; None for frames the core ignores."""
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("realtime_frame_not_json", frame_length=len(raw))
            return None
        if not isinstance(frame, dict):
            return None

        event = frame.get("event")
        topic = str(frame.get("topic", "")).removeprefix("realtime:")
        payload = frame.get("payload") or {}

        if event == "postgres_changes" and isinstance(payload, dict):
            return normalize_change(topic, payload)
        if event == "phx_reply" and isinstance(payload, dict) and payload.get("status") == "error":
            logger.warning("realtime_join_rejected", topic=topic, reason=str(payload.get("response")))
        elif event in ("phx_error", "phx_close"):
            logger.warning("realtime_channel_closed", topic=topic, event=event)
        return None

    async def subscribe(self, channels: list[ChannelSpec]) -> AsyncIterator[TransportItem]:
        self._closing = False
        failures = 0
        url = f"{self._url}?apikey={self._anon_key}&vsn={REALTIME_PROTOCOL_VSN}"

        while not self._closing:
            yield ConnectionSignal(ConnectionState.CONNECTING)
            error: Exception
            try:
                async with self._session.ws_connect(url) as ws:
                    self._ws = ws
                    await self._join(ws, channels)
                    failures = 0
                    yield ConnectionSignal(ConnectionState.CONNECTED)
                    heartbeat = asyncio.create_task(self._heartbeat(ws))
                    try:
                        async for msg in ws:
                            if msg.type == aiohttp.WSMsgType.TEXT:
                                record = self._decode(msg.data)
                                if record is not None and not self._closing:
                                    yield record
                            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                                break
                            elif msg.type == aiohttp.WSMsgType.ERROR:
                                logger.warning("realtime_socket_error", error=str(ws.exception()))
                                break
                    finally:
                        heartbeat.cancel()
                error = TransportError("Realtime socket closed")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                error = TransportError(f"Realtime connection failed: {type(e).__name__}")
            finally:
                self._ws = None

            if self._closing:
                break

            failures += 1
            yield ConnectionSignal(ConnectionState.DISCONNECTED, error)
            if failures > self._reconnect_attempts:
                logger.error("realtime_reconnect_exhausted", attempts=failures - 1)
                yield ConnectionSignal(
                    ConnectionState.CLOSED, TransportError("Realtime reconnect attempts exhausted")
                )
                return
            await asyncio.sleep(self._reconnect_delay_s * failures)

        yield ConnectionSignal(ConnectionState.CLOSED)

    async def unsubscribe(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()


_CLOSE = object()


class FakeRealtimeTransport(RealtimeTransportBase):
    """Fake transport for testing without a realtime server.

    Items pushed through the helper methods are delivered on the subscribe()
    stream in order. The stream starts with CONNECTING and CONNECTED.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.channels: list[ChannelSpec] = []
        self.subscribed = False
        self.unsubscribe_calls = 0

    async def subscribe(self, channels: list[ChannelSpec]) -> AsyncIterator[TransportItem]:
        self.channels = list(channels)
        self.subscribed = True
        yield ConnectionSignal(ConnectionState.CONNECTING)
        yield ConnectionSignal(ConnectionState.CONNECTED)
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                break
            yield item
        yield ConnectionSignal(ConnectionState.CLOSED)

    async def unsubscribe(self) -> None:
        self.unsubscribe_calls += 1
        if self.subscribed:
            self.subscribed = False
            self._queue.put_nowait(_CLOSE)

    # Test helper methods

    def push_change(self, topic: str, table: str, record: dict[str, Any], event_type: str = "INSERT") -> None:
        """Deliver a postgres change on topic (test helper)."""
        self._queue.put_nowait(
            normalize_change(
                topic,
                {"data": {"type": event_type, "table": table, "schema": "public", "record": record}},
            )
        )

    def push_raw(self, topic: str, payload: dict[str, Any]) -> None:
        """Deliver an arbitrary payload without normalisation (test helper)."""
        self._queue.put_nowait(RealtimeRecord(topic=topic, payload=payload))

    def drop_connection(self, error: Exception | None = None) -> None:
        """Simulate a socket drop followed by a successful reconnect (test helper)."""
        self._queue.put_nowait(
            ConnectionSignal(ConnectionState.DISCONNECTED, error or TransportError("connection lost"))
        )
        self._queue.put_nowait(ConnectionSignal(ConnectionState.CONNECTING))
        self._queue.put_nowait(ConnectionSignal(ConnectionState.CONNECTED))
