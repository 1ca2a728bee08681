"""Event Source Adapter.

Wraps a realtime transport and exposes a typed stream of domain events:
FriendRequestCreated | MessageCreated | ConnectionStateChanged.

Contract:
- subscribe(self_id) yields events until unsubscribe() is called
- At-least-once delivery of changes since the adapter's own connection was
  established; changes that happened while disconnected are recovered by a
  pull resync, not by the transport
- Every CONNECTED transition triggers a resync: history for the currently
  open conversations plus the notification backlog, emitted as
  replayed=True events into the same stream
- Transport failures become ConnectionStateChanged events, never exceptions
- Malformed payloads are logged and dropped
- The adapter never touches the conversation store
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable

from flydex.backend.client import ChatBackendBase
from flydex.errors import ChatError, ChatErrorCode, MalformedEventError, TransportError
from flydex.logging import get_logger, subscription_id_var
from flydex.realtime.transport import (
    ChannelSpec,
    ConnectionSignal,
    RealtimeRecord,
    RealtimeTransportBase,
)
from flydex.schemas.realtime import parse_change
from flydex.services.types import (
    ConnectionState,
    ConnectionStateChanged,
    DomainEvent,
    FriendRequestCreated,
    MessageCreated,
)

logger = get_logger(__name__)

MESSAGES_TOPIC = "chat-messages"
FRIEND_REQUESTS_TOPIC = "friend-requests"


class EventSourceAdapter:
    """Typed domain event stream over a realtime transport.

    Constructed explicitly by the composition root and owned by it; there is
    no module-level instance.
    """

    def __init__(
        self,
        transport: RealtimeTransportBase,
        backend: ChatBackendBase,
        *,
        open_peers: Callable[[], Iterable[str]] = tuple,
        resync_max_attempts: int = 3,
        resync_backoff_s: float = 1.0,
    ):
        """Initialize the adapter.

        Args:
            transport: Realtime transport to read from.
            backend: Backend used for pull resyncs.
            open_peers: Returns the peers whose conversations are currently open.
            resync_max_attempts: Pull attempts per reconnect before reporting failure.
            resync_backoff_s: Base delay between pull attempts.
        """
        self._transport = transport
        self._backend = backend
        self._open_peers = open_peers
        self._resync_max_attempts = resync_max_attempts
        self._resync_backoff_s = resync_backoff_s
        self._state: ConnectionState | None = None
        self._seen_disconnect = False
        self._active = False
        self._self_id: str | None = None

    @property
    def state(self) -> ConnectionState | None:
        return self._state

    @property
    def active(self) -> bool:
        return self._active

    def channels(self, self_id: str) -> list[ChannelSpec]:
        """Channels joined for self_id."""
        return [
            ChannelSpec(topic=MESSAGES_TOPIC, table="messages", filter=f"recipient_id=eq.{self_id}"),
            ChannelSpec(topic=FRIEND_REQUESTS_TOPIC, table="friends", filter=f"friend_id=eq.{self_id}"),
        ]

    async def subscribe(self, self_id: str) -> AsyncIterator[DomainEvent]:
        """Yield domain events for self_id until unsubscribed.

        Raises:
            RuntimeError: If the adapter is already subscribed.
        """
        if self._active:
            raise RuntimeError("EventSourceAdapter is already subscribed")
        self._active = True
        self._self_id = self_id
        self._seen_disconnect = False
        subscription_id_var.set(f"{MESSAGES_TOPIC}+{FRIEND_REQUESTS_TOPIC}")

        try:
            async for item in self._transport.subscribe(self.channels(self_id)):
                if not self._active:
                    break

                if isinstance(item, ConnectionSignal):
                    event = self._transition(item)
                    yield event
                    if event.state == ConnectionState.CONNECTED:
                        async for replayed in self._resync(resumed=event.resumed):
                            if not self._active:
                                return
                            yield replayed
                elif isinstance(item, RealtimeRecord):
                    domain_event = self._decode(item)
                    if domain_event is not None:
                        yield domain_event
                else:
                    logger.warning("unknown_transport_item_dropped", item_type=type(item).__name__)
        except Exception as e:
            logger.exception("event_source_failed", error_type=type(e).__name__)
            if self._active:
                yield self._transition(
                    ConnectionSignal(ConnectionState.CLOSED, TransportError("Event source failed"))
                )
        finally:
            self._active = False

    async def unsubscribe(self) -> None:
        """Stop the stream. Events arriving afterwards are dropped."""
        was_active = self._active
        self._active = False
        await self._transport.unsubscribe()
        if was_active:
            logger.info("event_source_unsubscribed")

    def _transition(self, signal: ConnectionSignal) -> ConnectionStateChanged:
        previous = self._state
        resumed = False
        if signal.state == ConnectionState.DISCONNECTED:
            self._seen_disconnect = True
        elif signal.state == ConnectionState.CONNECTED and self._seen_disconnect:
            resumed = True
            self._seen_disconnect = False
            previous = ConnectionState.DISCONNECTED
        self._state = signal.state

        if signal.error is not None:
            logger.warning(
                "connection_state_changed",
                state=signal.state.value,
                previous=previous.value if previous else None,
                error_type=type(signal.error).__name__,
            )
        else:
            logger.info(
                "connection_state_changed",
                state=signal.state.value,
                previous=previous.value if previous else None,
                resumed=resumed,
            )
        return ConnectionStateChanged(
            state=signal.state, previous=previous, error=signal.error, resumed=resumed
        )

    def _decode(self, record: RealtimeRecord) -> DomainEvent | None:
        try:
            event = parse_change(record.payload)
        except MalformedEventError as e:
            logger.warning("malformed_event_dropped", topic=record.topic, error=e.message)
            return None

        if isinstance(event, MessageCreated) and self._self_id not in event.message.conversation_key:
            logger.warning("foreign_message_dropped", topic=record.topic)
            return None
        if isinstance(event, FriendRequestCreated) and event.requester_id == self._self_id:
            return None
        return event

    async def _pull(self) -> list[DomainEvent]:
        events: list[DomainEvent] = []
        for peer_id in list(self._open_peers()):
            history = await self._backend.fetch_conversation_history(peer_id)
            events.extend(MessageCreated(message=m, replayed=True) for m in history)
        events.extend(await self._backend.fetch_pending_friend_requests())
        unread = await self._backend.fetch_unread_messages()
        events.extend(MessageCreated(message=m, replayed=True) for m in unread)
        return events

    async def _resync(self, *, resumed: bool) -> AsyncIterator[DomainEvent]:
        """Pull missed state, retrying with backoff.

        Yields the replayed events, or a CONNECTED event carrying a
        TransportError once every attempt has failed.
        """
        for attempt in range(1, self._resync_max_attempts + 1):
            try:
                events = await self._pull()
            except ChatError as e:
                logger.warning("resync_failed", attempt=attempt, error_code=e.code.value)
                if attempt < self._resync_max_attempts:
                    await asyncio.sleep(self._resync_backoff_s * attempt)
                continue

            logger.info("resync_completed", resumed=resumed, event_count=len(events))
            for event in events:
                yield event
            return

        logger.error("resync_exhausted", attempts=self._resync_max_attempts)
        yield ConnectionStateChanged(
            state=ConnectionState.CONNECTED,
            previous=ConnectionState.CONNECTED,
            error=TransportError(
                "Could not resynchronize after reconnect", code=ChatErrorCode.E_RESYNC_FAILED
            ),
            resumed=resumed,
        )
