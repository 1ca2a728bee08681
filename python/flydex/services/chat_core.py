"""Chat core composition root and UI facade.

ChatCore owns every stateful component for one signed-in user:

    EventSourceAdapter --events--> pump --> ConversationStore
                                        +-> ReadReceiptReconciler (open conversations)
                                        +-> NotificationAggregator (gated by ChatLockStateMachine)

Lifecycle:
- start() resolves the user, loads lock settings, subscribes the adapter
  and starts the event pump task
- stop() cancels timers, unsubscribes, cancels the pump and marks the
  core closed; no store mutation happens afterwards
- `async with ChatCore(...)` wraps both

The pump never raises out of a handler: every dispatch is wrapped and
logged so one bad event cannot stop the stream.

UI collaborators only see read snapshots and the operations below; they
never mutate the store or the notification list directly.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import aiohttp
import httpx

from flydex.backend.client import ChatBackendBase, SupabaseChatBackend
from flydex.config import Settings, get_settings
from flydex.errors import ChatError, NotFoundError
from flydex.logging import clear_chat_context, get_logger, set_chat_context, set_flow_id
from flydex.realtime.adapter import EventSourceAdapter
from flydex.realtime.transport import RealtimeTransportBase, SupabaseRealtimeTransport
from flydex.services.chat_lock import ChatLockStateMachine
from flydex.services.conversation_store import ApplyResult, ConversationSnapshot, ConversationStore
from flydex.services.notifications import NotificationAggregator
from flydex.services.peers import PeerDirectory
from flydex.services.read_receipts import ReadReceiptReconciler
from flydex.services.redact import fingerprint, safe_kv
from flydex.services.types import (
    ConnectionState,
    ConnectionStateChanged,
    DomainEvent,
    FriendRequestCreated,
    LockState,
    Message,
    MessageCreated,
    NotificationItem,
    NotificationKind,
    Peer,
)

logger = get_logger(__name__)

ChangeListener = Callable[[DomainEvent, ApplyResult | None], None]


class ChatCore:
    """Realtime notification and private-messaging core for one user."""

    def __init__(
        self,
        backend: ChatBackendBase,
        transport: RealtimeTransportBase,
        *,
        settings: Settings | None = None,
    ):
        self._backend = backend
        self._transport = transport
        self._settings = settings or get_settings()

        self.self_id: str | None = None
        self._store: ConversationStore | None = None
        self._lock: ChatLockStateMachine | None = None
        self._aggregator: NotificationAggregator | None = None
        self._reconciler: ReadReceiptReconciler | None = None
        self._adapter: EventSourceAdapter | None = None
        self._peers = PeerDirectory(backend)

        self._pump_task: asyncio.Task | None = None
        self._send_timers: dict[str, asyncio.TimerHandle] = {}
        self._peer_tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[ChangeListener] = []
        self._connection_state = ConnectionState.DISCONNECTED
        self._sync_degraded = False
        self._started = False
        self._closed = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def __aenter__(self) -> "ChatCore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """Build the components and start the event pump.

        Raises:
            AuthError: If there is no signed-in user.
            RuntimeError: If the core was already started.
        """
        if self._started:
            raise RuntimeError("ChatCore already started")
        self._started = True

        self.self_id = await self._backend.current_user_id()
        set_chat_context(self.self_id)
        settings = self._settings

        self._store = ConversationStore(self.self_id, send_ack_timeout_s=settings.send_ack_timeout_s)
        self._lock = ChatLockStateMachine(self._backend, self._store)
        self._aggregator = NotificationAggregator(
            self._store,
            peer_lookup=self._peers.peek,
            is_account_locked=lambda: self._lock.is_locked,
            is_open=lambda peer_id: self._reconciler.is_open(peer_id),
            max_items=settings.notification_max_items,
            preview_chars=settings.notification_preview_chars,
        )
        self._reconciler = ReadReceiptReconciler(
            self._store,
            self._aggregator,
            self._backend,
            debounce_s=settings.read_receipt_debounce_s,
        )
        self._adapter = EventSourceAdapter(
            self._transport,
            self._backend,
            open_peers=lambda: sorted(self._reconciler.open_peers),
            resync_max_attempts=settings.resync_max_attempts,
            resync_backoff_s=settings.resync_backoff_s,
        )

        await self._lock.load()
        self._pump_task = asyncio.create_task(self._pump())
        logger.info("chat_core_started")

    async def stop(self) -> None:
        """Tear everything down. Idempotent."""
        if self._closed or not self._started:
            self._closed = True
            return
        self._closed = True

        for handle in self._send_timers.values():
            handle.cancel()
        self._send_timers.clear()

        await self._adapter.unsubscribe()
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass

        await self._reconciler.close()
        for task in self._peer_tasks.values():
            task.cancel()
        self._peer_tasks.clear()

        self._connection_state = ConnectionState.CLOSED
        logger.info("chat_core_stopped")
        clear_chat_context()

    @property
    def closed(self) -> bool:
        return self._closed

    def _require_running(self) -> None:
        if not self._started:
            raise RuntimeError("ChatCore is not started")
        if self._closed:
            raise RuntimeError("ChatCore is closed")

    # =========================================================================
    # Event pump
    # =========================================================================

    async def _pump(self) -> None:
        async for event in self._adapter.subscribe(self.self_id):
            if self._closed:
                break
            try:
                self.handle_event(event)
            except Exception:
                logger.exception("event_handler_failed", event_type=type(event).__name__)

    def handle_event(self, event: DomainEvent) -> None:
        """Dispatch one domain event. Synchronous, so it applies atomically."""
        if self._closed:
            logger.debug("event_dropped_after_close", event_type=type(event).__name__)
            return

        result = None
        if isinstance(event, MessageCreated):
            result = self._store.apply_incoming(event.message)
            if result.requires_rescroll:
                logger.info("late_message_inserted", message_id=result.message.id)
            self._reconciler.on_incoming_while_open(result.message)
            self._aggregator.ingest(event, result)
            self._ensure_peer(result.message.conversation_key.peer_of(self.self_id))
        elif isinstance(event, FriendRequestCreated):
            if self._aggregator.ingest(event) is not None:
                self._ensure_peer(event.requester_id)
        elif isinstance(event, ConnectionStateChanged):
            self._on_connection_state(event)
        else:
            logger.warning("unknown_event_dropped", event_type=type(event).__name__)
            return

        self._notify_listeners(event, result)

    def _on_connection_state(self, event: ConnectionStateChanged) -> None:
        self._connection_state = event.state
        if event.state == ConnectionState.CONNECTED:
            if event.error is not None:
                self._sync_degraded = True
            elif event.resumed:
                self._sync_degraded = False
        elif event.state == ConnectionState.CLOSED and event.error is not None:
            self._sync_degraded = True

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback run after every applied event."""
        self._listeners.append(listener)

    def _notify_listeners(self, event: DomainEvent, result: ApplyResult | None) -> None:
        for listener in self._listeners:
            try:
                listener(event, result)
            except Exception:
                logger.exception("change_listener_failed")

    def _ensure_peer(self, peer_id: str) -> None:
        """Fetch a missing peer profile in the background."""
        if not self._peers.peek(peer_id).is_placeholder or peer_id in self._peer_tasks:
            return
        task = asyncio.create_task(self._load_peer(peer_id))
        self._peer_tasks[peer_id] = task
        task.add_done_callback(lambda _: self._peer_tasks.pop(peer_id, None))

    async def _load_peer(self, peer_id: str) -> None:
        peer = await self._peers.get(peer_id)
        if not peer.is_placeholder and not self._closed:
            self._aggregator.update_peer(peer)

    # =========================================================================
    # Notifications
    # =========================================================================

    def notifications(self) -> list[NotificationItem]:
        self._require_running()
        return self._aggregator.notifications()

    @property
    def silent_notification_count(self) -> int:
        return self._aggregator.silent_count if self._aggregator is not None else 0

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def sync_degraded(self) -> bool:
        """True when the last resync after a reconnect kept failing."""
        return self._sync_degraded

    async def _respond_friend_request(self, item_id: str, accept: bool) -> None:
        self._require_running()
        item = self._aggregator.get(item_id)
        if item is None or item.kind != NotificationKind.FRIEND_REQUEST or item.consumed:
            raise NotFoundError(f"Friend request notification not found: {item_id}")

        await self._backend.respond_friend_request(item.entity_id, accept)
        self._aggregator.consume(item_id)
        logger.info("friend_request_answered", friendship_id=item.entity_id, accepted=accept)

    async def accept_friend_request(self, item_id: str) -> None:
        await self._respond_friend_request(item_id, accept=True)

    async def decline_friend_request(self, item_id: str) -> None:
        await self._respond_friend_request(item_id, accept=False)

    # =========================================================================
    # Conversations
    # =========================================================================

    async def open_conversation(self, peer_id: str) -> ConversationSnapshot:
        """Open a conversation: mark it read, dismiss its notifications,
        merge fresh history and write the receipts in one batch."""
        self._require_running()
        set_flow_id(str(uuid.uuid4()))
        self._aggregator.focused_peer_id = peer_id
        read_ids = self._reconciler.mark_open(peer_id)

        try:
            history = await self._backend.fetch_conversation_history(peer_id)
        except ChatError as e:
            logger.warning("conversation_history_unavailable", error_code=e.code.value)
        else:
            if not self._closed:
                key = self._store.key_for(peer_id)
                self._store.merge_history(key, history)
                read_ids += self._reconciler.mark_open(peer_id)

        if read_ids:
            await self._reconciler.write_receipts(read_ids)
        self._ensure_peer(peer_id)
        set_flow_id(None)
        return self._store.snapshot(self._store.key_for(peer_id))

    async def close_conversation(self, peer_id: str) -> None:
        self._require_running()
        if self._aggregator.focused_peer_id == peer_id:
            self._aggregator.focused_peer_id = None
        await self._reconciler.on_close(peer_id)

    def conversation(self, peer_id: str) -> ConversationSnapshot:
        """Raises NotFoundError if there is no conversation with peer_id."""
        self._require_running()
        return self._store.snapshot(self._store.key_for(peer_id))

    def conversations(self) -> list[ConversationSnapshot]:
        self._require_running()
        return self._store.conversations()

    def locked_conversations(self) -> list[ConversationSnapshot]:
        self._require_running()
        return self._store.locked_bucket()

    def normal_conversations(self) -> list[ConversationSnapshot]:
        self._require_running()
        return self._store.normal_bucket()

    def total_unread(self) -> int:
        self._require_running()
        return self._store.total_unread()

    async def peer(self, peer_id: str) -> Peer:
        return await self._peers.get(peer_id)

    def search_peers(self, query: str) -> list[Peer]:
        return self._peers.search(query)

    # =========================================================================
    # Sending
    # =========================================================================

    async def send_chat_message(self, peer_id: str, body: str) -> Message:
        """Send a message through the optimistic path.

        Backend failures do not raise: the returned message carries
        send_failed=True and can be retried with retry_message().

        Raises:
            ChatLockedError: If the account chat is locked.
            ValueError: If body is blank.
        """
        self._require_running()
        self._lock.ensure_can_send()
        if not body.strip():
            raise ValueError("Message body must not be empty")

        temp_id = self._store.apply_optimistic_send(peer_id, body, locked=self._lock.is_locked)
        loop = asyncio.get_running_loop()
        self._send_timers[temp_id] = loop.call_later(
            self._settings.send_ack_timeout_s, self._expire_send, temp_id
        )

        try:
            server_message = await self._backend.send_message(peer_id, body, locked=self._lock.is_locked)
        except ChatError as e:
            self._cancel_send_timer(temp_id)
            logger.warning(
                "send_failed",
                **safe_kv(
                    temp_id=temp_id,
                    error_code=e.code.value,
                    body_chars=len(body),
                    body_hash=fingerprint(body),
                ),
            )
            if self._closed:
                raise
            failed = self._store.mark_send_failed(temp_id)
            return failed if failed is not None else self._find_message(peer_id, temp_id)

        self._cancel_send_timer(temp_id)
        if self._closed:
            return server_message
        result = self._store.acknowledge_send(temp_id, server_message)
        logger.info(
            "message_sent",
            **safe_kv(
                message_id=result.message.id,
                outcome=result.outcome.value,
                body_hash=fingerprint(body),
            ),
        )
        return result.message

    async def retry_message(self, temp_id: str) -> Message:
        """Resend a failed message as a new optimistic send.

        Raises:
            NotFoundError: If there is no failed message for temp_id.
        """
        self._require_running()
        self._lock.ensure_can_send()
        failed = self._store.discard_failed(temp_id)
        return await self.send_chat_message(failed.recipient_id, failed.body)

    def _cancel_send_timer(self, temp_id: str) -> None:
        handle = self._send_timers.pop(temp_id, None)
        if handle is not None:
            handle.cancel()

    def _expire_send(self, temp_id: str) -> None:
        self._send_timers.pop(temp_id, None)
        if self._closed or temp_id not in self._store.pending_sends():
            return
        self._store.mark_send_failed(temp_id)
        logger.warning("send_ack_timeout", temp_id=temp_id)

    def _find_message(self, peer_id: str, message_id: str) -> Message:
        for message in self.conversation(peer_id).messages:
            if message.id == message_id or message.temp_id == message_id:
                return message
        raise NotFoundError(f"Message not found: {message_id}")

    # =========================================================================
    # Chat lock
    # =========================================================================

    @property
    def lock_state(self) -> LockState:
        self._require_running()
        return self._lock.state

    async def toggle_lock(self, passphrase: str | None = None) -> LockState:
        """Lock, or unlock with passphrase.

        Raises:
            LockNotConfiguredError: If locking without a chat locker passphrase.
            AuthError: If the unlock passphrase is missing or rejected.
        """
        self._require_running()
        state = await self._lock.toggle(passphrase)
        if state == LockState.NORMAL:
            self._aggregator.reset_silent_count()
        return state

    async def configure_chat_locker(self, passphrase: str) -> None:
        self._require_running()
        await self._lock.configure(passphrase)

    async def disable_chat_locker(self) -> None:
        self._require_running()
        await self._lock.disable()

    # =========================================================================
    # Construction from settings
    # =========================================================================

    @classmethod
    @asynccontextmanager
    async def connect(
        cls,
        access_token: str,
        settings: Settings | None = None,
    ) -> AsyncIterator["ChatCore"]:
        """Build a started core against Supabase and tear it down on exit.

        Usage:
            async with ChatCore.connect(session.access_token) as core:
                await core.open_conversation(peer_id)
        """
        settings = settings or get_settings()
        if not settings.normalized_supabase_url or not settings.supabase_anon_key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY are required")

        async with (
            httpx.AsyncClient(timeout=settings.http_timeout_s) as http_client,
            aiohttp.ClientSession() as session,
        ):
            backend = SupabaseChatBackend(
                http_client,
                supabase_url=settings.normalized_supabase_url,
                anon_key=settings.supabase_anon_key,
                access_token=access_token,
                timeout_s=settings.http_timeout_s,
            )
            transport = SupabaseRealtimeTransport(
                session,
                realtime_url=settings.effective_realtime_url,
                anon_key=settings.supabase_anon_key,
                access_token=access_token,
                heartbeat_s=settings.realtime_heartbeat_s,
                reconnect_delay_s=settings.realtime_reconnect_delay_s,
                reconnect_attempts=settings.realtime_reconnect_attempts,
            )
            async with cls(backend, transport, settings=settings) as core:
                yield core
