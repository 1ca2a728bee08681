"""Notification Aggregator.

Turns domain events into a deduplicated, bounded list of notification
items (friend requests and unseen messages).

Rules:
- One item per (kind, entity_id); redelivered events never duplicate it
- A consumed entity is remembered so a replay does not resurrect it
- Message items require: sender is a peer, message still unread in the
  store, its conversation is neither focused nor open, and neither the account nor the
  conversation nor the message itself is locked
- Locked suppressions only bump silent_count; no preview is kept
- The list is capped at max_items; consumed items are evicted first
  (oldest first), then the oldest live items
- ingest() never raises; unrecognized events are logged and dropped
"""

from collections import OrderedDict
from collections.abc import Callable
from dataclasses import replace

from flydex.errors import ChatErrorCode
from flydex.logging import get_logger
from flydex.services.conversation_store import ApplyResult, ConversationStore
from flydex.services.types import (
    ConnectionStateChanged,
    FriendRequestCreated,
    LockState,
    Message,
    MessageCreated,
    NotificationItem,
    NotificationKind,
    Peer,
    ReadState,
)

logger = get_logger(__name__)

DEFAULT_MAX_ITEMS = 50
DEFAULT_PREVIEW_CHARS = 80
CONSUMED_MEMORY = 1000


def summarize(body: str, limit: int) -> str:
    """Single-line preview of body, at most limit characters."""
    text = " ".join(body.split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 1, 0)].rstrip() + "…"


def notification_id(kind: NotificationKind, entity_id: str) -> str:
    return f"{kind.value}:{entity_id}"


class NotificationAggregator:
    """Bounded, deduplicated notification list fed by the event pump."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        peer_lookup: Callable[[str], Peer] = lambda peer_id: Peer(id=peer_id),
        is_account_locked: Callable[[], bool] = lambda: False,
        is_open: Callable[[str], bool] = lambda peer_id: False,
        max_items: int = DEFAULT_MAX_ITEMS,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
    ):
        self._store = store
        self._peer_lookup = peer_lookup
        self._is_account_locked = is_account_locked
        self._is_open = is_open
        self._max_items = max_items
        self._preview_chars = preview_chars
        self._items: dict[str, NotificationItem] = {}
        self._consumed_keys: OrderedDict[tuple[NotificationKind, str], None] = OrderedDict()
        self._silenced_keys: OrderedDict[str, None] = OrderedDict()
        self.focused_peer_id: str | None = None

    @property
    def silent_count(self) -> int:
        """Messages withheld because of a lock since the last reset."""
        return len(self._silenced_keys)

    def reset_silent_count(self) -> None:
        self._silenced_keys.clear()

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(self, event, apply_result: ApplyResult | None = None) -> NotificationItem | None:
        """Produce a notification for event, or None when nothing is surfaced."""
        try:
            if isinstance(event, FriendRequestCreated):
                return self._ingest_friend_request(event)
            if isinstance(event, MessageCreated):
                return self._ingest_message(event.message, apply_result)
            if isinstance(event, ConnectionStateChanged):
                return None
        except Exception as e:
            logger.warning(
                "malformed_event_dropped",
                error_code=ChatErrorCode.E_MALFORMED_EVENT.value,
                event_type=type(event).__name__,
                error_type=type(e).__name__,
            )
            return None

        logger.warning(
            "unrecognized_event_dropped",
            error_code=ChatErrorCode.E_MALFORMED_EVENT.value,
            event_type=type(event).__name__,
        )
        return None

    def _is_known(self, kind: NotificationKind, entity_id: str) -> bool:
        return (
            notification_id(kind, entity_id) in self._items
            or (kind, entity_id) in self._consumed_keys
        )

    def _ingest_friend_request(self, event: FriendRequestCreated) -> NotificationItem | None:
        if self._is_known(NotificationKind.FRIEND_REQUEST, event.friendship_id):
            return None
        return self._add(
            NotificationItem(
                id=notification_id(NotificationKind.FRIEND_REQUEST, event.friendship_id),
                kind=NotificationKind.FRIEND_REQUEST,
                entity_id=event.friendship_id,
                source_peer=self._peer_lookup(event.requester_id),
                payload_summary="",
                created_at=event.created_at,
            )
        )

    def _is_gated(self, message: Message) -> bool:
        return (
            self._is_account_locked()
            or message.locked
            or self._store.lock_state(message.conversation_key) == LockState.LOCKED
        )

    def _ingest_message(
        self, message: Message, apply_result: ApplyResult | None
    ) -> NotificationItem | None:
        if message.sender_id == self._store.self_id:
            return None

        # The store copy may have been read since apply_result was taken.
        stored = self._store.get_message(message.conversation_key, message.id)
        if stored is None:
            stored = apply_result.message if apply_result is not None else message
        if stored.read_state == ReadState.READ:
            return None
        if self._is_known(NotificationKind.MESSAGE, message.id):
            return None
        if message.sender_id == self.focused_peer_id or self._is_open(message.sender_id):
            return None

        if self._is_gated(message):
            self._silenced_keys[message.id] = None
            while len(self._silenced_keys) > CONSUMED_MEMORY:
                self._silenced_keys.popitem(last=False)
            return None

        return self._add(
            NotificationItem(
                id=notification_id(NotificationKind.MESSAGE, message.id),
                kind=NotificationKind.MESSAGE,
                entity_id=message.id,
                source_peer=self._peer_lookup(message.sender_id),
                payload_summary=summarize(message.body, self._preview_chars),
                created_at=message.created_at,
            )
        )

    def _add(self, item: NotificationItem) -> NotificationItem | None:
        """Insert item; None when it is older than everything in a full list."""
        self._items[item.id] = item
        self._evict()
        return item if item.id in self._items else None

    def _evict(self) -> None:
        overflow = len(self._items) - self._max_items
        if overflow <= 0:
            return
        consumed = sorted(
            (item for item in self._items.values() if item.consumed), key=lambda i: i.created_at
        )
        live = sorted(
            (item for item in self._items.values() if not item.consumed), key=lambda i: i.created_at
        )
        for item in (consumed + live)[:overflow]:
            del self._items[item.id]
        logger.debug("notifications_evicted", evicted=overflow)

    # =========================================================================
    # Consumption
    # =========================================================================

    def get(self, item_id: str) -> NotificationItem | None:
        return self._items.get(item_id)

    def consume(self, item_id: str) -> bool:
        """Mark an item consumed. Returns False when it was not live."""
        item = self._items.get(item_id)
        if item is None or item.consumed:
            return False
        self._items[item_id] = replace(item, consumed=True)
        self._consumed_keys[item.key] = None
        while len(self._consumed_keys) > CONSUMED_MEMORY:
            self._consumed_keys.popitem(last=False)
        return True

    def consume_matching(self, kind: NotificationKind, peer_id: str) -> list[NotificationItem]:
        """Consume every live item of kind whose source peer is peer_id."""
        matching = [
            item
            for item in self._items.values()
            if item.kind == kind and item.source_peer.id == peer_id and not item.consumed
        ]
        for item in matching:
            self.consume(item.id)
        return matching

    def update_peer(self, peer: Peer) -> None:
        """Swap in a freshly fetched profile for items from peer."""
        for item_id, item in list(self._items.items()):
            if item.source_peer.id == peer.id and item.source_peer != peer:
                self._items[item_id] = replace(item, source_peer=peer)

    # =========================================================================
    # Views
    # =========================================================================

    def notifications(self) -> list[NotificationItem]:
        """Live items, newest first.

        Message items from conversations that are locked right now are
        withheld without being consumed.
        """
        account_locked = self._is_account_locked()
        visible = []
        for item in self._items.values():
            if item.consumed:
                continue
            if item.kind == NotificationKind.MESSAGE and (
                account_locked
                or self._store.lock_state(self._store.key_for(item.source_peer.id)) == LockState.LOCKED
            ):
                continue
            visible.append(item)
        return sorted(visible, key=lambda i: i.created_at, reverse=True)

    def __len__(self) -> int:
        return len(self._items)
