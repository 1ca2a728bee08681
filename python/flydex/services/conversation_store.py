"""Conversation Store.

Owns every conversation between self and a peer and the temp-id
reconciliation map for optimistic sends.

Key invariants:
- Messages are unique by id within a conversation; re-applying is a no-op
  (apart from read_state moving forward)
- Display order is ascending created_at, ties by seq when both sides have
  one, else by arrival ordinal; an entry is never moved once placed
- An optimistic entry is replaced in place by its server echo, never
  duplicated
- unread_count counts messages from the peer whose read_state is not READ
- All mutations are synchronous; readers only see fully applied state

Store errors are raised to the direct caller. The event pump that feeds
apply_incoming() is responsible for not letting them escape.
"""

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from itertools import count
from uuid import uuid4

from flydex.errors import LockNotConfiguredError, LockStateError, NotFoundError
from flydex.logging import get_logger
from flydex.services.types import (
    ACCOUNT_WIDE,
    ConversationKey,
    LockState,
    Message,
    ReadState,
)

logger = get_logger(__name__)

DEFAULT_SEND_ACK_TIMEOUT_S = 15.0


class ApplyOutcome(str, Enum):
    """What apply_incoming() did with a message."""

    APPENDED = "appended"
    INSERTED = "inserted"
    RECONCILED = "reconciled"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ApplyResult:
    """Result of applying a message to the store.

    Attributes:
        outcome: What happened to the message
        message: The stored message after the apply
        requires_rescroll: A late older message was placed before the tail
    """

    outcome: ApplyOutcome
    message: Message
    requires_rescroll: bool = False

    @property
    def is_new(self) -> bool:
        """True when a message became visible for the first time."""
        return self.outcome in (ApplyOutcome.APPENDED, ApplyOutcome.INSERTED)


@dataclass(frozen=True)
class ConversationSnapshot:
    """Read-only view of a conversation."""

    key: ConversationKey
    peer_id: str
    messages: tuple[Message, ...]
    unread_count: int
    lock_state: LockState

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None


@dataclass
class _Entry:
    message: Message
    arrival: int


@dataclass
class _Conversation:
    key: ConversationKey
    peer_id: str
    lock_state: LockState
    entries: list[_Entry] = field(default_factory=list)
    by_id: dict[str, _Entry] = field(default_factory=dict)


@dataclass
class _PendingSend:
    key: ConversationKey
    deadline: datetime


def _precedes(message: Message, arrival: int, other: _Entry) -> bool:
    """Display-order comparison of a candidate against an existing entry."""
    if message.created_at != other.message.created_at:
        return message.created_at < other.message.created_at
    if message.seq is not None and other.message.seq is not None and message.seq != other.message.seq:
        return message.seq < other.message.seq
    return arrival < other.arrival


class ConversationStore:
    """In-memory conversations for one signed-in user."""

    def __init__(self, self_id: str, *, send_ack_timeout_s: float = DEFAULT_SEND_ACK_TIMEOUT_S):
        self.self_id = self_id
        self._send_ack_timeout = timedelta(seconds=send_ack_timeout_s)
        self._conversations: dict[ConversationKey, _Conversation] = {}
        self._arrivals = count()
        self._account_lock = LockState.NORMAL
        # temp_id -> pending send, in send order
        self._pending: OrderedDict[str, _PendingSend] = OrderedDict()
        self._temp_keys: dict[str, ConversationKey] = {}

    # =========================================================================
    # Conversations
    # =========================================================================

    def key_for(self, peer_id: str) -> ConversationKey:
        return ConversationKey.of(self.self_id, peer_id)

    def ensure(self, peer_id: str) -> ConversationKey:
        """Create the conversation with peer_id if it does not exist yet."""
        return self._get_or_create(self.key_for(peer_id)).key

    def _get_or_create(self, key: ConversationKey) -> _Conversation:
        conversation = self._conversations.get(key)
        if conversation is None:
            conversation = _Conversation(
                key=key,
                peer_id=key.peer_of(self.self_id),
                lock_state=self._account_lock,
            )
            self._conversations[key] = conversation
        return conversation

    def _get(self, key: ConversationKey) -> _Conversation:
        conversation = self._conversations.get(key)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {key}")
        return conversation

    def has_conversation(self, key: ConversationKey) -> bool:
        return key in self._conversations

    def clear(self, key: ConversationKey) -> None:
        """Empty a conversation; the conversation itself is kept."""
        conversation = self._get(key)
        for entry in conversation.entries:
            if entry.message.temp_id is not None:
                self._pending.pop(entry.message.temp_id, None)
                self._temp_keys.pop(entry.message.temp_id, None)
        conversation.entries.clear()
        conversation.by_id.clear()

    # =========================================================================
    # Incoming messages
    # =========================================================================

    def _place(self, conversation: _Conversation, message: Message) -> ApplyResult:
        arrival = next(self._arrivals)
        entries = conversation.entries
        index = len(entries)
        while index > 0 and _precedes(message, arrival, entries[index - 1]):
            index -= 1

        entry = _Entry(message=message, arrival=arrival)
        entries.insert(index, entry)
        conversation.by_id[message.id] = entry

        if index == len(entries) - 1:
            return ApplyResult(ApplyOutcome.APPENDED, message)
        return ApplyResult(ApplyOutcome.INSERTED, message, requires_rescroll=True)

    def _find_echo_target(self, conversation: _Conversation, message: Message) -> str | None:
        """Oldest unreconciled local send with the same body, if any."""
        if message.sender_id != self.self_id:
            return None
        for entry in conversation.entries:
            local = entry.message
            if local.temp_id is None or local.id != local.temp_id or local.body != message.body:
                continue
            # Older rows with the same text come from history, not this send.
            if message.created_at >= local.created_at - self._send_ack_timeout:
                return local.temp_id
        return None

    def _reconcile(self, conversation: _Conversation, temp_id: str, server_message: Message) -> ApplyResult:
        entry = conversation.by_id.pop(temp_id)
        read_state = server_message.read_state
        if entry.message.read_state.rank > read_state.rank:
            read_state = entry.message.read_state
        entry.message = replace(server_message, temp_id=temp_id, read_state=read_state, send_failed=False)
        conversation.by_id[entry.message.id] = entry
        self._pending.pop(temp_id, None)
        self._temp_keys.pop(temp_id, None)
        logger.debug("optimistic_send_reconciled", temp_id=temp_id, message_id=entry.message.id)
        return ApplyResult(ApplyOutcome.RECONCILED, entry.message)

    def apply_incoming(self, message: Message) -> ApplyResult:
        """Apply a message from the server (live, resync or history).

        Raises:
            ValueError: If the message does not belong to a conversation of self.
        """
        if self.self_id not in message.conversation_key:
            raise ValueError(f"Message {message.id} does not involve {self.self_id}")

        conversation = self._get_or_create(message.conversation_key)

        existing = conversation.by_id.get(message.id)
        if existing is not None:
            advanced = existing.message.with_read_state(message.read_state)
            if existing.message.seq is None and message.seq is not None:
                advanced = replace(advanced, seq=message.seq)
            existing.message = advanced
            return ApplyResult(ApplyOutcome.DUPLICATE, existing.message)

        temp_id = self._find_echo_target(conversation, message)
        if temp_id is not None:
            return self._reconcile(conversation, temp_id, message)

        return self._place(conversation, message)

    def merge_history(self, key: ConversationKey, messages: list[Message]) -> list[ApplyResult]:
        """Merge fetched history by id; local in-flight entries are kept."""
        self._get_or_create(key)
        results = []
        for message in messages:
            if message.conversation_key != key:
                logger.warning("history_message_key_mismatch", message_id=message.id)
                continue
            results.append(self.apply_incoming(message))
        return results

    # =========================================================================
    # Optimistic sends
    # =========================================================================

    def apply_optimistic_send(
        self,
        peer_id: str,
        body: str,
        locked: bool = False,
        *,
        now: datetime | None = None,
    ) -> str:
        """Append a local message immediately and return its temp id."""
        now = now or datetime.now(UTC)
        key = self.key_for(peer_id)
        conversation = self._get_or_create(key)
        temp_id = f"temp-{uuid4()}"
        message = Message(
            id=temp_id,
            conversation_key=key,
            sender_id=self.self_id,
            recipient_id=peer_id,
            body=body,
            created_at=now,
            read_state=ReadState.SENT,
            locked=locked,
            temp_id=temp_id,
        )
        self._place(conversation, message)
        self._pending[temp_id] = _PendingSend(key=key, deadline=now + self._send_ack_timeout)
        self._temp_keys[temp_id] = key
        return temp_id

    def acknowledge_send(self, temp_id: str, server_message: Message) -> ApplyResult:
        """Reconcile an optimistic entry with the send call's response."""
        key = self._temp_keys.get(temp_id)
        if key is None:
            return self.apply_incoming(server_message)

        conversation = self._get(key)
        if server_message.id in conversation.by_id:
            # History already delivered the server row; drop the local copy.
            entry = conversation.by_id.pop(temp_id, None)
            if entry is not None:
                conversation.entries.remove(entry)
            self._pending.pop(temp_id, None)
            self._temp_keys.pop(temp_id, None)
            return ApplyResult(ApplyOutcome.DUPLICATE, conversation.by_id[server_message.id].message)

        if temp_id not in conversation.by_id:
            return self.apply_incoming(server_message)
        return self._reconcile(conversation, temp_id, server_message)

    def pending_sends(self) -> list[str]:
        return list(self._pending)

    def mark_send_failed(self, temp_id: str) -> Message | None:
        """Flag an unreconciled send as failed.

        Returns the failed message, or None when it was already reconciled.

        Raises:
            NotFoundError: If temp_id was never issued or has been discarded.
        """
        key = self._temp_keys.get(temp_id)
        if key is None:
            raise NotFoundError(f"Unknown temp id: {temp_id}")
        self._pending.pop(temp_id, None)

        entry = self._get(key).by_id.get(temp_id)
        if entry is None:
            return None
        entry.message = replace(entry.message, send_failed=True)
        logger.info("optimistic_send_failed", temp_id=temp_id)
        return entry.message

    def expire_pending_sends(self, now: datetime | None = None) -> list[str]:
        """Fail every pending send whose ack deadline has passed."""
        now = now or datetime.now(UTC)
        expired = [temp_id for temp_id, pending in self._pending.items() if pending.deadline <= now]
        for temp_id in expired:
            self.mark_send_failed(temp_id)
        return expired

    def discard_failed(self, temp_id: str) -> Message:
        """Remove a failed entry (before a retry) and return it.

        Raises:
            NotFoundError: If there is no failed entry for temp_id.
        """
        key = self._temp_keys.get(temp_id)
        entry = self._conversations[key].by_id.get(temp_id) if key is not None else None
        if entry is None or not entry.message.send_failed:
            raise NotFoundError(f"No failed message for temp id: {temp_id}")

        conversation = self._conversations[key]
        conversation.entries.remove(entry)
        del conversation.by_id[temp_id]
        self._temp_keys.pop(temp_id, None)
        return entry.message

    # =========================================================================
    # Read state
    # =========================================================================

    def mark_read(self, key: ConversationKey, up_to_message_id: str | None = None) -> list[str]:
        """Mark peer messages up to and including up_to_message_id as READ.

        None marks the whole conversation. Returns the server ids that
        changed state; empty when nothing changed.

        Raises:
            NotFoundError: If up_to_message_id is not in the conversation.
        """
        conversation = self._conversations.get(key)
        if conversation is None:
            return []

        entries = conversation.entries
        if up_to_message_id is not None:
            target = conversation.by_id.get(up_to_message_id)
            if target is None:
                raise NotFoundError(f"Message not found: {up_to_message_id}")
            entries = entries[: entries.index(target) + 1]

        newly_read = []
        for entry in entries:
            message = entry.message
            if message.sender_id == self.self_id or message.read_state == ReadState.READ:
                continue
            entry.message = message.with_read_state(ReadState.READ)
            newly_read.append(message.id)
        return newly_read

    def unread_count(self, key: ConversationKey) -> int:
        conversation = self._conversations.get(key)
        if conversation is None:
            return 0
        return sum(
            1
            for entry in conversation.entries
            if entry.message.sender_id != self.self_id and entry.message.read_state != ReadState.READ
        )

    def total_unread(self) -> int:
        return sum(self.unread_count(key) for key in self._conversations)

    def get_message(self, key: ConversationKey, message_id: str) -> Message | None:
        """Current stored copy of a message, or None when it is not held."""
        conversation = self._conversations.get(key)
        entry = conversation.by_id.get(message_id) if conversation is not None else None
        return entry.message if entry is not None else None

    def is_unread(self, key: ConversationKey, message_id: str) -> bool:
        message = self.get_message(key, message_id)
        return message is not None and message.read_state != ReadState.READ

    # =========================================================================
    # Lock state
    # =========================================================================

    @property
    def account_lock(self) -> LockState:
        return self._account_lock

    def lock_state(self, key: ConversationKey) -> LockState:
        conversation = self._conversations.get(key)
        return conversation.lock_state if conversation is not None else self._account_lock

    def set_lock(
        self,
        target,
        state: LockState,
        *,
        lock_configured: bool,
        ownership_verified: bool,
    ) -> list[ConversationKey]:
        """Set the lock state of one conversation or of the whole account.

        Bucket membership is snapshotted now; conversations created later
        start in the account's current state.

        Args:
            target: A ConversationKey or ACCOUNT_WIDE.
            state: Target lock state.
            lock_configured: Whether the account has a lock passphrase.
            ownership_verified: Whether the passphrase was verified for an unlock.

        Returns:
            Keys whose lock state changed.

        Raises:
            LockNotConfiguredError: If locking without a configured passphrase.
            LockStateError: If unlocking without verified ownership.
        """
        if state == LockState.LOCKED and not lock_configured:
            raise LockNotConfiguredError()
        if state == LockState.NORMAL and not ownership_verified:
            raise LockStateError("Unlocking requires a verified passphrase")

        if target is ACCOUNT_WIDE:
            self._account_lock = state
            conversations = list(self._conversations.values())
        elif isinstance(target, ConversationKey):
            conversations = [self._get_or_create(target)]
        else:
            raise TypeError(f"Unsupported lock target: {target!r}")

        changed = []
        for conversation in conversations:
            if conversation.lock_state != state:
                conversation.lock_state = state
                changed.append(conversation.key)
        return changed

    # =========================================================================
    # Snapshots
    # =========================================================================

    def _snapshot(self, conversation: _Conversation) -> ConversationSnapshot:
        return ConversationSnapshot(
            key=conversation.key,
            peer_id=conversation.peer_id,
            messages=tuple(entry.message for entry in conversation.entries),
            unread_count=self.unread_count(conversation.key),
            lock_state=conversation.lock_state,
        )

    def snapshot(self, key: ConversationKey) -> ConversationSnapshot:
        """Read-only view of one conversation.

        Raises:
            NotFoundError: If the conversation does not exist.
        """
        return self._snapshot(self._get(key))

    def conversations(self) -> list[ConversationSnapshot]:
        """All conversations, most recent activity first."""
        snapshots = [self._snapshot(c) for c in self._conversations.values()]
        epoch = datetime.min.replace(tzinfo=UTC)
        return sorted(
            snapshots,
            key=lambda s: s.last_message.created_at if s.last_message else epoch,
            reverse=True,
        )

    def locked_bucket(self) -> list[ConversationSnapshot]:
        return [s for s in self.conversations() if s.lock_state == LockState.LOCKED]

    def normal_bucket(self) -> list[ConversationSnapshot]:
        return [s for s in self.conversations() if s.lock_state == LockState.NORMAL]
