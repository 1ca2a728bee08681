"""Shared type definitions for the chat core.

- Peer: counterpart user, immutable once observed
- ConversationKey: unordered (self, peer) pair identifying a conversation
- Message: a private message; only read_state changes after creation
- NotificationItem: surfaced friend request or unseen message
- Domain events: FriendRequestCreated | MessageCreated | ConnectionStateChanged

Ordering invariants:
- ReadState only moves forward (SENT < DELIVERED < READ)
- Message.locked is a send-time snapshot and never changes
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Union


class ReadState(str, Enum):
    """Delivery / read progress of a message."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _READ_STATE_RANK[self]


_READ_STATE_RANK = {ReadState.SENT: 0, ReadState.DELIVERED: 1, ReadState.READ: 2}


class LockState(str, Enum):
    """Chat lock state (account-wide, snapshotted per conversation)."""

    NORMAL = "normal"
    LOCKED = "locked"


class NotificationKind(str, Enum):
    """Tag of a notification item."""

    FRIEND_REQUEST = "friend_request"
    MESSAGE = "message"


class ConnectionState(str, Enum):
    """Realtime connection lifecycle."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class _AccountWide:
    """Sentinel target for account-wide lock changes."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ACCOUNT_WIDE"


ACCOUNT_WIDE = _AccountWide()


@dataclass(frozen=True)
class Peer:
    """The other party in a one-to-one conversation.

    Attributes:
        id: Opaque stable user identifier
        display_name: Custom chat name or username (may be empty until fetched)
        avatar_ref: Avatar URL or storage reference
    """

    id: str
    display_name: str = ""
    avatar_ref: str | None = None

    @property
    def is_placeholder(self) -> bool:
        return not self.display_name


@dataclass(frozen=True)
class ConversationKey:
    """Unordered pair of user ids.

    Always build through ConversationKey.of() so that
    of(a, b) == of(b, a).
    """

    first: str
    second: str

    @classmethod
    def of(cls, a: str, b: str) -> "ConversationKey":
        low, high = sorted((a, b))
        return cls(low, high)

    def peer_of(self, self_id: str) -> str:
        """Return the member of the pair that is not self_id."""
        if self_id == self.first:
            return self.second
        if self_id == self.second:
            return self.first
        raise ValueError(f"{self_id} is not a member of {self}")

    def __contains__(self, user_id: object) -> bool:
        return user_id in (self.first, self.second)

    def __str__(self) -> str:
        return f"{self.first}:{self.second}"


@dataclass(frozen=True)
class Message:
    """A private message.

    Optimistic local sends carry id == temp_id until the server id is
    reconciled; temp_id is kept afterwards as a stable UI key.

    Attributes:
        id: Server-assigned id (or the temp id while pending)
        conversation_key: Conversation the message belongs to
        sender_id: Author of the message
        recipient_id: Receiver of the message
        body: Text content
        created_at: Source-side creation time
        read_state: Delivery / read progress
        locked: Sender's lock state at send time
        seq: Server sequence, when the backend provides one
        temp_id: Optimistic id assigned locally (None for remote messages)
        send_failed: True when the send was rejected or timed out
    """

    id: str
    conversation_key: ConversationKey
    sender_id: str
    recipient_id: str
    body: str
    created_at: datetime
    read_state: ReadState = ReadState.SENT
    locked: bool = False
    seq: int | None = None
    temp_id: str | None = None
    send_failed: bool = False

    @property
    def is_pending(self) -> bool:
        """Optimistic entry still waiting for its server echo."""
        return self.temp_id is not None and self.id == self.temp_id and not self.send_failed

    def with_read_state(self, state: ReadState) -> "Message":
        """Return a copy advanced to state; never moves read_state backwards."""
        if state.rank <= self.read_state.rank:
            return self
        return replace(self, read_state=state)


@dataclass(frozen=True)
class NotificationItem:
    """A surfaced, deduplicated friend request or unseen message.

    Attributes:
        id: Notification id (stable per underlying entity)
        kind: FRIEND_REQUEST or MESSAGE
        entity_id: Friendship id or message id
        source_peer: Who triggered the notification
        payload_summary: Message preview (empty for friend requests)
        created_at: Creation time of the underlying entity
        consumed: True once the user acted on it
    """

    id: str
    kind: NotificationKind
    entity_id: str
    source_peer: Peer
    payload_summary: str
    created_at: datetime
    consumed: bool = False

    @property
    def key(self) -> tuple[NotificationKind, str]:
        return (self.kind, self.entity_id)


@dataclass(frozen=True)
class AccountLockSettings:
    """Account-level chat locker configuration.

    Attributes:
        locker_enabled: Whether a chat locker passphrase has been configured
        locked: Whether the account chat is currently locked
    """

    locker_enabled: bool = False
    locked: bool = False


# =============================================================================
# Domain events
# =============================================================================


@dataclass(frozen=True)
class FriendRequestCreated:
    """A pending friend request addressed to self."""

    friendship_id: str
    requester_id: str
    created_at: datetime
    replayed: bool = False


@dataclass(frozen=True)
class MessageCreated:
    """A private message arrived (live or from a resync pull)."""

    message: Message
    replayed: bool = False


@dataclass(frozen=True)
class ConnectionStateChanged:
    """The realtime connection moved between lifecycle states.

    resumed is set on the CONNECTED transition that follows a disconnect.
    A CONNECTED event carrying an error reports a resync that kept failing.
    """

    state: ConnectionState
    previous: ConnectionState | None = None
    error: Exception | None = None
    resumed: bool = False


DomainEvent = Union[FriendRequestCreated, MessageCreated, ConnectionStateChanged]
