"""Chat core services.

Domain types are re-exported here. Stateful components live in their own
modules and are wired together by flydex.services.chat_core.ChatCore:

- conversation_store: conversations, ordering, optimistic send reconciliation
- notifications: deduplicated, lock-gated notification list
- chat_lock: account chat lock state machine
- read_receipts: open-conversation read marking and batched receipts
- peers: session cache of peer profiles
"""

from flydex.services.types import (
    ACCOUNT_WIDE,
    AccountLockSettings,
    ConnectionState,
    ConnectionStateChanged,
    ConversationKey,
    DomainEvent,
    FriendRequestCreated,
    LockState,
    Message,
    MessageCreated,
    NotificationItem,
    NotificationKind,
    Peer,
    ReadState,
)

__all__ = [
    "ACCOUNT_WIDE",
    "AccountLockSettings",
    "ConnectionState",
    "ConnectionStateChanged",
    "ConversationKey",
    "DomainEvent",
    "FriendRequestCreated",
    "LockState",
    "Message",
    "MessageCreated",
    "NotificationItem",
    "NotificationKind",
    "Peer",
    "ReadState",
]
