"""Supabase row and realtime payload schemas.

Rows arrive either from PostgREST responses or inside realtime
`postgres_changes` payloads. Both shapes are validated here and converted to
chat core types; anything that does not validate is reported as
MalformedEventError so callers can log and drop it.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from flydex.errors import MalformedEventError
from flydex.services.types import (
    ConversationKey,
    DomainEvent,
    FriendRequestCreated,
    Message,
    MessageCreated,
    Peer,
    ReadState,
)

# Valid friendship statuses - must match DB constraint
FRIEND_STATUSES = Literal["pending", "accepted", "rejected"]

# Realtime change types we subscribe to
CHANGE_TYPES = Literal["INSERT", "UPDATE", "DELETE"]


# =============================================================================
# Row Schemas
# =============================================================================


class MessageRow(BaseModel):
    """Row of the `messages` table."""

    id: str
    user_id: str
    recipient_id: str
    content: str
    created_at: datetime
    is_private: bool = True
    is_read: bool = False
    is_locked: bool = False
    seq: int | None = None

    model_config = ConfigDict(extra="ignore")

    def to_message(self) -> Message:
        """Convert to a chat core Message.

        A row seen by this client has at least been delivered.
        """
        return Message(
            id=self.id,
            conversation_key=ConversationKey.of(self.user_id, self.recipient_id),
            sender_id=self.user_id,
            recipient_id=self.recipient_id,
            body=self.content,
            created_at=self.created_at,
            read_state=ReadState.READ if self.is_read else ReadState.DELIVERED,
            locked=self.is_locked,
            seq=self.seq,
        )


class FriendRow(BaseModel):
    """Row of the `friends` table."""

    id: str
    user_id: str
    friend_id: str
    status: FRIEND_STATUSES = "pending"
    created_at: datetime

    model_config = ConfigDict(extra="ignore")

    def to_event(self, *, replayed: bool = False) -> FriendRequestCreated:
        return FriendRequestCreated(
            friendship_id=self.id,
            requester_id=self.user_id,
            created_at=self.created_at,
            replayed=replayed,
        )


class ProfileRow(BaseModel):
    """Subset of the `profiles` table the chat core reads."""

    id: str
    username: str | None = None
    custom_chat_name: str | None = None
    avatar_url: str | None = None
    chat_locked: bool = False
    chat_locker_enabled: bool = False

    model_config = ConfigDict(extra="ignore")

    def to_peer(self) -> Peer:
        return Peer(
            id=self.id,
            display_name=self.custom_chat_name or self.username or "",
            avatar_ref=self.avatar_url,
        )


class PostgresChangePayload(BaseModel):
    """Body of a realtime `postgres_changes` broadcast."""

    schema_name: str = Field(default="public", alias="schema")
    table: str
    event_type: CHANGE_TYPES = Field(alias="eventType")
    commit_timestamp: datetime | None = None
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Parsing
# =============================================================================


def parse_message_row(raw: Any) -> MessageRow:
    """Validate a raw messages row.

    Raises:
        MalformedEventError: If the row does not match the contract.
    """
    try:
        return MessageRow.model_validate(raw)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid message row: {e.error_count()} error(s)") from e


def parse_friend_row(raw: Any) -> FriendRow:
    """Validate a raw friends row.

    Raises:
        MalformedEventError: If the row does not match the contract.
    """
    try:
        return FriendRow.model_validate(raw)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid friend row: {e.error_count()} error(s)") from e


def parse_profile_row(raw: Any) -> ProfileRow:
    """Validate a raw profiles row.

    Raises:
        MalformedEventError: If the row does not match the contract.
    """
    try:
        return ProfileRow.model_validate(raw)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid profile row: {e.error_count()} error(s)") from e


def parse_change(raw: Any) -> DomainEvent | None:
    """Convert a realtime postgres_changes payload into a domain event.

    Returns None for well-formed changes the core does not act on
    (non-INSERT changes, public messages, friendships that are not pending).

    Raises:
        MalformedEventError: If the payload or its row is malformed, or the
            table is unknown.
    """
    try:
        change = PostgresChangePayload.model_validate(raw)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid change payload: {e.error_count()} error(s)") from e

    if change.event_type != "INSERT":
        return None

    if change.table == "messages":
        row = parse_message_row(change.new)
        if not row.is_private:
            return None
        return MessageCreated(message=row.to_message())

    if change.table == "friends":
        friend = parse_friend_row(change.new)
        if friend.status != "pending":
            return None
        return friend.to_event()

    raise MalformedEventError(f"Unexpected table in change payload: {change.table}")
