"""Test helpers for building chat core values and waiting on the event pump.

Provides:
- Fixed user ids and a known chat locker passphrase
- Deterministic timestamps (at(seconds))
- Message / row builders
- wait_until() for assertions on state produced by background tasks
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from flydex.services.types import ConversationKey, Message, ReadState

SELF_ID = "user-self"
PEER_ID = "user-peer"
OTHER_PEER_ID = "user-other"
PASSPHRASE = "correct horse battery staple"

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def at(seconds: float) -> datetime:
    """Timestamp `seconds` after a fixed base time."""
    return BASE_TIME + timedelta(seconds=seconds)


def make_message(
    created_at: float | datetime,
    *,
    sender_id: str = PEER_ID,
    recipient_id: str = SELF_ID,
    body: str = "hello",
    message_id: str | None = None,
    read_state: ReadState = ReadState.DELIVERED,
    seq: int | None = None,
    locked: bool = False,
) -> Message:
    """Build a server-side message between sender_id and recipient_id."""
    if not isinstance(created_at, datetime):
        created_at = at(created_at)
    return Message(
        id=message_id or str(uuid.uuid4()),
        conversation_key=ConversationKey.of(sender_id, recipient_id),
        sender_id=sender_id,
        recipient_id=recipient_id,
        body=body,
        created_at=created_at,
        read_state=read_state,
        locked=locked,
        seq=seq,
    )


def message_row(
    created_at: float,
    *,
    sender_id: str = PEER_ID,
    recipient_id: str = SELF_ID,
    body: str = "hello",
    message_id: str | None = None,
    **extra,
) -> dict:
    """Raw `messages` row as it appears in realtime payloads and PostgREST responses."""
    row = {
        "id": message_id or str(uuid.uuid4()),
        "user_id": sender_id,
        "recipient_id": recipient_id,
        "content": body,
        "created_at": at(created_at).isoformat(),
        "is_private": True,
        "is_read": False,
        "is_locked": False,
    }
    row.update(extra)
    return row


def friend_row(created_at: float, *, requester_id: str = PEER_ID, friendship_id: str | None = None, **extra) -> dict:
    """Raw `friends` row for a request addressed to SELF_ID."""
    row = {
        "id": friendship_id or str(uuid.uuid4()),
        "user_id": requester_id,
        "friend_id": SELF_ID,
        "status": "pending",
        "created_at": at(created_at).isoformat(),
    }
    row.update(extra)
    return row


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() holds.

    Raises:
        AssertionError: If the predicate is still false after timeout seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)
