"""Pydantic schemas for Supabase rows and realtime payloads.

All schemas are re-exported here for convenient imports.
"""

from flydex.schemas.realtime import (
    FriendRow,
    MessageRow,
    PostgresChangePayload,
    ProfileRow,
    parse_change,
    parse_friend_row,
    parse_message_row,
    parse_profile_row,
)

__all__ = [
    "FriendRow",
    "MessageRow",
    "PostgresChangePayload",
    "ProfileRow",
    "parse_change",
    "parse_friend_row",
    "parse_message_row",
    "parse_profile_row",
]
