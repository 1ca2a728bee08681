"""Realtime event source.

Provides:
- RealtimeTransportBase and its Supabase (aiohttp websocket) and fake implementations
- EventSourceAdapter, which turns transport items into typed domain events
"""

from flydex.realtime.adapter import EventSourceAdapter
from flydex.realtime.transport import (
    ChannelSpec,
    ConnectionSignal,
    FakeRealtimeTransport,
    RealtimeRecord,
    RealtimeTransportBase,
    SupabaseRealtimeTransport,
)

__all__ = [
    "EventSourceAdapter",
    "ChannelSpec",
    "ConnectionSignal",
    "FakeRealtimeTransport",
    "RealtimeRecord",
    "RealtimeTransportBase",
    "SupabaseRealtimeTransport",
]
