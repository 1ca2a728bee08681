"""Pytest configuration and fixtures for chat core tests.

Test isolation strategy:
- Every test gets fresh in-memory fakes (FakeChatBackend, FakeRealtimeTransport)
- Settings are built explicitly and the settings cache is cleared around each test
- FLYDEX_ENV=test so safe_kv raises on forbidden log keys
"""

import os

os.environ["FLYDEX_ENV"] = "test"

from collections.abc import Generator

import pytest

from flydex.backend.client import FakeChatBackend
from flydex.config import Settings, clear_settings_cache
from flydex.realtime.transport import FakeRealtimeTransport
from flydex.services.conversation_store import ConversationStore
from tests.helpers import PASSPHRASE, PEER_ID, SELF_ID


@pytest.fixture(autouse=True)
def clear_settings() -> Generator[None, None, None]:
    """Never leak cached settings between tests."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests (short backoffs and timeouts)."""
    return Settings(
        FLYDEX_ENV="test",
        SEND_ACK_TIMEOUT_S=5,
        READ_RECEIPT_DEBOUNCE_MS=10,
        RESYNC_MAX_ATTEMPTS=3,
        RESYNC_BACKOFF_S=0.001,
    )


@pytest.fixture
def backend() -> FakeChatBackend:
    """Fake backend for SELF_ID with a configured chat locker and one known peer."""
    fake = FakeChatBackend(user_id=SELF_ID, locker_passphrase=PASSPHRASE)
    fake.add_peer(PEER_ID, display_name="Pat")
    return fake


@pytest.fixture
def transport() -> FakeRealtimeTransport:
    return FakeRealtimeTransport()


@pytest.fixture
def store() -> ConversationStore:
    return ConversationStore(SELF_ID, send_ack_timeout_s=5)
