"""Tests for the Supabase chat backend client.

Uses respx to mock PostgREST / GoTrue; no live Supabase calls.

Covers:
- Request shape for every operation (path, filters, Prefer header, body)
- Row conversion and dropping of malformed rows
- Error classification of statuses and httpx exceptions
"""

import json

import httpx
import pytest
import respx

from flydex.backend.client import SupabaseChatBackend
from flydex.errors import AuthError, NotFoundError, SendRejected, TransportError
from flydex.services.types import ReadState
from tests.helpers import PEER_ID, SELF_ID, friend_row, message_row

SUPABASE_URL = "https://test.supabase.co"
REST = f"{SUPABASE_URL}/rest/v1"


@pytest.fixture
def httpx_client():
    """Create an httpx AsyncClient for testing."""
    return httpx.AsyncClient()


@pytest.fixture
def backend(httpx_client) -> SupabaseChatBackend:
    return SupabaseChatBackend(
        httpx_client,
        supabase_url=SUPABASE_URL + "/",
        anon_key="anon-test",
        access_token="access-test",
    )


def _mock_user():
    return respx.get(f"{SUPABASE_URL}/auth/v1/user").respond(200, json={"id": SELF_ID})


class TestCurrentUser:
    @pytest.mark.asyncio
    @respx.mock
    async def test_user_id_cached(self, backend):
        route = _mock_user()
        assert await backend.current_user_id() == SELF_ID
        assert await backend.current_user_id() == SELF_ID
        assert route.call_count == 1

        request = route.calls.last.request
        assert request.headers["apikey"] == "anon-test"
        assert request.headers["Authorization"] == "Bearer access-test"

    @pytest.mark.asyncio
    @respx.mock
    async def test_expired_session(self, backend):
        respx.get(f"{SUPABASE_URL}/auth/v1/user").respond(401, json={"msg": "JWT expired"})
        with pytest.raises(AuthError, match="JWT expired"):
            await backend.current_user_id()

    @pytest.mark.asyncio
    @respx.mock
    async def test_user_without_id(self, backend):
        respx.get(f"{SUPABASE_URL}/auth/v1/user").respond(200, json={})
        with pytest.raises(AuthError):
            await backend.current_user_id()


class TestHistory:
    @pytest.mark.asyncio
    @respx.mock
    async def test_history_filters_conversation(self, backend):
        _mock_user()
        route = respx.get(f"{REST}/messages").respond(
            200, json=[message_row(1, message_id="m-1"), message_row(2, message_id="m-2")]
        )

        messages = await backend.fetch_conversation_history(PEER_ID, since_seq=7)

        assert [m.id for m in messages] == ["m-1", "m-2"]
        params = route.calls.last.request.url.params
        assert params["is_private"] == "eq.true"
        assert params["order"] == "created_at.asc"
        assert params["seq"] == "gt.7"
        assert f"user_id.eq.{SELF_ID},recipient_id.eq.{PEER_ID}" in params["or"]
        assert f"user_id.eq.{PEER_ID},recipient_id.eq.{SELF_ID}" in params["or"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_rows_dropped(self, backend):
        _mock_user()
        respx.get(f"{REST}/messages").respond(
            200, json=[{"id": "broken"}, message_row(2, message_id="m-2")]
        )
        messages = await backend.fetch_conversation_history(PEER_ID)
        assert [m.id for m in messages] == ["m-2"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_is_transport(self, backend):
        _mock_user()
        respx.get(f"{REST}/messages").respond(503)
        with pytest.raises(TransportError):
            await backend.fetch_conversation_history(PEER_ID)

    @pytest.mark.asyncio
    @respx.mock
    async def test_timeout_is_transport(self, backend):
        _mock_user()
        respx.get(f"{REST}/messages").mock(side_effect=httpx.ConnectTimeout("slow"))
        with pytest.raises(TransportError):
            await backend.fetch_conversation_history(PEER_ID)


class TestSend:
    @pytest.mark.asyncio
    @respx.mock
    async def test_send_returns_server_row(self, backend):
        _mock_user()
        route = respx.post(f"{REST}/messages").respond(
            201,
            json=[message_row(5, sender_id=SELF_ID, recipient_id=PEER_ID, message_id="m-srv", body="yo")],
        )

        message = await backend.send_message(PEER_ID, "yo")

        assert message.id == "m-srv"
        assert message.sender_id == SELF_ID
        request = route.calls.last.request
        assert request.headers["Prefer"] == "return=representation"
        assert json.loads(request.content) == {
            "content": "yo",
            "user_id": SELF_ID,
            "recipient_id": PEER_ID,
            "is_private": True,
            "is_locked": False,
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_rls_rejection(self, backend):
        _mock_user()
        respx.post(f"{REST}/messages").respond(
            403, json={"message": "new row violates row-level security policy"}
        )
        with pytest.raises(SendRejected, match="row-level security"):
            await backend.send_message(PEER_ID, "yo")


class TestReadState:
    @pytest.mark.asyncio
    @respx.mock
    async def test_batched_patch(self, backend):
        route = respx.patch(f"{REST}/messages").respond(204)

        await backend.update_read_state(["m-1", "m-2"])

        assert route.call_count == 1
        request = route.calls.last.request
        assert request.url.params["id"] == "in.(m-1,m-2)"
        assert json.loads(request.content) == {"is_read": True}

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_batch_skipped(self, backend):
        route = respx.patch(f"{REST}/messages").respond(204)
        await backend.update_read_state([])
        assert route.call_count == 0


class TestChatLock:
    @pytest.mark.asyncio
    @respx.mock
    async def test_unlock_rpc(self, backend):
        route = respx.post(f"{REST}/rpc/set_chat_lock").respond(204)
        await backend.set_account_lock(False, "pw")
        assert json.loads(route.calls.last.request.content) == {"p_locked": False, "p_passphrase": "pw"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_bad_passphrase(self, backend):
        respx.post(f"{REST}/rpc/set_chat_lock").respond(400, json={"message": "invalid passphrase"})
        with pytest.raises(AuthError):
            await backend.set_account_lock(False, "wrong")

    @pytest.mark.asyncio
    @respx.mock
    async def test_lock_settings(self, backend):
        _mock_user()
        respx.get(f"{REST}/profiles").respond(
            200, json=[{"id": SELF_ID, "chat_locked": True, "chat_locker_enabled": True}]
        )
        settings = await backend.get_account_lock_settings()
        assert settings.locked is True
        assert settings.locker_enabled is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_configure_locker(self, backend):
        route = respx.post(f"{REST}/rpc/configure_chat_locker").respond(204)
        await backend.configure_chat_locker(None)
        assert json.loads(route.calls.last.request.content) == {"p_passphrase": None}


class TestBacklog:
    @pytest.mark.asyncio
    @respx.mock
    async def test_pending_friend_requests_are_replayed(self, backend):
        _mock_user()
        route = respx.get(f"{REST}/friends").respond(200, json=[friend_row(1, friendship_id="f-1")])

        requests = await backend.fetch_pending_friend_requests()

        assert [r.friendship_id for r in requests] == ["f-1"]
        assert requests[0].replayed is True
        params = route.calls.last.request.url.params
        assert params["friend_id"] == f"eq.{SELF_ID}"
        assert params["status"] == "eq.pending"

    @pytest.mark.asyncio
    @respx.mock
    async def test_unread_messages_newest_first(self, backend):
        _mock_user()
        route = respx.get(f"{REST}/messages").respond(200, json=[message_row(9), message_row(3)])

        unread = await backend.fetch_unread_messages()

        assert all(m.read_state == ReadState.DELIVERED for m in unread)
        params = route.calls.last.request.url.params
        assert params["order"] == "created_at.desc"
        assert params["is_read"] == "eq.false"

    @pytest.mark.asyncio
    @respx.mock
    async def test_respond_friend_request(self, backend):
        route = respx.patch(f"{REST}/friends").respond(204)
        await backend.respond_friend_request("f-1", accept=False)
        request = route.calls.last.request
        assert request.url.params["id"] == "eq.f-1"
        assert json.loads(request.content) == {"status": "rejected"}


class TestPeers:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_peer(self, backend):
        respx.get(f"{REST}/profiles").respond(200, json=[{"id": PEER_ID, "username": "pat"}])
        peer = await backend.fetch_peer(PEER_ID)
        assert peer.id == PEER_ID
        assert peer.display_name == "pat"

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_peer(self, backend):
        respx.get(f"{REST}/profiles").respond(200, json=[])
        with pytest.raises(NotFoundError):
            await backend.fetch_peer("ghost")
