"""Supabase chat backend client abstraction.

Provides a clean interface for the persistence / auth operations the chat
core depends on:
- Current user lookup
- Conversation history and unread backlog fetches
- Message send (returns the authoritative server row)
- Batched read-state updates
- Account chat lock and chat locker configuration
- Friend request backlog and responses
- Peer profile lookup

The production client talks to PostgREST and GoTrue through a shared
httpx.AsyncClient. All HTTP failures are normalised by
classify_backend_error() before they leave this module.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from itertools import count

import httpx

from flydex.backend.errors import BackendOperation, classify_backend_error
from flydex.errors import (
    AuthError,
    ChatError,
    LockNotConfiguredError,
    MalformedEventError,
    NotFoundError,
)
from flydex.logging import get_logger
from flydex.schemas.realtime import (
    FriendRow,
    MessageRow,
    parse_friend_row,
    parse_message_row,
    parse_profile_row,
)
from flydex.services.types import (
    AccountLockSettings,
    ConversationKey,
    FriendRequestCreated,
    Message,
    Peer,
    ReadState,
)

logger = get_logger(__name__)


class ChatBackendBase(ABC):
    """Abstract base class for chat backend implementations."""

    @abstractmethod
    async def current_user_id(self) -> str:
        """Return the signed-in user's id.

        Raises:
            AuthError: If there is no valid session.
        """
        ...

    @abstractmethod
    async def fetch_conversation_history(
        self, peer_id: str, since_seq: int | None = None
    ) -> list[Message]:
        """Fetch private messages exchanged with peer_id, oldest first.

        Args:
            peer_id: The conversation counterpart.
            since_seq: Only return messages with a greater server seq.

        Raises:
            TransportError: If the backend cannot be reached.
        """
        ...

    @abstractmethod
    async def send_message(self, peer_id: str, body: str, *, locked: bool = False) -> Message:
        """Persist an outbound message and return the authoritative row.

        Raises:
            SendRejected: If the recipient is unreachable or the sender is
                locked upstream.
            TransportError: If the backend cannot be reached.
        """
        ...

    @abstractmethod
    async def update_read_state(self, message_ids: list[str]) -> None:
        """Mark all given messages read in one batch.

        Raises:
            TransportError: If the backend cannot be reached.
        """
        ...

    @abstractmethod
    async def set_account_lock(self, locked: bool, passphrase: str | None = None) -> None:
        """Lock or unlock the account chat.

        Unlocking requires the chat locker passphrase.

        Raises:
            AuthError: On bad passphrase.
        """
        ...

    @abstractmethod
    async def get_account_lock_settings(self) -> AccountLockSettings:
        """Read the account chat locker configuration."""
        ...

    @abstractmethod
    async def configure_chat_locker(self, passphrase: str | None) -> None:
        """Enable the chat locker with passphrase, or disable it with None."""
        ...

    @abstractmethod
    async def fetch_pending_friend_requests(self) -> list[FriendRequestCreated]:
        """Fetch friend requests addressed to self that are still pending."""
        ...

    @abstractmethod
    async def fetch_unread_messages(self) -> list[Message]:
        """Fetch private messages addressed to self that are still unread."""
        ...

    @abstractmethod
    async def respond_friend_request(self, friendship_id: str, accept: bool) -> None:
        """Accept or decline a pending friend request."""
        ...

    @abstractmethod
    async def fetch_peer(self, peer_id: str) -> Peer:
        """Fetch a peer's public profile.

        Raises:
            NotFoundError: If no profile exists.
        """
        ...


class SupabaseChatBackend(ChatBackendBase):
    """Production Supabase backend.

    Uses httpx for HTTP operations against PostgREST (/rest/v1) and
    GoTrue (/auth/v1). Lock changes go through security-definer RPCs so the
    passphrase is verified server side and never read back by the client.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        supabase_url: str,
        anon_key: str,
        access_token: str,
        timeout_s: float = 10.0,
    ):
        """Initialize the backend client.

        Args:
            client: Shared httpx.AsyncClient for connection pooling.
            supabase_url: Supabase project URL (e.g., https://xxx.supabase.co).
            anon_key: Supabase anon key.
            access_token: The signed-in user's access token.
            timeout_s: Per-request timeout in seconds.
        """
        self._client = client
        self._base_url = supabase_url.rstrip("/")
        self._rest_url = f"{self._base_url}/rest/v1"
        self._auth_url = f"{self._base_url}/auth/v1"
        self._timeout_s = timeout_s
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "apikey": anon_key,
        }
        self._user_id: str | None = None

    async def _request(
        self,
        operation: BackendOperation,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: dict | list | None = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=self._timeout_s,
            )
        except httpx.HTTPError as e:
            raise classify_backend_error(operation, None, None, e) from e

        if response.status_code >= 400:
            raise classify_backend_error(
                operation, response.status_code, self._safe_parse_json(response), None
            )
        return response

    def _safe_parse_json(self, response: httpx.Response) -> dict | None:
        """Parse an error body without failing on non-JSON responses."""
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def _rows(self, response: httpx.Response) -> list:
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedEventError("Backend returned non-JSON body") from e
        if not isinstance(data, list):
            raise MalformedEventError("Backend returned non-list body")
        return data

    def _message_rows(self, rows: list) -> list[Message]:
        """Convert rows, dropping (and logging) any that are malformed."""
        messages = []
        for raw in rows:
            try:
                messages.append(parse_message_row(raw).to_message())
            except MalformedEventError as e:
                logger.warning("malformed_message_row_dropped", error=e.message)
        return messages

    async def current_user_id(self) -> str:
        if self._user_id is not None:
            return self._user_id
        response = await self._request(BackendOperation.FETCH, "GET", f"{self._auth_url}/user")
        data = self._safe_parse_json(response) or {}
        user_id = data.get("id")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError("Session has no user")
        self._user_id = user_id
        return user_id

    async def fetch_conversation_history(
        self, peer_id: str, since_seq: int | None = None
    ) -> list[Message]:
        self_id = await self.current_user_id()
        params = {
            "select": "*",
            "is_private": "eq.true",
            "or": (
                f"(and(user_id.eq.{self_id},recipient_id.eq.{peer_id}),"
                f"and(user_id.eq.{peer_id},recipient_id.eq.{self_id}))"
            ),
            "order": "created_at.asc",
        }
        if since_seq is not None:
            params["seq"] = f"gt.{since_seq}"
        response = await self._request(
            BackendOperation.FETCH, "GET", f"{self._rest_url}/messages", params=params
        )
        return self._message_rows(self._rows(response))

    async def send_message(self, peer_id: str, body: str, *, locked: bool = False) -> Message:
        self_id = await self.current_user_id()
        payload = {
            "content": body,
            "user_id": self_id,
            "recipient_id": peer_id,
            "is_private": True,
            "is_locked": locked,
        }
        response = await self._request(
            BackendOperation.SEND,
            "POST",
            f"{self._rest_url}/messages",
            json=payload,
            prefer="return=representation",
        )
        rows = self._rows(response)
        if not rows:
            raise MalformedEventError("Send returned no row")
        return parse_message_row(rows[0]).to_message()

    async def update_read_state(self, message_ids: list[str]) -> None:
        if not message_ids:
            return
        await self._request(
            BackendOperation.READ_STATE,
            "PATCH",
            f"{self._rest_url}/messages",
            params={"id": f"in.({','.join(message_ids)})"},
            json={"is_read": True},
            prefer="return=minimal",
        )

    async def set_account_lock(self, locked: bool, passphrase: str | None = None) -> None:
        await self._request(
            BackendOperation.LOCK,
            "POST",
            f"{self._rest_url}/rpc/set_chat_lock",
            json={"p_locked": locked, "p_passphrase": passphrase},
        )

    async def get_account_lock_settings(self) -> AccountLockSettings:
        self_id = await self.current_user_id()
        response = await self._request(
            BackendOperation.FETCH,
            "GET",
            f"{self._rest_url}/profiles",
            params={"id": f"eq.{self_id}", "select": "id,chat_locked,chat_locker_enabled"},
        )
        rows = self._rows(response)
        if not rows:
            raise NotFoundError("Profile not found")
        profile = parse_profile_row(rows[0])
        return AccountLockSettings(
            locker_enabled=profile.chat_locker_enabled,
            locked=profile.chat_locked,
        )

    async def configure_chat_locker(self, passphrase: str | None) -> None:
        await self._request(
            BackendOperation.LOCK,
            "POST",
            f"{self._rest_url}/rpc/configure_chat_locker",
            json={"p_passphrase": passphrase},
        )

    async def fetch_pending_friend_requests(self) -> list[FriendRequestCreated]:
        self_id = await self.current_user_id()
        response = await self._request(
            BackendOperation.FETCH,
            "GET",
            f"{self._rest_url}/friends",
            params={"select": "*", "friend_id": f"eq.{self_id}", "status": "eq.pending"},
        )
        requests = []
        for raw in self._rows(response):
            try:
                requests.append(parse_friend_row(raw).to_event(replayed=True))
            except MalformedEventError as e:
                logger.warning("malformed_friend_row_dropped", error=e.message)
        return requests

    async def fetch_unread_messages(self) -> list[Message]:
        self_id = await self.current_user_id()
        response = await self._request(
            BackendOperation.FETCH,
            "GET",
            f"{self._rest_url}/messages",
            params={
                "select": "*",
                "recipient_id": f"eq.{self_id}",
                "is_read": "eq.false",
                "is_private": "eq.true",
                "order": "created_at.desc",
            },
        )
        return self._message_rows(self._rows(response))

    async def respond_friend_request(self, friendship_id: str, accept: bool) -> None:
        await self._request(
            BackendOperation.FRIENDSHIP,
            "PATCH",
            f"{self._rest_url}/friends",
            params={"id": f"eq.{friendship_id}"},
            json={"status": "accepted" if accept else "rejected"},
            prefer="return=minimal",
        )

    async def fetch_peer(self, peer_id: str) -> Peer:
        response = await self._request(
            BackendOperation.FETCH,
            "GET",
            f"{self._rest_url}/profiles",
            params={"id": f"eq.{peer_id}", "select": "id,username,custom_chat_name,avatar_url"},
        )
        rows = self._rows(response)
        if not rows:
            raise NotFoundError(f"Profile not found: {peer_id}")
        return parse_profile_row(rows[0]).to_peer()


class FakeChatBackend(ChatBackendBase):
    """Fake backend for testing without real Supabase.

    Keeps profiles, messages and friendships in memory and provides
    deterministic behavior for unit tests.
    """

    def __init__(
        self,
        user_id: str = "user-self",
        *,
        locker_passphrase: str | None = None,
        locked: bool = False,
    ):
        self.user_id = user_id
        self._profiles: dict[str, Peer] = {user_id: Peer(id=user_id, display_name="me")}
        self._messages: dict[str, Message] = {}
        self._friends: dict[str, FriendRow] = {}
        self._passphrase = locker_passphrase
        self._locked = locked
        self._seq = count(1)

        # Test inspection / failure injection
        self.read_state_calls: list[list[str]] = []
        self.sent: list[Message] = []
        self.send_error: ChatError | None = None
        self.read_state_error: ChatError | None = None
        self.history_errors: list[ChatError] = []
        self.history_calls: list[str] = []

    async def current_user_id(self) -> str:
        return self.user_id

    async def fetch_conversation_history(
        self, peer_id: str, since_seq: int | None = None
    ) -> list[Message]:
        self.history_calls.append(peer_id)
        if self.history_errors:
            raise self.history_errors.pop(0)
        key = ConversationKey.of(self.user_id, peer_id)
        history = [
            m
            for m in self._messages.values()
            if m.conversation_key == key and (since_seq is None or (m.seq or 0) > since_seq)
        ]
        return sorted(history, key=lambda m: m.created_at)

    async def send_message(self, peer_id: str, body: str, *, locked: bool = False) -> Message:
        if self.send_error is not None:
            error, self.send_error = self.send_error, None
            raise error
        message = self._store(self.user_id, peer_id, body, datetime.now(UTC), locked=locked)
        self.sent.append(message)
        return message

    async def update_read_state(self, message_ids: list[str]) -> None:
        if self.read_state_error is not None:
            error, self.read_state_error = self.read_state_error, None
            raise error
        self.read_state_calls.append(list(message_ids))
        for message_id in message_ids:
            if message_id in self._messages:
                self._messages[message_id] = self._messages[message_id].with_read_state(ReadState.READ)

    async def set_account_lock(self, locked: bool, passphrase: str | None = None) -> None:
        if locked:
            if self._passphrase is None:
                raise LockNotConfiguredError()
        elif passphrase != self._passphrase:
            raise AuthError("Chat locker passphrase rejected")
        self._locked = locked

    async def get_account_lock_settings(self) -> AccountLockSettings:
        return AccountLockSettings(locker_enabled=self._passphrase is not None, locked=self._locked)

    async def configure_chat_locker(self, passphrase: str | None) -> None:
        self._passphrase = passphrase

    async def fetch_pending_friend_requests(self) -> list[FriendRequestCreated]:
        return [
            row.to_event(replayed=True)
            for row in self._friends.values()
            if row.friend_id == self.user_id and row.status == "pending"
        ]

    async def fetch_unread_messages(self) -> list[Message]:
        unread = [
            m
            for m in self._messages.values()
            if m.recipient_id == self.user_id and m.read_state != ReadState.READ
        ]
        return sorted(unread, key=lambda m: m.created_at, reverse=True)

    async def respond_friend_request(self, friendship_id: str, accept: bool) -> None:
        row = self._friends.get(friendship_id)
        if row is None:
            raise NotFoundError(f"Friendship not found: {friendship_id}")
        self._friends[friendship_id] = row.model_copy(
            update={"status": "accepted" if accept else "rejected"}
        )

    async def fetch_peer(self, peer_id: str) -> Peer:
        peer = self._profiles.get(peer_id)
        if peer is None:
            raise NotFoundError(f"Profile not found: {peer_id}")
        return peer

    # Test helper methods

    def _store(
        self, sender_id: str, recipient_id: str, body: str, created_at: datetime, *, locked: bool
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            conversation_key=ConversationKey.of(sender_id, recipient_id),
            sender_id=sender_id,
            recipient_id=recipient_id,
            body=body,
            created_at=created_at,
            read_state=ReadState.DELIVERED,
            locked=locked,
            seq=next(self._seq),
        )
        self._messages[message.id] = message
        return message

    def add_peer(self, peer_id: str, display_name: str = "", avatar_ref: str | None = None) -> Peer:
        """Register a profile (test helper)."""
        peer = Peer(id=peer_id, display_name=display_name or peer_id, avatar_ref=avatar_ref)
        self._profiles[peer_id] = peer
        return peer

    def deliver_message(
        self,
        sender_id: str,
        body: str,
        created_at: datetime,
        *,
        locked: bool = False,
    ) -> Message:
        """Store a message from sender_id to self (test helper)."""
        return self._store(sender_id, self.user_id, body, created_at, locked=locked)

    def add_friend_request(self, requester_id: str, created_at: datetime) -> FriendRequestCreated:
        """Store a pending friend request to self (test helper)."""
        row = FriendRow(
            id=str(uuid.uuid4()),
            user_id=requester_id,
            friend_id=self.user_id,
            status="pending",
            created_at=created_at,
        )
        self._friends[row.id] = row
        return row.to_event()

    def message_row(self, message: Message) -> dict:
        """Render a message as a `messages` row dict (test helper)."""
        return MessageRow(
            id=message.id,
            user_id=message.sender_id,
            recipient_id=message.recipient_id,
            content=message.body,
            created_at=message.created_at,
            is_read=message.read_state == ReadState.READ,
            is_locked=message.locked,
            seq=message.seq,
        ).model_dump(mode="json")

    def friend_status(self, friendship_id: str) -> str:
        return self._friends[friendship_id].status

    @property
    def locked(self) -> bool:
        return self._locked
