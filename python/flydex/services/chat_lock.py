"""Chat Lock State Machine.

Account-scoped lock over the chat surface:

    NORMAL --lock() [passphrase configured]--> LOCKED
    LOCKED --unlock(passphrase) [verified by backend]--> NORMAL

While LOCKED, outbound sends fail with ChatLockedError. Inbound messages
are still stored but are not surfaced as notifications.

Every transition is applied account-wide to the conversation store, so
bucket membership (locked / normal) is fixed at toggle time.
"""

import asyncio

from flydex.backend.client import ChatBackendBase
from flydex.errors import AuthError, ChatLockedError, LockNotConfiguredError, LockStateError
from flydex.logging import get_logger
from flydex.services.conversation_store import ConversationStore
from flydex.services.types import ACCOUNT_WIDE, AccountLockSettings, LockState

logger = get_logger(__name__)


class ChatLockStateMachine:
    """Account chat lock, backed by the backend's set_chat_lock RPC."""

    def __init__(
        self,
        backend: ChatBackendBase,
        store: ConversationStore,
        settings: AccountLockSettings | None = None,
    ):
        self._backend = backend
        self._store = store
        self._locker_enabled = False
        self._state = LockState.NORMAL
        self._transition_lock = asyncio.Lock()
        if settings is not None:
            self._apply_settings(settings)

    @property
    def state(self) -> LockState:
        return self._state

    @property
    def is_locked(self) -> bool:
        return self._state == LockState.LOCKED

    @property
    def lock_configured(self) -> bool:
        return self._locker_enabled

    def _apply_settings(self, settings: AccountLockSettings) -> None:
        self._locker_enabled = settings.locker_enabled
        state = LockState.LOCKED if settings.locked else LockState.NORMAL
        # Server state is authoritative here; no local guard applies.
        self._store.set_lock(ACCOUNT_WIDE, state, lock_configured=True, ownership_verified=True)
        self._state = state

    async def load(self) -> AccountLockSettings:
        """Fetch the account's lock settings and adopt them."""
        settings = await self._backend.get_account_lock_settings()
        self._apply_settings(settings)
        logger.info(
            "chat_lock_loaded",
            locker_enabled=settings.locker_enabled,
            state=self._state.value,
        )
        return settings

    async def lock(self) -> LockState:
        """Lock the account chat.

        Raises:
            LockNotConfiguredError: If no passphrase has been configured.
        """
        async with self._transition_lock:
            if not self._locker_enabled:
                raise LockNotConfiguredError()
            if self._state == LockState.LOCKED:
                return self._state

            await self._backend.set_account_lock(True)
            self._store.set_lock(
                ACCOUNT_WIDE, LockState.LOCKED, lock_configured=True, ownership_verified=False
            )
            self._state = LockState.LOCKED
            logger.info("chat_locked")
            return self._state

    async def unlock(self, passphrase: str | None) -> LockState:
        """Unlock the account chat after the backend verifies passphrase.

        Raises:
            AuthError: If the passphrase is missing or rejected.
        """
        async with self._transition_lock:
            if self._state == LockState.NORMAL:
                return self._state
            if not passphrase:
                raise AuthError("Passphrase required to unlock chat")

            await self._backend.set_account_lock(False, passphrase)
            self._store.set_lock(
                ACCOUNT_WIDE,
                LockState.NORMAL,
                lock_configured=self._locker_enabled,
                ownership_verified=True,
            )
            self._state = LockState.NORMAL
            logger.info("chat_unlocked")
            return self._state

    async def toggle(self, passphrase: str | None = None) -> LockState:
        """Lock when NORMAL, unlock with passphrase when LOCKED."""
        if self._state == LockState.LOCKED:
            return await self.unlock(passphrase)
        return await self.lock()

    def ensure_can_send(self) -> None:
        """Raises ChatLockedError while the account chat is locked."""
        if self._state == LockState.LOCKED:
            raise ChatLockedError()

    async def configure(self, passphrase: str) -> None:
        """Enable the chat locker with a new passphrase.

        Raises:
            LockStateError: If passphrase is empty.
        """
        if not passphrase:
            raise LockStateError("Chat locker passphrase must not be empty")
        async with self._transition_lock:
            await self._backend.configure_chat_locker(passphrase)
            self._locker_enabled = True
            logger.info("chat_locker_configured")

    async def disable(self) -> None:
        """Remove the chat locker passphrase.

        Raises:
            LockStateError: If the chat is currently locked.
        """
        async with self._transition_lock:
            if self._state == LockState.LOCKED:
                raise LockStateError("Unlock the chat before disabling the chat locker")
            await self._backend.configure_chat_locker(None)
            self._locker_enabled = False
            logger.info("chat_locker_disabled")
