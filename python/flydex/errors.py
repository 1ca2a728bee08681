"""Chat core error definitions.

All errors raised by the chat core are defined here together with the way
the UI is expected to surface them.
"""

from enum import Enum


class ChatErrorCode(str, Enum):
    """Standardized error codes for the chat core.

    Format: E_CATEGORY_NAME
    """

    # Transport errors (recovered locally by resync)
    E_TRANSPORT = "E_TRANSPORT"
    E_RESYNC_FAILED = "E_RESYNC_FAILED"

    # Send errors (inline retry marker on the message bubble)
    E_SEND_REJECTED = "E_SEND_REJECTED"
    E_SEND_TIMEOUT = "E_SEND_TIMEOUT"
    E_CHAT_LOCKED = "E_CHAT_LOCKED"

    # Lock / auth errors (blocking dialog)
    E_LOCK_NOT_CONFIGURED = "E_LOCK_NOT_CONFIGURED"
    E_LOCK_STATE = "E_LOCK_STATE"
    E_AUTH = "E_AUTH"

    # Contract errors (logged and dropped)
    E_MALFORMED_EVENT = "E_MALFORMED_EVENT"
    E_NOT_FOUND = "E_NOT_FOUND"


class ErrorSurface(str, Enum):
    """How an error is presented to the user."""

    SILENT = "silent"
    INLINE = "inline"
    BLOCKING = "blocking"


# Error code to surface mapping
ERROR_CODE_TO_SURFACE: dict[ChatErrorCode, ErrorSurface] = {
    ChatErrorCode.E_TRANSPORT: ErrorSurface.SILENT,
    ChatErrorCode.E_RESYNC_FAILED: ErrorSurface.INLINE,
    ChatErrorCode.E_SEND_REJECTED: ErrorSurface.INLINE,
    ChatErrorCode.E_SEND_TIMEOUT: ErrorSurface.INLINE,
    ChatErrorCode.E_CHAT_LOCKED: ErrorSurface.BLOCKING,
    ChatErrorCode.E_LOCK_NOT_CONFIGURED: ErrorSurface.BLOCKING,
    ChatErrorCode.E_LOCK_STATE: ErrorSurface.BLOCKING,
    ChatErrorCode.E_AUTH: ErrorSurface.BLOCKING,
    ChatErrorCode.E_MALFORMED_EVENT: ErrorSurface.SILENT,
    ChatErrorCode.E_NOT_FOUND: ErrorSurface.INLINE,
}


class ChatError(Exception):
    """Base exception for chat core errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        surface: How the UI should present the error (derived from code)
    """

    def __init__(self, code: ChatErrorCode, message: str):
        self.code = code
        self.message = message
        self.surface = ERROR_CODE_TO_SURFACE.get(code, ErrorSurface.BLOCKING)
        super().__init__(message)


class TransportError(ChatError):
    """Realtime or HTTP transport failure."""

    def __init__(self, message: str = "Transport error", code: ChatErrorCode = ChatErrorCode.E_TRANSPORT):
        super().__init__(code, message)


class SendRejected(ChatError):
    """The backend refused an outbound message."""

    def __init__(
        self, message: str = "Message rejected", code: ChatErrorCode = ChatErrorCode.E_SEND_REJECTED
    ):
        super().__init__(code, message)


class ChatLockedError(ChatError):
    """Outbound send attempted while the sender's own chat is locked."""

    def __init__(self, message: str = "Chat is locked"):
        super().__init__(ChatErrorCode.E_CHAT_LOCKED, message)


class LockStateError(ChatError):
    """Lock transition not allowed in the current state."""

    def __init__(
        self, message: str = "Invalid lock transition", code: ChatErrorCode = ChatErrorCode.E_LOCK_STATE
    ):
        super().__init__(code, message)


class LockNotConfiguredError(LockStateError):
    """Locking requested but no chat locker passphrase is configured."""

    def __init__(self, message: str = "Chat locker passphrase is not configured"):
        super().__init__(message, code=ChatErrorCode.E_LOCK_NOT_CONFIGURED)


class AuthError(ChatError):
    """Passphrase or credential verification failed."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(ChatErrorCode.E_AUTH, message)


class MalformedEventError(ChatError):
    """A realtime payload did not match the expected contract."""

    def __init__(self, message: str = "Malformed event"):
        super().__init__(ChatErrorCode.E_MALFORMED_EVENT, message)


class NotFoundError(ChatError):
    """Referenced entity is unknown to the core."""

    def __init__(self, message: str = "Not found"):
        super().__init__(ChatErrorCode.E_NOT_FOUND, message)
