"""Backend error classification and normalization.

Classifies Supabase (PostgREST / Auth) failures into chat core errors in one
place, so that the client methods only report what happened.

- Timeout / network failure → TransportError
- 5xx → TransportError
- 401 / 403 on lock operations → AuthError
- 401 / 403 / 400 / 409 / 422 on send → SendRejected
- 404 → NotFoundError
"""

from enum import Enum

from flydex.errors import (
    AuthError,
    ChatError,
    ChatErrorCode,
    NotFoundError,
    SendRejected,
    TransportError,
)
from flydex.logging import get_logger

logger = get_logger(__name__)


class BackendOperation(str, Enum):
    """Backend call categories that classify errors differently."""

    SEND = "send"
    LOCK = "lock"
    READ_STATE = "read_state"
    FETCH = "fetch"
    FRIENDSHIP = "friendship"


def classify_backend_error(
    operation: BackendOperation,
    status_code: int | None,
    json_body: dict | None,
    exception: Exception | None,
) -> ChatError:
    """Classify a backend failure into a chat core error.

    Args:
        operation: Which backend call failed.
        status_code: HTTP status code (if a response was received).
        json_body: Parsed JSON error response (if available).
        exception: The exception that was raised (if any).

    Returns:
        The ChatError to raise to the caller.
    """
    if exception is not None:
        exception_type = type(exception).__name__
        if "Timeout" in exception_type:
            return TransportError(f"{operation.value} timed out")
        if "Network" in exception_type or "Connect" in exception_type:
            return TransportError(f"{operation.value} failed: network unavailable")

    if status_code is None:
        return TransportError(f"{operation.value} failed without response")

    detail = _error_detail(json_body)

    if status_code >= 500:
        return TransportError(f"{operation.value} failed: backend unavailable ({status_code})")

    if status_code == 404:
        return NotFoundError(detail or f"{operation.value}: not found")

    if operation == BackendOperation.SEND:
        if status_code in (400, 401, 403, 409, 422):
            return SendRejected(detail or f"Message rejected ({status_code})")
        if status_code == 408:
            return SendRejected("Message send timed out", code=ChatErrorCode.E_SEND_TIMEOUT)

    if operation == BackendOperation.LOCK and status_code in (400, 401, 403):
        return AuthError(detail or "Chat locker passphrase rejected")

    if status_code in (401, 403):
        return AuthError(detail or "Not authorized")

    logger.warning(
        "unclassified_backend_error",
        operation=operation.value,
        status_code=status_code,
    )
    return TransportError(f"{operation.value} failed ({status_code})")


def _error_detail(json_body: dict | None) -> str | None:
    """Extract PostgREST / GoTrue error message if present."""
    if not json_body:
        return None
    for key in ("message", "msg", "error_description", "error"):
        value = json_body.get(key)
        if isinstance(value, str) and value:
            return value
    return None
