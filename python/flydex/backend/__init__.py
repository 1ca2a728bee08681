"""External persistence / auth collaborator for the chat core.

Usage:
    from flydex.backend import SupabaseChatBackend

    backend = SupabaseChatBackend(
        httpx_client,
        supabase_url=settings.supabase_url,
        anon_key=settings.supabase_anon_key,
        access_token=session.access_token,
    )

Rules:
- No retries inside the client
- No logging of message bodies or passphrases
- HTTP failures are classified into chat core errors before they leave
"""

from flydex.backend.client import ChatBackendBase, FakeChatBackend, SupabaseChatBackend
from flydex.backend.errors import BackendOperation, classify_backend_error

__all__ = [
    "ChatBackendBase",
    "FakeChatBackend",
    "SupabaseChatBackend",
    "BackendOperation",
    "classify_backend_error",
]
