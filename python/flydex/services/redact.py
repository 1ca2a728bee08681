"""Log hygiene for chat content.

- hash_text / fingerprint: digests that correlate messages across log lines
- safe_kv: log guard that blocks forbidden keys at call site

Never-log policy:
- Message bodies and notification previews
- Chat locker passphrases
- Access tokens and API keys

Allowed (with suffix):
- _chars, _length: length of text
- _sha256, _hash: hash of text
"""

import hashlib
import os

FORBIDDEN_KEYS = frozenset(
    {
        "body",
        "content",
        "payload_summary",
        "preview",
        "passphrase",
        "password",
        "api_key",
        "apikey",
        "bearer",
        "token",
        "access_token",
        "secret",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")


def hash_text(value: str) -> str:
    """Hex SHA-256 of value (UTF-8)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def fingerprint(body: str, length: int = 16) -> str:
    """Short digest of a message body for send/receive log lines.

    Two sends of the same text share a fingerprint, so retries can be
    followed in the logs without the body ever being written.
    """
    return hash_text(body)[:length]


def _has_redacted_suffix(key: str) -> bool:
    """Check if key ends with a recognized redacted suffix."""
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Validate that no forbidden keys are present unless already redacted.

    Raises ValueError in local/test environments if a forbidden key is used
    without a redacted suffix. In production, logs a warning instead.

    Usage:
        logger.info("chat.send.started", **safe_kv(
            peer_id=peer_id,
            body_chars=len(body),     # OK: _chars suffix
            # body=body,              # BLOCKED: forbidden key
        ))

    Args:
        _env: Override for FLYDEX_ENV (test-only). If None, reads from env.
        **kwargs: Keyword arguments to validate and return.

    Returns:
        The same kwargs dict, after validation.

    Raises:
        ValueError: In local/test, if a forbidden key is used without redacted suffix.
    """
    violations = [key for key in kwargs if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key)]

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = _env or os.environ.get("FLYDEX_ENV", "local")
        if env in ("local", "test"):
            raise ValueError(msg)
        import structlog

        _logger = structlog.get_logger("flydex.services.redact")
        _logger.warning("safe_kv_violation", forbidden_keys=violations)
        for key in violations:
            kwargs.pop(key)

    return kwargs
