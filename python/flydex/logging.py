"""Structured logging configuration using structlog.

Provides JSON-formatted logs with consistent chat context including:
- user_id: The signed-in account driving the chat core
- peer_id: Counterpart of the conversation being acted on
- flow_id: Correlation ID for a multi-step send / open flow
- subscription_id: Realtime subscription the event arrived on
- timestamp: ISO8601 formatted timestamp

Usage:
    from flydex.logging import get_logger, configure_logging

    # Configure once at startup
    configure_logging()

    # Get a logger for a module
    logger = get_logger(__name__)
    logger.info("something_happened", extra_field="value")
"""

import logging
import sys
from contextvars import ContextVar

import structlog

# Context variables for chat-scoped logging
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
peer_id_var: ContextVar[str | None] = ContextVar("peer_id", default=None)
flow_id_var: ContextVar[str | None] = ContextVar("flow_id", default=None)
subscription_id_var: ContextVar[str | None] = ContextVar("subscription_id", default=None)


def add_chat_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Add chat context to all log entries.

    Injects all non-None ContextVar values into the log event dict.
    Explicit fields passed at the call site win over context values.
    """
    context = {
        "user_id": user_id_var.get(),
        "peer_id": peer_id_var.get(),
        "flow_id": flow_id_var.get(),
        "subscription_id": subscription_id_var.get(),
    }
    for key, value in context.items():
        if value and key not in event_dict:
            event_dict[key] = value

    return event_dict


def configure_logging(json_format: bool = True, level: int = logging.INFO) -> None:
    """Configure structlog for the chat core.

    Args:
        json_format: If True, output JSON logs. If False, output console-friendly logs.
        level: Root log level.
    """
    # Shared processors for both stdlib and structlog loggers
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_chat_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger for the given name.

    Args:
        name: Logger name (typically __name__).

    Returns:
        A bound structlog logger.
    """
    return structlog.get_logger(name)


def set_chat_context(
    user_id: str | None,
    peer_id: str | None = None,
    subscription_id: str | None = None,
) -> None:
    """Set chat context for the current async context.

    Args:
        user_id: The signed-in user ID.
        peer_id: The conversation counterpart (optional).
        subscription_id: The realtime subscription ID (optional).
    """
    user_id_var.set(user_id)
    if peer_id is not None:
        peer_id_var.set(peer_id)
    if subscription_id is not None:
        subscription_id_var.set(subscription_id)


def set_peer_id(peer_id: str | None) -> None:
    """Set the conversation counterpart for the current flow."""
    peer_id_var.set(peer_id)


def set_flow_id(flow_id: str | None) -> None:
    """Set flow_id for multi-step send / open correlation.

    Args:
        flow_id: UUID string for the current flow.
    """
    flow_id_var.set(flow_id)


def clear_chat_context() -> None:
    """Clear all chat-scoped context when the core shuts down."""
    user_id_var.set(None)
    peer_id_var.set(None)
    flow_id_var.set(None)
    subscription_id_var.set(None)
