"""Read-Receipt Reconciler.

The single place where opening a conversation and dismissing its
notifications are coupled:

- on_open(): marks the conversation read in the store and consumes the
  peer's message notifications in one synchronous step, then writes the
  newly read ids to the backend in one batch
- on_incoming_while_open(): marks the new message read and queues its id
  in a debounced batch
- on_close(): cancels the debounce timer and flushes the queue once

Batches that fail on transport are re-queued and flushed again after
retry_s, until close().
"""

import asyncio

from flydex.backend.client import ChatBackendBase
from flydex.errors import ChatError, TransportError
from flydex.logging import get_logger
from flydex.services.conversation_store import ConversationStore
from flydex.services.notifications import NotificationAggregator
from flydex.services.types import Message, NotificationKind

logger = get_logger(__name__)


class ReadReceiptReconciler:
    def __init__(
        self,
        store: ConversationStore,
        aggregator: NotificationAggregator,
        backend: ChatBackendBase,
        *,
        debounce_s: float = 0.25,
        retry_s: float = 1.0,
    ):
        self._store = store
        self._aggregator = aggregator
        self._backend = backend
        self._debounce_s = debounce_s
        self._retry_s = retry_s
        self._closed = False
        self._open: set[str] = set()
        self._queued: dict[str, None] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._flushes: set[asyncio.Task] = set()

    @property
    def open_peers(self) -> frozenset[str]:
        return frozenset(self._open)

    @property
    def queued_ids(self) -> list[str]:
        return list(self._queued)

    def is_open(self, peer_id: str) -> bool:
        return peer_id in self._open

    def mark_open(self, peer_id: str) -> list[str]:
        """Synchronous half of on_open(): store and notifications only.

        Returns the message ids that became READ.
        """
        key = self._store.ensure(peer_id)
        self._open.add(peer_id)
        newly_read = self._store.mark_read(key)
        consumed = self._aggregator.consume_matching(NotificationKind.MESSAGE, peer_id)
        logger.info(
            "conversation_marked_read",
            read_count=len(newly_read),
            consumed_notifications=len(consumed),
        )
        return newly_read

    async def on_open(self, peer_id: str) -> list[str]:
        """Mark a conversation read and write the receipts in one batch."""
        newly_read = self.mark_open(peer_id)
        if newly_read:
            await self.write_receipts(newly_read)
        return newly_read

    def on_incoming_while_open(self, message: Message) -> bool:
        """Read a message that arrived in an open conversation.

        Returns False when the conversation is not open.
        """
        if message.sender_id not in self._open:
            return False
        newly_read = self._store.mark_read(message.conversation_key, message.id)
        self._aggregator.consume_matching(NotificationKind.MESSAGE, message.sender_id)
        if newly_read:
            self._queued.update(dict.fromkeys(newly_read))
            self._schedule()
        return True

    async def on_close(self, peer_id: str) -> None:
        """Cancel the pending debounce and flush queued ids once."""
        self._open.discard(peer_id)
        self._cancel_timer()
        await self.flush()

    async def flush(self) -> list[str]:
        """Write every queued id in a single batch."""
        if not self._queued:
            return []
        message_ids = list(self._queued)
        self._queued.clear()
        await self.write_receipts(message_ids)
        return message_ids

    async def close(self) -> None:
        """Cancel timers, wait for in-flight flushes and flush the rest once."""
        self._closed = True
        self._cancel_timer()
        self._open.clear()
        if self._flushes:
            await asyncio.gather(*self._flushes, return_exceptions=True)
        await self.flush()

    async def write_receipts(self, message_ids: list[str]) -> None:
        """Write one read-state batch; transport failures re-queue the ids."""
        try:
            await self._backend.update_read_state(message_ids)
        except TransportError as e:
            requeued = dict.fromkeys(message_ids)
            requeued.update(self._queued)
            self._queued = requeued
            if not self._closed and self._timer is None:
                self._schedule(self._retry_s)
            logger.warning("read_receipts_requeued", count=len(message_ids), error_code=e.code.value)
        except ChatError as e:
            logger.error("read_receipts_dropped", count=len(message_ids), error_code=e.code.value)

    def _schedule(self, delay: float | None = None) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce_s if delay is None else delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self.flush())
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)
