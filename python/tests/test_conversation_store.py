"""Tests for the Conversation Store.

Covers:
- Idempotent apply by id, with read_state only moving forward
- Display order: created_at, then seq, then arrival; late inserts flag a rescroll
- Optimistic sends: reconciliation by ack and by echo, failure, expiry, retry discard
- mark_read semantics and unread_count
- Lock guards and bucket snapshots
"""

from datetime import timedelta

import pytest

from flydex.errors import LockNotConfiguredError, LockStateError, NotFoundError
from flydex.services.conversation_store import ApplyOutcome, ConversationStore
from flydex.services.types import ACCOUNT_WIDE, ConversationKey, LockState, ReadState
from tests.helpers import OTHER_PEER_ID, PEER_ID, SELF_ID, at, make_message

KEY = ConversationKey.of(SELF_ID, PEER_ID)


def _bodies(store: ConversationStore, key: ConversationKey = KEY) -> list[str]:
    return [m.body for m in store.snapshot(key).messages]


class TestApplyIncoming:
    def test_idempotent(self, store):
        """Applying the same message twice stores it once."""
        message = make_message(1, message_id="m-1")

        first = store.apply_incoming(message)
        second = store.apply_incoming(message)

        assert first.outcome == ApplyOutcome.APPENDED
        assert second.outcome == ApplyOutcome.DUPLICATE
        assert len(store.snapshot(KEY).messages) == 1
        assert store.unread_count(KEY) == 1

    def test_duplicate_advances_read_state(self, store):
        store.apply_incoming(make_message(1, message_id="m-1"))
        store.apply_incoming(make_message(1, message_id="m-1", read_state=ReadState.READ))
        assert store.snapshot(KEY).messages[0].read_state == ReadState.READ

    def test_duplicate_never_regresses_read_state(self, store):
        store.apply_incoming(make_message(1, message_id="m-1", read_state=ReadState.READ))
        store.apply_incoming(make_message(1, message_id="m-1", read_state=ReadState.DELIVERED))
        assert store.snapshot(KEY).messages[0].read_state == ReadState.READ

    def test_foreign_message_rejected(self, store):
        with pytest.raises(ValueError):
            store.apply_incoming(make_message(1, sender_id=PEER_ID, recipient_id=OTHER_PEER_ID))

    def test_conversation_created_on_first_message(self, store):
        assert not store.has_conversation(KEY)
        store.apply_incoming(make_message(1))
        snapshot = store.snapshot(KEY)
        assert snapshot.peer_id == PEER_ID
        assert snapshot.lock_state == LockState.NORMAL


class TestOrdering:
    def test_out_of_order_arrival_sorted(self, store):
        """createdAt [3, 1, 2] arriving in that order displays as [1, 2, 3]."""
        for t in (3, 1, 2):
            store.apply_incoming(make_message(t, body=str(t)))
        assert _bodies(store) == ["1", "2", "3"]

    def test_late_insert_requires_rescroll(self, store):
        store.apply_incoming(make_message(5, body="new"))
        result = store.apply_incoming(make_message(1, body="old"))
        assert result.outcome == ApplyOutcome.INSERTED
        assert result.requires_rescroll is True

    def test_append_does_not_require_rescroll(self, store):
        store.apply_incoming(make_message(1))
        result = store.apply_incoming(make_message(2))
        assert result.outcome == ApplyOutcome.APPENDED
        assert result.requires_rescroll is False

    def test_ties_broken_by_seq(self, store):
        store.apply_incoming(make_message(1, body="b", seq=2))
        store.apply_incoming(make_message(1, body="a", seq=1))
        assert _bodies(store) == ["a", "b"]

    def test_ties_without_seq_keep_arrival_order(self, store):
        store.apply_incoming(make_message(1, body="first"))
        store.apply_incoming(make_message(1, body="second", seq=1))
        assert _bodies(store) == ["first", "second"]

    def test_merge_history_keeps_inflight_sends(self, store):
        temp_id = store.apply_optimistic_send(PEER_ID, "draft", now=at(10))
        history = [make_message(1, message_id="m-1"), make_message(2, message_id="m-2")]

        results = store.merge_history(KEY, history)
        store.merge_history(KEY, history)

        assert [r.outcome for r in results] == [ApplyOutcome.INSERTED, ApplyOutcome.INSERTED]
        ids = [m.id for m in store.snapshot(KEY).messages]
        assert ids == ["m-1", "m-2", temp_id]


class TestOptimisticSend:
    def test_appended_as_sent(self, store):
        temp_id = store.apply_optimistic_send(PEER_ID, "hi", now=at(1))
        (message,) = store.snapshot(KEY).messages
        assert message.id == temp_id
        assert message.temp_id == temp_id
        assert message.read_state == ReadState.SENT
        assert message.is_pending
        assert store.pending_sends() == [temp_id]

    def test_ack_reconciles_in_place(self, store):
        """Optimistic send followed by its server row yields one message."""
        temp_id = store.apply_optimistic_send(PEER_ID, "hi", now=at(1))
        server = make_message(1.2, sender_id=SELF_ID, recipient_id=PEER_ID, body="hi", message_id="m-srv")

        result = store.acknowledge_send(temp_id, server)

        assert result.outcome == ApplyOutcome.RECONCILED
        (message,) = store.snapshot(KEY).messages
        assert message.id == "m-srv"
        assert message.temp_id == temp_id
        assert message.read_state == ReadState.DELIVERED
        assert not message.is_pending
        assert store.pending_sends() == []

    def test_echo_reconciles_without_ack(self, store):
        temp_id = store.apply_optimistic_send(PEER_ID, "hi", now=at(1))
        echo = make_message(1.5, sender_id=SELF_ID, recipient_id=PEER_ID, body="hi", message_id="m-srv")

        result = store.apply_incoming(echo)
        late_ack = store.acknowledge_send(temp_id, echo)

        assert result.outcome == ApplyOutcome.RECONCILED
        assert late_ack.outcome == ApplyOutcome.DUPLICATE
        assert [m.id for m in store.snapshot(KEY).messages] == ["m-srv"]

    def test_echo_matches_oldest_pending_first(self, store):
        first = store.apply_optimistic_send(PEER_ID, "same", now=at(1))
        second = store.apply_optimistic_send(PEER_ID, "same", now=at(2))

        store.apply_incoming(make_message(1.1, sender_id=SELF_ID, recipient_id=PEER_ID, body="same", message_id="s-1"))

        messages = store.snapshot(KEY).messages
        assert messages[0].id == "s-1" and messages[0].temp_id == first
        assert messages[1].id == second and messages[1].is_pending

    def test_old_history_row_does_not_claim_pending_send(self, store):
        store.apply_optimistic_send(PEER_ID, "ok", now=at(3600))
        old = make_message(1, sender_id=SELF_ID, recipient_id=PEER_ID, body="ok", message_id="m-old")

        result = store.apply_incoming(old)

        assert result.outcome == ApplyOutcome.INSERTED
        assert len(store.snapshot(KEY).messages) == 2

    def test_history_before_ack_drops_local_copy(self, store):
        temp_id = store.apply_optimistic_send(PEER_ID, "hi", now=at(1))
        server = make_message(1.2, sender_id=SELF_ID, recipient_id=PEER_ID, body="hi", message_id="m-srv")
        store.apply_incoming(server)
        store.apply_incoming(make_message(2, body="reply"))

        result = store.acknowledge_send(temp_id, server)

        assert result.outcome == ApplyOutcome.DUPLICATE
        assert [m.id for m in store.snapshot(KEY).messages].count("m-srv") == 1

    def test_failed_send_kept_and_flagged(self, store):
        temp_id = store.apply_optimistic_send(PEER_ID, "hi", now=at(1))

        failed = store.mark_send_failed(temp_id)

        assert failed.send_failed is True
        assert not failed.is_pending
        assert store.snapshot(KEY).messages[0].send_failed is True
        assert store.pending_sends() == []

    def test_expire_pending_sends(self, store):
        early = store.apply_optimistic_send(PEER_ID, "a", now=at(0))
        late = store.apply_optimistic_send(PEER_ID, "b", now=at(4))

        expired = store.expire_pending_sends(now=at(0) + timedelta(seconds=5))

        assert expired == [early]
        assert store.pending_sends() == [late]

    def test_late_ack_heals_failed_send(self, store):
        temp_id = store.apply_optimistic_send(PEER_ID, "hi", now=at(1))
        store.mark_send_failed(temp_id)

        store.acknowledge_send(
            temp_id, make_message(1.3, sender_id=SELF_ID, recipient_id=PEER_ID, body="hi", message_id="m-srv")
        )

        (message,) = store.snapshot(KEY).messages
        assert message.id == "m-srv"
        assert message.send_failed is False

    def test_discard_failed(self, store):
        temp_id = store.apply_optimistic_send(PEER_ID, "hi", now=at(1))
        store.mark_send_failed(temp_id)

        discarded = store.discard_failed(temp_id)

        assert discarded.body == "hi"
        assert store.snapshot(KEY).messages == ()

    def test_discard_requires_failed(self, store):
        temp_id = store.apply_optimistic_send(PEER_ID, "hi", now=at(1))
        with pytest.raises(NotFoundError):
            store.discard_failed(temp_id)

    def test_unknown_temp_id(self, store):
        with pytest.raises(NotFoundError):
            store.mark_send_failed("temp-unknown")


class TestReadState:
    def test_mark_read_up_to_message(self, store):
        m1 = make_message(1, message_id="m-1")
        m2 = make_message(2, message_id="m-2")
        m3 = make_message(3, message_id="m-3")
        for m in (m1, m2, m3):
            store.apply_incoming(m)

        assert store.mark_read(KEY, "m-2") == ["m-1", "m-2"]
        assert store.unread_count(KEY) == 1

    def test_mark_read_idempotent(self, store):
        store.apply_incoming(make_message(1, message_id="m-1"))
        assert store.mark_read(KEY) == ["m-1"]
        assert store.mark_read(KEY) == []

    def test_own_messages_not_counted(self, store):
        store.apply_optimistic_send(PEER_ID, "mine", now=at(1))
        store.apply_incoming(make_message(2))
        assert store.unread_count(KEY) == 1
        assert store.mark_read(KEY) == [store.snapshot(KEY).messages[1].id]

    def test_unknown_message(self, store):
        store.apply_incoming(make_message(1))
        with pytest.raises(NotFoundError):
            store.mark_read(KEY, "nope")

    def test_unknown_conversation(self, store):
        assert store.mark_read(KEY) == []
        assert store.unread_count(KEY) == 0

    def test_total_unread(self, store):
        store.apply_incoming(make_message(1))
        store.apply_incoming(make_message(2, sender_id=OTHER_PEER_ID))
        store.apply_incoming(make_message(3, sender_id=OTHER_PEER_ID))
        assert store.total_unread() == 3

    def test_clear_keeps_conversation(self, store):
        store.apply_incoming(make_message(1))
        store.clear(KEY)
        snapshot = store.snapshot(KEY)
        assert snapshot.messages == ()
        assert snapshot.unread_count == 0


class TestLock:
    def test_lock_requires_passphrase(self, store):
        with pytest.raises(LockNotConfiguredError):
            store.set_lock(ACCOUNT_WIDE, LockState.LOCKED, lock_configured=False, ownership_verified=False)

    def test_unlock_requires_verification(self, store):
        store.set_lock(ACCOUNT_WIDE, LockState.LOCKED, lock_configured=True, ownership_verified=False)
        with pytest.raises(LockStateError):
            store.set_lock(ACCOUNT_WIDE, LockState.NORMAL, lock_configured=True, ownership_verified=False)

    def test_account_lock_snapshots_buckets(self, store):
        store.apply_incoming(make_message(1))
        other = ConversationKey.of(SELF_ID, OTHER_PEER_ID)

        changed = store.set_lock(ACCOUNT_WIDE, LockState.LOCKED, lock_configured=True, ownership_verified=False)
        store.apply_incoming(make_message(2, sender_id=OTHER_PEER_ID))

        assert changed == [KEY]
        assert {s.key for s in store.locked_bucket()} == {KEY, other}
        assert store.normal_bucket() == []

    def test_single_conversation_lock(self, store):
        store.apply_incoming(make_message(1))
        store.apply_incoming(make_message(2, sender_id=OTHER_PEER_ID))

        store.set_lock(KEY, LockState.LOCKED, lock_configured=True, ownership_verified=False)

        assert [s.peer_id for s in store.locked_bucket()] == [PEER_ID]
        assert [s.peer_id for s in store.normal_bucket()] == [OTHER_PEER_ID]
        assert store.account_lock == LockState.NORMAL

    def test_conversations_most_recent_first(self, store):
        store.apply_incoming(make_message(1))
        store.apply_incoming(make_message(5, sender_id=OTHER_PEER_ID))
        assert [s.peer_id for s in store.conversations()] == [OTHER_PEER_ID, PEER_ID]

    def test_snapshot_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.snapshot(KEY)
