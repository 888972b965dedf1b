import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
import redis

from app.models import Conversation, ConversationLease, Message
from app.services import dedup_service, delivery_service, state_service, task_service
from app.services.delivery_service import DeliveryStatus, deliver, in_cooldown, is_muted
from app.services.lock_service import DatabaseLockStore, Lease, LockStore, RedisLockStore
from app.services.message_service import OUTBOUND
from app.services.state_machine import Stage


@pytest.fixture
def send(db, conversation, fake_sender, fake_llm):
    def _send(trigger_id: str, **kwargs):
        kwargs.setdefault("sender", fake_sender)
        kwargs.setdefault("llm_provider", fake_llm)
        return deliver(db, conversation.id, trigger_id, **kwargs)

    return _send


def _record(db, conversation_id, trigger_id):
    return dedup_service.get_record(db, dedup_service.build_idempotency_key(conversation_id, trigger_id))


def _lock_owner(db, conversation_id):
    return db.query(ConversationLease.owner).filter(ConversationLease.conversation_id == conversation_id).scalar()


class TestHappyPath:
    def test_sends_and_records(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")

        result = send("wamid.A")

        assert result.status == DeliveryStatus.SENT
        assert result.ok is True
        assert result.was_duplicate is False
        assert result.question_key == "ASK_SERVICE"
        assert len(fake_sender.sent) == 1
        assert fake_sender.sent[0]["recipient"] == conversation.recipient_address
        assert fake_sender.sent[0]["key"] == result.idempotency_key

        record = _record(db, conversation.id, "wamid.A")
        assert record.status == "SENT"
        assert record.provider_message_id == "wamid.1"
        assert record.sent_at is not None

        outbound = db.query(Message).filter(Message.direction == OUTBOUND).all()
        assert [message.question_key for message in outbound] == ["ASK_SERVICE"]
        assert db.get(Conversation, conversation.id).last_auto_reply_at is not None
        assert _lock_owner(db, conversation.id) is None


class TestDuplicates:
    def test_second_call_is_duplicate(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")
        send("wamid.A")

        second = send("wamid.A")

        assert second.status == DeliveryStatus.DUPLICATE
        assert second.was_duplicate is True
        assert second.provider_message_id == "wamid.1"
        assert len(fake_sender.sent) == 1
        assert state_service.load(db, conversation.id).questions_asked_count == 1

    def test_concurrent_call_for_same_trigger_is_busy(self, db, conversation, inbound, send, fake_sender, sender_factory):
        inbound("hi", external_id="wamid.A")
        other_sender = sender_factory()
        inner = []
        fake_sender.on_send = lambda: inner.append(send("wamid.A", sender=other_sender))

        outer = send("wamid.A")

        assert outer.status == DeliveryStatus.SENT
        assert inner[0].status == DeliveryStatus.BUSY
        assert inner[0].was_duplicate is True
        assert other_sender.sent == []
        assert _record(db, conversation.id, "wamid.A").status == "SENT"

    def test_lost_race_on_record_creation_is_busy(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")
        key = dedup_service.build_idempotency_key(conversation.id, "wamid.A")

        def _lost_race(db_, **kwargs):
            raise dedup_service.DuplicateKeyError(key)

        with patch.object(dedup_service, "create_pending", side_effect=_lost_race):
            result = send("wamid.A")

        assert result.status == DeliveryStatus.BUSY
        assert result.was_duplicate is True
        assert fake_sender.sent == []


class TestSkips:
    def test_lock_held_elsewhere(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")
        lease = DatabaseLockStore(db).acquire(conversation.id)

        result = send("wamid.A")

        assert result.status == DeliveryStatus.SKIPPED_LOCKED
        assert fake_sender.sent == []
        assert _record(db, conversation.id, "wamid.A") is None
        assert _lock_owner(db, conversation.id) == lease.owner

    def test_cooldown(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")
        send("wamid.A")
        inbound("visit visa", external_id="wamid.B")

        result = send("wamid.B")

        assert result.status == DeliveryStatus.SKIPPED_COOLDOWN
        assert len(fake_sender.sent) == 1
        assert _record(db, conversation.id, "wamid.B") is None

    def test_cooldown_disabled(self, db, conversation, inbound, send, fake_sender, monkeypatch):
        monkeypatch.setattr(delivery_service.settings, "send_cooldown_seconds", 0)
        inbound("hi", external_id="wamid.A")
        send("wamid.A")
        inbound("visit visa", external_id="wamid.B")

        result = send("wamid.B")

        assert result.status == DeliveryStatus.SENT
        assert result.question_key == "ASK_NAME"

    def test_cooldown_rechecked_after_lease(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")
        inbound("visit visa", external_id="wamid.B")
        first = []

        class SlowStore(DatabaseLockStore):
            # trigger A finishes between B's cooldown check and B taking the lease
            def acquire(self, conversation_id, ttl_seconds=None):
                if not first:
                    first.append(send("wamid.A"))
                return super().acquire(conversation_id, ttl_seconds)

        second = send("wamid.B", lock_store=SlowStore(db))

        assert first[0].status == DeliveryStatus.SENT
        assert second.status == DeliveryStatus.SKIPPED_COOLDOWN
        assert len(fake_sender.sent) == 1
        assert _record(db, conversation.id, "wamid.B") is None
        assert _lock_owner(db, conversation.id) is None

    def test_auto_reply_disabled(self, db, conversation, inbound, send, fake_sender):
        db.query(Conversation).filter(Conversation.id == conversation.id).update({"auto_reply_enabled": False})
        db.commit()
        inbound("hi", external_id="wamid.A")

        result = send("wamid.A")

        assert result.status == DeliveryStatus.SKIPPED_DISABLED
        assert fake_sender.sent == []
        assert _record(db, conversation.id, "wamid.A") is None

    def test_muted(self, db, conversation, inbound, send, fake_sender):
        db.query(Conversation).filter(Conversation.id == conversation.id).update(
            {"muted_until": datetime.now(timezone.utc) + timedelta(hours=2)}
        )
        db.commit()
        inbound("hi", external_id="wamid.A")

        result = send("wamid.A")

        assert result.status == DeliveryStatus.SKIPPED_MUTED
        assert fake_sender.sent == []

    def test_expired_mute_replies(self, db, conversation, inbound, send, fake_sender):
        db.query(Conversation).filter(Conversation.id == conversation.id).update(
            {"muted_until": datetime.now(timezone.utc) - timedelta(minutes=1)}
        )
        db.commit()
        inbound("hi", external_id="wamid.A")

        assert send("wamid.A").status == DeliveryStatus.SENT

    def test_is_muted(self):
        now = datetime.now(timezone.utc)
        assert is_muted(now + timedelta(minutes=5), now) is True
        assert is_muted((now + timedelta(minutes=5)).replace(tzinfo=None), now) is True
        assert is_muted(now - timedelta(minutes=5), now) is False
        assert is_muted(None) is False

    def test_lock_store_unreachable(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")
        client = Mock()
        client.set.side_effect = redis.ConnectionError("Connection refused")

        result = send("wamid.A", lock_store=RedisLockStore(client))

        assert result.status == DeliveryStatus.SKIPPED_LOCKED
        assert result.error == "lock_unavailable"
        assert fake_sender.sent == []
        assert _record(db, conversation.id, "wamid.A") is None

    def test_release_error_keeps_outcome(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")
        client = Mock()
        client.set.return_value = True
        client.incr.return_value = 1
        client.eval.side_effect = redis.ConnectionError("Connection reset")
        store = RedisLockStore(client)
        client.get.side_effect = lambda key: client.set.call_args[0][1]

        result = send("wamid.A", lock_store=store)

        assert result.status == DeliveryStatus.SENT
        assert len(fake_sender.sent) == 1
        assert _record(db, conversation.id, "wamid.A").status == "SENT"

    def test_in_cooldown_accepts_naive_timestamps(self):
        naive_now = datetime.now(timezone.utc).replace(tzinfo=None)
        assert in_cooldown(naive_now) is True
        assert in_cooldown(naive_now - timedelta(hours=1)) is False
        assert in_cooldown(None) is False

    def test_no_content(self, db, conversation, inbound, send, fake_sender):
        db.query(Conversation).filter(Conversation.id == conversation.id).update({"stage": Stage.HANDED_OFF.value})
        db.commit()
        inbound("hello?", external_id="wamid.A")

        result = send("wamid.A")

        assert result.status == DeliveryStatus.SKIPPED_NO_CONTENT
        assert fake_sender.sent == []
        record = _record(db, conversation.id, "wamid.A")
        assert record.status == "FAILED"
        assert record.error == "no_content"
        assert _lock_owner(db, conversation.id) is None


class TestNotFound:
    def test_unknown_conversation(self, db, fake_sender):
        result = deliver(db, uuid.uuid4(), "wamid.A", sender=fake_sender)

        assert result.status == DeliveryStatus.NOT_FOUND
        assert fake_sender.sent == []

    def test_unknown_trigger_releases_lock(self, db, conversation, send):
        result = send("wamid.missing")

        assert result.status == DeliveryStatus.NOT_FOUND
        assert result.error == "trigger_not_found"
        assert _lock_owner(db, conversation.id) is None


class TestFailures:
    def test_send_failure_marks_failed_and_leaves_state(self, db, conversation, inbound, send, sender_factory):
        inbound("hi", external_id="wamid.A")

        result = send("wamid.A", sender=sender_factory(success=False, error="http_503"))

        assert result.status == DeliveryStatus.FAILED
        assert result.error == "http_503"
        record = _record(db, conversation.id, "wamid.A")
        assert record.status == "FAILED"
        assert record.error == "http_503"
        assert state_service.load(db, conversation.id).questions_asked_count == 0
        assert _lock_owner(db, conversation.id) is None

    def test_failed_record_is_retried(self, db, conversation, inbound, send, fake_sender, sender_factory):
        inbound("hi", external_id="wamid.A")
        send("wamid.A", sender=sender_factory(success=False))

        retry = send("wamid.A")

        assert retry.status == DeliveryStatus.SENT
        assert len(fake_sender.sent) == 1
        record = _record(db, conversation.id, "wamid.A")
        assert record.status == "SENT"
        assert record.attempts == 2
        assert record.error is None

    def test_exception_mid_pipeline(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")

        with patch.object(delivery_service, "generate_reply", side_effect=RuntimeError("boom")):
            result = send("wamid.A")

        assert result.status == DeliveryStatus.FAILED
        assert fake_sender.sent == []
        record = _record(db, conversation.id, "wamid.A")
        assert record.status == "FAILED"
        assert record.error == "exception: boom"
        assert _lock_owner(db, conversation.id) is None
        tasks = task_service.list_open_tasks(db, conversation.id)
        assert [task.reason for task in tasks] == ["orchestrator_error"]

    def test_lease_lost_before_send(self, db, conversation, inbound, send, fake_sender):
        inbound("hi", external_id="wamid.A")
        lock_store = Mock(spec=LockStore)
        lock_store.acquire.return_value = Lease(
            conversation_id=conversation.id,
            owner="stale-owner",
            fence=1,
            expires_at=datetime.now(timezone.utc),
        )
        lock_store.is_current.return_value = False

        result = send("wamid.A", lock_store=lock_store)

        assert result.status == DeliveryStatus.FAILED
        assert result.error == "lease_lost"
        assert fake_sender.sent == []
        assert _record(db, conversation.id, "wamid.A").status == "FAILED"
        lock_store.release.assert_called_once()
