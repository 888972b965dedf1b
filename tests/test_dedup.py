from datetime import datetime, timedelta, timezone

import pytest

from app.models import DedupRecord
from app.services import dedup_service
from app.services.dedup_service import DedupStatus, DuplicateKeyError, build_idempotency_key


@pytest.fixture
def pending(db, conversation):
    key = build_idempotency_key(conversation.id, "wamid.A")
    dedup_service.create_pending(
        db,
        idempotency_key=key,
        conversation_id=conversation.id,
        trigger_message_id="wamid.A",
    )
    return key


class TestIdempotencyKey:
    def test_deterministic(self, conversation):
        assert build_idempotency_key(conversation.id, "wamid.A") == build_idempotency_key(conversation.id, "wamid.A")

    def test_varies_by_trigger_and_action(self, conversation):
        key = build_idempotency_key(conversation.id, "wamid.A")

        assert key != build_idempotency_key(conversation.id, "wamid.B")
        assert key != build_idempotency_key(conversation.id, "wamid.A", "follow_up")
        assert len(key) == 64


class TestCreatePending:
    def test_creates_pending(self, db, pending):
        record = dedup_service.get_record(db, pending)

        assert record.status == DedupStatus.PENDING.value
        assert record.attempts == 1

    def test_duplicate_key_raises(self, db, conversation, pending):
        with pytest.raises(DuplicateKeyError) as exc_info:
            dedup_service.create_pending(
                db,
                idempotency_key=pending,
                conversation_id=conversation.id,
                trigger_message_id="wamid.A",
            )

        assert exc_info.value.idempotency_key == pending
        assert db.query(DedupRecord).count() == 1


class TestTransitions:
    def test_pending_to_sent(self, db, pending):
        assert dedup_service.mark_sent(db, pending, "wamid.out.1") is True

        record = dedup_service.get_record(db, pending)
        assert record.status == DedupStatus.SENT.value
        assert record.provider_message_id == "wamid.out.1"

    def test_sent_is_final(self, db, pending):
        dedup_service.mark_sent(db, pending, "wamid.out.1")

        assert dedup_service.mark_failed(db, pending, "late") is False
        assert dedup_service.reopen_failed(db, pending) is False
        assert dedup_service.get_record(db, pending).status == DedupStatus.SENT.value

    def test_failed_reopens_with_attempt(self, db, pending):
        dedup_service.mark_failed(db, pending, "http_500")

        assert dedup_service.reopen_failed(db, pending) is True

        record = dedup_service.get_record(db, pending)
        assert record.status == DedupStatus.PENDING.value
        assert record.attempts == 2
        assert record.error is None

    def test_pending_cannot_be_reopened(self, db, pending):
        assert dedup_service.reopen_failed(db, pending) is False

    def test_error_truncated(self, db, pending):
        dedup_service.mark_failed(db, pending, "x" * 900)
        assert len(dedup_service.get_record(db, pending).error) == 500


class TestFailStalePending:
    def test_only_old_records_fail(self, db, conversation, pending):
        fresh = build_idempotency_key(conversation.id, "wamid.B")
        dedup_service.create_pending(
            db,
            idempotency_key=fresh,
            conversation_id=conversation.id,
            trigger_message_id="wamid.B",
        )
        db.query(DedupRecord).filter(DedupRecord.idempotency_key == pending).update(
            {"updated_at": datetime.now(timezone.utc) - timedelta(hours=1)}, synchronize_session=False
        )
        db.commit()

        failed = dedup_service.fail_stale_pending(db, older_than_seconds=300)

        assert failed == [pending]
        record = dedup_service.get_record(db, pending)
        assert record.status == DedupStatus.FAILED.value
        assert record.error == "reconcile_timeout"
        assert dedup_service.get_record(db, fresh).status == DedupStatus.PENDING.value
