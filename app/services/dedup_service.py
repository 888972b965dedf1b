from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import DedupRecord

logger = get_logger("dedup_service")

ACTION_AUTO_REPLY = "auto_reply"


class DedupStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class DuplicateKeyError(Exception):
    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"Dedup record already exists: {idempotency_key}")


def build_idempotency_key(conversation_id, trigger_message_id: str, action_type: str = ACTION_AUTO_REPLY) -> str:
    raw = f"conv:{conversation_id}|trigger:{trigger_message_id}|action:{action_type}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def get_record(db: Session, idempotency_key: str) -> Optional[DedupRecord]:
    return (
        db.query(DedupRecord)
        .filter(DedupRecord.idempotency_key == idempotency_key)
        .populate_existing()
        .first()
    )


def create_pending(
    db: Session,
    *,
    idempotency_key: str,
    conversation_id: UUID,
    trigger_message_id: str,
    action_type: str = ACTION_AUTO_REPLY,
) -> DedupRecord:
    """Insert the PENDING row. Raises DuplicateKeyError if the key exists."""
    now = datetime.now(timezone.utc)
    record = DedupRecord(
        idempotency_key=idempotency_key,
        conversation_id=conversation_id,
        trigger_message_id=trigger_message_id,
        action_type=action_type,
        status=DedupStatus.PENDING.value,
        attempts=1,
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateKeyError(idempotency_key) from e
    return record


def _transition(
    db: Session,
    idempotency_key: str,
    from_status: DedupStatus,
    values: dict,
) -> bool:
    values = {**values, "updated_at": datetime.now(timezone.utc)}
    updated = (
        db.query(DedupRecord)
        .filter(DedupRecord.idempotency_key == idempotency_key, DedupRecord.status == from_status.value)
        .update(values, synchronize_session=False)
    )
    db.commit()
    return updated > 0


def reopen_failed(db: Session, idempotency_key: str) -> bool:
    """FAILED -> PENDING for a retry. SENT records are never reopened."""
    return _transition(
        db,
        idempotency_key,
        DedupStatus.FAILED,
        {
            "status": DedupStatus.PENDING.value,
            "error": None,
            "failed_at": None,
            "attempts": DedupRecord.attempts + 1,
        },
    )


def mark_sent(db: Session, idempotency_key: str, provider_message_id: Optional[str]) -> bool:
    now = datetime.now(timezone.utc)
    return _transition(
        db,
        idempotency_key,
        DedupStatus.PENDING,
        {"status": DedupStatus.SENT.value, "provider_message_id": provider_message_id, "sent_at": now},
    )


def mark_failed(db: Session, idempotency_key: str, error: str) -> bool:
    now = datetime.now(timezone.utc)
    marked = _transition(
        db,
        idempotency_key,
        DedupStatus.PENDING,
        {"status": DedupStatus.FAILED.value, "error": (error or "unknown")[:500], "failed_at": now},
    )
    if marked:
        logger.info("Dedup record failed", extra={"context": {"idempotency_key": idempotency_key, "error": error}})
    return marked


def fail_stale_pending(db: Session, older_than_seconds: int) -> list[str]:
    """Promote PENDING records untouched for too long to FAILED."""
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=older_than_seconds)
    stale = (
        db.query(DedupRecord)
        .filter(DedupRecord.status == DedupStatus.PENDING.value, DedupRecord.updated_at < cutoff)
        .all()
    )
    keys = []
    for record in stale:
        if mark_failed(db, record.idempotency_key, "reconcile_timeout"):
            keys.append(record.idempotency_key)
    return keys
