from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Conversation, DedupRecord
from app.services import dedup_service
from app.services.lock_service import DatabaseLockStore
from app.services.state_machine import Stage

logger = get_logger("health_service")


def check_and_heal(db: Session, pending_stale_seconds: int | None = None) -> dict:
    """Reconciliation sweep: resolve stuck records and leases, repair invariants."""
    healed = []
    stale_after = pending_stale_seconds if pending_stale_seconds is not None else settings.pending_stale_seconds

    # Invariant 1: PENDING dedup records do not outlive a crashed delivery
    for key in dedup_service.fail_stale_pending(db, stale_after):
        healed.append({"idempotency_key": key, "issue": "stale_pending", "action": "marked_failed"})
        logger.warning(f"Promoted stale PENDING dedup record {key[:12]} to FAILED")

    # Invariant 2: expired leases are cleared
    cleared = DatabaseLockStore(db).clear_expired()
    if cleared:
        healed.append({"issue": "expired_lease", "action": "cleared", "count": cleared})
        logger.warning(f"Cleared {cleared} expired conversation leases")

    # Invariant 3: handed-off conversations carry a handoff timestamp
    missing_handoff = (
        db.query(Conversation)
        .filter(Conversation.stage == Stage.HANDED_OFF.value, Conversation.handed_off_at.is_(None))
        .all()
    )
    now = datetime.now(timezone.utc)
    for conv in missing_handoff:
        updated = (
            db.query(Conversation)
            .filter(Conversation.id == conv.id, Conversation.version == conv.version)
            .update(
                {"handed_off_at": now, "version": Conversation.version + 1, "updated_at": now},
                synchronize_session=False,
            )
        )
        if updated:
            healed.append(
                {"conversation_id": str(conv.id), "issue": "handed_off_without_timestamp", "action": "set_handed_off_at"}
            )
            logger.warning(f"Healed conversation {conv.id}: handed off without timestamp")

    db.commit()

    return {
        "healed_count": len(healed),
        "details": healed,
        "checked_at": now.isoformat(),
    }


def get_system_health(db: Session) -> dict:
    """Conversation stages and dedup record statuses at a glance."""
    stages = dict(db.query(Conversation.stage, func.count(Conversation.id)).group_by(Conversation.stage).all())
    statuses = dict(db.query(DedupRecord.status, func.count(DedupRecord.id)).group_by(DedupRecord.status).all())

    return {
        "conversations": {stage.value: stages.get(stage.value, 0) for stage in Stage},
        "dedup_records": {status.value: statuses.get(status.value, 0) for status in dedup_service.DedupStatus},
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
