from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import FollowupTask

logger = get_logger("task_service")

TASK_FOLLOW_UP = "follow_up"
TASK_QUALIFICATION = "qualification"
TASK_REVIEW = "review"


def create_task(
    db: Session,
    conversation_id: UUID,
    task_type: str,
    title: str,
    reason: Optional[str] = None,
    due_in_hours: int = 24,
    metadata: Optional[dict] = None,
) -> FollowupTask:
    """Create a follow-up task for a human agent."""
    now = datetime.now(timezone.utc)
    task = FollowupTask(
        conversation_id=conversation_id,
        task_type=task_type,
        title=title,
        reason=reason,
        status="open",
        due_at=now + timedelta(hours=due_in_hours),
        task_metadata=metadata or {},
        created_at=now,
    )
    db.add(task)
    db.flush()
    logger.info(
        "Follow-up task created",
        extra={"context": {"conversation_id": str(conversation_id), "task_type": task_type, "reason": reason}},
    )
    return task


def list_open_tasks(db: Session, conversation_id: UUID) -> list[FollowupTask]:
    return (
        db.query(FollowupTask)
        .filter(FollowupTask.conversation_id == conversation_id, FollowupTask.status == "open")
        .order_by(FollowupTask.created_at)
        .all()
    )
