from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import Conversation
from app.services.state_machine import Stage


def get_conversation(db: Session, conversation_id: UUID) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def get_or_create_conversation(
    db: Session,
    channel: str,
    recipient_address: str,
    contact_name: Optional[str] = None,
) -> Conversation:
    """Find the conversation for this channel address or create it with default state."""
    conversation = (
        db.query(Conversation)
        .filter(Conversation.channel == channel, Conversation.recipient_address == recipient_address)
        .first()
    )

    if not conversation:
        now = datetime.now(timezone.utc)
        conversation = Conversation(
            channel=channel,
            recipient_address=recipient_address,
            contact_name=contact_name,
            stage=Stage.GREETING.value,
            known_fields={},
            recent_question_keys=[],
            questions_asked_count=0,
            version=0,
            auto_reply_enabled=True,
            created_at=now,
            updated_at=now,
        )
        db.add(conversation)
        db.flush()
    elif contact_name and not conversation.contact_name:
        conversation.contact_name = contact_name
        db.flush()

    return conversation


def touch_cooldown(db: Session, conversation_id: UUID, sent_at: datetime) -> None:
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {"last_auto_reply_at": sent_at}, synchronize_session=False
    )
    db.flush()


def get_last_auto_reply_at(db: Session, conversation_id: UUID) -> Optional[datetime]:
    """Read the cooldown timestamp from the database, bypassing the identity map."""
    return db.query(Conversation.last_auto_reply_at).filter(Conversation.id == conversation_id).scalar()


def set_auto_reply(
    db: Session,
    conversation_id: UUID,
    enabled: bool,
    muted_until: Optional[datetime] = None,
) -> Optional[Conversation]:
    """Operator switch for automatic replies. ``muted_until`` pauses them until that time."""
    updated = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id)
        .update({"auto_reply_enabled": enabled, "muted_until": muted_until}, synchronize_session=False)
    )
    db.commit()
    if updated == 0:
        return None
    return db.query(Conversation).filter(Conversation.id == conversation_id).populate_existing().first()
