from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import Message

INBOUND = "inbound"
OUTBOUND = "outbound"


def save_message(
    db: Session,
    conversation_id: UUID,
    direction: str,
    body: str,
    external_id: Optional[str] = None,
    question_key: Optional[str] = None,
    provider_message_id: Optional[str] = None,
) -> Message:
    """Save message to database."""
    message = Message(
        conversation_id=conversation_id,
        direction=direction,
        body=body,
        external_id=external_id,
        question_key=question_key,
        provider_message_id=provider_message_id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def get_inbound_by_external_id(db: Session, conversation_id: UUID, external_id: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.direction == INBOUND,
            Message.external_id == external_id,
        )
        .first()
    )


def get_recent_messages(
    db: Session,
    conversation_id: UUID,
    limit: int = 10,
    exclude_id: Optional[UUID] = None,
) -> list[Message]:
    """Last ``limit`` messages, oldest first."""
    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if exclude_id is not None:
        query = query.filter(Message.id != exclude_id)
    rows = query.order_by(Message.created_at.desc()).limit(limit).all()
    return list(reversed(rows))


def outbound_bodies(messages: list[Message]) -> list[str]:
    return [message.body for message in messages if message.direction == OUTBOUND and message.body]


def inbound_bodies(messages: list[Message]) -> list[str]:
    return [message.body for message in messages if message.direction == INBOUND and message.body]
