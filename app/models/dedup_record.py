import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.sql import func

from app.database import Base


class DedupRecord(Base):
    __tablename__ = "dedup_records"
    __table_args__ = (UniqueConstraint("idempotency_key", name="uq_dedup_records_idempotency_key"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    idempotency_key = Column(Text, nullable=False)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    trigger_message_id = Column(Text, nullable=False)
    action_type = Column(Text, nullable=False, default="auto_reply")
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, SENT, FAILED
    provider_message_id = Column(Text)
    error = Column(Text)
    attempts = Column(Integer, nullable=False, default=1)
    sent_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
