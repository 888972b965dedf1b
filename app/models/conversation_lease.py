from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.sql import func

from app.database import Base


class ConversationLease(Base):
    """Delivery lease, one row per conversation.

    Kept off the ``conversations`` row so taking or releasing a lease never
    waits on a delivery's uncommitted state write.
    """

    __tablename__ = "conversation_leases"

    conversation_id = Column(Uuid, ForeignKey("conversations.id"), primary_key=True)
    owner = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    fence = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
