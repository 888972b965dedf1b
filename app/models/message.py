import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    direction = Column(Text, nullable=False)  # inbound, outbound
    body = Column(Text, nullable=False)
    external_id = Column(Text)  # provider id of the inbound trigger
    question_key = Column(Text)
    provider_message_id = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
