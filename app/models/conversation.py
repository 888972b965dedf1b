import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    channel = Column(Text, nullable=False, default="whatsapp")  # whatsapp, instagram, webchat
    recipient_address = Column(Text, nullable=False)

    # orchestration state, written through state_service only
    stage = Column(Text, nullable=False, default="greeting")
    known_fields = Column(JSON, nullable=False, default=dict)
    questions_asked_count = Column(Integer, nullable=False, default=0)
    last_question_key = Column(Text)
    recent_question_keys = Column(JSON, nullable=False, default=list)
    service_key = Column(Text)
    qualification_confirmed_at = Column(DateTime(timezone=True))
    handed_off_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=0)

    # delivery cooldown and operator controls; the lease lives in conversation_leases
    last_auto_reply_at = Column(DateTime(timezone=True))
    auto_reply_enabled = Column(Boolean, nullable=False, default=True)
    muted_until = Column(DateTime(timezone=True))

    # CRM display fallbacks, read only here
    contact_name = Column(Text)
    locked_service_label = Column(Text)
    nationality_on_file = Column(Text)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")
