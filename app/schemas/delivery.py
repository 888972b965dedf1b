from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class InboundMessageRequest(BaseModel):
    channel: str = "whatsapp"
    recipient_address: str = Field(min_length=1)
    message_id: str = Field(min_length=1)
    body: str = Field(min_length=1)
    contact_name: Optional[str] = None


class DeliverRequest(BaseModel):
    trigger_message_id: str = Field(min_length=1)
    action_type: str = "auto_reply"


class DeliveryResponse(BaseModel):
    conversation_id: UUID
    status: str
    idempotency_key: str
    was_duplicate: bool = False
    reply_text: Optional[str] = None
    provider_message_id: Optional[str] = None
    question_key: Optional[str] = None
    error: Optional[str] = None


class StateResponse(BaseModel):
    conversation_id: UUID
    stage: str
    known_fields: dict[str, Any]
    questions_asked_count: int
    last_question_key: Optional[str] = None
    recent_question_keys: list[str]
    service_key: Optional[str] = None
    qualification_confirmed_at: Optional[datetime] = None
    handed_off_at: Optional[datetime] = None
    version: int


class AutoReplySettings(BaseModel):
    enabled: bool = True
    muted_until: Optional[datetime] = None


class AutoReplySettingsResponse(AutoReplySettings):
    conversation_id: UUID
