from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.schemas.delivery import (
    AutoReplySettings,
    AutoReplySettingsResponse,
    DeliverRequest,
    DeliveryResponse,
    InboundMessageRequest,
    StateResponse,
)
from app.services import state_service
from app.services.channel_service import ChannelSender, get_channel_sender
from app.services.conversation_service import get_conversation, get_or_create_conversation, set_auto_reply
from app.services.delivery_service import DeliveryResult, deliver
from app.services.fallback_service import get_llm_provider
from app.services.llm import LLMProvider
from app.services.message_service import INBOUND, get_inbound_by_external_id, save_message

logger = get_logger("conversations_router")

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _to_response(conversation_id: UUID, result: DeliveryResult) -> DeliveryResponse:
    return DeliveryResponse(
        conversation_id=conversation_id,
        status=result.status.value,
        idempotency_key=result.idempotency_key,
        was_duplicate=result.was_duplicate,
        reply_text=result.reply_text,
        provider_message_id=result.provider_message_id,
        question_key=result.question_key,
        error=result.error,
    )


@router.post("/inbound", response_model=DeliveryResponse)
def handle_inbound(
    request: InboundMessageRequest,
    db: Session = Depends(get_db),
    sender: ChannelSender = Depends(get_channel_sender),
    llm_provider: Optional[LLMProvider] = Depends(get_llm_provider),
):
    """Record an inbound message and answer it."""
    conversation = get_or_create_conversation(
        db,
        channel=request.channel,
        recipient_address=request.recipient_address,
        contact_name=request.contact_name,
    )
    # redelivered webhooks reuse the stored trigger
    if get_inbound_by_external_id(db, conversation.id, request.message_id) is None:
        save_message(db, conversation.id, INBOUND, request.body, external_id=request.message_id)
    db.commit()

    result = deliver(
        db,
        conversation.id,
        request.message_id,
        sender=sender,
        llm_provider=llm_provider,
    )
    return _to_response(conversation.id, result)


@router.post("/{conversation_id}/deliver", response_model=DeliveryResponse)
def retry_delivery(
    conversation_id: UUID,
    request: DeliverRequest,
    db: Session = Depends(get_db),
    sender: ChannelSender = Depends(get_channel_sender),
    llm_provider: Optional[LLMProvider] = Depends(get_llm_provider),
):
    """Re-run delivery for a stored trigger. Safe to call repeatedly."""
    if get_conversation(db, conversation_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    result = deliver(
        db,
        conversation_id,
        request.trigger_message_id,
        action_type=request.action_type,
        sender=sender,
        llm_provider=llm_provider,
    )
    return _to_response(conversation_id, result)


@router.get("/{conversation_id}/state", response_model=StateResponse)
def get_state(conversation_id: UUID, db: Session = Depends(get_db)):
    snapshot = state_service.load(db, conversation_id)
    if not snapshot.exists:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return StateResponse(
        conversation_id=conversation_id,
        stage=snapshot.stage.value,
        known_fields=snapshot.known_fields.flat(),
        questions_asked_count=snapshot.questions_asked_count,
        last_question_key=snapshot.last_question_key,
        recent_question_keys=list(snapshot.recent_question_keys),
        service_key=snapshot.service_key,
        qualification_confirmed_at=snapshot.qualification_confirmed_at,
        handed_off_at=snapshot.handed_off_at,
        version=snapshot.version,
    )


@router.put("/{conversation_id}/auto-reply", response_model=AutoReplySettingsResponse)
def update_auto_reply(conversation_id: UUID, request: AutoReplySettings, db: Session = Depends(get_db)):
    """Turn automatic replies on or off, or mute them until a given time."""
    conversation = set_auto_reply(db, conversation_id, request.enabled, request.muted_until)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    logger.info(
        "Auto-reply settings changed",
        extra={
            "context": {
                "conversation_id": str(conversation_id),
                "enabled": conversation.auto_reply_enabled,
                "muted_until": conversation.muted_until,
            }
        },
    )
    return AutoReplySettingsResponse(
        conversation_id=conversation_id,
        enabled=conversation.auto_reply_enabled,
        muted_until=conversation.muted_until,
    )
