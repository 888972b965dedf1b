"""Generate-and-send for one trigger, at most one recorded successful send per key.

Order of checks: dedup record, auto-reply switch and mute, cooldown, lease,
cooldown again under the lease, PENDING record, generation, fence, channel
send. The lease is released on every exit path once taken.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import bind_conversation, get_logger
from app.services import dedup_service, task_service
from app.services.channel_service import ChannelSender, SendResult, get_channel_sender
from app.services.conversation_service import get_conversation, get_last_auto_reply_at, touch_cooldown
from app.services.dedup_service import ACTION_AUTO_REPLY, DedupStatus, DuplicateKeyError
from app.services.fallback_service import normalize_generated_text
from app.services.llm import LLMProvider
from app.services.lock_service import LockStore, LockUnavailableError, get_lock_store
from app.services.message_service import OUTBOUND, get_inbound_by_external_id, save_message
from app.services.orchestrator import generate_reply

logger = get_logger("delivery_service")


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DUPLICATE = "duplicate"
    BUSY = "busy"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    SKIPPED_LOCKED = "skipped_locked"
    SKIPPED_DISABLED = "skipped_disabled"
    SKIPPED_MUTED = "skipped_muted"
    SKIPPED_NO_CONTENT = "skipped_no_content"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class DeliveryResult:
    status: DeliveryStatus
    idempotency_key: str
    was_duplicate: bool = False
    reply_text: Optional[str] = None
    provider_message_id: Optional[str] = None
    question_key: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.DUPLICATE)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def in_cooldown(last_auto_reply_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    last = _as_utc(last_auto_reply_at)
    if last is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - last < timedelta(seconds=settings.send_cooldown_seconds)


def is_muted(muted_until: Optional[datetime], now: Optional[datetime] = None) -> bool:
    until = _as_utc(muted_until)
    if until is None:
        return False
    return until > (now or datetime.now(timezone.utc))


def _claim_record(db: Session, key: str, conversation_id: UUID, trigger_message_id: str, action_type: str):
    """Create the PENDING record or reopen a FAILED one. Returns a status to bail out with, or None."""
    existing = dedup_service.get_record(db, key)
    if existing is None:
        try:
            dedup_service.create_pending(
                db,
                idempotency_key=key,
                conversation_id=conversation_id,
                trigger_message_id=trigger_message_id,
                action_type=action_type,
            )
        except DuplicateKeyError:
            existing = dedup_service.get_record(db, key)
            if existing is not None and existing.status == DedupStatus.SENT.value:
                return DeliveryStatus.DUPLICATE
            return DeliveryStatus.BUSY
        return None

    if existing.status == DedupStatus.SENT.value:
        return DeliveryStatus.DUPLICATE
    if existing.status == DedupStatus.FAILED.value and dedup_service.reopen_failed(db, key):
        return None
    return DeliveryStatus.BUSY


def deliver(
    db: Session,
    conversation_id: UUID,
    trigger_message_id: str,
    action_type: str = ACTION_AUTO_REPLY,
    sender: Optional[ChannelSender] = None,
    llm_provider: Optional[LLMProvider] = None,
    lock_store: Optional[LockStore] = None,
) -> DeliveryResult:
    """Generate and send the reply to inbound ``trigger_message_id`` on a conversation."""
    key = dedup_service.build_idempotency_key(conversation_id, trigger_message_id, action_type)
    log = bind_conversation(logger, conversation_id, trigger_message_id=trigger_message_id, idempotency_key=key)

    existing = dedup_service.get_record(db, key)
    if existing is not None and existing.status == DedupStatus.SENT.value:
        log.info("Trigger already answered")
        return DeliveryResult(
            status=DeliveryStatus.DUPLICATE,
            idempotency_key=key,
            was_duplicate=True,
            provider_message_id=existing.provider_message_id,
        )
    if existing is not None and existing.status == DedupStatus.PENDING.value:
        log.info("Trigger in flight elsewhere")
        return DeliveryResult(status=DeliveryStatus.BUSY, idempotency_key=key, was_duplicate=True)

    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        log.warning("Conversation not found")
        return DeliveryResult(status=DeliveryStatus.NOT_FOUND, idempotency_key=key, error="conversation_not_found")

    if conversation.auto_reply_enabled is False:
        log.info("Automatic replies disabled for conversation")
        return DeliveryResult(status=DeliveryStatus.SKIPPED_DISABLED, idempotency_key=key)
    if is_muted(conversation.muted_until):
        log.info("Conversation muted", context={"muted_until": conversation.muted_until})
        return DeliveryResult(status=DeliveryStatus.SKIPPED_MUTED, idempotency_key=key)

    if in_cooldown(conversation.last_auto_reply_at):
        log.info("Inside send cooldown", context={"last_auto_reply_at": conversation.last_auto_reply_at})
        return DeliveryResult(status=DeliveryStatus.SKIPPED_COOLDOWN, idempotency_key=key)

    lock_store = lock_store or get_lock_store(db)
    try:
        lease = lock_store.acquire(conversation_id)
    except LockUnavailableError as e:
        log.error("Lock store unavailable", context={"error": str(e)})
        return DeliveryResult(status=DeliveryStatus.SKIPPED_LOCKED, idempotency_key=key, error="lock_unavailable")
    if lease is None:
        log.info("Conversation locked by another delivery")
        return DeliveryResult(status=DeliveryStatus.SKIPPED_LOCKED, idempotency_key=key)

    claimed = False
    try:
        # a delivery that held the lease before us may have just sent
        last_auto_reply_at = get_last_auto_reply_at(db, conversation_id)
        if in_cooldown(last_auto_reply_at):
            log.info("Inside send cooldown after lease", context={"last_auto_reply_at": last_auto_reply_at})
            return DeliveryResult(status=DeliveryStatus.SKIPPED_COOLDOWN, idempotency_key=key)

        trigger = get_inbound_by_external_id(db, conversation_id, trigger_message_id)
        if trigger is None:
            log.warning("Trigger message not found")
            return DeliveryResult(status=DeliveryStatus.NOT_FOUND, idempotency_key=key, error="trigger_not_found")

        bail = _claim_record(db, key, conversation_id, trigger_message_id, action_type)
        if bail is not None:
            log.info("Dedup record already claimed", context={"status": bail.value})
            return DeliveryResult(status=bail, idempotency_key=key, was_duplicate=True)
        claimed = True

        reply = generate_reply(db, conversation, trigger, llm_provider=llm_provider)
        text = normalize_generated_text(reply.reply_text)
        if not text:
            dedup_service.mark_failed(db, key, "no_content")
            log.info("Nothing to send", context={"source": reply.source, "reason": reply.handover_reason})
            return DeliveryResult(
                status=DeliveryStatus.SKIPPED_NO_CONTENT,
                idempotency_key=key,
                source=reply.source,
                error="no_content",
            )

        if not lock_store.is_current(lease):
            db.rollback()
            dedup_service.mark_failed(db, key, "lease_lost")
            log.warning("Lease lost before send", context={"fence": lease.fence})
            return DeliveryResult(status=DeliveryStatus.FAILED, idempotency_key=key, error="lease_lost")

        sender = sender or get_channel_sender()
        sent: SendResult = sender.send_text(
            conversation.recipient_address,
            text,
            provider=conversation.channel,
            idempotency_key=key,
        )
        if not sent.success:
            db.rollback()
            dedup_service.mark_failed(db, key, sent.error or "send_failed")
            log.warning("Channel send failed", context={"error": sent.error})
            return DeliveryResult(
                status=DeliveryStatus.FAILED,
                idempotency_key=key,
                reply_text=text,
                source=reply.source,
                error=sent.error or "send_failed",
            )

        now = datetime.now(timezone.utc)
        touch_cooldown(db, conversation_id, now)
        save_message(
            db,
            conversation_id,
            OUTBOUND,
            text,
            question_key=reply.question_key,
            provider_message_id=sent.provider_message_id,
        )
        if not dedup_service.mark_sent(db, key, sent.provider_message_id):
            log.error("Sent but dedup record was no longer PENDING")
        log.info(
            "Reply delivered",
            context={
                "source": reply.source,
                "question_key": reply.question_key,
                "provider_message_id": sent.provider_message_id,
                "fence": lease.fence,
            },
        )
        return DeliveryResult(
            status=DeliveryStatus.SENT,
            idempotency_key=key,
            reply_text=text,
            provider_message_id=sent.provider_message_id,
            question_key=reply.question_key,
            source=reply.source,
        )
    except Exception as e:
        log.error("Delivery failed", context={"error": str(e)}, exc_info=True)
        db.rollback()
        if claimed:
            dedup_service.mark_failed(db, key, f"exception: {e}")
            task_service.create_task(
                db,
                conversation_id,
                task_service.TASK_REVIEW,
                "Review conversation: automatic reply failed",
                reason="orchestrator_error",
                metadata={"error": str(e)[:500], "trigger_message_id": trigger_message_id},
            )
            db.commit()
        return DeliveryResult(status=DeliveryStatus.FAILED, idempotency_key=key, error=str(e))
    finally:
        lock_store.release(lease)
