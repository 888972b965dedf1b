"""Versioned conversation state with compare-and-swap writes."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Conversation
from app.schemas.known_fields import KnownFields
from app.services.result import ABANDONED, INVALID_TRANSITION, NOT_FOUND, SERVICE_LOCKED, VERSION_CONFLICT, Result
from app.services.state_machine import Stage, can_transition

logger = get_logger("state_service")


@dataclass(frozen=True)
class ConversationSnapshot:
    conversation_id: UUID
    exists: bool = False
    stage: Stage = Stage.GREETING
    known_fields: KnownFields = field(default_factory=KnownFields)
    questions_asked_count: int = 0
    last_question_key: Optional[str] = None
    recent_question_keys: tuple[str, ...] = ()
    service_key: Optional[str] = None
    qualification_confirmed_at: Optional[datetime] = None
    handed_off_at: Optional[datetime] = None
    version: int = 0
    contact_name: Optional[str] = None
    locked_service_label: Optional[str] = None
    nationality_on_file: Optional[str] = None

    def was_recently_asked(self, question_key: str) -> bool:
        return question_key == self.last_question_key or question_key in self.recent_question_keys


@dataclass
class StatePatch:
    """Partial write. ``None`` means "leave as is"."""

    stage: Optional[Stage] = None
    known_fields: Optional[KnownFields] = None
    last_question_key: Optional[str] = None
    service_key: Optional[str] = None
    allow_service_change: bool = False
    qualification_confirmed_at: Optional[datetime] = None
    handed_off_at: Optional[datetime] = None


def _snapshot(conversation: Conversation) -> ConversationSnapshot:
    return ConversationSnapshot(
        conversation_id=conversation.id,
        exists=True,
        stage=Stage(conversation.stage or Stage.GREETING.value),
        known_fields=KnownFields.from_stored(conversation.known_fields),
        questions_asked_count=conversation.questions_asked_count or 0,
        last_question_key=conversation.last_question_key,
        recent_question_keys=tuple(conversation.recent_question_keys or ()),
        service_key=conversation.service_key,
        qualification_confirmed_at=conversation.qualification_confirmed_at,
        handed_off_at=conversation.handed_off_at,
        version=conversation.version or 0,
        contact_name=conversation.contact_name,
        locked_service_label=conversation.locked_service_label,
        nationality_on_file=conversation.nationality_on_file,
    )


def _fetch(db: Session, conversation_id: UUID) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).populate_existing().first()


def load(db: Session, conversation_id: UUID) -> ConversationSnapshot:
    """Read the current state. A missing conversation yields the default state."""
    conversation = _fetch(db, conversation_id)
    if conversation is None:
        return ConversationSnapshot(conversation_id=conversation_id)
    return _snapshot(conversation)


def update(
    db: Session,
    conversation_id: UUID,
    patch: StatePatch,
    expected_version: Optional[int] = None,
) -> Result[ConversationSnapshot]:
    """Apply ``patch`` and bump the version.

    With ``expected_version`` the write only lands if the stored version still
    matches; otherwise nothing is applied and ``version_conflict`` is returned.
    The question counter is derived here: it moves iff ``last_question_key``
    changes to a new value.
    """
    conversation = _fetch(db, conversation_id)
    if conversation is None:
        return Result.failure(f"Conversation {conversation_id} not found", NOT_FOUND)

    current = _snapshot(conversation)
    base_version = current.version if expected_version is None else expected_version
    if base_version != current.version:
        return Result.failure(
            f"Stale version {expected_version}, stored {current.version}",
            VERSION_CONFLICT,
        )

    values: dict = {}

    if patch.stage is not None and patch.stage != current.stage:
        if not can_transition(current.stage, patch.stage):
            return Result.failure(
                f"Invalid transition: {current.stage.value} -> {patch.stage.value}",
                INVALID_TRANSITION,
            )
        values["stage"] = patch.stage.value

    if patch.known_fields is not None:
        values["known_fields"] = patch.known_fields.to_stored()

    if patch.service_key is not None and patch.service_key != current.service_key:
        if current.service_key and not patch.allow_service_change:
            return Result.failure(
                f"Service is locked to {current.service_key}",
                SERVICE_LOCKED,
            )
        values["service_key"] = patch.service_key

    if patch.last_question_key and patch.last_question_key != current.last_question_key:
        window = max(settings.no_repeat_window, 1)
        recent = [*current.recent_question_keys, patch.last_question_key][-window:]
        values["last_question_key"] = patch.last_question_key
        values["recent_question_keys"] = recent
        values["questions_asked_count"] = current.questions_asked_count + 1

    if patch.qualification_confirmed_at is not None and current.qualification_confirmed_at is None:
        values["qualification_confirmed_at"] = patch.qualification_confirmed_at

    if patch.handed_off_at is not None and current.handed_off_at is None:
        values["handed_off_at"] = patch.handed_off_at

    values["version"] = base_version + 1
    values["updated_at"] = datetime.now(timezone.utc)

    updated = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.version == base_version)
        .update(values, synchronize_session=False)
    )
    if updated == 0:
        return Result.failure(f"Version {base_version} was superseded", VERSION_CONFLICT)

    db.flush()
    db.refresh(conversation)
    return Result.success(_snapshot(conversation))


def update_with_retry(
    db: Session,
    conversation_id: UUID,
    build_patch: Callable[[ConversationSnapshot], Optional[StatePatch]],
    max_attempts: Optional[int] = None,
) -> Result[ConversationSnapshot]:
    """Reload, rebuild the patch and compare-and-swap until it lands.

    ``build_patch`` sees a fresh snapshot on every attempt and returns ``None``
    when the change no longer applies. Gives up with ``version_conflict``
    after ``max_attempts``.
    """
    attempts = max_attempts or settings.cas_max_attempts
    for attempt in range(1, attempts + 1):
        snapshot = load(db, conversation_id)
        if not snapshot.exists:
            return Result.failure(f"Conversation {conversation_id} not found", NOT_FOUND)

        patch = build_patch(snapshot)
        if patch is None:
            return Result.failure("Change no longer applicable", ABANDONED)

        result = update(db, conversation_id, patch, expected_version=snapshot.version)
        if not result.is_conflict:
            return result

        logger.warning(
            "State write lost the race, retrying",
            extra={"context": {"conversation_id": str(conversation_id), "attempt": attempt}},
        )

    return Result.failure(f"Gave up after {attempts} attempts", VERSION_CONFLICT)
