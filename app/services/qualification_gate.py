"""Core fields first: service, then name, then nationality."""

from dataclasses import dataclass
from typing import Any, Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.schemas.known_fields import CORE_FIELDS, KnownFields
from app.services import state_service
from app.services.rule_config import CoreQuestion, RuleConfig, get_rule_config
from app.services.state_machine import Stage, advance
from app.services.state_service import ConversationSnapshot, StatePatch

logger = get_logger("qualification_gate")


@dataclass(frozen=True)
class GateQuestion:
    question_key: str
    text: str
    field_name: str
    snapshot: ConversationSnapshot


def first_missing_core(known: KnownFields) -> Optional[str]:
    for field_name in CORE_FIELDS:
        if not known.has(field_name):
            return field_name
    return None


def pick_question(
    known: KnownFields,
    snapshot: ConversationSnapshot,
    rules: RuleConfig,
) -> Optional[tuple[str, CoreQuestion]]:
    """Question for the first missing core field, or None if it may not be asked."""
    field_name = first_missing_core(known)
    if field_name is None:
        return None
    question = rules.core_questions.for_field(field_name)
    if rules.is_banned(question.key) or snapshot.was_recently_asked(question.key):
        return None
    return field_name, question


def run_gate(
    db: Session,
    conversation_id: UUID,
    updates: Mapping[str, Any],
    service_change: Optional[str] = None,
    rules: Optional[RuleConfig] = None,
) -> Optional[GateQuestion]:
    """Ask the next core question and record it in one compare-and-swap write.

    Returns None when core fields are complete, the question is banned or was
    asked recently, or the write could not land.
    """
    rules = rules or get_rule_config()
    picked: dict[str, Any] = {}

    def build_patch(snapshot: ConversationSnapshot) -> Optional[StatePatch]:
        known = snapshot.known_fields.merge_once(updates)
        if service_change:
            known = known.replace(service=service_change)
        choice = pick_question(known, snapshot, rules)
        if choice is None:
            return None
        picked["field"], picked["question"] = choice
        return StatePatch(
            stage=advance(snapshot.stage, Stage.COLLECTING_CORE),
            known_fields=known,
            last_question_key=choice[1].key,
            service_key=known.service,
            allow_service_change=bool(service_change),
        )

    result = state_service.update_with_retry(db, conversation_id, build_patch)
    if not result.ok:
        if not result.is_abandoned:
            logger.warning(
                "Gate question not recorded",
                extra={"context": {"conversation_id": str(conversation_id), "error_code": result.error_code}},
            )
        return None

    question: CoreQuestion = picked["question"]
    return GateQuestion(
        question_key=question.key,
        text=question.text,
        field_name=picked["field"],
        snapshot=result.value,
    )
