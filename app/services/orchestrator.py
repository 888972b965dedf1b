"""Reply generation pipeline for one inbound trigger.

extract -> escalation keywords -> question budget -> qualification gate ->
confirmation -> dialogue policy -> loop check -> guardrails -> (fallback
generator -> loop check -> guardrails). State writes go through the CAS
helper; a write that cannot land means nothing is emitted for this turn.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import bind_conversation, get_logger
from app.models import Conversation, Message
from app.schemas.known_fields import KnownFields
from app.services import state_service, task_service
from app.services.extraction_service import ExtractionResult, detect_escalation, extract
from app.services.fallback_service import generate_fallback
from app.services.guardrail_service import validate
from app.services.llm import LLMProvider
from app.services.loop_detector import check_loop
from app.services.message_service import get_recent_messages, inbound_bodies, outbound_bodies
from app.services.policy_engine import Outcome, PolicyDecision, decide, template_values
from app.services.qualification_gate import run_gate
from app.services.rule_config import RuleConfig, get_rule_config
from app.services.state_machine import Stage, advance
from app.services.state_service import ConversationSnapshot, StatePatch
from app.services.templating import render_template

logger = get_logger("orchestrator")

SOURCE_GATE = "gate"
SOURCE_CONFIRMATION = "confirmation"
SOURCE_POLICY = "policy"
SOURCE_FALLBACK = "fallback"
SOURCE_BUDGET = "budget_handoff"
SOURCE_LOOP = "loop_clarify"
SOURCE_BLOCKED = "guardrail_fallback"
SOURCE_HUMAN = "human_attention"
SOURCE_NONE = "none"


@dataclass
class OrchestratorResult:
    reply_text: str
    source: str
    question_key: Optional[str] = None
    should_escalate: bool = False
    handover_reason: Optional[str] = None
    stage: Optional[Stage] = None
    date_hint: Optional[str] = None
    memory_updates: dict[str, Any] = field(default_factory=dict)
    guardrail_rewrites: tuple[str, ...] = ()

    @property
    def is_question(self) -> bool:
        return self.question_key is not None


@dataclass
class _Turn:
    conversation: Conversation
    snapshot: ConversationSnapshot
    text: str
    history: list[Message]
    extraction: ExtractionResult
    known: KnownFields
    rules: RuleConfig

    @property
    def outbound(self) -> list[str]:
        return outbound_bodies(self.history)

    @property
    def is_first_message(self) -> bool:
        return not self.outbound

    @property
    def updates(self) -> dict[str, Any]:
        return self.extraction.persistable


def _merge(snapshot: ConversationSnapshot, turn: _Turn) -> KnownFields:
    known = snapshot.known_fields.merge_once(turn.updates)
    if turn.extraction.service_change:
        known = known.replace(service=turn.extraction.service_change)
    return known


def _persist(
    db: Session,
    turn: _Turn,
    stage: Optional[Stage] = None,
    question_key: Optional[str] = None,
    confirmed: bool = False,
    handed_off: bool = False,
) -> Optional[ConversationSnapshot]:
    """Write the turn's fields (and question/stage) with compare-and-swap retries."""
    now = datetime.now(timezone.utc)

    def build_patch(snapshot: ConversationSnapshot) -> Optional[StatePatch]:
        if snapshot.stage == Stage.HANDED_OFF:
            return None
        if question_key and snapshot.was_recently_asked(question_key):
            return None
        known = _merge(snapshot, turn)
        return StatePatch(
            stage=advance(snapshot.stage, stage) if stage else None,
            known_fields=known,
            last_question_key=question_key,
            service_key=known.service,
            allow_service_change=bool(turn.extraction.service_change),
            qualification_confirmed_at=now if confirmed else None,
            handed_off_at=now if handed_off else None,
        )

    result = state_service.update_with_retry(db, turn.snapshot.conversation_id, build_patch)
    if not result.ok:
        logger.warning(
            "Turn state not persisted",
            extra={
                "context": {
                    "conversation_id": str(turn.snapshot.conversation_id),
                    "error_code": result.error_code,
                    "error": result.error,
                }
            },
        )
        return None
    return result.value


def _canned_fallback(turn: _Turn) -> str:
    return render_template(turn.rules.templates.fallback_if_confused, template_values(turn.known, turn.rules))


def _finalize(
    db: Session,
    turn: _Turn,
    text: str,
    source: str,
    previous_question_key: Optional[str],
    check_loops: bool,
) -> tuple[str, str, bool, Optional[str], tuple[str, ...]]:
    """Loop check and guardrails. Returns (text, source, blocked, reason, rewrites)."""
    if check_loops:
        loop = check_loop(text, turn.outbound)
        if loop.is_loop:
            logger.info(
                "Near-duplicate reply replaced with clarification",
                extra={"context": {"conversation_id": str(turn.snapshot.conversation_id), "score": loop.score}},
            )
            text = render_template(turn.rules.templates.anti_loop_clarify, template_values(turn.known, turn.rules))
            source = SOURCE_LOOP

    verdict = validate(
        text,
        last_question_text=turn.rules.question_text(previous_question_key),
        recent_outbound=turn.outbound,
        rules=turn.rules,
    )
    if verdict.blocked:
        task_service.create_task(
            db,
            turn.snapshot.conversation_id,
            task_service.TASK_REVIEW,
            "Review conversation: reply blocked by guardrails",
            reason=verdict.reason,
            metadata={"check": verdict.check, "source": source},
        )
        return _canned_fallback(turn), SOURCE_BLOCKED, True, verdict.reason, verdict.rewrites
    return verdict.text, source, False, None, verdict.rewrites


def _date_hint_task(db: Session, turn: _Turn) -> None:
    if turn.extraction.date_hint:
        task_service.create_task(
            db,
            turn.snapshot.conversation_id,
            task_service.TASK_FOLLOW_UP,
            f"Confirm date with customer: \"{turn.extraction.date_hint}\"",
            reason="relative_date",
            metadata={"message": turn.text[:200]},
        )


def _question_budget_handoff(db: Session, turn: _Turn) -> OrchestratorResult:
    persisted = _persist(db, turn, stage=Stage.HANDED_OFF, handed_off=True)
    if persisted is None:
        return OrchestratorResult(reply_text="", source=SOURCE_NONE, should_escalate=True)

    task_service.create_task(
        db,
        turn.snapshot.conversation_id,
        task_service.TASK_QUALIFICATION,
        "Qualified lead: call customer and send quotation",
        reason="question_budget_exceeded",
        metadata={"known_fields": turn.known.flat()},
    )
    text, source, _, _, rewrites = _finalize(
        db, turn, turn.rules.templates.budget_handoff, SOURCE_BUDGET, turn.snapshot.last_question_key, False
    )
    return OrchestratorResult(
        reply_text=text,
        source=source,
        should_escalate=True,
        handover_reason="question_budget_exceeded",
        stage=persisted.stage,
        memory_updates=turn.updates,
        guardrail_rewrites=rewrites,
    )


def _human_attention(db: Session, turn: _Turn, category: str) -> OrchestratorResult:
    persisted = _persist(db, turn, stage=Stage.HANDED_OFF, handed_off=True)
    if persisted is None:
        return OrchestratorResult(reply_text="", source=SOURCE_NONE, should_escalate=True)

    task_service.create_task(
        db,
        turn.snapshot.conversation_id,
        task_service.TASK_FOLLOW_UP,
        "Customer needs human attention",
        reason="needs_human_attention",
        metadata={"category": category, "message": turn.text[:200]},
    )
    text, source, _, _, rewrites = _finalize(
        db, turn, _canned_fallback(turn), SOURCE_HUMAN, turn.snapshot.last_question_key, False
    )
    return OrchestratorResult(
        reply_text=text,
        source=source,
        should_escalate=True,
        handover_reason="needs_human_attention",
        stage=persisted.stage,
        memory_updates=turn.updates,
        guardrail_rewrites=rewrites,
    )


def _gate(db: Session, turn: _Turn) -> Optional[OrchestratorResult]:
    gate = run_gate(
        db,
        turn.snapshot.conversation_id,
        turn.updates,
        service_change=turn.extraction.service_change,
        rules=turn.rules,
    )
    if gate is None:
        return None

    text = gate.text
    if turn.is_first_message:
        text = f"{turn.rules.templates.greeting}\n\n{text}"
    text, source, blocked, reason, rewrites = _finalize(
        db, turn, text, SOURCE_GATE, turn.snapshot.last_question_key, False
    )
    return OrchestratorResult(
        reply_text=text,
        source=source,
        question_key=None if blocked else gate.question_key,
        should_escalate=blocked,
        handover_reason=reason,
        stage=gate.snapshot.stage,
        memory_updates=turn.updates,
        guardrail_rewrites=rewrites,
    )


def _confirmation(db: Session, turn: _Turn) -> Optional[OrchestratorResult]:
    persisted = _persist(db, turn, stage=Stage.COLLECTING_DETAILS, confirmed=True)
    if persisted is None:
        return None
    values = template_values(turn.known, turn.rules)
    text = render_template(turn.rules.templates.qualification_confirmation, values)
    text, source, blocked, reason, rewrites = _finalize(
        db, turn, text, SOURCE_CONFIRMATION, turn.snapshot.last_question_key, True
    )
    return OrchestratorResult(
        reply_text=text,
        source=source,
        should_escalate=blocked,
        handover_reason=reason,
        stage=persisted.stage,
        memory_updates=turn.updates,
        guardrail_rewrites=rewrites,
    )


def _policy_reply(db: Session, turn: _Turn, decision: PolicyDecision) -> OrchestratorResult:
    if decision.needs_human:
        target = Stage.HANDED_OFF
    elif decision.reply_kind == "quote":
        target = Stage.READY_FOR_QUOTE
    else:
        target = Stage.COLLECTING_DETAILS
    text, source, blocked, reason, rewrites = _finalize(
        db, turn, decision.text, SOURCE_POLICY, turn.snapshot.last_question_key, True
    )
    persisted = _persist(db, turn, stage=target, handed_off=decision.needs_human)
    if persisted is None:
        return OrchestratorResult(reply_text="", source=SOURCE_NONE)

    if decision.needs_human:
        task_service.create_task(
            db,
            turn.snapshot.conversation_id,
            task_service.TASK_FOLLOW_UP,
            "Customer handed over to a human agent",
            reason=decision.handover_reason,
            metadata={"known_fields": turn.known.flat()},
        )
    return OrchestratorResult(
        reply_text=text,
        source=source,
        should_escalate=decision.needs_human or blocked,
        handover_reason=decision.handover_reason or reason,
        stage=persisted.stage,
        memory_updates=decision.memory_updates,
        guardrail_rewrites=rewrites,
    )


def _policy_question(db: Session, turn: _Turn, decision: PolicyDecision) -> OrchestratorResult:
    text, source, blocked, reason, rewrites = _finalize(
        db, turn, decision.text, SOURCE_POLICY, turn.snapshot.last_question_key, False
    )
    # a blocked question is replaced by the canned reply and is not counted as asked
    persisted = _persist(
        db, turn, stage=Stage.COLLECTING_DETAILS, question_key=None if blocked else decision.question_key
    )
    if persisted is None:
        return OrchestratorResult(reply_text="", source=SOURCE_NONE)
    return OrchestratorResult(
        reply_text=text,
        source=source,
        question_key=None if blocked else decision.question_key,
        should_escalate=blocked,
        handover_reason=reason,
        stage=persisted.stage,
        memory_updates=decision.memory_updates,
        guardrail_rewrites=rewrites,
    )


def _fallback(db: Session, turn: _Turn, provider: Optional[LLMProvider]) -> OrchestratorResult:
    generated = generate_fallback(turn.text, turn.history, turn.known, turn.snapshot, provider=provider, rules=turn.rules)
    text, source, blocked, reason, rewrites = _finalize(
        db, turn, generated.text, SOURCE_FALLBACK, turn.snapshot.last_question_key, True
    )
    persisted = _persist(db, turn)
    if persisted is None:
        return OrchestratorResult(reply_text="", source=SOURCE_NONE)
    return OrchestratorResult(
        reply_text=text,
        source=source,
        should_escalate=blocked,
        handover_reason=reason,
        stage=persisted.stage,
        memory_updates=turn.updates,
        guardrail_rewrites=rewrites,
    )


def generate_reply(
    db: Session,
    conversation: Conversation,
    trigger: Message,
    llm_provider: Optional[LLMProvider] = None,
    rules: Optional[RuleConfig] = None,
) -> OrchestratorResult:
    """Produce the reply for ``trigger`` (an inbound message already stored)."""
    rules = rules or get_rule_config()
    log = bind_conversation(logger, conversation.id, trigger_id=str(trigger.id))

    snapshot = state_service.load(db, conversation.id)
    if snapshot.stage == Stage.HANDED_OFF:
        log.info("Conversation handed off, staying silent")
        return OrchestratorResult(
            reply_text="",
            source=SOURCE_NONE,
            should_escalate=True,
            handover_reason="waiting_for_human",
            stage=snapshot.stage,
        )

    history = get_recent_messages(db, conversation.id, limit=settings.history_limit, exclude_id=trigger.id)
    extraction = extract(
        trigger.body,
        snapshot.known_fields,
        history=inbound_bodies(history),
        last_question_key=snapshot.last_question_key,
        rules=rules,
    )
    turn = _Turn(
        conversation=conversation,
        snapshot=snapshot,
        text=trigger.body,
        history=history,
        extraction=extraction,
        known=KnownFields(),
        rules=rules,
    )
    turn.known = _merge(snapshot, turn)
    _date_hint_task(db, turn)

    escalation = detect_escalation(trigger.body)
    if escalation:
        log.warning("Message needs a person, handing off", context={"category": escalation})
        result = _human_attention(db, turn, escalation)
    elif snapshot.questions_asked_count >= settings.question_cap:
        result = _question_budget_handoff(db, turn)
    else:
        result = None
        if turn.known.missing_core():
            result = _gate(db, turn)
        elif snapshot.qualification_confirmed_at is None:
            result = _confirmation(db, turn)

        if result is None:
            decision = decide(
                turn.known,
                snapshot,
                turn_fields=extraction.fields,
                is_first_message=turn.is_first_message,
                rules=rules,
            )
            if decision.outcome == Outcome.QUESTION and rules.is_banned(decision.question_key):
                log.warning("Policy picked a banned question, deferring", context={"question_key": decision.question_key})
                decision.outcome = Outcome.NO_MATCH

            if decision.outcome == Outcome.QUESTION:
                result = _policy_question(db, turn, decision)
            elif decision.outcome == Outcome.REPLY:
                result = _policy_reply(db, turn, decision)
            else:
                result = _fallback(db, turn, llm_provider)

    result.date_hint = extraction.date_hint
    log.info(
        "Reply generated",
        context={
            "source": result.source,
            "question_key": result.question_key,
            "should_escalate": result.should_escalate,
            "stage": result.stage.value if result.stage else None,
            "extracted": sorted(extraction.fields),
        },
    )
    return result
