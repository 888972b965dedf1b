"""Dialogue policy: top-level states plus per-service step machines.

``decide`` is pure. It never writes state; the orchestrator persists the
returned decision together with the extracted fields.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from app.schemas.known_fields import KnownFields
from app.services.rule_config import (
    HandoverCondition,
    PricingTable,
    RuleConfig,
    StepCondition,
    get_rule_config,
)
from app.services.state_service import ConversationSnapshot
from app.services.templating import format_price, render_template


class PolicyState(str, Enum):
    GREETING = "greeting"
    CAPTURE_NAME = "capture_name"
    IDENTIFY_SERVICE = "identify_service"
    SERVICE_FLOW = "service_flow"
    HANDOVER = "handover"
    CLOSE = "close"


class Outcome(str, Enum):
    QUESTION = "question"
    REPLY = "reply"
    NO_MATCH = "no_match"


@dataclass
class PolicyDecision:
    outcome: Outcome
    state: PolicyState
    text: str = ""
    question_key: Optional[str] = None
    needs_human: bool = False
    handover_reason: Optional[str] = None
    reply_kind: str = "answer"  # answer, quote, handover, close
    step_id: Optional[str] = None
    memory_updates: dict[str, Any] = field(default_factory=dict)


def template_values(known: KnownFields, rules: RuleConfig, **extra: Any) -> dict[str, Any]:
    values = known.flat()
    if known.service:
        values["service"] = rules.display_name(known.service) or known.service
    values.update({key: value for key, value in extra.items() if value is not None})
    return values


def nationality_matches(nationality: Optional[str], candidates) -> bool:
    if not nationality:
        return False
    value = nationality.lower()
    for candidate in candidates:
        item = candidate.lower()
        if value == item or item in value or value in item:
            return True
    return False


def condition_holds(condition: StepCondition, known: KnownFields) -> bool:
    if condition.always:
        return True
    if condition.missing is not None:
        return not known.has(condition.missing)
    field_name, expected = next(iter(condition.equals.items()))
    actual = known.get(field_name)
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.lower() == expected.lower()
    return actual == expected


def handover_applies(
    condition: HandoverCondition,
    known: KnownFields,
    turn_fields: Mapping[str, Any],
) -> bool:
    if condition.customer_requested_discount is not None:
        return bool(known.get("customer_requested_discount")) == condition.customer_requested_discount
    if condition.customer_declined is not None:
        return bool(turn_fields.get("customer_declined")) == condition.customer_declined
    return nationality_matches(known.nationality, condition.nationality_in or ())


def resolve_price(table: PricingTable, known: KnownFields) -> Optional[int]:
    """First matching nationality rule wins, then ``otherwise``."""
    for rule in table.rules:
        if not rule.matches(known.nationality):
            continue
        if rule.price is not None:
            return rule.price
        key = known.get(table.keyed_by) if table.keyed_by else None
        if key is None:
            key = table.default_key
        try:
            return rule.prices.get(int(key)) if key is not None else None
        except (TypeError, ValueError):
            return None
    return None


def _core_question(
    field_name: str,
    known: KnownFields,
    snapshot: ConversationSnapshot,
    rules: RuleConfig,
) -> Optional[PolicyDecision]:
    core = rules.core_questions.for_field(field_name)
    if snapshot.was_recently_asked(core.key):
        return None
    state = PolicyState.CAPTURE_NAME if field_name == "name" else PolicyState.IDENTIFY_SERVICE
    return PolicyDecision(
        outcome=Outcome.QUESTION,
        state=state,
        text=render_template(core.text, template_values(known, rules)),
        question_key=core.key,
    )


def _service_flow(
    known: KnownFields,
    snapshot: ConversationSnapshot,
    turn_fields: Mapping[str, Any],
    rules: RuleConfig,
) -> PolicyDecision:
    service = rules.service(known.service)
    if service is None:
        return PolicyDecision(outcome=Outcome.NO_MATCH, state=PolicyState.SERVICE_FLOW)

    values = template_values(known, rules)

    for rule in service.flow.handover_rules:
        if not handover_applies(rule.condition, known, turn_fields):
            continue
        if rule.action == "stop":
            return PolicyDecision(
                outcome=Outcome.REPLY,
                state=PolicyState.CLOSE,
                text=render_template(rules.templates.close, values),
                handover_reason=rule.reason,
                reply_kind="close",
            )
        return PolicyDecision(
            outcome=Outcome.REPLY,
            state=PolicyState.HANDOVER,
            text=render_template(rules.templates.get(rule.template), values),
            needs_human=True,
            handover_reason=rule.reason,
            reply_kind="handover",
        )

    if turn_fields.get("price_sensitive") and known.service == "business_setup":
        return PolicyDecision(
            outcome=Outcome.REPLY,
            state=PolicyState.SERVICE_FLOW,
            text=render_template(rules.templates.cheapest_offer, values),
            reply_kind="quote",
        )

    # a banned question only comes back when no later step applies
    banned: Optional[PolicyDecision] = None
    for step in service.flow.steps:
        if not condition_holds(step.when, known):
            continue

        if step.ask is not None:
            if snapshot.was_recently_asked(step.key):
                continue
            decision = PolicyDecision(
                outcome=Outcome.QUESTION,
                state=PolicyState.SERVICE_FLOW,
                text=render_template(step.ask, values),
                question_key=step.key,
                step_id=step.id,
            )
            if rules.is_banned(step.key):
                banned = banned or decision
                continue
            return decision

        response = step.respond
        step_values = values
        if response.pricing:
            table = rules.pricing[response.pricing]
            price = resolve_price(table, known)
            if price is None:
                continue
            step_values = {**values, "price": format_price(price, table.currency)}
            if table.keyed_by and not known.has(table.keyed_by):
                step_values[table.keyed_by] = table.default_key

        if response.kind == "handover":
            return PolicyDecision(
                outcome=Outcome.REPLY,
                state=PolicyState.HANDOVER,
                text=render_template(response.template, step_values),
                needs_human=True,
                handover_reason="service_handover",
                reply_kind="handover",
                step_id=step.id,
            )
        return PolicyDecision(
            outcome=Outcome.REPLY,
            state=PolicyState.SERVICE_FLOW,
            text=render_template(response.template, step_values),
            reply_kind=response.kind,
            step_id=step.id,
        )

    if banned is not None:
        return banned
    return PolicyDecision(outcome=Outcome.NO_MATCH, state=PolicyState.SERVICE_FLOW)


def current_state(known: KnownFields, is_first_message: bool) -> PolicyState:
    if known.has("service"):
        return PolicyState.SERVICE_FLOW
    if known.has("name"):
        return PolicyState.IDENTIFY_SERVICE
    if is_first_message:
        return PolicyState.GREETING
    return PolicyState.CAPTURE_NAME


def decide(
    known: KnownFields,
    snapshot: ConversationSnapshot,
    turn_fields: Optional[Mapping[str, Any]] = None,
    is_first_message: bool = False,
    rules: Optional[RuleConfig] = None,
) -> PolicyDecision:
    """Pick the next question or reply for the merged ``known`` fields."""
    rules = rules or get_rule_config()
    turn_fields = turn_fields or {}
    state = current_state(known, is_first_message)

    if state == PolicyState.SERVICE_FLOW:
        decision = _service_flow(known, snapshot, turn_fields, rules)
    elif state == PolicyState.GREETING:
        decision = PolicyDecision(
            outcome=Outcome.REPLY,
            state=PolicyState.GREETING,
            text=render_template(rules.templates.greeting, template_values(known, rules)),
        )
    else:
        decision = None
        if state == PolicyState.CAPTURE_NAME:
            decision = _core_question("name", known, snapshot, rules)
        if decision is None:
            decision = _core_question("service", known, snapshot, rules)
        if decision is None:
            decision = PolicyDecision(outcome=Outcome.NO_MATCH, state=state)

    decision.memory_updates = dict(turn_fields)
    return decision
