"""Pre-send validation for every candidate reply, deterministic or generated.

Checks run in a fixed order. Rewrites keep going through the remaining
checks; a hard rejection stops immediately and its reason is reported.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

from app.config import settings
from app.logging_config import get_logger
from app.services.rule_config import RuleConfig, get_rule_config
from app.services.similarity import text_similarity

logger = get_logger("guardrail_service")

CHECK_FORBIDDEN = "forbidden_phrase"
CHECK_QUESTION_CAP = "question_cap"
CHECK_ALREADY_ASKED = "already_asked"
CHECK_OVERREACH = "overreach"
CHECK_REASONING = "reasoning_leak"

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class GuardrailVerdict:
    text: str
    ok: bool
    blocked: bool = False
    reason: Optional[str] = None
    check: Optional[str] = None
    rewrites: tuple[str, ...] = field(default_factory=tuple)

    @property
    def rewritten(self) -> bool:
        return bool(self.rewrites)


def split_sentences(text: str) -> list[str]:
    return [part for part in _SENTENCE_SPLIT.split((text or "").strip()) if part]


def question_sentences(text: str) -> list[str]:
    return [sentence for sentence in split_sentences(text) if "?" in sentence]


def truncate_questions(text: str, max_questions: int) -> str:
    """Cut right after the ``max_questions``-th question mark."""
    seen = 0
    for index, char in enumerate(text):
        if char == "?":
            seen += 1
            if seen == max_questions:
                return text[: index + 1].rstrip()
    return text


def _replace_case_insensitive(text: str, phrase: str, replacement: str) -> str:
    return re.sub(re.escape(phrase), replacement, text, flags=re.IGNORECASE)


def _was_asked(question: str, previous: Sequence[str], threshold: float) -> bool:
    candidate = question.lower().strip()
    for body in previous:
        if not body:
            continue
        targets = [body, *question_sentences(body)]
        for target in targets:
            if candidate == target.lower().strip() or text_similarity(candidate, target) > threshold:
                return True
    return False


def validate(
    text: str,
    last_question_text: Optional[str] = None,
    recent_outbound: Sequence[str] = (),
    rules: Optional[RuleConfig] = None,
    max_questions: Optional[int] = None,
    threshold: Optional[float] = None,
) -> GuardrailVerdict:
    rules = rules or get_rule_config()
    guardrails = rules.guardrails
    max_questions = max_questions or settings.max_questions_per_message or guardrails.max_questions_per_message
    threshold = settings.similarity_threshold if threshold is None else threshold
    window = list(recent_outbound)[-settings.no_repeat_window :] if settings.no_repeat_window else []

    candidate = (text or "").strip()
    rewrites: list[str] = []

    def reject(check: str, reason: str) -> GuardrailVerdict:
        logger.info("Reply rejected by guardrail", extra={"context": {"check": check, "reason": reason}})
        return GuardrailVerdict(text="", ok=False, blocked=True, reason=reason, check=check, rewrites=tuple(rewrites))

    # 1. forbidden phrases
    for entry in guardrails.forbidden_phrases:
        if entry.phrase.lower() not in candidate.lower():
            continue
        if entry.rewrite is None:
            return reject(CHECK_FORBIDDEN, f"Contains forbidden phrase: {entry.phrase}")
        candidate = _replace_case_insensitive(candidate, entry.phrase, entry.rewrite)
        rewrites.append(CHECK_FORBIDDEN)

    # 2. question cap
    if candidate.count("?") > max_questions:
        candidate = truncate_questions(candidate, max_questions)
        rewrites.append(CHECK_QUESTION_CAP)

    # 3. already asked
    previous = [*window]
    if last_question_text:
        previous.append(last_question_text)
    repeated = [question for question in question_sentences(candidate) if _was_asked(question, previous, threshold)]
    if repeated:
        remaining = [sentence for sentence in split_sentences(candidate) if sentence not in repeated]
        candidate = " ".join(remaining).strip()
        if not candidate:
            return reject(CHECK_ALREADY_ASKED, "Only repeats a question that was already asked")
        rewrites.append(CHECK_ALREADY_ASKED)

    # 4. price / guarantee overreach
    for entry in guardrails.overreach_patterns:
        rewritten = re.sub(entry.pattern, entry.rewrite, candidate, flags=re.IGNORECASE)
        if rewritten != candidate:
            candidate = rewritten
            rewrites.append(CHECK_OVERREACH)

    # 5. internal reasoning
    for pattern in guardrails.reasoning_patterns:
        if re.search(pattern, candidate, flags=re.IGNORECASE):
            return reject(CHECK_REASONING, "Contains internal reasoning")

    if not candidate:
        return reject("empty", "Nothing left to send")

    return GuardrailVerdict(
        text=candidate,
        ok=not rewrites,
        reason=rewrites[0] if rewrites else None,
        check=rewrites[0] if rewrites else None,
        rewrites=tuple(rewrites),
    )
