"""Free-text fallback when the dialogue policy has nothing applicable.

The completion output is untrusted: callers run it through the guardrail
validator like any other candidate. Failures never propagate; the fixed
fallback text is returned instead.
"""

import json
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from app.config import settings
from app.logging_config import get_logger
from app.models import Message
from app.schemas.known_fields import KnownFields
from app.services.llm import LLMError, LLMProvider, OpenAIProvider
from app.services.rule_config import RuleConfig, get_rule_config
from app.services.state_service import ConversationSnapshot

logger = get_logger("fallback_service")

_llm_provider: Optional[LLMProvider] = None

_JSON_REPLY_KEYS = ("reply", "message", "text", "response")


@dataclass(frozen=True)
class FallbackResult:
    text: str
    used_llm: bool
    error: Optional[str] = None


def get_llm_provider() -> Optional[LLMProvider]:
    """Lazily build the provider; ``None`` when no API key is configured."""
    global _llm_provider
    if _llm_provider is None and settings.openai_api_key:
        _llm_provider = OpenAIProvider(api_key=settings.openai_api_key, default_model=settings.llm_model)
    return _llm_provider


def normalize_generated_text(raw: str) -> str:
    """Strip code fences and unwrap ``{"reply": "..."}`` shaped output."""
    text = (raw or "").strip()
    text = re.sub(r"^```(?:json)?\s*|\s*```$", "", text).strip()
    if text.startswith("{") and text.endswith("}"):
        try:
            data = json.loads(text)
        except ValueError:
            return ""
        if isinstance(data, dict):
            for key in _JSON_REPLY_KEYS:
                value = data.get(key)
                if isinstance(value, str):
                    return value.strip()
        return ""
    return text


def display_fields(known: KnownFields, snapshot: ConversationSnapshot, rules: RuleConfig) -> dict[str, str]:
    """Known fields for the prompt, falling back to CRM values when missing."""
    fields = {key: str(value) for key, value in known.flat().items() if not isinstance(value, bool)}
    service = rules.display_name(known.service) or snapshot.locked_service_label
    name = known.name or snapshot.contact_name
    nationality = known.nationality or snapshot.nationality_on_file
    if service:
        fields["service"] = service
    if name:
        fields["name"] = name
    if nationality:
        fields["nationality"] = nationality
    return fields


def build_system_prompt(known: KnownFields, rules: RuleConfig) -> str:
    brand = rules.brand
    service = rules.service(known.service)
    if service:
        facts = [f"- {service.display_name}: {service.facts}"]
    else:
        facts = [f"- {item.display_name}: {item.facts}" for item in rules.services.values() if item.facts]
    forbidden = ", ".join(f'"{entry.phrase}"' for entry in rules.guardrails.forbidden_phrases)

    return "\n".join(
        [
            f"You are {brand.agent_name}, a sales assistant for {brand.company} in the {brand.region}.",
            "You help customers with visas and business setup over WhatsApp.",
            "",
            "Rules:",
            f"- Ask at most {rules.guardrails.max_questions_per_message} question per message.",
            "- Never ask again for details the customer already gave (see Known details).",
            "- Never promise or guarantee approvals, timelines or outcomes.",
            "- Never offer discounts; a team member reviews pricing requests.",
            "- Only quote prices listed under Facts. If a price is not listed, say a team member will confirm it.",
            "- Do not describe your own reasoning. Reply with the message text only, 1-3 short sentences.",
            f"- Never use these phrases: {forbidden}.",
            "",
            "Facts:",
            *facts,
        ]
    )


def build_user_prompt(
    current_text: str,
    history: Sequence[Message],
    fields: dict[str, str],
) -> str:
    turns = []
    for message in history[-settings.history_limit :]:
        speaker = "Customer" if message.direction == "inbound" else "Agent"
        turns.append(f"{speaker}: {message.body}")
    known_lines = [f"- {key}: {value}" for key, value in sorted(fields.items())] or ["- nothing yet"]

    return "\n".join(
        [
            "Recent conversation:",
            *(turns or ["(no earlier messages)"]),
            "",
            f"Current customer message: {current_text}",
            "",
            "Known details:",
            *known_lines,
        ]
    )


def build_messages(
    current_text: str,
    history: Sequence[Message],
    known: KnownFields,
    snapshot: ConversationSnapshot,
    rules: Optional[RuleConfig] = None,
) -> list[dict]:
    rules = rules or get_rule_config()
    fields = display_fields(known, snapshot, rules)
    return [
        {"role": "system", "content": build_system_prompt(known, rules)},
        {"role": "user", "content": build_user_prompt(current_text, history, fields)},
    ]


def generate_fallback(
    current_text: str,
    history: Sequence[Message],
    known: KnownFields,
    snapshot: ConversationSnapshot,
    provider: Optional[LLMProvider] = None,
    rules: Optional[RuleConfig] = None,
) -> FallbackResult:
    rules = rules or get_rule_config()
    fixed = rules.templates.llm_fallback
    provider = provider or get_llm_provider()
    if provider is None:
        return FallbackResult(text=fixed, used_llm=False, error="no_provider")

    messages = build_messages(current_text, history, known, snapshot, rules)
    try:
        response = provider.generate(
            messages,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    except LLMError as e:
        logger.warning(
            "Fallback generation failed",
            extra={"context": {"conversation_id": str(snapshot.conversation_id), "error": str(e)}},
        )
        return FallbackResult(text=fixed, used_llm=False, error=str(e))
    except Exception as e:
        logger.error(
            "Unexpected fallback generation error",
            extra={"context": {"conversation_id": str(snapshot.conversation_id), "error": str(e)}},
            exc_info=True,
        )
        return FallbackResult(text=fixed, used_llm=False, error=str(e))

    text = normalize_generated_text(response.content)
    if not text:
        return FallbackResult(text=fixed, used_llm=False, error="malformed_output")
    return FallbackResult(text=text, used_llm=True)
