"""Immutable, validated rule table for the dialogue policy.

The YAML file is parsed once per process into frozen pydantic models, so a
typo in a step precondition fails at startup instead of mid-conversation.
"""

from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.logging_config import get_logger

logger = get_logger("rule_config")

RULES_PATH = Path(
    os.environ.get("RULES_PATH", str(Path(__file__).resolve().parents[1] / "rules" / "rule_engine.yaml"))
)

Scalar = Union[str, int, float, bool]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class EngineInfo(_Frozen):
    name: str
    version: str


class Brand(_Frozen):
    agent_name: str
    company: str
    region: str


class CoreQuestion(_Frozen):
    key: str
    text: str


class CoreQuestions(_Frozen):
    service: CoreQuestion
    name: CoreQuestion
    nationality: CoreQuestion

    def for_field(self, field_name: str) -> CoreQuestion:
        return getattr(self, field_name)


class Templates(_Frozen):
    greeting: str
    handover_soft: str
    no_discount: str
    fallback_if_confused: str
    anti_loop_clarify: str
    close: str
    budget_handoff: str
    qualification_confirmation: str
    cheapest_offer: str
    llm_fallback: str

    def get(self, name: str) -> str:
        return getattr(self, name)


class ForbiddenPhrase(_Frozen):
    phrase: str
    rewrite: Optional[str] = None


class RewritePattern(_Frozen):
    pattern: str
    rewrite: str

    @model_validator(mode="after")
    def _compiles(self) -> "RewritePattern":
        re.compile(self.pattern)
        return self


class Guardrails(_Frozen):
    max_questions_per_message: int = Field(default=1, ge=1)
    forbidden_phrases: tuple[ForbiddenPhrase, ...]
    overreach_patterns: tuple[RewritePattern, ...] = ()
    reasoning_patterns: tuple[str, ...] = ()


class StepCondition(_Frozen):
    missing: Optional[str] = None
    equals: Optional[dict[str, Scalar]] = None
    always: bool = False

    @model_validator(mode="after")
    def _exactly_one(self) -> "StepCondition":
        declared = [self.missing is not None, self.equals is not None, self.always]
        if sum(declared) != 1:
            raise ValueError("step condition must declare exactly one of missing, equals, always")
        if self.equals is not None and len(self.equals) != 1:
            raise ValueError("equals condition must name exactly one field")
        return self


class StepResponse(_Frozen):
    template: str
    kind: Literal["answer", "quote", "handover"] = "answer"
    pricing: Optional[str] = None


class Step(_Frozen):
    id: str
    question_key: Optional[str] = None
    when: StepCondition
    ask: Optional[str] = None
    respond: Optional[StepResponse] = None

    @model_validator(mode="after")
    def _one_action(self) -> "Step":
        if (self.ask is None) == (self.respond is None):
            raise ValueError(f"step {self.id} must declare exactly one of ask, respond")
        return self

    @property
    def key(self) -> str:
        return self.question_key or self.id


class HandoverCondition(_Frozen):
    customer_requested_discount: Optional[bool] = None
    customer_declined: Optional[bool] = None
    nationality_in: Optional[tuple[str, ...]] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "HandoverCondition":
        declared = [value is not None for value in self.model_dump().values()]
        if sum(declared) != 1:
            raise ValueError("handover condition must declare exactly one test")
        return self


class HandoverRule(_Frozen):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    condition: HandoverCondition = Field(alias="if")
    reason: str
    action: Literal["handover", "stop"] = "handover"
    template: str = "handover_soft"


class ServiceFlow(_Frozen):
    handover_rules: tuple[HandoverRule, ...] = ()
    steps: tuple[Step, ...]


class ServiceDefinition(_Frozen):
    display_name: str
    keywords: tuple[str, ...]
    facts: str = ""
    flow: ServiceFlow


class PriceRule(_Frozen):
    nationality_in: Optional[tuple[str, ...]] = None
    otherwise: bool = False
    price: Optional[int] = None
    prices: Optional[dict[int, int]] = None

    @model_validator(mode="after")
    def _shape(self) -> "PriceRule":
        if (self.nationality_in is None) == (not self.otherwise):
            raise ValueError("price rule must declare exactly one of nationality_in, otherwise")
        if (self.price is None) == (self.prices is None):
            raise ValueError("price rule must declare exactly one of price, prices")
        return self

    def matches(self, nationality: Optional[str]) -> bool:
        if self.otherwise:
            return True
        if not nationality:
            return False
        value = nationality.lower()
        return any(item.lower() in value for item in self.nationality_in or ())


class PricingTable(_Frozen):
    currency: str = "AED"
    keyed_by: Optional[str] = None
    default_key: Optional[int] = None
    rules: tuple[PriceRule, ...]


class RuleConfig(_Frozen):
    engine: EngineInfo
    brand: Brand
    core_questions: CoreQuestions
    banned_question_keys: frozenset[str] = frozenset()
    templates: Templates
    guardrails: Guardrails
    services: dict[str, ServiceDefinition]
    pricing: dict[str, PricingTable] = {}

    @model_validator(mode="after")
    def _cross_references(self) -> "RuleConfig":
        for service_key, service in self.services.items():
            for step in service.flow.steps:
                if step.respond and step.respond.pricing and step.respond.pricing not in self.pricing:
                    raise ValueError(f"{service_key}.{step.id} references unknown pricing table")
            for rule in service.flow.handover_rules:
                if rule.template not in Templates.model_fields:
                    raise ValueError(f"{service_key} handover rule references unknown template {rule.template}")
        return self

    def service(self, service_key: Optional[str]) -> Optional[ServiceDefinition]:
        if not service_key:
            return None
        return self.services.get(service_key)

    def display_name(self, service_key: Optional[str]) -> Optional[str]:
        service = self.service(service_key)
        return service.display_name if service else None

    def is_banned(self, question_key: Optional[str]) -> bool:
        return bool(question_key) and question_key in self.banned_question_keys

    def question_text(self, question_key: Optional[str]) -> Optional[str]:
        """Text of a question by key, searching core questions and every flow."""
        if not question_key:
            return None
        for field_name in ("service", "name", "nationality"):
            core = self.core_questions.for_field(field_name)
            if core.key == question_key:
                return core.text
        for service in self.services.values():
            for step in service.flow.steps:
                if step.ask and step.key == question_key:
                    return step.ask
        return None


def load_rule_config(path: Path) -> RuleConfig:
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    config = RuleConfig.model_validate(data)
    logger.info(
        "Rule config loaded",
        extra={"context": {"path": str(path), "version": config.engine.version, "services": len(config.services)}},
    )
    return config


@lru_cache(maxsize=1)
def get_rule_config() -> RuleConfig:
    return load_rule_config(RULES_PATH)
