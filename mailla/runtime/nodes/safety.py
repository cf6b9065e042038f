# mailla/runtime/nodes/safety.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Pattern

from pocketflow import AsyncNode

from mailla.core.logging import get_logger

logger = get_logger(__name__)

SafetyTier = Literal["emergency", "urgent", "routine"]


@dataclass(frozen=True)
class SafetyRule:
    name: str
    pattern: Pattern[str]
    tier: SafetyTier


@dataclass(frozen=True)
class SafetyAssessment:
    tier: SafetyTier = "routine"
    flags: List[str] = field(default_factory=list)

    @property
    def is_emergency(self) -> bool:
        return self.tier == "emergency"


def _default_rules() -> List[SafetyRule]:
    emergency_terms = [
        ("gas_leak", r"gas (?:smell|leak|odou?r)|smell(?:s|ing)? (?:of )?gas"),
        ("carbon_monoxide", r"carbon monoxide|co detector (?:going off|beeping)"),
        ("electrical_shock", r"electrical shock|electrocuted|got shocked"),
        ("sparking", r"\bspark(?:s|ing)\b"),
        ("fire", r"\bfire\b(?!\s*(?:alarm|drill|extinguisher|door|escape))"),
        ("smoke", r"\bsmoke\b(?!\s*(?:detector|alarm))|\bsmoking outlet"),
        ("burning_smell", r"burning smell|smells? (?:like )?burning"),
        ("exposed_wire", r"exposed wir(?:e|es|ing)"),
        ("major_flooding", r"major flood(?:ing)?|water gushing|\bflooding\b"),
        ("water_near_outlet", r"(?:outlet|socket)s? (?:is |are )?wet|water (?:in|near|on) (?:the |an |my )?(?:outlet|socket)"),
    ]
    urgent_terms = [
        ("no_power", r"\bno power\b|power (?:is )?out"),
        ("circuit_breaker", r"circuit breaker"),
        ("outlet_not_working", r"outlets? (?:is |are )?not working"),
        ("water_leak", r"water leak|leaking water"),
        ("toilet_overflow", r"toilet (?:is )?overflow(?:ing)?"),
        ("no_heat", r"\bno heat\b|heat(?:er|ing)? (?:is )?not working"),
        ("ac_not_working", r"\b(?:ac|a/c|air conditioning) (?:is )?not working|no air conditioning"),
        ("injury", r"\binjur(?:y|ed)\b"),
        ("bleeding", r"\bbleeding\b"),
    ]
    rules = [SafetyRule(n, re.compile(p, re.I), "emergency") for n, p in emergency_terms]
    rules += [SafetyRule(n, re.compile(p, re.I), "urgent") for n, p in urgent_terms]
    return rules


DEFAULT_RULES = _default_rules()


def classify_safety(text: str, rules: List[SafetyRule] | None = None) -> SafetyAssessment:
    """Deterministic keyword classifier. Flags are `<tier>_<rule>`; no match means routine."""
    text = (text or "").strip()
    active = DEFAULT_RULES if rules is None else rules
    matched = [r for r in active if r.pattern.search(text)]
    if not matched:
        return SafetyAssessment()
    tier: SafetyTier = "emergency" if any(r.tier == "emergency" for r in matched) else "urgent"
    return SafetyAssessment(tier=tier, flags=[f"{r.tier}_{r.name}" for r in matched])


class SafetyCheckNode(AsyncNode):
    """First node of every turn. Routes "emergency" (forced escalation) or "ok"."""

    def __init__(self, rules: List[SafetyRule] | None = None, *, force_escalation: bool = True, **kwargs):
        super().__init__(**kwargs)
        self.rules = list(rules) if rules is not None else DEFAULT_RULES
        self.force_escalation = force_escalation

    async def prep_async(self, shared: Dict[str, Any]) -> str:
        return str(shared.get("student_message") or "")

    async def exec_async(self, prep: str) -> SafetyAssessment:
        return classify_safety(prep, self.rules)

    async def post_async(self, shared: Dict[str, Any], prep: str, exec_res: SafetyAssessment) -> str:
        shared["safety"] = exec_res
        if exec_res.flags:
            logger.info(
                "Safety keywords matched",
                extra={"conversation_id": shared.get("conversation_id"), "tier": exec_res.tier, "flags": exec_res.flags},
            )
        if exec_res.is_emergency and self.force_escalation:
            return "emergency"
        return "ok"
