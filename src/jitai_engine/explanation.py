"""
Audit records explaining why an intervention was shown or skipped.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .data_models import UserChoice


class DecisionOutcome(Enum):
    SHOW = "SHOW"
    SKIP = "SKIP"


class BlockingReason(Enum):
    BASIC_RATE_LIMIT = "BASIC_RATE_LIMIT"
    PERSONA_FREQUENCY_LIMIT = "PERSONA_FREQUENCY_LIMIT"
    JITAI_POOR_OPPORTUNITY = "JITAI_POOR_OPPORTUNITY"
    BURDEN_MITIGATION = "BURDEN_MITIGATION"
    SNOOZE_ACTIVE = "SNOOZE_ACTIVE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    OTHER = "OTHER"


@dataclass
class DecisionExplanation:
    """
    One row per evaluation. Enum-valued fields are stored by name so the
    record round-trips through any JSON store unchanged.
    """

    timestamp: int
    target_app: str
    decision: str
    blocking_reason: Optional[str] = None
    block_detail: Optional[str] = None
    intervention_id: Optional[str] = None
    stage_reached: Optional[str] = None

    opportunity_score: Optional[int] = None
    opportunity_level: Optional[str] = None
    opportunity_breakdown: Dict[str, int] = field(default_factory=dict)

    persona: Optional[str] = None
    persona_confidence: Optional[str] = None

    passed_basic_rate_limit: bool = False
    time_since_last_intervention_s: Optional[int] = None
    passed_persona_frequency: bool = False
    persona_frequency_rule: Optional[str] = None
    passed_jitai_filter: bool = False
    jitai_action: Optional[str] = None

    burden_level: Optional[str] = None
    burden_score: Optional[int] = None
    burden_mitigation_applied: bool = False
    burden_cooldown_multiplier: Optional[float] = None

    content_type: Optional[str] = None
    content_weights: Dict[str, float] = field(default_factory=dict)
    content_reason: Optional[str] = None
    variant: Optional[str] = None

    context: Dict[str, Any] = field(default_factory=dict)
    explanation: str = ""
    detailed_explanation: str = ""
    id: Optional[int] = None

    @property
    def is_show(self) -> bool:
        return self.decision == DecisionOutcome.SHOW.value

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("id")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionExplanation":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def finalize(self) -> "DecisionExplanation":
        self.explanation = explain_one_line(self)
        self.detailed_explanation = explain_detailed(self)
        return self


def explain_one_line(exp: DecisionExplanation) -> str:
    if exp.decision == DecisionOutcome.SKIP.value:
        reason = exp.blocking_reason
        if reason == BlockingReason.BASIC_RATE_LIMIT.value:
            if exp.time_since_last_intervention_s is not None:
                return (
                    "SKIPPED: Cooldown period active "
                    f"({exp.time_since_last_intervention_s}s since last intervention)"
                )
            return f"SKIPPED: Rate limit ({exp.block_detail})"
        if reason == BlockingReason.PERSONA_FREQUENCY_LIMIT.value:
            return f"SKIPPED: Persona frequency limit ({exp.persona_frequency_rule} for {exp.persona})"
        if reason == BlockingReason.JITAI_POOR_OPPORTUNITY.value:
            return (
                "SKIPPED: Poor timing opportunity "
                f"(score: {exp.opportunity_score}/{exp.opportunity_level})"
            )
        if reason == BlockingReason.BURDEN_MITIGATION.value:
            return f"SKIPPED: User experiencing {exp.burden_level} burden (mitigation active)"
        if reason == BlockingReason.SNOOZE_ACTIVE.value:
            return "SKIPPED: User has snoozed interventions"
        if reason == BlockingReason.PERMISSION_DENIED.value:
            return "SKIPPED: Overlay permission not granted"
        if reason == BlockingReason.FEATURE_DISABLED.value:
            return "SKIPPED: Interventions disabled by user"
        return f"SKIPPED: {exp.block_detail or reason or 'Unknown reason'}"

    parts = [
        f"SHOWN: Opportunity score {exp.opportunity_score} ({exp.opportunity_level}) "
        f"for {exp.persona} user."
    ]
    ctx = exp.context
    if ctx.get("quick_reopen_attempt"):
        parts.append("Quick reopen detected.")
    if ctx.get("current_session_minutes", 0) >= 15:
        parts.append(f"Extended session ({ctx['current_session_minutes']} min).")
    hour = ctx.get("time_of_day")
    if hour is not None and (hour >= 22 or hour <= 5):
        parts.append("Late night usage.")
    if ctx.get("is_over_goal"):
        parts.append("Over daily goal.")
    if exp.content_type:
        parts.append(f"Content: {exp.content_type}.")
    if exp.burden_mitigation_applied:
        parts.append(f"(Burden mitigation applied: {exp.burden_cooldown_multiplier}x cooldown)")
    return " ".join(parts)


def _pass_fail(flag: bool) -> str:
    return "PASS" if flag else "FAIL"


def explain_detailed(exp: DecisionExplanation) -> str:
    when = datetime.fromtimestamp(exp.timestamp / 1000.0).strftime("%Y-%m-%d %H:%M:%S")
    lines = [
        "=== Intervention Decision Explanation ===",
        f"Time: {when}",
        f"App: {exp.target_app}",
        "",
        f"DECISION: {exp.decision}",
    ]
    if exp.blocking_reason:
        lines.append(f"Blocking Reason: {exp.blocking_reason}")
        if exp.block_detail:
            lines.append(f"  Detail: {exp.block_detail}")
    if exp.variant:
        lines.append(f"Variant: {exp.variant}")
    lines += [
        "",
        "=== Opportunity Scoring ===",
        f"Overall Score: {exp.opportunity_score} ({exp.opportunity_level})",
        "Breakdown:",
    ]
    lines += [f"  - {factor}: {points} points" for factor, points in exp.opportunity_breakdown.items()]
    lines += [
        "",
        "=== Persona Detection ===",
        f"Persona: {exp.persona} (confidence: {exp.persona_confidence})",
        "",
        "=== Rate Limiting Checks ===",
        f"Basic Rate Limit: {_pass_fail(exp.passed_basic_rate_limit)}",
    ]
    if exp.time_since_last_intervention_s is not None:
        lines.append(f"  Time since last: {exp.time_since_last_intervention_s}s")
    lines.append(f"Persona Frequency: {_pass_fail(exp.passed_persona_frequency)}")
    if exp.persona_frequency_rule:
        lines.append(f"  Rule: {exp.persona_frequency_rule}")
    lines.append(f"JITAI Filter: {_pass_fail(exp.passed_jitai_filter)}")
    if exp.jitai_action:
        lines.append(f"  JITAI Decision: {exp.jitai_action}")

    if exp.burden_level:
        lines += [
            "",
            "=== Burden Considerations ===",
            f"Burden Level: {exp.burden_level}",
        ]
        if exp.burden_score is not None:
            lines.append(f"Burden Score: {exp.burden_score}")
        lines.append(f"Mitigation Applied: {exp.burden_mitigation_applied}")
        if exp.burden_cooldown_multiplier is not None:
            lines.append(f"Cooldown Multiplier: {exp.burden_cooldown_multiplier}x")

    if exp.content_type:
        lines += ["", "=== Content Selection ===", f"Selected: {exp.content_type}"]
        if exp.content_reason:
            lines.append(f"Reason: {exp.content_reason}")
        if exp.content_weights:
            lines.append("Weights:")
            lines += [f"  - {name}: {weight}" for name, weight in exp.content_weights.items()]

    if exp.context:
        lines += ["", "=== Context ==="]
        lines += [f"  {key}: {value}" for key, value in exp.context.items()]
    return "\n".join(lines)


def was_decision_optimal(exp: DecisionExplanation, actual_outcome: Optional[UserChoice] = None) -> bool:
    """
    Post-hoc judgement of a decision.

    A show was right when the user went back; a skip was right when the
    moment was poor or the user was already under high burden.
    """
    if exp.is_show:
        return actual_outcome == UserChoice.GO_BACK
    if exp.opportunity_level == "POOR":
        return True
    return (
        exp.blocking_reason == BlockingReason.BURDEN_MITIGATION.value
        and exp.burden_level in ("HIGH", "CRITICAL")
    )
