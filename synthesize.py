"""
synthesize.py - Decision synthesis for inspected bags.

Clean records get a fixed pass decision without a model call. Records with
violations get one text-model call that sees the violations, both impact
estimates and the history summary, and picks an action. If that reply cannot
be parsed or validated, or the call itself fails, a deterministic fallback
table keyed on severity and recent critical count decides instead.

Every path returns a complete AgentDecision; synthesis never raises for
model misbehavior.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from json_recovery import JSONRecoveryError, recover_json
from llm_client import ModelCallError, ModelClient
from logging_config import get_logger
from models import (
    Action,
    AgentDecision,
    AgentReasoning,
    BusinessImpact,
    DecisionStatus,
    ExtractedRecord,
    HistorySummary,
    ImpactEstimate,
    PendingIncident,
    PrintQuality,
    ReasoningSource,
    RiskLevel,
    Severity,
    ValidationResult,
    Violation,
)
from tools import estimate_impact

logger = get_logger(__name__)

PASS_CONFIDENCE = 0.95
PASS_REASONING = "All quality standards met: positioning correct, print quality good, all components present."
PASS_RECOMMENDATION = "Continue production - no action needed"

# (action, confidence, justification) per fallback branch.
FALLBACK_CRITICAL = (
    Action.STOP_LINE,
    0.9,
    "Critical violation requires immediate line stop to prevent non-compliant product from reaching consumers",
)
FALLBACK_MODERATE_RECURRING = (
    Action.STOP_LINE,
    0.85,
    "Recurring moderate issues combined with past critical violations indicate systemic problem "
    "requiring immediate intervention",
)
FALLBACK_MODERATE = (
    Action.ALERT_QA,
    0.8,
    "Moderate violation warrants QA inspection but does not require full line stop at this time",
)
FALLBACK_MINOR = (
    Action.ALERT_QA,
    0.75,
    "Minor quality issue identified - QA team notified for follow-up inspection",
)

VIOLATION_DETAILS: dict[Violation, str] = {
    Violation.CODE_DATE_ON_MARK: "Code date overlapping bellmark seal",
    Violation.CODE_DATE_OFF_MARK: "Code date positioning off-center",
    Violation.MISSING_DATE: "Date line missing or unreadable",
    Violation.MISSING_TIME: "Time stamp missing or unreadable",
    Violation.MISSING_PMO: "PMO number missing or unreadable",
}


class DecisionParseError(ValueError):
    """Model reply could not be turned into a valid action choice."""


class ModelChoice(BaseModel):
    """The JSON object the decision model is asked to return."""

    model_config = ConfigDict(extra="ignore")

    action: Action
    reasoning: str = Field(..., min_length=1)
    confidence: float
    estimated_cost: Optional[float] = Field(default=None, ge=0)
    risk_level: Optional[RiskLevel] = None
    recommendation: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace(" ", "_").replace("-", "_")
        return value

    @field_validator("reasoning", mode="before")
    @classmethod
    def _strip_reasoning(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        if isinstance(value, bool):
            raise ValueError("confidence must be a number")
        try:
            parsed = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"confidence must be a number, got {value!r}") from exc
        if parsed != parsed:
            raise ValueError("confidence is NaN")
        return max(0.0, min(1.0, parsed))

    @field_validator("risk_level", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip().lower()
            return text or None
        return value


def pass_decision(record: Optional[ExtractedRecord]) -> AgentDecision:
    """Fixed decision for a record with no violations."""
    plant = (record.plant_code if record else None) or "unknown"
    line = (record.line_number if record else None) or "unknown"
    return AgentDecision(
        status=DecisionStatus.PASS,
        confidence=PASS_CONFIDENCE,
        violations=[Violation.NONE],
        reason=(
            "PASS: Code date properly positioned below bellmark, all components visible and legible. "
            f"PMO {plant}, Line {line}."
        ),
        record=record,
        agent_reasoning=AgentReasoning(
            action=Action.CONTINUE,
            reasoning=PASS_REASONING,
            confidence=PASS_CONFIDENCE,
            business_impact=BusinessImpact(
                estimated_cost=0,
                risk_level=RiskLevel.LOW,
                recommendation=PASS_RECOMMENDATION,
            ),
            source=ReasoningSource.RULES,
        ),
    )


def build_decision_prompt(
    validation: ValidationResult,
    stop_impact: ImpactEstimate,
    alert_impact: ImpactEstimate,
    history: HistorySummary,
) -> str:
    violation_lines = "\n".join(f"- {violation.value.replace('_', ' ')}" for violation in validation.violations)
    return f"""You are a production line quality control agent. Based on the following context, decide what action to take:

VIOLATIONS DETECTED:
{violation_lines}
Severity: {validation.severity.value}

BUSINESS IMPACT ANALYSIS ({stop_impact.plant_label}):
- Stop Line: ${stop_impact.estimated_cost:.0f}/hr, Risk: {stop_impact.risk_level.value}
  {stop_impact.recommendation}
- Alert QA: ${alert_impact.estimated_cost:.0f}, Risk: {alert_impact.risk_level.value}
  {alert_impact.recommendation}

HISTORICAL CONTEXT (last {history.days_back} days):
Pattern: {history.pattern}
{history.recommendation}
Recent critical incidents: {history.recent_critical}

DECISION RULES:
- CRITICAL severity (on bellmark, unreadable) -> usually stop_line
- MODERATE severity with recurring pattern -> consider stop_line
- MODERATE severity, first occurrence -> usually alert_qa
- MINOR severity -> alert_qa

Choose ONE action: continue, alert_qa, stop_line, or hold_batch

Respond with JSON:
{{
  "action": "your_chosen_action",
  "reasoning": "why you chose this action based on severity, cost, risk, and historical patterns",
  "confidence": 0.XX
}}
If you choose hold_batch or continue you may also include "estimated_cost", "risk_level" and "recommendation"."""


def parse_model_choice(text: str) -> ModelChoice:
    """Parse and validate the decision model's reply.

    Raises:
        DecisionParseError: no JSON object, unknown action, or bad confidence.
    """
    try:
        return ModelChoice.model_validate(recover_json(text))
    except (JSONRecoveryError, ValidationError) as exc:
        raise DecisionParseError(str(exc)) from exc


def fallback_choice(severity: Severity, recent_critical: int) -> tuple[Action, float, str]:
    """Deterministic action for when the model cannot be used. Defined for every input."""
    if severity is Severity.CRITICAL:
        return FALLBACK_CRITICAL
    if severity is Severity.MODERATE and recent_critical > 0:
        return FALLBACK_MODERATE_RECURRING
    if severity is Severity.MODERATE:
        return FALLBACK_MODERATE
    return FALLBACK_MINOR


def violation_details(violations: list[Violation], record: Optional[ExtractedRecord]) -> list[str]:
    details: list[str] = []
    for violation in violations:
        if violation is Violation.FADED_PRINT:
            unreadable = record is not None and record.print_quality is PrintQuality.UNREADABLE
            details.append(
                "Code date unreadable (severely faded)" if unreadable else "Code date faded (reduced legibility)"
            )
        else:
            details.append(VIOLATION_DETAILS.get(violation, violation.value.replace("_", " ")))
    return details


def format_reason(
    severity: Severity,
    violations: list[Violation],
    record: Optional[ExtractedRecord],
    action: Action,
) -> str:
    details = "; ".join(violation_details(violations, record))
    return f"{severity.value.upper()}: {details}. Action: {action.value.replace('_', ' ').upper()}"


def _chosen_impact(
    choice: ModelChoice,
    severity: Severity,
    stop_impact: ImpactEstimate,
    alert_impact: ImpactEstimate,
    plant_code: Optional[str],
) -> BusinessImpact:
    if choice.action is Action.STOP_LINE:
        return stop_impact.as_business_impact()
    if choice.action is Action.ALERT_QA:
        return alert_impact.as_business_impact()

    estimate = estimate_impact(choice.action, severity, plant_code)
    if choice.estimated_cost is not None and choice.risk_level is not None:
        return BusinessImpact(
            estimated_cost=choice.estimated_cost,
            risk_level=choice.risk_level,
            recommendation=choice.recommendation or estimate.recommendation,
        )
    return estimate.as_business_impact()


async def synthesize_decision(
    client: ModelClient,
    record: Optional[ExtractedRecord],
    validation: ValidationResult,
    stop_impact: ImpactEstimate,
    alert_impact: ImpactEstimate,
    history: HistorySummary,
    pending_incident: Optional[PendingIncident] = None,
) -> AgentDecision:
    """Pick the action for a record with violations and build the fail decision."""
    if not validation.has_violations:
        return pass_decision(record)

    plant_code = record.plant_code if record else None
    prompt = build_decision_prompt(validation, stop_impact, alert_impact, history)

    choice: Optional[ModelChoice] = None
    try:
        reply = await client.complete_text(prompt)
        choice = parse_model_choice(reply)
    except (ModelCallError, DecisionParseError) as exc:
        logger.warning(
            "decision_fallback | severity=%s | recent_critical=%d | error_type=%s | error=%s",
            validation.severity.value,
            history.recent_critical,
            type(exc).__name__,
            exc,
            exc_info=True,
        )

    if choice is not None:
        reasoning = AgentReasoning(
            action=choice.action,
            reasoning=choice.reasoning,
            confidence=choice.confidence,
            business_impact=_chosen_impact(choice, validation.severity, stop_impact, alert_impact, plant_code),
            historical_context=history.pattern,
            source=ReasoningSource.MODEL,
        )
    else:
        action, confidence, justification = fallback_choice(validation.severity, history.recent_critical)
        impact = stop_impact if action is Action.STOP_LINE else alert_impact
        reasoning = AgentReasoning(
            action=action,
            reasoning=justification,
            confidence=confidence,
            business_impact=impact.as_business_impact(),
            historical_context=history.pattern,
            source=ReasoningSource.FALLBACK,
        )

    decision = AgentDecision(
        status=DecisionStatus.FAIL,
        confidence=reasoning.confidence,
        violations=list(validation.violations),
        reason=format_reason(validation.severity, validation.violations, record, reasoning.action),
        record=record,
        severity=validation.severity,
        agent_reasoning=reasoning,
        pending_incident=pending_incident,
    )
    logger.info(
        "decision_complete | action=%s | confidence=%.2f | source=%s | severity=%s",
        reasoning.action.value,
        reasoning.confidence,
        reasoning.source.value,
        validation.severity.value,
    )
    return decision
