"""
tools.py - Business tools the agent consults once violations are found.

Three tools, each a plain function:
- estimate_impact: fixed cost/risk lookup per candidate action
- query_history:   read-only summary of recent incidents
- log_violation:   acknowledgment that the violation was logged

Logging and persisting are two separate phases. `log_violation` runs before
an action exists and only acknowledges; `open_pending_incident` captures that
acknowledgment, and the caller later calls `build_incident` with the final
decision and appends the result to the incident store.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from incident_store import IncidentStore
from logging_config import get_logger
from models import (
    Action,
    AgentDecision,
    ExtractedRecord,
    HistorySummary,
    ImpactEstimate,
    Incident,
    IncidentSummary,
    LogAcknowledgment,
    PendingIncident,
    RiskLevel,
    Severity,
    ViolationDescriptor,
)

logger = get_logger(__name__)

# -- Business constants --

LINE_STOP_COST_PER_HOUR = 12500
QA_ALERT_COST = 150
VIOLATION_FINE_RISK = 250000
HOLD_BATCH_FRACTION = 0.25
# Batch hold is priced as a quarter of an hour of line stop.

QMS_DATABASE = "QMS-Production"
UNKNOWN_PLANT = "Unknown Plant"

PLANT_NAMES: dict[str, str] = {
    "37": "Charlotte Plant",
    "87": "Topeka Plant",
    "92": "Perry Plant",
    "13": "Plano Plant",
}

HISTORY_SAMPLE_SIZE = 5

PATTERN_RECURRING = "recurring critical"
PATTERN_OCCASIONAL = "occasional critical"
PATTERN_MULTIPLE_MINOR = "multiple minor — monitor"
PATTERN_NONE = "no pattern"


def plant_label(plant_code: Optional[str]) -> str:
    """Human label for a plant code. Unknown or missing codes get a placeholder."""
    code = str(plant_code).strip() if plant_code is not None else ""
    if not code:
        return f"{UNKNOWN_PLANT} (Code: n/a)"
    return f"{PLANT_NAMES.get(code, UNKNOWN_PLANT)} (Code: {code})"


def estimate_impact(action: Action, severity: Severity, plant_code: Optional[str] = None) -> ImpactEstimate:
    """Deterministic cost and risk for one candidate action. Same inputs, same output."""
    action = Action(action)
    severity = Severity(severity)

    if action is Action.STOP_LINE:
        cost = float(LINE_STOP_COST_PER_HOUR)
        risk = RiskLevel.CRITICAL if severity is Severity.CRITICAL else RiskLevel.HIGH
        recommendation = (
            f"Line stop costs ${LINE_STOP_COST_PER_HOUR}/hr but prevents potential "
            f"${VIOLATION_FINE_RISK} fine"
        )
    elif action is Action.ALERT_QA:
        cost = float(QA_ALERT_COST)
        risk = RiskLevel.HIGH if severity is Severity.CRITICAL else RiskLevel.MEDIUM
        recommendation = f"QA alert is cost-effective at ${QA_ALERT_COST}, suitable for non-critical issues"
    elif action is Action.HOLD_BATCH:
        cost = LINE_STOP_COST_PER_HOUR * HOLD_BATCH_FRACTION
        risk = RiskLevel.MEDIUM
        recommendation = "Batch hold balances cost vs risk for moderate violations"
    else:
        cost = 0.0
        risk = RiskLevel.LOW
        recommendation = "No action needed, product meets standards"

    return ImpactEstimate(
        action=action,
        estimated_cost=cost,
        risk_level=risk,
        recommendation=recommendation,
        plant_label=plant_label(plant_code),
    )


def _pattern(total: int, recent_critical: int) -> str:
    if recent_critical > 2:
        return PATTERN_RECURRING
    if recent_critical > 0:
        return PATTERN_OCCASIONAL
    if total > 5:
        return PATTERN_MULTIPLE_MINOR
    return PATTERN_NONE


def query_history(store: IncidentStore, days_back: int = 30, now: Optional[datetime] = None) -> HistorySummary:
    """Summarize incidents in the trailing window. Never writes to the store."""
    incidents = sorted(store.query(days_back, now=now), key=lambda item: item.timestamp)
    critical = [item for item in incidents if item.severity is Severity.CRITICAL]
    recent_critical = len(critical)

    summary = HistorySummary(
        days_back=days_back,
        total_incidents=len(incidents),
        recent_critical=recent_critical,
        pattern=_pattern(len(incidents), recent_critical),
        last_critical_at=critical[-1].timestamp if critical else None,
        recommendation=(
            "Multiple critical violations - recommend line maintenance check"
            if recent_critical > 1
            else "Continue standard monitoring"
        ),
        incidents=[
            IncidentSummary(
                timestamp=item.timestamp,
                violations=list(item.violations),
                action=item.action,
                severity=item.severity,
            )
            for item in reversed(incidents[-HISTORY_SAMPLE_SIZE:])
        ],
    )
    logger.info(
        "history_query | days_back=%d | total=%d | critical=%d | pattern=%s",
        days_back,
        summary.total_incidents,
        summary.recent_critical,
        summary.pattern,
    )
    return summary


def log_violation(descriptor: ViolationDescriptor) -> LogAcknowledgment:
    """Acknowledge a violation. Persists nothing; see `build_incident`."""
    first = descriptor.violations[0].value if descriptor.violations else "unspecified"
    ack = LogAcknowledgment(
        success=True,
        log_id=f"LOG-{uuid.uuid4().hex[:12].upper()}",
        timestamp=datetime.now(timezone.utc),
        message=f"Logged to QMS: {first} ({descriptor.severity.value})",
        database=QMS_DATABASE,
    )
    logger.info(
        "violation_logged | log_id=%s | violations=%s | severity=%s | plant=%s | line=%s",
        ack.log_id,
        [violation.value for violation in descriptor.violations],
        descriptor.severity.value,
        descriptor.plant_code,
        descriptor.line_number,
    )
    return ack


def open_pending_incident(
    descriptor: ViolationDescriptor,
    ack: LogAcknowledgment,
    record: Optional[ExtractedRecord] = None,
    bag_number: Optional[int] = None,
) -> PendingIncident:
    """Phase one: a logged violation with no action decided yet."""
    return PendingIncident(
        log_id=ack.log_id,
        logged_at=ack.timestamp,
        violations=list(descriptor.violations),
        severity=descriptor.severity,
        plant_code=descriptor.plant_code,
        line_number=descriptor.line_number,
        image_id=descriptor.image_id,
        bag_number=bag_number,
        record=record,
    )


def build_incident(pending: PendingIncident, decision: AgentDecision) -> Incident:
    """Phase two: combine a pending incident with the final decision.

    Raises:
        ValueError: the decision carries no agent reasoning (pass decisions
            are never persisted, and every fail decision has reasoning).
    """
    reasoning = decision.agent_reasoning
    if reasoning is None:
        raise ValueError("decision has no agent reasoning; nothing to persist")

    return Incident(
        id=f"INC-{uuid.uuid4().hex[:12].upper()}",
        timestamp=decision.decided_at,
        bag_number=pending.bag_number,
        violations=list(pending.violations),
        severity=pending.severity,
        action=reasoning.action,
        estimated_cost=reasoning.business_impact.estimated_cost,
        risk_level=reasoning.business_impact.risk_level,
        recommendation=reasoning.business_impact.recommendation,
        reasoning=reasoning.reasoning,
        confidence=decision.confidence,
        record=pending.record,
        log_id=pending.log_id,
    )
