"""
models.py - Data Models for the Quality-Control Decision Agent

This file defines ALL data structures used across the agent. Every module in
the pipeline communicates exclusively through these models:

    extract.py     ->  ExtractionResult (ExtractedRecord + raw model text)
    validate.py    ->  ValidationResult (violations + severity)
    tools.py       ->  ImpactEstimate, HistorySummary, LogAcknowledgment
    synthesize.py  ->  AgentReasoning, AgentDecision
    steps.py       ->  Step
    agent.py       ->  AgentDecision (plus Step snapshots via callback)

Design principles:
1. Each layer's output is the next layer's input
2. Absence is data: every ExtractedRecord field is optional, and a missing
   value becomes a violation instead of an error
3. The decision is terminal: AgentDecision and AgentReasoning are frozen
4. Field descriptions double as documentation for the JSON the vision model
   is asked to produce

Schema relationships:
    Violation        --used by--> ValidationResult, AgentDecision, Incident
    ExtractedRecord  --used by--> Step.record, AgentDecision.record
    ImpactEstimate   --used by--> AgentReasoning.business_impact (as BusinessImpact)
    PendingIncident  --used by--> AgentDecision.pending_incident -> Incident
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

NULL_TOKENS = {"", "null", "none", "n/a", "na", "unknown", "-"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Violation(str, Enum):
    """Closed set of inspection findings.

    Order inside a record's violation list is detection order:
    completeness, then positioning, then print quality, then the optional
    caller-driven checks (date logic, code type, price marking).
    """

    MISSING_PMO = "missing_pmo"
    MISSING_DATE = "missing_date"
    MISSING_TIME = "missing_time"
    EXPIRED = "expired"
    INVALID_FORMAT = "invalid_format"
    FUTURE_DATE = "future_date"
    # Code date drifted away from the bellmark (quality seal).
    CODE_DATE_OFF_MARK = "code_date_off_mark"
    # Code date printed over the bellmark itself - automatic hold.
    CODE_DATE_ON_MARK = "code_date_on_mark"
    FADED_PRINT = "faded_print"
    # 84-day code on a 90-day product or vice versa.
    WRONG_CODE_TYPE = "wrong_code_type"
    WRONG_PRICE_MARKING = "wrong_price_marking"
    NONE = "none"


class Severity(str, Enum):
    """Escalation tier derived from the violations present."""

    MINOR = "minor"
    MODERATE = "moderate"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK: dict[Severity, int] = {
    Severity.MINOR: 0,
    Severity.MODERATE: 1,
    Severity.CRITICAL: 2,
}


def raise_severity(current: Severity, floor: Severity) -> Severity:
    """Return the higher of two severities. Never lowers `current`."""
    return floor if floor.rank > current.rank else current


class CodePosition(str, Enum):
    """Where the code date sits relative to the bellmark."""

    CORRECT = "correct"
    OFF_MARK = "off_mark"
    ON_MARK = "on_mark"


class PrintQuality(str, Enum):
    GOOD = "good"
    FADED = "faded"
    UNREADABLE = "unreadable"


class CodeType(str, Enum):
    """Shelf-life code printed on the bag."""

    DAY_84 = "84_day"
    DAY_90 = "90_day"

    @property
    def shelf_life_days(self) -> int:
        return 84 if self is CodeType.DAY_84 else 90


class ProductType(str, Enum):
    """Expected product classification supplied by the caller."""

    DAY_84_NO_PRICE = "84_day_no_price"
    DAY_84_PRICE = "84_day_price"
    DAY_90_NO_PRICE = "90_day_no_price"
    DAY_90_PRICE = "90_day_price"

    @property
    def code_type(self) -> CodeType:
        return CodeType.DAY_84 if self.value.startswith("84") else CodeType.DAY_90

    @property
    def price_marked(self) -> bool:
        return not self.value.endswith("no_price")


class Action(str, Enum):
    """Operational response chosen by the decision stage."""

    CONTINUE = "continue"
    ALERT_QA = "alert_qa"
    STOP_LINE = "stop_line"
    HOLD_BATCH = "hold_batch"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StepStatus(str, Enum):
    """Step lifecycle. FLAGGED marks "violations found" without aborting the run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    FLAGGED = "flagged"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.ERROR, StepStatus.FLAGGED)


class StepKind(str, Enum):
    REASONING = "reasoning"
    TOOL = "tool"
    DECISION = "decision"


class DecisionStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class ReasoningSource(str, Enum):
    """Who picked the action: fixed pass rules, the text model, or the fallback table."""

    RULES = "rules"
    MODEL = "model"
    FALLBACK = "fallback"


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in NULL_TOKENS:
        return None
    return text


class ExtractedRecord(BaseModel):
    """Best-effort structured reading of the printed code date.

    Every field is optional. The validator treats a missing date, time or
    plant code as a violation, so None is meaningful here rather than a
    parsing failure. Keys accepted from the model are snake_case with a few
    camelCase aliases, because vision models drift between the two.
    """

    raw_text: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("raw_text", "full_text", "fullText"),
        description="All visible text on the package, as read by the vision model.",
    )
    date: Optional[str] = Field(
        default=None,
        description=(
            "Line 1 of the code date, exactly as printed. Example: '22FEB2022'. "
            "None when the line is missing or illegible."
        ),
    )
    code_date_line: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("code_date_line", "codeDateLine"),
        description=(
            "Line 2: day/plant/shift/day-of-year/line concatenated without "
            "separators. Example: '137133193'."
        ),
    )
    time: Optional[str] = Field(
        default=None,
        description="Time from line 3 (after the PMO number). Example: '13:08'.",
    )
    plant_code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("plant_code", "plantCode", "pmo", "pmo_number", "pmoNumber"),
        description="Two-digit PMO / plant code from line 3. Example: '37'.",
    )
    line_number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("line_number", "lineNumber"),
        description="Production line number encoded in line 2.",
    )
    position: Optional[CodePosition] = Field(
        default=None,
        validation_alias=AliasChoices("position", "positioning"),
        description=(
            "Code date placement relative to the bellmark: 'correct' when directly "
            "below it, 'off_mark' when displaced, 'on_mark' when overlapping it."
        ),
    )
    print_quality: Optional[PrintQuality] = Field(
        default=None,
        validation_alias=AliasChoices("print_quality", "printQuality", "quality"),
        description="'good', 'faded' (legible but weak) or 'unreadable'.",
    )
    code_type: Optional[CodeType] = Field(
        default=None,
        validation_alias=AliasChoices("code_type", "codeType"),
        description="Shelf-life code shown on the bag: '84_day' or '90_day'.",
    )
    price_marked: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices("price_marked", "priceMarked", "has_price"),
        description="Whether a retail price is printed on the bag.",
    )

    @field_validator("raw_text", "date", "code_date_line", "time", "plant_code", "line_number", mode="before")
    @classmethod
    def _normalize_text(cls, value: Any) -> Optional[str]:
        return _clean_text(value)

    @field_validator("position", mode="before")
    @classmethod
    def _normalize_position(cls, value: Any) -> Optional[str]:
        text = _clean_text(value)
        if text is None:
            return None
        key = text.lower().replace("-", "_").replace(" ", "_")
        aliases = {
            "correct": "correct",
            "ok": "correct",
            "off_mark": "off_mark",
            "off_bellmark": "off_mark",
            "on_mark": "on_mark",
            "on_bellmark": "on_mark",
        }
        return aliases.get(key)

    @field_validator("print_quality", mode="before")
    @classmethod
    def _normalize_quality(cls, value: Any) -> Optional[str]:
        text = _clean_text(value)
        if text is None:
            return None
        key = text.lower()
        return key if key in {"good", "faded", "unreadable"} else None

    @field_validator("code_type", mode="before")
    @classmethod
    def _normalize_code_type(cls, value: Any) -> Optional[str]:
        text = _clean_text(value)
        if text is None:
            return None
        digits = "".join(ch for ch in text if ch.isdigit())
        if digits == "84":
            return "84_day"
        if digits == "90":
            return "90_day"
        return None

    @field_validator("price_marked", mode="before")
    @classmethod
    def _normalize_price_marked(cls, value: Any) -> Optional[bool]:
        if value is None or isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in {"true", "yes", "1", "present"}:
            return True
        if text in {"false", "no", "0", "absent"}:
            return False
        return None

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "raw_text": "22FEB2022\n137133193\n37 13:08",
                    "date": "22FEB2022",
                    "code_date_line": "137133193",
                    "time": "13:08",
                    "plant_code": "37",
                    "line_number": "3",
                    "position": "correct",
                    "print_quality": "good",
                    "code_type": "84_day",
                    "price_marked": False,
                }
            ]
        },
    )


class ExtractionResult(BaseModel):
    """Vision extractor output: the parsed record plus the model's raw reply."""

    record: ExtractedRecord
    raw_response: str = ""


class CallerMetadata(BaseModel):
    """Optional context the caller supplies alongside the image."""

    model_config = ConfigDict(extra="ignore")

    expected_product: Optional[ProductType] = Field(
        default=None,
        description="Expected product classification; enables code-type and price checks.",
    )
    inspection_date: Optional[date] = Field(
        default=None,
        description="Calendar day of inspection; enables expired / future-date checks.",
    )
    image_id: Optional[str] = Field(default=None, description="Caller label for the image, e.g. 'BAG-7'.")
    bag_number: Optional[int] = Field(default=None, ge=0)


class ValidationResult(BaseModel):
    """Rule validator output."""

    violations: list[Violation] = Field(default_factory=list)
    severity: Severity = Severity.MINOR
    checks: list[str] = Field(
        default_factory=list,
        description="One evidence line per rule that fired, in detection order.",
    )

    @property
    def has_violations(self) -> bool:
        return bool(self.violations)


class Step(BaseModel):
    """One unit of pipeline progress, emitted on every status transition."""

    id: str
    name: str
    description: str
    kind: StepKind = StepKind.REASONING
    status: StepStatus = StepStatus.PENDING
    parent_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    reasoning: str = ""
    record: Optional[ExtractedRecord] = None
    tool_result: Optional[dict[str, Any]] = None
    duration_ms: Optional[float] = None


class BusinessImpact(BaseModel):
    estimated_cost: float = Field(..., ge=0)
    risk_level: RiskLevel
    recommendation: str


class ImpactEstimate(BusinessImpact):
    """Impact estimator output for one candidate action."""

    action: Action
    plant_label: str

    def as_business_impact(self) -> BusinessImpact:
        return BusinessImpact(
            estimated_cost=self.estimated_cost,
            risk_level=self.risk_level,
            recommendation=self.recommendation,
        )


class IncidentSummary(BaseModel):
    timestamp: datetime
    violations: list[Violation]
    action: Action
    severity: Severity


class HistorySummary(BaseModel):
    """History query output over a trailing day window."""

    days_back: int
    total_incidents: int = 0
    recent_critical: int = 0
    pattern: str = "no pattern"
    last_critical_at: Optional[datetime] = None
    recommendation: str = ""
    incidents: list[IncidentSummary] = Field(default_factory=list)


class ViolationDescriptor(BaseModel):
    """What the violation logger is told before any action is decided."""

    violations: list[Violation]
    severity: Severity
    plant_code: Optional[str] = None
    line_number: Optional[str] = None
    image_id: Optional[str] = None


class LogAcknowledgment(BaseModel):
    success: bool = True
    log_id: str
    timestamp: datetime
    message: str
    database: str


class PendingIncident(BaseModel):
    """Logged-but-undecided incident.

    Created when the violation logger acknowledges, before the decision
    exists. The caller turns it into a full `Incident` once the decision
    (action, cost, confidence) is known.
    """

    model_config = ConfigDict(frozen=True)

    log_id: str
    logged_at: datetime
    violations: list[Violation]
    severity: Severity
    plant_code: Optional[str] = None
    line_number: Optional[str] = None
    image_id: Optional[str] = None
    bag_number: Optional[int] = None
    record: Optional[ExtractedRecord] = None


class AgentReasoning(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: Action
    reasoning: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    business_impact: BusinessImpact
    historical_context: Optional[str] = None
    source: ReasoningSource = ReasoningSource.MODEL


class AgentDecision(BaseModel):
    """Terminal artifact of one run. Emitted exactly once, never modified."""

    model_config = ConfigDict(frozen=True)

    status: DecisionStatus
    confidence: float = Field(..., ge=0.0, le=1.0)
    violations: list[Violation]
    reason: str
    record: Optional[ExtractedRecord] = None
    severity: Optional[Severity] = None
    agent_reasoning: Optional[AgentReasoning] = None
    pending_incident: Optional[PendingIncident] = None
    decided_at: datetime = Field(default_factory=utc_now)

    @property
    def action(self) -> Optional[Action]:
        return self.agent_reasoning.action if self.agent_reasoning else None

    @property
    def is_pass(self) -> bool:
        return self.status is DecisionStatus.PASS


class Incident(BaseModel):
    """Persisted record of a failed inspection, as appended by the caller."""

    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    bag_number: Optional[int] = None
    violations: list[Violation]
    severity: Severity
    action: Action
    estimated_cost: float = Field(default=0.0, ge=0)
    risk_level: RiskLevel = RiskLevel.LOW
    recommendation: str = ""
    reasoning: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    record: Optional[ExtractedRecord] = None
    log_id: Optional[str] = None

    @field_validator("timestamp", mode="after")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
