"""
agent.py - Quality-control agent orchestrator.

One `run` inspects one image:

    vision-extraction -> validation -> (violations?)
        no:  decision (pass)
        yes: tool-impact -> tool-history -> tool-log -> decision (model or fallback)

Stages run strictly one after another. Every step transition is pushed to
`on_step` before the next stage starts, and `on_decision` fires exactly once
per completed run.

Failure policy:
- Extraction failure is fatal: the extraction step goes to `error` and the
  ExtractionError propagates. No decision is emitted.
- Validation never aborts; violations mark the step `flagged`.
- Synthesis never raises for model problems (fallback table).
- A set `cancel_event` is checked between stages; the run then stops
  emitting and returns None without raising.

The agent reads the incident store (history tool) but never writes to it.
The fail decision carries a `PendingIncident`; the caller finalizes it with
`tools.build_incident` and appends it.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, Optional, Union

from config import DEFAULT_HISTORY_DAYS
from extract import ExtractionError, extract_code_date
from incident_store import IncidentStore
from llm_client import ModelClient
from logging_config import get_logger
from models import (
    Action,
    AgentDecision,
    CallerMetadata,
    StepStatus,
    ViolationDescriptor,
)
from steps import (
    DECISION,
    TOOL_HISTORY,
    TOOL_IMPACT,
    TOOL_LOG,
    VALIDATION,
    VISION_EXTRACTION,
    StepCallback,
    StepTracker,
)
from synthesize import pass_decision, synthesize_decision
from tools import estimate_impact, log_violation, open_pending_incident, query_history
from validate import validate_record

logger = get_logger(__name__)

DecisionCallback = Callable[[AgentDecision], Union[None, Awaitable[None]]]


class QualityControlAgent:
    """Runs the inspection pipeline for one image at a time.

    Usage:
        agent = QualityControlAgent(client, store, on_step=print, on_decision=print)
        decision = await agent.run(image_bytes, CallerMetadata(bag_number=7))
    """

    def __init__(
        self,
        client: ModelClient,
        store: IncidentStore,
        on_step: Optional[StepCallback] = None,
        on_decision: Optional[DecisionCallback] = None,
        step_delay: float = 0.0,
        history_days: int = DEFAULT_HISTORY_DAYS,
    ) -> None:
        self.client = client
        self.store = store
        self.on_step = on_step
        self.on_decision = on_decision
        self.step_delay = step_delay
        self.history_days = history_days

    @staticmethod
    def _cancelled(cancel_event: Optional[asyncio.Event], stage: str) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("agent_cancelled | before=%s", stage)
            return True
        return False

    async def _emit_decision(self, decision: AgentDecision) -> None:
        if self.on_decision is None:
            return
        result = self.on_decision(decision)
        if inspect.isawaitable(result):
            await result

    async def run(
        self,
        image_bytes: bytes,
        metadata: Optional[CallerMetadata] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[AgentDecision]:
        """Inspect one image and return the decision (None if cancelled).

        Raises:
            ExtractionError: the vision stage produced no usable record.
        """
        metadata = metadata or CallerMetadata()
        tracker = StepTracker(self.on_step, self.step_delay)
        logger.info(
            "agent_run_start | image_id=%s | bag_number=%s | bytes=%d",
            metadata.image_id,
            metadata.bag_number,
            len(image_bytes or b""),
        )

        # -- Stage 1: vision extraction --
        if self._cancelled(cancel_event, VISION_EXTRACTION):
            return None
        await tracker.start(VISION_EXTRACTION)
        try:
            extraction = await extract_code_date(self.client, image_bytes)
        except ExtractionError as exc:
            await tracker.finish(VISION_EXTRACTION, StepStatus.ERROR, str(exc))
            logger.error("agent_run_failed | stage=%s | error=%s", VISION_EXTRACTION, exc)
            raise
        record = extraction.record
        preview = (record.raw_text or "No text")[:100]
        await tracker.finish(VISION_EXTRACTION, StepStatus.COMPLETED, f'Extracted: "{preview}"', record=record)

        # -- Stage 2: rule validation --
        if self._cancelled(cancel_event, VALIDATION):
            return None
        await tracker.start(VALIDATION)
        validation = validate_record(record, metadata)
        if validation.has_violations:
            listed = ", ".join(violation.value for violation in validation.violations)
            await tracker.finish(
                VALIDATION,
                StepStatus.FLAGGED,
                f"Violations detected ({validation.severity.value}): {listed}",
                tool_result=validation.model_dump(mode="json"),
            )
        else:
            await tracker.finish(VALIDATION, StepStatus.COMPLETED, "All quality standards met")

        # -- Pass short-circuit --
        if not validation.has_violations:
            if self._cancelled(cancel_event, DECISION):
                return None
            decision = pass_decision(record)
            await tracker.start(DECISION)
            await tracker.finish(DECISION, StepStatus.COMPLETED, decision.agent_reasoning.reasoning)
            await self._emit_decision(decision)
            logger.info("agent_run_complete | status=pass | confidence=%.2f", decision.confidence)
            return decision

        # -- Stage 3: business tools --
        if self._cancelled(cancel_event, TOOL_IMPACT):
            return None
        await tracker.start(TOOL_IMPACT)
        stop_impact = estimate_impact(Action.STOP_LINE, validation.severity, record.plant_code)
        alert_impact = estimate_impact(Action.ALERT_QA, validation.severity, record.plant_code)
        await tracker.finish(
            TOOL_IMPACT,
            StepStatus.COMPLETED,
            (
                f"Stop: ${stop_impact.estimated_cost:.0f} ({stop_impact.risk_level.value}), "
                f"Alert: ${alert_impact.estimated_cost:.0f} ({alert_impact.risk_level.value})"
            ),
            tool_result={
                "stop_impact": stop_impact.model_dump(mode="json"),
                "alert_impact": alert_impact.model_dump(mode="json"),
            },
        )

        if self._cancelled(cancel_event, TOOL_HISTORY):
            return None
        await tracker.start(TOOL_HISTORY)
        history = query_history(self.store, self.history_days)
        await tracker.finish(
            TOOL_HISTORY,
            StepStatus.COMPLETED,
            f"{history.total_incidents} incidents in {history.days_back} days. Pattern: {history.pattern}",
            tool_result=history.model_dump(mode="json"),
        )

        if self._cancelled(cancel_event, TOOL_LOG):
            return None
        await tracker.start(TOOL_LOG)
        descriptor = ViolationDescriptor(
            violations=validation.violations,
            severity=validation.severity,
            plant_code=record.plant_code,
            line_number=record.line_number,
            image_id=metadata.image_id
            or (f"BAG-{metadata.bag_number}" if metadata.bag_number is not None else None),
        )
        ack = log_violation(descriptor)
        pending = open_pending_incident(descriptor, ack, record=record, bag_number=metadata.bag_number)
        await tracker.finish(TOOL_LOG, StepStatus.COMPLETED, ack.message, tool_result=ack.model_dump(mode="json"))

        # -- Stage 4: decision synthesis --
        if self._cancelled(cancel_event, DECISION):
            return None
        await tracker.start(DECISION)
        decision = await synthesize_decision(
            self.client,
            record,
            validation,
            stop_impact,
            alert_impact,
            history,
            pending_incident=pending,
        )
        reasoning = decision.agent_reasoning
        await tracker.finish(
            DECISION,
            StepStatus.COMPLETED,
            f"Action: {reasoning.action.value.upper()} - {reasoning.reasoning}",
            tool_result={"source": reasoning.source.value, "confidence": reasoning.confidence},
        )

        await self._emit_decision(decision)
        logger.info(
            "agent_run_complete | status=fail | action=%s | confidence=%.2f | severity=%s",
            reasoning.action.value,
            decision.confidence,
            validation.severity.value,
        )
        return decision
