"""
steps.py - Step catalog and lifecycle tracking for one agent run.

Every run walks a fixed catalog of steps. Each step moves
pending -> running -> (completed | error | flagged) and every transition is
pushed to the step callback as a snapshot before the run continues.

Steps are kept in an insertion-ordered dict keyed by id. The tree shape
(validation under extraction, tools and decision under validation) is
derived from `parent_id` by `children_of` / `step_tree`; nodes never hold
references to each other.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from logging_config import get_logger
from models import ExtractedRecord, Step, StepKind, StepStatus

logger = get_logger(__name__)

VISION_EXTRACTION = "vision-extraction"
VALIDATION = "validation"
TOOL_IMPACT = "tool-impact"
TOOL_HISTORY = "tool-history"
TOOL_LOG = "tool-log"
DECISION = "decision"


@dataclass(frozen=True)
class StepSpec:
    id: str
    name: str
    description: str
    kind: StepKind
    parent_id: Optional[str]
    running_text: str


STEP_CATALOG: dict[str, StepSpec] = {
    spec.id: spec
    for spec in (
        StepSpec(
            VISION_EXTRACTION,
            "Vision Analysis",
            "Extracting all code date data with the vision model",
            StepKind.REASONING,
            None,
            "Analyzing bag image with the vision model...",
        ),
        StepSpec(
            VALIDATION,
            "Rules Validation",
            "Checking compliance with code date quality standards",
            StepKind.REASONING,
            VISION_EXTRACTION,
            "Validating against quality rules...",
        ),
        StepSpec(
            TOOL_IMPACT,
            "Calculate Business Impact",
            "Assess cost of line stop vs QA alert",
            StepKind.TOOL,
            VALIDATION,
            "Calculating business impact of different actions...",
        ),
        StepSpec(
            TOOL_HISTORY,
            "Query Historical Incidents",
            "Check past violations for this line",
            StepKind.TOOL,
            VALIDATION,
            "Querying incident history...",
        ),
        StepSpec(
            TOOL_LOG,
            "Log Violation",
            "Record violation in quality database",
            StepKind.TOOL,
            VALIDATION,
            "Logging violation to database...",
        ),
        StepSpec(
            DECISION,
            "Agent Decision",
            "Autonomous action selection based on context",
            StepKind.DECISION,
            VALIDATION,
            "Agent reasoning about optimal action...",
        ),
    )
}

ALLOWED_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.ERROR, StepStatus.FLAGGED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.ERROR: frozenset(),
    StepStatus.FLAGGED: frozenset(),
}

StepCallback = Callable[[Step], Union[None, Awaitable[None]]]


class StepTransitionError(RuntimeError):
    """A step was moved backwards, sideways, or out of a terminal state."""


def children_of(steps: Iterable[Step], parent_id: Optional[str]) -> list[Step]:
    """Direct children of `parent_id` in emission order (None = root steps)."""
    return [step for step in steps if step.parent_id == parent_id]


def step_tree(steps: Iterable[Step]) -> list[dict[str, Any]]:
    """Nested JSON-ready view: each node is the step dump plus a `children` list."""
    ordered = list(steps)

    def build(parent_id: Optional[str]) -> list[dict[str, Any]]:
        return [
            {**step.model_dump(mode="json"), "children": build(step.id)}
            for step in children_of(ordered, parent_id)
        ]

    return build(None)


class StepTracker:
    """Owns the steps of one run and pushes each transition to the callback."""

    def __init__(self, on_step: Optional[StepCallback] = None, step_delay: float = 0.0) -> None:
        self._on_step = on_step
        self._step_delay = max(0.0, float(step_delay or 0.0))
        self._steps: dict[str, Step] = {}
        self._started: dict[str, float] = {}

    def get(self, step_id: str) -> Optional[Step]:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step is not None else None

    def snapshot(self) -> list[Step]:
        return [step.model_copy(deep=True) for step in self._steps.values()]

    def _transition(self, step: Step, target: StepStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[step.status]:
            raise StepTransitionError(f"step {step.id!r}: {step.status.value} -> {target.value} is not allowed")
        step.status = target

    async def start(self, step_id: str, reasoning: Optional[str] = None) -> Step:
        """Create the catalog step (pending) and move it to running."""
        if step_id in self._steps:
            raise StepTransitionError(f"step {step_id!r} was already started")
        spec = STEP_CATALOG[step_id]
        step = Step(
            id=spec.id,
            name=spec.name,
            description=spec.description,
            kind=spec.kind,
            parent_id=spec.parent_id,
            reasoning=reasoning if reasoning is not None else spec.running_text,
        )
        self._transition(step, StepStatus.RUNNING)
        self._steps[step_id] = step
        self._started[step_id] = time.perf_counter()
        return await self._emit(step)

    async def finish(
        self,
        step_id: str,
        status: StepStatus,
        reasoning: str,
        record: Optional[ExtractedRecord] = None,
        tool_result: Optional[dict[str, Any]] = None,
    ) -> Step:
        """Move a running step to a terminal status."""
        step = self._steps.get(step_id)
        if step is None:
            raise StepTransitionError(f"step {step_id!r} was never started")
        self._transition(step, status)
        step.reasoning = reasoning
        if record is not None:
            step.record = record
        if tool_result is not None:
            step.tool_result = tool_result
        step.duration_ms = round((time.perf_counter() - self._started[step_id]) * 1000.0, 1)
        return await self._emit(step)

    async def _emit(self, step: Step) -> Step:
        snapshot = step.model_copy(deep=True)
        logger.debug("step_emit | id=%s | status=%s", snapshot.id, snapshot.status.value)
        if self._on_step is not None:
            result = self._on_step(snapshot)
            if inspect.isawaitable(result):
                await result
        if self._step_delay > 0:
            await asyncio.sleep(self._step_delay)
        return snapshot
