"""
test_agent.py - End-to-end orchestrator tests.

Runs QualityControlAgent against scripted model replies and checks the
emitted step stream, the single decision callback, the fallback paths, the
fatal extraction path, and cancellation between stages.

Usage: pytest test_agent.py

Requires: No API key needed (uses ScriptedModelClient).
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from agent import QualityControlAgent
from extract import ExtractionError
from incident_store import IncidentStore
from llm_client import ScriptedModelClient
from models import (
    Action,
    CallerMetadata,
    DecisionStatus,
    Incident,
    ReasoningSource,
    Severity,
    StepStatus,
    Violation,
    utc_now,
)
from steps import DECISION, TOOL_HISTORY, TOOL_IMPACT, TOOL_LOG, VALIDATION, VISION_EXTRACTION

IMAGE = b"\xff\xd8\xff\xe0" + b"\x00" * 32


def _vision(**overrides) -> str:
    payload = {
        "full_text": "22FEB2022\n137133193\n37 13:08",
        "date": "22FEB2022",
        "code_date_line": "137133193",
        "time": "13:08",
        "plant_code": "37",
        "line_number": "3",
        "position": "correct",
        "print_quality": "good",
    }
    payload.update(overrides)
    return json.dumps(payload)


class Recorder:
    def __init__(self):
        self.steps = []
        self.decisions = []

    def on_step(self, step):
        self.steps.append(step)

    def on_decision(self, decision):
        self.decisions.append(decision)


def _run(client, store=None, metadata=None, cancel_event=None, recorder=None):
    recorder = recorder or Recorder()
    agent = QualityControlAgent(
        client,
        store if store is not None else IncidentStore(),
        on_step=recorder.on_step,
        on_decision=recorder.on_decision,
    )
    decision = asyncio.run(agent.run(IMAGE, metadata, cancel_event))
    return decision, recorder


def _terminal_statuses(recorder: Recorder) -> dict:
    return {step.id: step.status for step in recorder.steps if step.status.is_terminal}


def test_missing_date_falls_back_to_alert_qa() -> None:
    client = ScriptedModelClient(vision_replies=[_vision(date=None, plant_code="87")])
    decision, recorder = _run(client, metadata=CallerMetadata(bag_number=7))

    assert decision.status is DecisionStatus.FAIL
    assert decision.violations == [Violation.MISSING_DATE]
    assert decision.severity is Severity.MINOR
    assert decision.action is Action.ALERT_QA
    assert decision.confidence == 0.75
    assert decision.agent_reasoning.source is ReasoningSource.FALLBACK
    assert decision.reason == "MINOR: Date line missing or unreadable. Action: ALERT QA"

    pending = decision.pending_incident
    assert pending is not None
    assert pending.image_id == "BAG-7"
    assert pending.bag_number == 7
    assert pending.plant_code == "87"
    assert recorder.decisions == [decision]


def test_step_stream_order_for_fail_run() -> None:
    client = ScriptedModelClient(vision_replies=[_vision(date=None)])
    _, recorder = _run(client)

    order = []
    for step in recorder.steps:
        if step.id not in order:
            order.append(step.id)
    assert order == [VISION_EXTRACTION, VALIDATION, TOOL_IMPACT, TOOL_HISTORY, TOOL_LOG, DECISION]

    # Every step is shown running before it reaches a terminal status.
    for step_id in order:
        statuses = [step.status for step in recorder.steps if step.id == step_id]
        assert statuses[0] is StepStatus.RUNNING
        assert len(statuses) == 2 and statuses[1].is_terminal

    terminal = _terminal_statuses(recorder)
    assert terminal[VALIDATION] is StepStatus.FLAGGED
    assert terminal[DECISION] is StepStatus.COMPLETED

    extraction_done = [s for s in recorder.steps if s.id == VISION_EXTRACTION][-1]
    assert extraction_done.reasoning.startswith('Extracted: "22FEB2022')
    assert extraction_done.record is not None

    impact_done = [s for s in recorder.steps if s.id == TOOL_IMPACT][-1]
    assert set(impact_done.tool_result) == {"stop_impact", "alert_impact"}

    decision_done = [s for s in recorder.steps if s.id == DECISION][-1]
    assert decision_done.reasoning.startswith("Action: ALERT_QA - ")


def test_on_mark_stops_line() -> None:
    client = ScriptedModelClient(vision_replies=[_vision(position="on_mark")])
    decision, _ = _run(client)
    assert decision.violations == [Violation.CODE_DATE_ON_MARK]
    assert decision.severity is Severity.CRITICAL
    assert decision.action is Action.STOP_LINE
    assert decision.confidence == 0.9
    assert decision.agent_reasoning.business_impact.estimated_cost == 12500


def test_moderate_with_recent_criticals_stops_line() -> None:
    store = IncidentStore()
    for index in range(2):
        store.append(
            Incident(
                id=f"INC-{index}",
                timestamp=utc_now() - timedelta(days=2, hours=index),
                violations=[Violation.CODE_DATE_ON_MARK],
                severity=Severity.CRITICAL,
                action=Action.STOP_LINE,
            )
        )
    client = ScriptedModelClient(vision_replies=[_vision(position="off_mark", print_quality="faded")])
    decision, recorder = _run(client, store=store)

    assert decision.violations == [Violation.CODE_DATE_OFF_MARK, Violation.FADED_PRINT]
    assert decision.severity is Severity.MODERATE
    assert decision.action is Action.STOP_LINE
    assert decision.confidence == 0.85

    history_done = [s for s in recorder.steps if s.id == TOOL_HISTORY][-1]
    assert history_done.tool_result["recent_critical"] == 2

    # The agent reads history but never writes incidents itself.
    assert len(store) == 2


def test_model_decision_is_used_when_valid() -> None:
    reply = '{"action": "hold_batch", "reasoning": "Hold and re-check the pallet.", "confidence": 0.82}'
    client = ScriptedModelClient(vision_replies=[_vision(position="off_mark")], text_replies=[reply])
    decision, _ = _run(client)
    assert decision.action is Action.HOLD_BATCH
    assert decision.confidence == 0.82
    assert decision.agent_reasoning.source is ReasoningSource.MODEL
    assert len(client.text_prompts) == 1


def test_clean_record_passes_without_tools() -> None:
    client = ScriptedModelClient(vision_replies=[_vision()])
    decision, recorder = _run(client)

    assert decision.status is DecisionStatus.PASS
    assert decision.confidence == 0.95
    assert decision.action is Action.CONTINUE
    assert decision.pending_incident is None
    assert client.text_prompts == []

    step_ids = {step.id for step in recorder.steps}
    assert step_ids == {VISION_EXTRACTION, VALIDATION, DECISION}
    assert _terminal_statuses(recorder)[VALIDATION] is StepStatus.COMPLETED
    assert recorder.decisions == [decision]


def test_metadata_checks_flow_through() -> None:
    client = ScriptedModelClient(vision_replies=[_vision(code_type="90_day")])
    metadata = CallerMetadata.model_validate({"expected_product": "84_day_no_price", "image_id": "LOT-12"})
    decision, _ = _run(client, metadata=metadata)
    assert decision.violations == [Violation.WRONG_CODE_TYPE]
    assert decision.pending_incident.image_id == "LOT-12"


def test_extraction_failure_is_fatal() -> None:
    client = ScriptedModelClient(vision_replies=["the image is too dark to read"])
    recorder = Recorder()
    with pytest.raises(ExtractionError):
        _run(client, recorder=recorder)

    assert [(step.id, step.status) for step in recorder.steps] == [
        (VISION_EXTRACTION, StepStatus.RUNNING),
        (VISION_EXTRACTION, StepStatus.ERROR),
    ]
    assert "invalid JSON" in recorder.steps[-1].reasoning
    assert recorder.decisions == []


def test_cancel_before_start_emits_nothing() -> None:
    client = ScriptedModelClient(vision_replies=[_vision()])

    async def go():
        cancel = asyncio.Event()
        cancel.set()
        recorder = Recorder()
        agent = QualityControlAgent(client, IncidentStore(), recorder.on_step, recorder.on_decision)
        return await agent.run(IMAGE, cancel_event=cancel), recorder

    decision, recorder = asyncio.run(go())
    assert decision is None
    assert recorder.steps == []
    assert client.vision_prompts == []


def test_cancel_between_stages_stops_run() -> None:
    client = ScriptedModelClient(vision_replies=[_vision(date=None)])

    async def go():
        cancel = asyncio.Event()
        recorder = Recorder()

        def on_step(step):
            recorder.on_step(step)
            if step.id == VALIDATION and step.status.is_terminal:
                cancel.set()

        agent = QualityControlAgent(client, IncidentStore(), on_step, recorder.on_decision)
        return await agent.run(IMAGE, cancel_event=cancel), recorder

    decision, recorder = asyncio.run(go())
    assert decision is None
    assert recorder.decisions == []
    assert {step.id for step in recorder.steps} == {VISION_EXTRACTION, VALIDATION}
    assert client.text_prompts == []


def test_async_callbacks_are_awaited() -> None:
    client = ScriptedModelClient(vision_replies=[_vision(position="on_mark")])
    statuses = []
    decisions = []

    async def on_step(step):
        await asyncio.sleep(0)
        statuses.append(step.status)

    async def on_decision(decision):
        await asyncio.sleep(0)
        decisions.append(decision)

    agent = QualityControlAgent(client, IncidentStore(), on_step=on_step, on_decision=on_decision)
    decision = asyncio.run(agent.run(IMAGE))
    assert len(statuses) == 12
    assert decisions == [decision]
