"""
test_api.py - HTTP layer tests.

Drives the FastAPI app with TestClient: SSE step/decision framing,
incident persistence after fail decisions, error events, input checks, and
the incident endpoints.

Usage: pytest test_api.py

Requires: fastapi test client (httpx). No API key needed.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import api
from config import load_settings
from incident_store import IncidentStore
from llm_client import ScriptedModelClient

IMAGE = b"\xff\xd8\xff\xe0" + b"\x00" * 32

GOOD_REPLY = json.dumps(
    {
        "full_text": "22FEB2022\n137133193\n37 13:08",
        "date": "22FEB2022",
        "time": "13:08",
        "plant_code": "37",
        "line_number": "3",
        "position": "correct",
        "print_quality": "good",
    }
)
ON_MARK_REPLY = GOOD_REPLY.replace('"correct"', '"on_mark"')


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(api, "settings", load_settings({}))
    monkeypatch.setattr(api, "incident_store", IncidentStore())
    monkeypatch.setattr(api, "model_client", None)
    return TestClient(api.app)


def _events(body: str) -> list[dict]:
    events = []
    for frame in body.split("\n\n"):
        for line in frame.splitlines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))
    return events


def _inspect(client, filename="bag.jpg", data=None, content=IMAGE):
    return client.post(
        "/inspect",
        files={"image": (filename, content, "image/jpeg")},
        data=data or {},
    )


def test_health_reports_mock_mode(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "mode": "mock"}


def test_inspect_fail_streams_steps_and_persists_incident(client, monkeypatch) -> None:
    monkeypatch.setattr(api, "model_client", ScriptedModelClient(vision_replies=[ON_MARK_REPLY]))
    response = _inspect(client, data={"bag_number": "4"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = _events(response.text)
    assert [event["type"] for event in events[:-1]] == ["step"] * 12
    final = events[-1]
    assert final["type"] == "decision"
    assert final["decision"]["status"] == "fail"
    assert final["decision"]["agent_reasoning"]["action"] == "stop_line"

    stored = api.incident_store.all()
    assert len(stored) == 1
    assert final["incident_id"] == stored[0].id
    assert stored[0].bag_number == 4
    assert stored[0].severity.value == "critical"


def test_inspect_pass_stores_nothing(client, monkeypatch) -> None:
    monkeypatch.setattr(api, "model_client", ScriptedModelClient(vision_replies=[GOOD_REPLY]))
    events = _events(_inspect(client).text)

    step_ids = [event["step"]["id"] for event in events if event["type"] == "step"]
    assert step_ids == ["vision-extraction"] * 2 + ["validation"] * 2 + ["decision"] * 2
    assert events[-1]["decision"]["status"] == "pass"
    assert events[-1]["incident_id"] is None
    assert api.incident_store.all() == []


def test_mock_mode_uses_filename(client) -> None:
    events = _events(_inspect(client, filename="bag_on_bellmark.jpg").text)
    decision = events[-1]["decision"]
    assert decision["violations"] == ["code_date_on_mark"]
    assert decision["agent_reasoning"]["source"] == "fallback"


def test_extraction_error_event(client, monkeypatch) -> None:
    monkeypatch.setattr(api, "model_client", ScriptedModelClient(vision_replies=["cannot read"]))
    events = _events(_inspect(client).text)

    assert events[-1]["type"] == "error"
    assert events[-1]["step_id"] == "vision-extraction"
    assert "Vision extraction failed" in events[-1]["error"]
    assert events[-2]["step"]["status"] == "error"
    assert not any(event["type"] == "decision" for event in events)


def test_inspect_input_errors(client) -> None:
    assert _inspect(client, content=b"").status_code == 400
    assert _inspect(client, data={"expected_product": "bogus"}).status_code == 400
    assert _inspect(client, data={"inspection_date": "not-a-date"}).status_code == 400
    assert client.post("/inspect").status_code == 422


def test_incident_endpoints(client, monkeypatch) -> None:
    monkeypatch.setattr(
        api,
        "model_client",
        ScriptedModelClient(vision_replies=[ON_MARK_REPLY, ON_MARK_REPLY, ON_MARK_REPLY]),
    )
    for _ in range(3):
        _inspect(client)

    incidents = client.get("/incidents").json()
    assert len(incidents) == 3
    assert len(client.get("/incidents", params={"days_back": 1}).json()) == 3

    stats = client.get("/incidents/stats").json()
    assert stats["total"] == 3
    assert stats["critical"] == 3
    assert stats["stop_line_count"] == 3

    history = client.get("/incidents/history").json()
    assert history["recent_critical"] == 3
    assert history["pattern"] == "recurring critical"

    assert client.get("/incidents", params={"days_back": -1}).status_code == 422

    assert client.delete("/incidents").json() == {"removed": 3}
    assert client.get("/incidents").json() == []


class LoopCheckingStore(IncidentStore):
    """File-backed store that records whether append ran on the event loop."""

    def __init__(self, path):
        super().__init__(path)
        self.appended_on_loop = []

    def append(self, incident):
        try:
            asyncio.get_running_loop()
            self.appended_on_loop.append(True)
        except RuntimeError:
            self.appended_on_loop.append(False)
        return super().append(incident)


def test_file_backed_append_runs_off_event_loop(client, monkeypatch, tmp_path) -> None:
    path = tmp_path / "incidents.json"
    store = LoopCheckingStore(str(path))
    monkeypatch.setattr(api, "incident_store", store)
    monkeypatch.setattr(api, "model_client", ScriptedModelClient(vision_replies=[ON_MARK_REPLY]))

    events = _events(_inspect(client).text)

    assert store.appended_on_loop == [False]
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert [item["id"] for item in saved["incidents"]] == [events[-1]["incident_id"]]
