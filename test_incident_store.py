"""
test_incident_store.py - Incident store tests.

Covers append-only behavior, day-window queries, stats, explicit clear,
and JSON-file persistence across store instances.

Usage: pytest test_incident_store.py
"""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from incident_store import IncidentStore
from models import Action, ExtractedRecord, Incident, Severity, Violation

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _incident(
    incident_id: str,
    days_ago: float = 0,
    severity: Severity = Severity.MINOR,
    action: Action = Action.ALERT_QA,
) -> Incident:
    return Incident(
        id=incident_id,
        timestamp=NOW - timedelta(days=days_ago),
        violations=[Violation.MISSING_DATE],
        severity=severity,
        action=action,
        estimated_cost=150,
        confidence=0.75,
        record=ExtractedRecord(time="13:08", plant_code="37", position="correct", print_quality="good"),
    )


def test_append_and_all_return_copies() -> None:
    store = IncidentStore()
    stored = store.append(_incident("INC-1"))
    stored.reasoning = "edited outside"

    items = store.all()
    assert len(items) == 1
    assert items[0].reasoning == ""

    items[0].reasoning = "edited again"
    assert store.all()[0].reasoning == ""


def test_query_filters_by_window() -> None:
    store = IncidentStore()
    store.append(_incident("INC-old", days_ago=45))
    store.append(_incident("INC-mid", days_ago=10))
    store.append(_incident("INC-new", days_ago=1))

    assert [item.id for item in store.query(30, now=NOW)] == ["INC-mid", "INC-new"]
    assert [item.id for item in store.query(5, now=NOW)] == ["INC-new"]
    assert len(store.query(60, now=NOW)) == 3


def test_naive_timestamps_treated_as_utc() -> None:
    store = IncidentStore()
    store.append(_incident("INC-1").model_copy(update={"timestamp": datetime(2026, 3, 14, 12, 0)}))
    assert store.all()[0].timestamp.tzinfo is not None
    assert len(store.query(2, now=NOW.replace(tzinfo=None))) == 1


def test_stats_counts_severity_and_action() -> None:
    store = IncidentStore()
    store.append(_incident("INC-1", severity=Severity.CRITICAL, action=Action.STOP_LINE))
    store.append(_incident("INC-2", severity=Severity.MODERATE, action=Action.ALERT_QA))
    store.append(_incident("INC-3", severity=Severity.MINOR, action=Action.ALERT_QA))
    store.append(_incident("INC-4", severity=Severity.MODERATE, action=Action.HOLD_BATCH))

    stats = store.stats()
    assert stats.total == 4
    assert (stats.critical, stats.moderate, stats.minor) == (1, 2, 1)
    assert stats.stop_line_count == 1
    assert stats.alert_qa_count == 2
    assert stats.hold_batch_count == 1


def test_clear_is_explicit() -> None:
    store = IncidentStore()
    store.append(_incident("INC-1"))
    store.append(_incident("INC-2"))
    assert len(store) == 2
    assert store.clear() == 2
    assert store.all() == []
    assert store.stats().total == 0


def test_file_persistence_round_trip(tmp_path) -> None:
    path = tmp_path / "data" / "incidents.json"
    store = IncidentStore(str(path))
    store.append(_incident("INC-1", severity=Severity.CRITICAL, action=Action.STOP_LINE))

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["incidents"][0]["id"] == "INC-1"
    assert not list(path.parent.glob("*.tmp"))

    reloaded = IncidentStore(str(path))
    items = reloaded.all()
    assert len(items) == 1
    assert items[0].severity is Severity.CRITICAL
    assert items[0].record.plant_code == "37"

    reloaded.clear()
    assert IncidentStore(str(path)).all() == []


def test_unreadable_file_starts_empty(tmp_path) -> None:
    path = tmp_path / "incidents.json"
    path.write_text("{not json", encoding="utf-8")
    assert IncidentStore(str(path)).all() == []


def test_invalid_records_are_skipped(tmp_path) -> None:
    path = tmp_path / "incidents.json"
    good = _incident("INC-ok").model_dump(mode="json")
    path.write_text(json.dumps({"incidents": [good, {"id": "INC-bad"}]}), encoding="utf-8")
    assert [item.id for item in IncidentStore(str(path)).all()] == ["INC-ok"]
