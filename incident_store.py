"""
incident_store.py - Append-only incident log.

The agent reads it (history tool); the caller writes it (after a fail
decision). Incidents are never mutated once appended and are removed only by
an explicit `clear()`.

Optionally backed by one JSON file written atomically (temp file + replace).
No file configured = in-memory only, reset on process restart.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from logging_config import get_logger
from models import Action, Incident, Severity, utc_now

logger = get_logger(__name__)


class IncidentStats(BaseModel):
    """Counts over every stored incident."""

    total: int = 0
    critical: int = 0
    moderate: int = 0
    minor: int = 0
    stop_line_count: int = 0
    alert_qa_count: int = 0
    hold_batch_count: int = 0


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class IncidentStore:
    """Thread-safe incident list with optional JSON-file persistence."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = Path(path).resolve() if path else None
        self._items: list[Incident] = []
        self._lock = threading.Lock()
        if self.path is not None:
            self._items = self._load()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def append(self, incident: Incident) -> Incident:
        """Store a finalized incident and return a copy of what was stored."""
        stored = Incident.model_validate(incident.model_dump())
        with self._lock:
            self._items.append(stored)
            if self.path is not None:
                self._save(self._items)
            total = len(self._items)
        logger.info(
            "incident_saved | id=%s | severity=%s | action=%s | total=%d",
            stored.id,
            stored.severity.value,
            stored.action.value,
            total,
        )
        return stored.model_copy(deep=True)

    def all(self) -> list[Incident]:
        with self._lock:
            return [item.model_copy(deep=True) for item in self._items]

    def query(self, days_back: int, now: Optional[datetime] = None) -> list[Incident]:
        """Incidents whose timestamp falls within the trailing `days_back` days, oldest first."""
        if days_back < 0:
            raise ValueError("days_back must be >= 0")
        reference = _as_aware(now) if now is not None else utc_now()
        cutoff = reference - timedelta(days=days_back)
        with self._lock:
            return [item.model_copy(deep=True) for item in self._items if item.timestamp >= cutoff]

    def clear(self) -> int:
        """Remove every incident. Returns how many were removed."""
        with self._lock:
            removed = len(self._items)
            self._items = []
            if self.path is not None:
                self._save(self._items)
        logger.info("incidents_cleared | removed=%d", removed)
        return removed

    def stats(self) -> IncidentStats:
        with self._lock:
            items = list(self._items)
        return IncidentStats(
            total=len(items),
            critical=sum(1 for item in items if item.severity is Severity.CRITICAL),
            moderate=sum(1 for item in items if item.severity is Severity.MODERATE),
            minor=sum(1 for item in items if item.severity is Severity.MINOR),
            stop_line_count=sum(1 for item in items if item.action is Action.STOP_LINE),
            alert_qa_count=sum(1 for item in items if item.action is Action.ALERT_QA),
            hold_batch_count=sum(1 for item in items if item.action is Action.HOLD_BATCH),
        )

    def _load(self) -> list[Incident]:
        """Load incidents from disk, returning an empty list if missing/unreadable."""
        assert self.path is not None
        if not self.path.exists():
            return []

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "incident_load_warning | path=%s | error_type=%s | error=%s | fallback='empty'",
                self.path,
                type(exc).__name__,
                exc,
            )
            return []

        records: list[Any] = raw.get("incidents", []) if isinstance(raw, dict) else []
        loaded: list[Incident] = []
        for record in records:
            try:
                loaded.append(Incident.model_validate(record))
            except ValidationError as exc:
                logger.warning(
                    "incident_load_skip | path=%s | id=%r | error=%s",
                    self.path,
                    record.get("id") if isinstance(record, dict) else None,
                    exc,
                )
        logger.info("incidents_loaded | path=%s | count=%d", self.path, len(loaded))
        return loaded

    def _save(self, items: list[Incident]) -> None:
        """Persist incidents atomically via temp-file + replace. Caller holds the lock."""
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)

        payload = {
            "incidents": [item.model_dump(mode="json") for item in items],
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(self.path.parent),
            delete=False,
            suffix=".tmp",
            prefix="incidents-",
        ) as tmp_file:
            json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = Path(tmp_file.name)

        os.replace(tmp_path, self.path)
