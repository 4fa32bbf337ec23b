"""
api.py - FastAPI HTTP layer for the quality-control agent.

Endpoints:
  - GET    /health
  - POST   /inspect             multipart image -> text/event-stream of steps + decision
  - GET    /incidents           stored incidents (optionally within days_back)
  - GET    /incidents/stats     counts by severity and action
  - GET    /incidents/history   the history summary the agent would see
  - DELETE /incidents           explicit operator reset

No inspection logic lives here. This module owns the incident store for the
process, bridges agent callbacks to SSE frames, and persists the incident
after each fail decision.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from agent import QualityControlAgent
from config import load_settings
from extract import ExtractionError, mock_vision_response
from incident_store import IncidentStore
from llm_client import ModelClient, OpenAIModelClient, ScriptedModelClient
from logging_config import get_logger, setup_logging
from models import AgentDecision, CallerMetadata, Step
from steps import VISION_EXTRACTION
from tools import build_incident, query_history

logger = get_logger("qc-api")

app = FastAPI(
    title="Code Date Quality Control Agent API",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

# Allows local UI use from file:// or another local host/port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

settings = load_settings()
incident_store = IncidentStore(settings.incident_file)

# Set explicitly (tests) or built on first use from settings.
model_client: Optional[ModelClient] = None

# Runs outlive their SSE generator when the client disconnects mid-stream.
_running_tasks: set[asyncio.Task] = set()


def _client_for(filename: str) -> ModelClient:
    """Configured client, the OpenAI client when a key is set, else filename mock replies."""
    global model_client

    if model_client is not None:
        return model_client
    if settings.has_api_key:
        model_client = OpenAIModelClient.from_settings(settings)
        return model_client

    logger.info("api_mock_mode | file=%s | api_key=missing", filename)
    return ScriptedModelClient(vision_replies=[mock_vision_response(filename)])


def _sse_event(event_type: str, data: dict[str, Any]) -> str:
    payload = {"type": event_type, **data}
    return f"event: {event_type}\ndata: {json.dumps(payload, default=str)}\n\n"


def _parse_metadata(
    expected_product: Optional[str],
    inspection_date: Optional[str],
    bag_number: Optional[int],
    image_id: Optional[str],
) -> CallerMetadata:
    raw = {
        "expected_product": (expected_product or "").strip() or None,
        "inspection_date": (inspection_date or "").strip() or None,
        "bag_number": bag_number,
        "image_id": (image_id or "").strip() or None,
    }
    try:
        return CallerMetadata.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid inspection metadata: {exc}") from exc


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    mode = "configured" if model_client is not None else ("openai" if settings.has_api_key else "mock")
    return {"status": "ok", "mode": mode}


@app.post("/inspect")
async def inspect_endpoint(
    image: UploadFile = File(...),
    expected_product: Optional[str] = Form(default=None),
    inspection_date: Optional[str] = Form(default=None),
    bag_number: Optional[int] = Form(default=None),
    image_id: Optional[str] = Form(default=None),
) -> StreamingResponse:
    """Run one inspection and stream every step transition, then the decision."""
    if not image.filename:
        raise HTTPException(status_code=400, detail="Image file is required.")

    try:
        image_bytes = await image.read()
    finally:
        await image.close()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Image file is empty.")

    metadata = _parse_metadata(expected_product, inspection_date, bag_number, image_id)
    filename = Path(image.filename).name
    queue: asyncio.Queue = asyncio.Queue()
    cancel_event = asyncio.Event()

    async def on_step(step: Step) -> None:
        await queue.put(("step", {"step": step.model_dump(mode="json")}))

    async def on_decision(decision: AgentDecision) -> None:
        incident_id = None
        if not decision.is_pass and decision.pending_incident is not None:
            # File-backed stores fsync on append; keep that off the event loop.
            incident = build_incident(decision.pending_incident, decision)
            stored = await asyncio.to_thread(incident_store.append, incident)
            incident_id = stored.id
        await queue.put(
            ("decision", {"decision": decision.model_dump(mode="json"), "incident_id": incident_id})
        )

    agent = QualityControlAgent(
        _client_for(filename),
        incident_store,
        on_step=on_step,
        on_decision=on_decision,
        step_delay=settings.step_delay_seconds,
        history_days=settings.history_days,
    )

    async def run_agent() -> None:
        try:
            await agent.run(image_bytes, metadata, cancel_event=cancel_event)
        except ExtractionError as exc:
            await queue.put(("error", {"error": str(exc), "step_id": VISION_EXTRACTION}))
        except Exception as exc:
            logger.error(
                "api_inspect_error | file=%s | error_type=%s | error=%s",
                filename,
                type(exc).__name__,
                exc,
                exc_info=True,
            )
            await queue.put(("error", {"error": "Unexpected server error while inspecting image.", "step_id": None}))
        finally:
            await queue.put(None)

    async def event_generator():
        task = asyncio.create_task(run_agent())
        _running_tasks.add(task)
        task.add_done_callback(_running_tasks.discard)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                event_type, data = item
                yield _sse_event(event_type, data)
        finally:
            if not task.done():
                logger.info("api_inspect_disconnect | file=%s | action=cancel", filename)
            cancel_event.set()

    logger.info("api_inspect_start | file=%s | bytes=%d | bag_number=%s", filename, len(image_bytes), bag_number)
    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.get("/incidents")
def list_incidents(days_back: Optional[int] = Query(default=None, ge=0)) -> list[dict[str, Any]]:
    items = incident_store.all() if days_back is None else incident_store.query(days_back)
    return [item.model_dump(mode="json") for item in items]


@app.get("/incidents/stats")
def incident_stats() -> dict[str, Any]:
    return incident_store.stats().model_dump(mode="json")


@app.get("/incidents/history")
def incident_history(days_back: Optional[int] = Query(default=None, ge=0)) -> dict[str, Any]:
    window = settings.history_days if days_back is None else days_back
    return query_history(incident_store, window).model_dump(mode="json")


@app.delete("/incidents")
def clear_incidents() -> dict[str, int]:
    """Operator reset. The only way incidents are removed."""
    return {"removed": incident_store.clear()}


if __name__ == "__main__":
    setup_logging(settings.log_level, json_format=settings.log_json)
    uvicorn.run("api:app", host="0.0.0.0", port=settings.port, reload=False)
