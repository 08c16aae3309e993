from __future__ import annotations

from concurrent.futures import TimeoutError as CommandTimeout
import json
import logging
import queue
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .config import ConfigError, TrackerConfig, load_config
from .models import ModelError, ObjectiveState
from .tracking import AutoTracker, ModuleLoadError, TrackerError, UnknownObjective, discover_modules

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Autotrack API",
    description="Control the memory-watch auto-tracker and read objective states.",
    version="1.0.0",
)


def _initial_config() -> TrackerConfig:
    try:
        return load_config()
    except ConfigError as exc:
        logger.warning("Ignoring invalid tracker config, using defaults: %s", exc)
        return TrackerConfig()


tracker = AutoTracker(_initial_config())
if tracker.config.module:
    try:
        tracker.load_module(tracker.config.module)
    except ModuleLoadError as exc:
        logger.warning("Configured module '%s' failed to load: %s", tracker.config.module, exc)


class ModuleLoadRequest(BaseModel):
    module: str = Field(..., min_length=1, description="Module id or path to a module directory/manifest.")


class TrackerStartRequest(BaseModel):
    module: str = Field(default="", description="Optional module to load before starting.")


class ObjectiveStateRequest(BaseModel):
    state: str = Field(..., description="locked | unlocked | complete")


def _load(source: str) -> Dict[str, Any]:
    try:
        module = tracker.load_module(source)
    except (ModuleLoadError, ConfigError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "id": module.id,
        "name": module.info.name,
        "authors": list(module.info.authors),
        "game_url": module.info.game_url,
        "source_path": module.info.source_path,
        "watches": len(module.watches),
        "objectives": [
            {"id": info.id, "name": info.name, "type": info.type} for info in module.objectives.values()
        ],
    }


def _objective_payload(objective_id: str, state: ObjectiveState) -> Dict[str, Any]:
    return {"id": objective_id, "state": state.value}


def _format_sse_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=True, separators=(',', ':'))}\n\n"


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/tracker/status")
def tracker_status():
    return tracker.status()


@app.post("/api/v1/tracker/start")
def tracker_start(payload: Optional[TrackerStartRequest] = None):
    request = payload or TrackerStartRequest()
    if request.module.strip():
        _load(request.module.strip())
    try:
        return tracker.start()
    except TrackerError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.post("/api/v1/tracker/stop")
def tracker_stop():
    return tracker.stop()


@app.get("/api/v1/modules")
def modules_list():
    return {
        "modules_dir": str(tracker.config.modules_dir),
        "active": tracker.module.id if tracker.module is not None else "",
        "modules": discover_modules(tracker.config.modules_dir),
    }


@app.post("/api/v1/modules/load")
def modules_load(payload: ModuleLoadRequest):
    return _load(payload.module.strip())


@app.get("/api/v1/objectives")
def objectives_all():
    return {
        "module": tracker.module.id if tracker.module is not None else "",
        "objectives": {objective_id: state.value for objective_id, state in tracker.get_all().items()},
    }


@app.get("/api/v1/objectives/{objective_id}")
def objective_get(objective_id: str):
    try:
        return _objective_payload(objective_id, tracker.get(objective_id))
    except UnknownObjective as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/v1/objectives/{objective_id}")
def objective_set(objective_id: str, payload: ObjectiveStateRequest):
    try:
        state = tracker.set_objective_state(objective_id, payload.state)
    except ModelError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UnknownObjective as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CommandTimeout as exc:
        raise HTTPException(status_code=504, detail="Tracker did not apply the override in time.") from exc
    return _objective_payload(objective_id, state)


@app.post("/api/v1/objectives/{objective_id}/toggle")
def objective_toggle(objective_id: str):
    try:
        state = tracker.toggle_state(objective_id)
    except UnknownObjective as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CommandTimeout as exc:
        raise HTTPException(status_code=504, detail="Tracker did not apply the toggle in time.") from exc
    return _objective_payload(objective_id, state)


@app.get("/api/v1/dump")
def dump():
    return {
        "module": tracker.module.id if tracker.module is not None else "",
        "status": tracker.status()["status"],
        "objectives": tracker.dump_state(),
    }


@app.get("/api/v1/events")
def events(limit: int = 100, heartbeat_ms: int = 5000):
    """Stream objective changes as server-sent events, starting with a full dump."""
    max_events = max(1, min(int(limit), 10000))
    heartbeat_s = max(0.05, min(float(heartbeat_ms) / 1000.0, 60.0))
    changes: "queue.Queue[Dict[str, Any]]" = queue.Queue()

    def _on_change(objective_id: str, previous: Optional[ObjectiveState], state: ObjectiveState) -> None:
        changes.put(
            {
                "id": objective_id,
                "previous": previous.value if previous is not None else None,
                "state": state.value,
                "timestamp": time.time(),
            }
        )

    unsubscribe = tracker.subscribe(_on_change)

    def _event_stream():
        sent = 0
        try:
            yield _format_sse_event("snapshot", {"timestamp": time.time(), "objectives": tracker.dump_state()})
            while sent < max_events:
                try:
                    change = changes.get(timeout=heartbeat_s)
                except queue.Empty:
                    yield _format_sse_event("heartbeat", {"timestamp": time.time(), "sequence": sent})
                    continue
                yield _format_sse_event("objective", change)
                sent += 1
        finally:
            unsubscribe()

    return StreamingResponse(
        _event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
