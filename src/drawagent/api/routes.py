"""Task API: start analyses, stream their events, inspect stored history."""

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from drawagent import config
from drawagent.agent.loop import AgentLoop, TaskRequest
from drawagent.agent.prompts import DEFAULT_DIAGRAM_TYPE, DIAGRAM_TYPES
from drawagent.agent.provider import ProviderHandler, create_provider
from drawagent.api.task_manager import TERMINAL_EVENT, TaskManager
from drawagent.config import AgentConfig
from drawagent.storage.message_state import MessageStateHandler
from drawagent.storage.sqlite_store import TaskStore

logger = logging.getLogger(__name__)

router = APIRouter()

_task_manager = TaskManager()

_store: TaskStore | None = None
_store_lock = threading.Lock()

KEEPALIVE_SECS = 15


def _get_store() -> TaskStore:
    global _store
    with _store_lock:
        if _store is None:
            _store = TaskStore(config.SQLITE_PATH)
            _store.init_db()
        return _store


def _agent_config() -> AgentConfig:
    return AgentConfig.from_env()


def _create_provider(cfg: AgentConfig) -> ProviderHandler:
    return create_provider(cfg.provider)


class AnalyzeRequest(BaseModel):
    message: str
    diagram_type: str = DEFAULT_DIAGRAM_TYPE
    cwd: str | None = None


def _start_task(req: AnalyzeRequest) -> str:
    if not req.message.strip():
        raise HTTPException(status_code=400, detail="message must not be empty")
    if req.diagram_type not in DIAGRAM_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown diagram_type {req.diagram_type!r}; expected one of {list(DIAGRAM_TYPES)}",
        )
    try:
        cfg = _agent_config()
        provider = _create_provider(cfg)
    except (RuntimeError, ValueError) as e:
        logger.error("Cannot start task: %s", e)
        raise HTTPException(status_code=503, detail=f"Agent is not configured: {e}") from e

    agent = AgentLoop(provider, cfg, _get_store())
    task_id = str(uuid.uuid4())
    request = TaskRequest(
        message=req.message, diagram_type=req.diagram_type, task_id=task_id, cwd=req.cwd,
    )

    def _run(on_event):
        result = agent.run(request, on_event=lambda event: on_event(event.to_dict()))
        return {"status": result.status, "turns": result.turns, "error": result.error}

    _task_manager.submit("analyze", _run, task_id=task_id)
    logger.info("Started task %s (%s)", task_id, req.diagram_type)
    return task_id


def _event_stream(task_id: str) -> StreamingResponse:
    sub_queue = _task_manager.subscribe(task_id)
    if sub_queue is None:
        raise HTTPException(status_code=404, detail="Task not found")

    def event_generator():
        try:
            while True:
                try:
                    event = sub_queue.get(timeout=KEEPALIVE_SECS)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event)}\n\n"
                if event.get("type") == TERMINAL_EVENT:
                    break
        finally:
            _task_manager.unsubscribe(task_id, sub_queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no", "X-Task-Id": task_id},
    )


@router.get("/diagram-types")
def list_diagram_types():
    return [{"id": key, **value} for key, value in DIAGRAM_TYPES.items()]


@router.post("/analyze")
def analyze(req: AnalyzeRequest):
    """Start a task and stream its events as SSE."""
    task_id = _start_task(req)
    return _event_stream(task_id)


@router.post("/tasks")
def create_task(req: AnalyzeRequest):
    return {"task_id": _start_task(req)}


@router.get("/tasks")
def list_tasks(limit: int = Query(50, ge=1, le=500)):
    return _get_store().list_tasks(limit=limit)


@router.get("/tasks/{task_id}")
def get_task(task_id: str):
    task = _get_store().get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    live = _task_manager.get_status(task_id)
    if live is not None:
        task["running"] = live["status"] == "running"
    return task


@router.get("/tasks/{task_id}/stream")
def stream_task(task_id: str):
    """SSE stream of a task's events (replays earlier events first)."""
    return _event_stream(task_id)


@router.get("/tasks/{task_id}/messages")
def get_task_messages(task_id: str):
    store = _get_store()
    if not store.task_exists(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    state = MessageStateHandler(task_id, store).load()
    return {
        "task_id": task_id,
        "api_messages": [m.to_dict() for m in state.api_messages],
        "conversation_messages": [m.to_dict() for m in state.conversation_messages],
        "deleted_range": list(state.deleted_range) if state.deleted_range else None,
    }


@router.delete("/tasks/{task_id}")
def delete_task(task_id: str):
    live = _task_manager.get_status(task_id)
    if live is not None and live["status"] == "running":
        raise HTTPException(status_code=409, detail="Task is still running")
    store = _get_store()
    if not store.task_exists(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    store.delete_task(task_id)
    _task_manager.forget(task_id)
    return {"deleted": task_id}
