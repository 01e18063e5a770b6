"""Background task manager for agent runs with event streaming."""

from __future__ import annotations

import logging
import queue
import threading
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

logger = logging.getLogger(__name__)

TERMINAL_EVENT = "done"


class TaskManager:
    """Runs agent tasks on a thread pool and fans their events out.

    Every event is recorded on the task, so a subscriber that joins late
    first receives everything emitted so far, then live events.
    """

    def __init__(self, max_workers: int | None = None) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self._tasks: dict[str, dict[str, Any]] = {}
        self._subscribers: dict[str, list[queue.Queue]] = {}
        self._lock = threading.Lock()

    def submit(
        self, name: str, fn: Callable, task_id: str | None = None, **kwargs,
    ) -> str:
        """Submit a task for background execution.

        Args:
            name: Human-readable task name (e.g. "analyze").
            fn: Callable to execute. It receives ``on_event`` (a callable
                taking an event dict) in addition to ``kwargs``.
            task_id: Optional pre-generated task ID.
            **kwargs: Arguments passed to fn.

        Returns:
            Task ID (UUID string).
        """
        with self._lock:
            if task_id is None:
                task_id = str(uuid.uuid4())
            if task_id in self._tasks:
                raise ValueError(f"Task {task_id} already exists")
            self._tasks[task_id] = {
                "id": task_id,
                "name": name,
                "status": "running",
                "events": [],
                "result": None,
                "error": None,
            }
            self._subscribers[task_id] = []

        def _on_event(event: dict) -> None:
            self.push_event(task_id, event)

        def _run():
            try:
                result = fn(on_event=_on_event, **kwargs)
                with self._lock:
                    task = self._tasks.get(task_id)
                    if task is None:
                        return
                    task["status"] = "completed"
                    task["result"] = result
            except Exception as e:
                logger.exception("Task %s (%s) failed", task_id, name)
                with self._lock:
                    task = self._tasks.get(task_id)
                    if task is None:
                        return
                    task["status"] = "failed"
                    task["error"] = traceback.format_exc()
                self.push_event(task_id, {"type": "error", "message": str(e)})
                self.push_event(task_id, {"type": TERMINAL_EVENT, "status": "failed"})

        self._executor.submit(_run)
        return task_id

    def get_status(self, task_id: str) -> dict | None:
        """Get task status and metadata (without the event log)."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            info = {k: v for k, v in task.items() if k != "events"}
            info["event_count"] = len(task["events"])
            return info

    def list_tasks(self) -> list[dict]:
        with self._lock:
            return [
                {k: v for k, v in t.items() if k not in ("events", "result")}
                for t in self._tasks.values()
            ]

    def forget(self, task_id: str) -> bool:
        """Drop a finished task from memory. Running tasks are kept."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task["status"] == "running":
                return False
            del self._tasks[task_id]
            self._subscribers.pop(task_id, None)
            return True

    def subscribe(self, task_id: str) -> queue.Queue | None:
        """Subscribe to events for a task.

        Returns a Queue pre-filled with the events emitted so far, or None
        if the task doesn't exist.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            q: queue.Queue = queue.Queue()
            for event in task["events"]:
                q.put_nowait(event)
            self._subscribers[task_id].append(q)
            return q

    def unsubscribe(self, task_id: str, q: queue.Queue) -> None:
        with self._lock:
            subs = self._subscribers.get(task_id, [])
            if q in subs:
                subs.remove(q)

    def push_event(self, task_id: str, event: dict) -> None:
        """Record an event and send it to all subscribers of the task."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return
            task["events"].append(event)
            for q in self._subscribers.get(task_id, []):
                q.put_nowait(event)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
