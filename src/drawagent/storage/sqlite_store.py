"""SQLite storage for tasks, their message histories, and diagram artifacts."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from drawagent.agent.messages import ConversationMessage, StorageMessage


class TaskStore:
    """Durable task storage keyed by task id.

    One connection is shared across threads (the agent loop runs on a worker
    thread while the API reads from request threads); every statement runs
    under ``self._lock``.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()

    def init_db(self) -> None:
        """Create all tables and indexes."""
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    prompt TEXT NOT NULL,
                    diagram_type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'running',
                    error TEXT,
                    artifact TEXT,
                    turns INTEGER,
                    deleted_range_start INTEGER,
                    deleted_range_end INTEGER,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    duration_secs REAL
                );
                CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(created_at);

                CREATE TABLE IF NOT EXISTS api_messages (
                    task_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (task_id, seq)
                );

                CREATE TABLE IF NOT EXISTS conversation_messages (
                    task_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (task_id, seq)
                );

                CREATE TABLE IF NOT EXISTS context_history (
                    task_id TEXT NOT NULL,
                    message_index INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (task_id, message_index)
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Tasks ──

    def insert_task(self, task_id: str, prompt: str, diagram_type: str) -> None:
        """Insert a new task with status='running'."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute(
                """INSERT INTO tasks (id, prompt, diagram_type, status, created_at)
                   VALUES (?, ?, ?, 'running', ?)""",
                (task_id, prompt, diagram_type, now),
            )
            self._conn.commit()

    def finish_task(
        self, task_id: str, status: str, turns: int, duration_secs: float,
        error: str | None = None,
    ) -> None:
        """Record a terminal status (completed, failed, max_turns)."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute(
                """UPDATE tasks
                   SET status = ?, error = ?, turns = ?, completed_at = ?, duration_secs = ?
                   WHERE id = ?""",
                (status, error, turns, now, duration_secs, task_id),
            )
            self._conn.commit()

    def save_artifact(self, task_id: str, xml: str) -> None:
        with self._lock:
            self._conn.execute("UPDATE tasks SET artifact = ? WHERE id = ?", (xml, task_id))
            self._conn.commit()

    def get_task(self, task_id: str) -> dict | None:
        """Get full task details including the artifact."""
        with self._lock:
            row = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return dict(row) if row else None

    def list_tasks(self, limit: int = 50) -> list[dict]:
        """List recent tasks (without the artifact)."""
        with self._lock:
            cur = self._conn.execute(
                """SELECT id, prompt, diagram_type, status, error, turns,
                          created_at, completed_at, duration_secs
                   FROM tasks ORDER BY created_at DESC LIMIT ?""",
                (limit,),
            )
            return [dict(row) for row in cur.fetchall()]

    def task_exists(self, task_id: str) -> bool:
        with self._lock:
            row = self._conn.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if row:
                return True
            row = self._conn.execute(
                "SELECT 1 FROM api_messages WHERE task_id = ? LIMIT 1", (task_id,)
            ).fetchone()
        return row is not None

    def delete_task(self, task_id: str) -> None:
        """Delete a task and everything stored under it."""
        with self._lock:
            for table in ("api_messages", "conversation_messages", "context_history"):
                self._conn.execute(f"DELETE FROM {table} WHERE task_id = ?", (task_id,))  # noqa: S608
            self._conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            self._conn.commit()

    # ── Message histories ──

    def _replace_sequence(self, table: str, task_id: str, payloads: list[str]) -> None:
        with self._lock:
            self._conn.execute(f"DELETE FROM {table} WHERE task_id = ?", (task_id,))  # noqa: S608
            self._conn.executemany(
                f"INSERT INTO {table} (task_id, seq, payload) VALUES (?, ?, ?)",  # noqa: S608
                [(task_id, i, p) for i, p in enumerate(payloads)],
            )
            self._conn.commit()

    def _load_sequence(self, table: str, task_id: str) -> list[dict]:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT payload FROM {table} WHERE task_id = ? ORDER BY seq",  # noqa: S608
                (task_id,),
            )
            return [json.loads(row["payload"]) for row in cur.fetchall()]

    def save_api_messages(self, task_id: str, messages: list[StorageMessage]) -> None:
        self._replace_sequence("api_messages", task_id, [json.dumps(m.to_dict()) for m in messages])

    def load_api_messages(self, task_id: str) -> list[StorageMessage]:
        return [StorageMessage.from_dict(d) for d in self._load_sequence("api_messages", task_id)]

    def save_conversation_messages(self, task_id: str, messages: list[ConversationMessage]) -> None:
        self._replace_sequence(
            "conversation_messages", task_id, [json.dumps(m.to_dict()) for m in messages]
        )

    def load_conversation_messages(self, task_id: str) -> list[ConversationMessage]:
        return [
            ConversationMessage.from_dict(d)
            for d in self._load_sequence("conversation_messages", task_id)
        ]

    def save_deleted_range(self, task_id: str, deleted_range: tuple[int, int] | None) -> None:
        start, end = deleted_range if deleted_range else (None, None)
        with self._lock:
            self._conn.execute(
                "UPDATE tasks SET deleted_range_start = ?, deleted_range_end = ? WHERE id = ?",
                (start, end, task_id),
            )
            self._conn.commit()

    def load_deleted_range(self, task_id: str) -> tuple[int, int] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT deleted_range_start, deleted_range_end FROM tasks WHERE id = ?",
                (task_id,),
            ).fetchone()
        if not row or row["deleted_range_start"] is None:
            return None
        return (row["deleted_range_start"], row["deleted_range_end"])

    # ── Context history (file-read dedup overlay) ──

    def save_context_updates(self, task_id: str, updates: dict[int, StorageMessage]) -> None:
        with self._lock:
            self._conn.executemany(
                """INSERT OR REPLACE INTO context_history (task_id, message_index, payload)
                   VALUES (?, ?, ?)""",
                [(task_id, idx, json.dumps(msg.to_dict())) for idx, msg in updates.items()],
            )
            self._conn.commit()

    def load_context_updates(self, task_id: str) -> dict[int, StorageMessage]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT message_index, payload FROM context_history WHERE task_id = ?",
                (task_id,),
            )
            return {
                row["message_index"]: StorageMessage.from_dict(json.loads(row["payload"]))
                for row in cur.fetchall()
            }
