"""Lock-guarded dual message history for a single task."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from drawagent.agent.messages import ConversationMessage, StorageMessage

logger = logging.getLogger(__name__)


class MessagePersistence(Protocol):
    """Durable storage for the two message sequences of a task."""

    def save_api_messages(self, task_id: str, messages: list[StorageMessage]) -> None: ...

    def load_api_messages(self, task_id: str) -> list[StorageMessage]: ...

    def save_conversation_messages(self, task_id: str, messages: list[ConversationMessage]) -> None: ...

    def load_conversation_messages(self, task_id: str) -> list[ConversationMessage]: ...

    def save_deleted_range(self, task_id: str, deleted_range: tuple[int, int] | None) -> None: ...

    def load_deleted_range(self, task_id: str) -> tuple[int, int] | None: ...


@dataclass(frozen=True)
class MessageState:
    """Snapshot handed to subscribers after every mutation."""

    api_messages: tuple[StorageMessage, ...]
    conversation_messages: tuple[ConversationMessage, ...]
    deleted_range: tuple[int, int] | None


Subscriber = Callable[[MessageState], None]


class MessageStateHandler:
    """Owns the model-facing and UI-facing histories of one task.

    Every mutation runs acquire -> mutate -> persist -> notify under one
    lock, so readers never observe a half-applied change.
    """

    def __init__(self, task_id: str, persistence: MessagePersistence | None = None) -> None:
        self.task_id = task_id
        self._persistence = persistence
        self._lock = threading.RLock()
        self._api_messages: list[StorageMessage] = []
        self._conversation_messages: list[ConversationMessage] = []
        self._deleted_range: tuple[int, int] | None = None
        self._subscribers: list[Subscriber] = []

    # ── Subscriptions ──

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a state observer. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def snapshot(self) -> MessageState:
        with self._lock:
            return MessageState(
                api_messages=tuple(self._api_messages),
                conversation_messages=tuple(self._conversation_messages),
                deleted_range=self._deleted_range,
            )

    def _commit(self) -> MessageState:
        """Persist and notify. Caller holds the lock."""
        if self._persistence is not None:
            self._persistence.save_api_messages(self.task_id, self._api_messages)
            self._persistence.save_conversation_messages(self.task_id, self._conversation_messages)
            self._persistence.save_deleted_range(self.task_id, self._deleted_range)
        state = self.snapshot()
        for callback in list(self._subscribers):
            callback(state)
        return state

    # ── Reads ──

    def get_api_messages(self) -> list[StorageMessage]:
        with self._lock:
            return list(self._api_messages)

    def get_conversation_messages(self) -> list[ConversationMessage]:
        with self._lock:
            return list(self._conversation_messages)

    def get_deleted_range(self) -> tuple[int, int] | None:
        with self._lock:
            return self._deleted_range

    # ── Mutations ──

    def add_api_message(self, message: StorageMessage) -> MessageState:
        with self._lock:
            self._api_messages.append(message)
            return self._commit()

    def add_conversation_message(self, message: ConversationMessage) -> MessageState:
        """Append a UI entry stamped with the current model-history position."""
        with self._lock:
            stamped = message.stamped(len(self._api_messages) - 1, self._deleted_range)
            self._conversation_messages.append(stamped)
            return self._commit()

    def update_api_message(self, index: int, message: StorageMessage) -> MessageState:
        with self._lock:
            if index < 0 or index >= len(self._api_messages):
                raise IndexError(f"Invalid API message index: {index}")
            self._api_messages[index] = message
            return self._commit()

    def update_conversation_message(self, index: int, message: ConversationMessage) -> MessageState:
        with self._lock:
            if index < 0 or index >= len(self._conversation_messages):
                raise IndexError(f"Invalid conversation message index: {index}")
            self._conversation_messages[index] = message
            return self._commit()

    def set_api_messages(self, messages: list[StorageMessage]) -> MessageState:
        with self._lock:
            self._api_messages = list(messages)
            return self._commit()

    def set_conversation_messages(self, messages: list[ConversationMessage]) -> MessageState:
        with self._lock:
            self._conversation_messages = list(messages)
            return self._commit()

    def set_deleted_range(self, deleted_range: tuple[int, int] | None) -> MessageState:
        with self._lock:
            self._deleted_range = deleted_range
            return self._commit()

    def clear(self) -> MessageState:
        with self._lock:
            self._api_messages = []
            self._conversation_messages = []
            self._deleted_range = None
            return self._commit()

    def load(self) -> MessageState:
        """Replace in-memory state with what persistence holds for this task."""
        if self._persistence is None:
            return self.snapshot()
        with self._lock:
            self._api_messages = self._persistence.load_api_messages(self.task_id)
            self._conversation_messages = self._persistence.load_conversation_messages(self.task_id)
            self._deleted_range = self._persistence.load_deleted_range(self.task_id)
            logger.info(
                "Loaded task %s: %d api / %d conversation messages",
                self.task_id, len(self._api_messages), len(self._conversation_messages),
            )
            state = self.snapshot()
            for callback in list(self._subscribers):
                callback(state)
            return state
