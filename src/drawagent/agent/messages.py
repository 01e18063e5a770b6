"""Message types for the two task histories.

StorageMessage is what the model sees (after truncation and overlays are
applied). ConversationMessage is the UI/audit record kept alongside it.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    """Result of one tool call.

    ``path`` is set only for full-file reads; it is what file-read
    deduplication keys on.
    """

    tool_use_id: str
    tool_name: str
    content: str
    path: str | None = None
    is_error: bool = False


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def _block_to_dict(block: ContentBlock) -> dict:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "tool_name": block.tool_name,
        "content": block.content,
        "path": block.path,
        "is_error": block.is_error,
    }


def _block_from_dict(data: dict) -> ContentBlock:
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=data["text"])
    if kind == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input") or {})
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            tool_name=data["tool_name"],
            content=data["content"],
            path=data.get("path"),
            is_error=data.get("is_error", False),
        )
    raise ValueError(f"Unknown content block type: {kind!r}")


def render_tool_result(block: ToolResultBlock) -> str:
    return f'<tool_result tool_name="{block.tool_name}">\n{block.content}\n</tool_result>'


# ---------------------------------------------------------------------------
# StorageMessage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageModelInfo:
    model_id: str
    provider_id: str


@dataclass(frozen=True)
class MessageMetrics:
    tokens_in: int | None = None
    tokens_out: int | None = None
    cache_writes: int | None = None
    cache_reads: int | None = None
    cost: float | None = None


@dataclass(frozen=True)
class StorageMessage:
    role: Role
    content: str | tuple[ContentBlock, ...]
    model_info: MessageModelInfo | None = None
    metrics: MessageMetrics | None = None

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        if isinstance(self.content, str):
            return (TextBlock(self.content),) if self.content else ()
        return self.content

    def text(self) -> str:
        """Flatten to the text the model sees. Tool-use blocks are omitted."""
        if isinstance(self.content, str):
            return self.content
        parts: list[str] = []
        for block in self.content:
            if isinstance(block, TextBlock):
                if block.text:
                    parts.append(block.text)
            elif isinstance(block, ToolResultBlock):
                parts.append(render_tool_result(block))
        return "\n\n".join(parts)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"role": self.role}
        if isinstance(self.content, str):
            data["content"] = self.content
        else:
            data["content"] = [_block_to_dict(b) for b in self.content]
        if self.model_info:
            data["model_info"] = {
                "model_id": self.model_info.model_id,
                "provider_id": self.model_info.provider_id,
            }
        if self.metrics:
            data["metrics"] = {
                "tokens_in": self.metrics.tokens_in,
                "tokens_out": self.metrics.tokens_out,
                "cache_writes": self.metrics.cache_writes,
                "cache_reads": self.metrics.cache_reads,
                "cost": self.metrics.cost,
            }
        return data

    @classmethod
    def from_dict(cls, data: dict) -> StorageMessage:
        raw = data["content"]
        content: str | tuple[ContentBlock, ...]
        if isinstance(raw, str):
            content = raw
        else:
            content = tuple(_block_from_dict(b) for b in raw)
        model_info = None
        if data.get("model_info"):
            model_info = MessageModelInfo(**data["model_info"])
        metrics = None
        if data.get("metrics"):
            metrics = MessageMetrics(**data["metrics"])
        return cls(role=data["role"], content=content, model_info=model_info, metrics=metrics)


def create_user_message(content: str | tuple[ContentBlock, ...]) -> StorageMessage:
    return StorageMessage(role="user", content=content)


def create_assistant_message(
    content: str | tuple[ContentBlock, ...],
    model_info: MessageModelInfo | None = None,
    metrics: MessageMetrics | None = None,
) -> StorageMessage:
    return StorageMessage(role="assistant", content=content, model_info=model_info, metrics=metrics)


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 chars per token)."""
    return math.ceil(len(text) / 4)


def estimate_message_tokens(messages: list[StorageMessage]) -> int:
    return sum(estimate_tokens(m.text()) for m in messages)


def render_for_model(messages: list[StorageMessage]) -> list[tuple[Role, str]]:
    """Flatten messages into alternating (role, text) turns.

    Empty turns are dropped and consecutive turns from the same role are
    merged, so the result always alternates and starts with a user turn.
    """
    turns: list[tuple[Role, str]] = []
    for msg in messages:
        text = msg.text()
        if not text.strip():
            continue
        if turns and turns[-1][0] == msg.role:
            turns[-1] = (msg.role, turns[-1][1] + "\n\n" + text)
        else:
            turns.append((msg.role, text))
    if turns and turns[0][0] != "user":
        turns.insert(0, ("user", "(continuing task)"))
    return turns


# ---------------------------------------------------------------------------
# ConversationMessage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversationMessage:
    ts: int
    say: str
    text: str | None = None
    tool_info: dict | None = None
    conversation_history_index: int | None = None
    conversation_history_deleted_range: tuple[int, int] | None = None

    def api_request_info(self) -> dict:
        """Parse the JSON payload of an ``api_req_started`` entry."""
        if self.say != "api_req_started" or not self.text:
            return {}
        try:
            info = json.loads(self.text)
        except json.JSONDecodeError:
            return {}
        return info if isinstance(info, dict) else {}

    def stamped(self, index: int, deleted_range: tuple[int, int] | None) -> ConversationMessage:
        return replace(
            self,
            conversation_history_index=index,
            conversation_history_deleted_range=deleted_range,
        )

    def to_dict(self) -> dict:
        return {
            "ts": self.ts,
            "say": self.say,
            "text": self.text,
            "tool_info": self.tool_info,
            "conversation_history_index": self.conversation_history_index,
            "conversation_history_deleted_range": (
                list(self.conversation_history_deleted_range)
                if self.conversation_history_deleted_range else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ConversationMessage:
        deleted = data.get("conversation_history_deleted_range")
        return cls(
            ts=data["ts"],
            say=data["say"],
            text=data.get("text"),
            tool_info=data.get("tool_info"),
            conversation_history_index=data.get("conversation_history_index"),
            conversation_history_deleted_range=tuple(deleted) if deleted else None,
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


def conversation_message(say: str, text: str | None = None, tool_info: dict | None = None) -> ConversationMessage:
    return ConversationMessage(ts=_now_ms(), say=say, text=text, tool_info=tool_info)


def api_request_message(metrics: MessageMetrics) -> ConversationMessage:
    payload = {
        "tokensIn": metrics.tokens_in or 0,
        "tokensOut": metrics.tokens_out or 0,
        "cacheWrites": metrics.cache_writes or 0,
        "cacheReads": metrics.cache_reads or 0,
        "cost": metrics.cost or 0,
    }
    return conversation_message("api_req_started", json.dumps(payload))


def tool_message(tool: str, content: str, path: str | None = None) -> ConversationMessage:
    info: dict[str, Any] = {"tool": tool, "content": content}
    if path:
        info["path"] = path
    return conversation_message("tool", json.dumps(info), tool_info=info)
