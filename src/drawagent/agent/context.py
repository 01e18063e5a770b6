"""Context window management.

Two remediation tiers, applied when the last request's token usage nears
the model's limit:

1. File-read deduplication: older full reads of a file that was read again
   later are replaced by a short notice. Stored messages are never edited;
   replacements live in an overlay keyed by message index.
2. Summarization: the model is asked to call ``summarize_task`` and the
   history between the first exchange and the summary is then hidden
   behind a deleted range.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Literal, Protocol

from drawagent.agent.messages import (
    ConversationMessage,
    StorageMessage,
    TextBlock,
    ToolResultBlock,
    estimate_message_tokens,
)
from drawagent.agent.provider import ModelInfo

logger = logging.getLogger(__name__)

DUPLICATE_FILE_READ_NOTICE = (
    "[NOTE] The contents of this file have been displayed previously. The full content is "
    "still available in context but has been summarized here to save tokens."
)
CONTEXT_TRUNCATION_NOTICE = (
    "[NOTE] Some previous conversation history with the user has been removed to optimize "
    "context window usage. The most recent and relevant information has been preserved."
)

# The first user message and the first assistant reply are never truncated.
TRUNCATION_ANCHOR = 2

KeepStrategy = Literal["none", "lastTwo", "half", "quarter"]


class ContextPersistence(Protocol):
    def save_context_updates(self, task_id: str, updates: dict[int, StorageMessage]) -> None: ...

    def load_context_updates(self, task_id: str) -> dict[int, StorageMessage]: ...


@dataclass(frozen=True)
class ContextWindowInfo:
    context_window: int
    max_allowed_size: int


def get_context_window_info(model: ModelInfo) -> ContextWindowInfo:
    """Usable size of the model's window, leaving room for one more turn."""
    window = model.context_window or 128_000
    if window == 64_000:
        max_allowed = window - 27_000
    elif window == 128_000:
        max_allowed = window - 30_000
    elif window == 200_000:
        max_allowed = window - 40_000
    else:
        max_allowed = max(window - 40_000, int(window * 0.8))
    return ContextWindowInfo(context_window=window, max_allowed_size=max_allowed)


def compaction_threshold(model: ModelInfo, threshold_ratio: float | None = None) -> int:
    info = get_context_window_info(model)
    if threshold_ratio:
        return min(math.floor(info.context_window * threshold_ratio), info.max_allowed_size)
    return info.max_allowed_size


def request_total_tokens(entry: ConversationMessage, model: ModelInfo) -> int:
    info = entry.api_request_info()
    total = (info.get("tokensIn") or 0) + (info.get("tokensOut") or 0)
    if model.supports_prompt_cache:
        total += (info.get("cacheWrites") or 0) + (info.get("cacheReads") or 0)
    return total


def find_last_api_request_index(conversation_messages: list[ConversationMessage]) -> int | None:
    for i in range(len(conversation_messages) - 1, -1, -1):
        if conversation_messages[i].say == "api_req_started":
            return i
    return None


def get_next_truncation_range(
    api_messages: list[StorageMessage],
    current_range: tuple[int, int] | None,
    keep: KeepStrategy = "none",
) -> tuple[int, int] | None:
    """Compute the deleted range that hides the next chunk of history.

    Always starts at the anchor, never ends before ``current_range`` ends,
    and ends on an assistant message so the visible history resumes with a
    user turn. Returns ``current_range`` when nothing more can be removed.
    """
    start_of_rest = current_range[1] + 1 if current_range else TRUNCATION_ANCHOR
    remaining = max(len(api_messages) - start_of_rest, 0)

    if keep == "none":
        to_remove = remaining
    elif keep == "lastTwo":
        to_remove = max(remaining - 2, 0)
    elif keep == "half":
        to_remove = remaining // 4 * 2
    elif keep == "quarter":
        to_remove = remaining * 3 // 4 // 2 * 2
    else:
        raise ValueError(f"Unknown truncation strategy: {keep!r}")

    range_end = start_of_rest + to_remove - 1
    if to_remove > 0 and api_messages[range_end].role != "assistant":
        range_end -= 1
    if current_range:
        range_end = max(range_end, current_range[1])
    if range_end < TRUNCATION_ANCHOR:
        return current_range
    return (TRUNCATION_ANCHOR, range_end)


class ContextManager:
    """Per-task context bookkeeping: the dedup overlay and compaction checks."""

    def __init__(self, task_id: str | None = None, persistence: ContextPersistence | None = None) -> None:
        self._task_id = task_id
        self._persistence = persistence
        self._updates: dict[int, StorageMessage] = {}

    @property
    def context_updates(self) -> dict[int, StorageMessage]:
        return dict(self._updates)

    def load(self) -> None:
        if self._persistence is not None and self._task_id:
            self._updates = self._persistence.load_context_updates(self._task_id)

    # ── Decision ──

    def should_compact_context_window(
        self,
        conversation_messages: list[ConversationMessage],
        model: ModelInfo,
        previous_request_index: int | None,
        threshold_ratio: float | None = None,
    ) -> bool:
        if previous_request_index is None or not (
            0 <= previous_request_index < len(conversation_messages)
        ):
            return False
        entry = conversation_messages[previous_request_index]
        total = request_total_tokens(entry, model)
        threshold = compaction_threshold(model, threshold_ratio)
        logger.debug("Context check: %d tokens used, threshold %d", total, threshold)
        return total >= threshold

    # ── Tier 1 ──

    def find_duplicate_file_reads(
        self,
        api_messages: list[StorageMessage],
        deleted_range: tuple[int, int] | None,
    ) -> dict[str, list[tuple[int, int]]]:
        """Map path -> [(message index, block index)] of visible full reads, oldest first."""
        reads: dict[str, list[tuple[int, int]]] = {}
        for msg_index, message in enumerate(self.apply_context_updates(api_messages)):
            if deleted_range and deleted_range[0] <= msg_index <= deleted_range[1]:
                continue
            if isinstance(message.content, str):
                continue
            for block_index, block in enumerate(message.content):
                if (
                    isinstance(block, ToolResultBlock)
                    and block.tool_name == "read_file"
                    and block.path
                    and block.content != DUPLICATE_FILE_READ_NOTICE
                ):
                    reads.setdefault(block.path, []).append((msg_index, block_index))
        return {path: locs for path, locs in reads.items() if len(locs) > 1}

    def deduplicate_file_reads(
        self,
        api_messages: list[StorageMessage],
        deleted_range: tuple[int, int] | None,
    ) -> int:
        """Replace all but the latest full read of each path. Returns chars saved."""
        duplicates = self.find_duplicate_file_reads(api_messages, deleted_range)
        if not duplicates:
            return 0
        view = self.apply_context_updates(api_messages)
        by_message: dict[int, set[int]] = {}
        for locations in duplicates.values():
            for msg_index, block_index in locations[:-1]:
                by_message.setdefault(msg_index, set()).add(block_index)

        saved = 0
        changed: dict[int, StorageMessage] = {}
        for msg_index, block_indexes in by_message.items():
            message = view[msg_index]
            blocks = list(message.content)
            for block_index in block_indexes:
                block = blocks[block_index]
                saved += len(block.content) - len(DUPLICATE_FILE_READ_NOTICE)
                blocks[block_index] = replace(block, content=DUPLICATE_FILE_READ_NOTICE)
            changed[msg_index] = replace(message, content=tuple(blocks))

        self._updates.update(changed)
        if self._persistence is not None and self._task_id:
            self._persistence.save_context_updates(self._task_id, changed)
        logger.info(
            "Deduplicated %d file(s) across %d message(s), ~%d chars saved",
            len(duplicates), len(changed), saved,
        )
        return saved

    def attempt_file_read_optimization(
        self,
        api_messages: list[StorageMessage],
        deleted_range: tuple[int, int] | None,
        model: ModelInfo,
        last_request_tokens: int,
        threshold_ratio: float | None = None,
    ) -> bool:
        """Run Tier 1. Returns True when truncation is still needed."""
        before = estimate_message_tokens(self.get_truncated_messages(api_messages, deleted_range))
        saved_chars = self.deduplicate_file_reads(api_messages, deleted_range)
        if saved_chars <= 0:
            return True
        after = estimate_message_tokens(self.get_truncated_messages(api_messages, deleted_range))
        projected = last_request_tokens - (before - after)
        threshold = compaction_threshold(model, threshold_ratio)
        logger.info(
            "File read dedup: ~%d -> ~%d tokens, projected usage %d (threshold %d)",
            before, after, projected, threshold,
        )
        return projected >= threshold

    # ── Model view ──

    def apply_context_updates(self, api_messages: list[StorageMessage]) -> list[StorageMessage]:
        if not self._updates:
            return list(api_messages)
        return [self._updates.get(i, m) for i, m in enumerate(api_messages)]

    def get_truncated_messages(
        self,
        api_messages: list[StorageMessage],
        deleted_range: tuple[int, int] | None,
    ) -> list[StorageMessage]:
        """Messages as the model should see them."""
        messages = self.apply_context_updates(api_messages)
        if not deleted_range:
            return messages
        start, end = deleted_range
        visible = messages[:start] + messages[end + 1:]
        if len(visible) > 1 and visible[1].role == "assistant":
            first_reply = visible[1]
            blocks = first_reply.blocks + (TextBlock(CONTEXT_TRUNCATION_NOTICE),)
            visible[1] = replace(first_reply, content=blocks)
        return visible

    def get_next_truncation_range(
        self,
        api_messages: list[StorageMessage],
        current_range: tuple[int, int] | None,
        keep: KeepStrategy = "none",
    ) -> tuple[int, int] | None:
        return get_next_truncation_range(api_messages, current_range, keep)
