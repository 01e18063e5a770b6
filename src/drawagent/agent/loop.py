"""Agent loop: drive model turns, run tools, and stream events to the caller."""

from __future__ import annotations

import enum
import logging
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from drawagent.agent.context import (
    ContextManager,
    find_last_api_request_index,
    request_total_tokens,
)
from drawagent.agent.messages import (
    MessageMetrics,
    MessageModelInfo,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    api_request_message,
    conversation_message,
    create_assistant_message,
    create_user_message,
    tool_message,
)
from drawagent.agent.prompts import (
    DEFAULT_DIAGRAM_TYPE,
    NO_TOOLS_USED,
    SUMMARIZE_TASK_PROMPT,
    build_system_prompt,
)
from drawagent.agent.provider import (
    ProviderHandler,
    TextChunk,
    ToolCall,
    ToolCallEvent,
    UsageEvent,
)
from drawagent.agent.registry import (
    SUMMARIZE_TASK_DESCRIPTION,
    SUMMARIZE_TASK_SCHEMA,
    CompletionSignal,
    SummarySignal,
    ToolCatalog,
    ToolResult,
    build_tool_registry,
    summarize_task_tool,
)
from drawagent.config import AgentConfig
from drawagent.storage.message_state import MessageStateHandler
from drawagent.storage.sqlite_store import TaskStore
from drawagent.tools.diagram import DiagramDocument, DiagramResult

logger = logging.getLogger(__name__)


class LoopState(enum.Enum):
    RUNNING = "running"
    SUMMARIZING_CONTINUATION = "summarizing_continuation"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class StreamEvent:
    """One event pushed to the caller.

    Types: text, tool_call, usage, tool_result, artifact_updated, error,
    max_turns_exceeded, done.
    """

    type: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, **self.data}


class EventEmitter:
    """Push events to a caller-supplied sink.

    If the sink raises (consumer gone), emitting stops for the rest of the
    task but the loop keeps going so its history stays complete.
    """

    def __init__(self, sink: Callable[[StreamEvent], None] | None) -> None:
        self._sink = sink
        self._closed = sink is None

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event_type: str, **data) -> None:
        if self._closed:
            return
        try:
            self._sink(StreamEvent(event_type, data))
        except Exception as e:
            self._closed = True
            logger.warning("Event consumer failed (%s); no further events will be emitted", e)


@dataclass
class TaskRequest:
    message: str
    diagram_type: str = DEFAULT_DIAGRAM_TYPE
    task_id: str | None = None
    cwd: str | None = None


@dataclass
class TaskResult:
    task_id: str
    status: str  # completed | failed | max_turns
    turns: int
    artifact: str | None = None
    completion: str | None = None
    error: str | None = None


@dataclass
class _Task:
    """Per-run state."""

    id: str
    system_prompt: str
    messages: MessageStateHandler
    context: ContextManager
    document: DiagramDocument
    catalog: ToolCatalog
    emitter: EventEmitter
    state: LoopState = LoopState.RUNNING
    status: str = "max_turns"
    turn: int = 0
    completion: str | None = None
    error: str | None = None


@dataclass
class _TurnOutput:
    text: str
    tool_calls: list[ToolCall]
    usage: UsageEvent | None


def _format_args(args: dict) -> str:
    parts = []
    for k, v in args.items():
        text = repr(v)
        if len(text) > 80:
            text = text[:77] + "..."
        parts.append(f"{k}={text}")
    return ", ".join(parts)


def _merge_usage(a: UsageEvent | None, b: UsageEvent) -> UsageEvent:
    if a is None:
        return b

    def _add(x: int | None, y: int | None) -> int | None:
        if x is None and y is None:
            return None
        return (x or 0) + (y or 0)

    return UsageEvent(
        input_tokens=a.input_tokens + b.input_tokens,
        output_tokens=a.output_tokens + b.output_tokens,
        cache_write_tokens=_add(a.cache_write_tokens, b.cache_write_tokens),
        cache_read_tokens=_add(a.cache_read_tokens, b.cache_read_tokens),
    )


class AgentLoop:
    """Multi-turn tool-calling loop that builds one diagram per task."""

    def __init__(
        self,
        provider: ProviderHandler,
        config: AgentConfig,
        store: TaskStore | None = None,
    ) -> None:
        self._provider = provider
        self._config = config
        self._store = store

    # ── Public entry point ──

    def run(
        self,
        request: TaskRequest,
        on_event: Callable[[StreamEvent], None] | None = None,
    ) -> TaskResult:
        """Run a task until completion, a fatal error, or the turn limit."""
        system_prompt = build_system_prompt(request.diagram_type, request.cwd or self._config.cwd)
        task_id = request.task_id or str(uuid.uuid4())
        document = DiagramDocument()
        task = _Task(
            id=task_id,
            system_prompt=system_prompt,
            messages=MessageStateHandler(task_id, self._store),
            context=ContextManager(task_id, self._store),
            document=document,
            catalog=ToolCatalog(build_tool_registry(document)),
            emitter=EventEmitter(on_event),
        )

        logger.info("Task %s started (%s): %r", task_id, request.diagram_type, request.message[:120])
        run_t0 = time.perf_counter()
        if self._store is not None:
            self._store.insert_task(task_id, request.message, request.diagram_type)

        task.messages.add_api_message(create_user_message(
            f"<task>\n{request.message}\n</task>\n\nDiagram type: {request.diagram_type}"
        ))
        task.messages.add_conversation_message(conversation_message("task", request.message))

        try:
            self._run_turns(task)
        except Exception as e:
            logger.exception("Task %s failed", task_id)
            task.status = "failed"
            task.error = str(e) or e.__class__.__name__
            task.messages.add_conversation_message(conversation_message("error", task.error))
            task.emitter.emit("error", message=task.error)

        if task.status == "max_turns":
            logger.warning("Task %s hit the turn limit (%d)", task_id, self._config.max_turns)
            task.emitter.emit(
                "max_turns_exceeded",
                message="Maximum conversation turns reached",
                max_turns=self._config.max_turns,
            )

        elapsed = time.perf_counter() - run_t0
        if self._store is not None:
            self._store.finish_task(task_id, task.status, task.turn, elapsed, error=task.error)
        logger.info(
            "Task %s finished: %s after %d turn(s) (%.2fs)", task_id, task.status, task.turn, elapsed,
        )
        task.emitter.emit("done", task_id=task_id, status=task.status, turns=task.turn)
        return TaskResult(
            task_id=task_id,
            status=task.status,
            turns=task.turn,
            artifact=task.document.xml,
            completion=task.completion,
            error=task.error,
        )

    # ── Turns ──

    def _run_turns(self, task: _Task) -> None:
        max_turns = self._config.max_turns
        while task.turn < max_turns:
            task.turn += 1
            logger.info("--- Turn %d/%d ---", task.turn, max_turns)

            if task.state is LoopState.SUMMARIZING_CONTINUATION:
                logger.info("Continuing from summary; skipping context check")
                task.state = LoopState.RUNNING
            elif task.turn > self._config.context_check_after_turn:
                self._manage_context(task)

            output = self._stream_turn(task)
            self._record_assistant(task, output)

            if not output.tool_calls:
                logger.info("No tool call in turn %d; sending corrective message", task.turn)
                task.messages.add_api_message(create_user_message(NO_TOOLS_USED))
                continue

            self._execute_tool_calls(task, output.tool_calls)
            if task.state is LoopState.TERMINATED:
                return

    def _manage_context(self, task: _Task) -> None:
        conversation = task.messages.get_conversation_messages()
        request_index = find_last_api_request_index(conversation)
        model = self._provider.get_model()
        ratio = self._config.auto_condense_threshold
        if not task.context.should_compact_context_window(conversation, model, request_index, ratio):
            return

        last_total = request_total_tokens(conversation[request_index], model)
        logger.info("Context usage %d tokens is near the limit (%d window)", last_total, model.context_window)
        needs_truncation = task.context.attempt_file_read_optimization(
            task.messages.get_api_messages(),
            task.messages.get_deleted_range(),
            model,
            last_total,
            ratio,
        )
        if not needs_truncation:
            logger.info("File read deduplication was sufficient")
            return

        task.catalog.extend(
            "summarize_task",
            summarize_task_tool,
            SUMMARIZE_TASK_SCHEMA,
            SUMMARIZE_TASK_DESCRIPTION,
        )
        task.messages.add_api_message(create_user_message(SUMMARIZE_TASK_PROMPT))
        logger.info("Requested summarization from the model")

    def _stream_turn(self, task: _Task) -> _TurnOutput:
        view = task.context.get_truncated_messages(
            task.messages.get_api_messages(), task.messages.get_deleted_range(),
        )
        tools = task.catalog.specs()
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        usage: UsageEvent | None = None

        t0 = time.perf_counter()
        for event in self._provider.stream(task.system_prompt, view, tools):
            if isinstance(event, TextChunk):
                text_parts.append(event.text)
                task.emitter.emit("text", text=event.text)
            elif isinstance(event, ToolCallEvent):
                calls.append(event.call)
                task.emitter.emit(
                    "tool_call", id=event.call.id, name=event.call.name, input=event.call.input,
                )
            elif isinstance(event, UsageEvent):
                usage = _merge_usage(usage, event)
                task.emitter.emit(
                    "usage",
                    input_tokens=event.input_tokens,
                    output_tokens=event.output_tokens,
                    cache_write_tokens=event.cache_write_tokens,
                    cache_read_tokens=event.cache_read_tokens,
                )
            else:
                raise TypeError(f"Unexpected provider event: {event!r}")

        text = "".join(text_parts)
        logger.info(
            "Model responded: %d chars, %d tool call(s)%s (%.2fs)",
            len(text), len(calls),
            f": {', '.join(c.name for c in calls)}" if calls else "",
            time.perf_counter() - t0,
        )
        return _TurnOutput(text=text, tool_calls=calls, usage=usage)

    def _record_assistant(self, task: _Task, output: _TurnOutput) -> None:
        blocks: list = []
        if output.text:
            blocks.append(TextBlock(output.text))
        blocks.extend(ToolUseBlock(id=c.id, name=c.name, input=c.input) for c in output.tool_calls)

        metrics = None
        if output.usage is not None:
            metrics = MessageMetrics(
                tokens_in=output.usage.input_tokens,
                tokens_out=output.usage.output_tokens,
                cache_writes=output.usage.cache_write_tokens,
                cache_reads=output.usage.cache_read_tokens,
            )

        # An empty reply is still recorded so history keeps alternating
        # and index 1 stays the first assistant turn.
        model = self._provider.get_model()
        task.messages.add_api_message(create_assistant_message(
            tuple(blocks) if blocks else "",
            model_info=MessageModelInfo(model_id=model.id, provider_id=self._provider.provider_id),
            metrics=metrics,
        ))
        if metrics is not None:
            task.messages.add_conversation_message(api_request_message(metrics))
        if output.text:
            task.messages.add_conversation_message(conversation_message("text", output.text))

    # ── Tools ──

    def _execute_tool_calls(self, task: _Task, calls: list[ToolCall]) -> None:
        """Run calls in order; consecutive read-only calls run in parallel."""
        batch: list[ToolCall] = []

        def _flush() -> None:
            if not batch:
                return
            for call, result in zip(batch, self._run_read_only(task, batch)):
                self._commit_result(task, call, result)
            batch.clear()

        for call in calls:
            logger.info("  -> %s(%s)", call.name, _format_args(call.input))
            if task.catalog.is_read_only(call.name):
                batch.append(call)
                continue
            _flush()
            t0 = time.perf_counter()
            result = task.catalog.execute(call.name, call.input)
            logger.info("  <- %s: %d chars (%.2fs)", call.name, len(result.content), time.perf_counter() - t0)
            self._commit_result(task, call, result)
            if task.state is LoopState.TERMINATED and task.status == "failed":
                return
        _flush()

    def _run_read_only(self, task: _Task, calls: list[ToolCall]) -> list[ToolResult]:
        t0 = time.perf_counter()
        if len(calls) == 1:
            results = [task.catalog.execute(calls[0].name, calls[0].input)]
        else:
            workers = min(self._config.max_tool_workers, len(calls))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(lambda c: task.catalog.execute(c.name, c.input), calls))
        logger.info(
            "  <- %d read-only call(s): %d chars (%.2fs)",
            len(calls), sum(len(r.content) for r in results), time.perf_counter() - t0,
        )
        return results

    def _commit_result(self, task: _Task, call: ToolCall, result: ToolResult) -> None:
        """Record one tool result in both histories and apply its loop effects."""
        data = result.data
        if isinstance(data, SummarySignal):
            # The range is computed before the summary itself is appended, so
            # the continuation prompt stays visible.
            new_range = task.context.get_next_truncation_range(
                task.messages.get_api_messages(), task.messages.get_deleted_range(), "none",
            )
            task.messages.set_deleted_range(new_range)
            logger.info("History truncated to deleted range %s", new_range)

        task.messages.add_api_message(create_user_message((ToolResultBlock(
            tool_use_id=call.id,
            tool_name=call.name,
            content=result.content,
            path=result.path,
            is_error=result.is_error,
        ),)))

        limit = self._config.tool_result_preview_chars
        preview = result.content if len(result.content) <= limit else result.content[:limit] + "..."
        path = call.input.get("path") if isinstance(call.input.get("path"), str) else None
        task.messages.add_conversation_message(tool_message(call.name, preview, path))
        task.emitter.emit(
            "tool_result", id=call.id, name=call.name, content=preview, is_error=result.is_error,
        )

        if isinstance(data, DiagramResult):
            self._apply_diagram_result(task, call, data)
        elif isinstance(data, CompletionSignal):
            task.messages.add_conversation_message(conversation_message("completion_result", data.result))
            task.completion = data.result
            task.status = "completed"
            task.state = LoopState.TERMINATED
        elif isinstance(data, SummarySignal):
            task.messages.add_conversation_message(conversation_message("summary", data.context))
            if task.state is not LoopState.TERMINATED:
                task.state = LoopState.SUMMARIZING_CONTINUATION

    def _apply_diagram_result(self, task: _Task, call: ToolCall, result: DiagramResult) -> None:
        if result.success:
            if self._store is not None:
                self._store.save_artifact(task.id, result.xml)
            task.messages.add_conversation_message(conversation_message("diagram", result.xml))
            task.emitter.emit("artifact_updated", xml=result.xml, cell_count=result.cell_count)
            return

        if result.is_truncated:
            logger.info("%s output was truncated; the model will retry", call.name)
            return
        if call.name == "display_diagram" and task.document.is_empty:
            # Nothing usable to build on: the first generation failed validation.
            task.status = "failed"
            task.error = result.error
            task.state = LoopState.TERMINATED
            task.messages.add_conversation_message(conversation_message("error", result.error))
            task.emitter.emit("error", message=result.error)
            logger.warning("Diagram generation failed validation; stopping task %s", task.id)
