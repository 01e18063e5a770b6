"""Tests for the agent loop, driven by a scripted provider."""

from __future__ import annotations

import pytest

from drawagent.agent.context import CONTEXT_TRUNCATION_NOTICE
from drawagent.agent.loop import AgentLoop, EventEmitter, StreamEvent, TaskRequest
from drawagent.agent.messages import TextBlock, ToolResultBlock, ToolUseBlock
from drawagent.agent.prompts import NO_TOOLS_USED, SUMMARIZE_TASK_PROMPT
from drawagent.agent.provider import ModelInfo
from drawagent.tools.diagram import count_cells
from tests.helpers import (
    FailingProvider,
    ScriptedProvider,
    agent_config,
    edge,
    fragment,
    text,
    tool,
    usage,
    vertex,
)

THREE_SERVICES = fragment(
    vertex("2", "Web"), vertex("3", "API"), vertex("4", "DB"),
    edge("5", "2", "3"), edge("6", "3", "4"),
)


def _run(provider, repo_dir, store=None, message=None, **config):
    events: list[StreamEvent] = []
    loop = AgentLoop(provider, agent_config(**config), store)
    result = loop.run(
        TaskRequest(
            message=message or f"Create a system architecture diagram for {repo_dir}",
            diagram_type="system-architecture",
            cwd=str(repo_dir),
        ),
        on_event=events.append,
    )
    return result, events


def _types(events):
    return [e.type for e in events]


def _tool_results(events):
    return [e.data for e in events if e.type == "tool_result"]


# ── End-to-end scenarios ──


class TestHappyPath:
    def test_explore_display_complete(self, repo_dir, store):
        provider = ScriptedProvider([
            [text("I'll look at the project layout."), tool("list_files_recursive", path=str(repo_dir)), usage()],
            [tool("display_diagram", xml=THREE_SERVICES), usage()],
            [tool("attempt_completion", result="Architecture: web, API and database."), usage()],
        ])
        result, events = _run(provider, repo_dir, store)

        assert result.status == "completed"
        assert result.turns == 3
        assert result.completion == "Architecture: web, API and database."
        assert count_cells(result.artifact) == 5
        assert _types(events).count("artifact_updated") == 1
        assert events[-1].type == "done"
        assert events[-1].data == {"task_id": result.task_id, "status": "completed", "turns": 3}

        task = store.get_task(result.task_id)
        assert task["status"] == "completed"
        assert task["artifact"] == result.artifact

    def test_first_request_shape(self, repo_dir):
        provider = ScriptedProvider([[tool("attempt_completion", result="done")]])
        _run(provider, repo_dir, message="Diagram the repo")

        first = provider.calls[0]
        assert str(repo_dir) in first.system_prompt
        assert first.messages[0].text() == "<task>\nDiagram the repo\n</task>\n\nDiagram type: system-architecture"
        assert "summarize_task" not in first.tool_names
        assert "display_diagram" in first.tool_names

    def test_tool_results_reach_the_model(self, repo_dir):
        provider = ScriptedProvider([
            [tool("list_files_recursive", path=str(repo_dir))],
            [tool("attempt_completion", result="done")],
        ])
        _run(provider, repo_dir)
        last = provider.calls[1].last_text
        assert last.startswith('<tool_result tool_name="list_files_recursive">')
        assert "main.ts" in last

    def test_streams_text_and_usage(self, repo_dir):
        provider = ScriptedProvider([
            [text("Hel"), text("lo"), tool("attempt_completion", result="done"), usage(10, 2)],
        ])
        _, events = _run(provider, repo_dir)
        assert [e.data["text"] for e in events if e.type == "text"] == ["Hel", "lo"]
        (usage_event,) = [e for e in events if e.type == "usage"]
        assert usage_event.data["input_tokens"] == 10
        assert _types(events)[:4] == ["text", "text", "tool_call", "usage"]


class TestDiagramRecovery:
    def test_truncated_output_is_retried(self, repo_dir):
        truncated = vertex("2") + '<mxCell id="3" value="Queue" vertex="1" parent="1"><mxGeometry as="geometry"/>'
        five = fragment(*(vertex(str(i), f"Node {i}") for i in range(2, 7)))
        provider = ScriptedProvider([
            [tool("display_diagram", xml=truncated)],
            [tool("display_diagram", xml=five)],
            [tool("attempt_completion", result="Five nodes.")],
        ])
        result, events = _run(provider, repo_dir)

        first, second, _ = _tool_results(events)
        assert first["is_error"]
        assert "truncated" in first["content"]
        assert not second["is_error"]
        assert result.status == "completed"
        assert count_cells(result.artifact) == 5
        assert "error" not in _types(events)

    def test_append_before_display_is_recoverable(self, repo_dir):
        provider = ScriptedProvider([
            [tool("append_diagram", xml=vertex("2"))],
            [tool("display_diagram", xml=THREE_SERVICES)],
            [tool("attempt_completion", result="done")],
        ])
        result, events = _run(provider, repo_dir)

        first = _tool_results(events)[0]
        assert first["is_error"]
        assert first["content"].startswith("No existing diagram found")
        assert result.status == "completed"

    def test_display_then_append(self, repo_dir):
        provider = ScriptedProvider([
            [tool("display_diagram", xml=fragment(vertex("2"), vertex("3")))],
            [tool("append_diagram", xml=fragment(vertex("3"), vertex("4"), edge("5", "2", "4")))],
            [tool("attempt_completion", result="done")],
        ])
        result, events = _run(provider, repo_dir)
        assert count_cells(result.artifact) == 4
        counts = [e.data["cell_count"] for e in events if e.type == "artifact_updated"]
        assert counts == [2, 4]

    def test_invalid_first_diagram_is_fatal(self, repo_dir, store):
        provider = ScriptedProvider([
            [tool("display_diagram", xml=fragment('<mxCell id="1" vertex="1" parent="0"/>', vertex("2")))],
            [tool("attempt_completion", result="never reached")],
        ])
        result, events = _run(provider, repo_dir, store)

        assert result.status == "failed"
        assert result.turns == 1
        assert result.error.startswith("Invalid diagram XML")
        assert len(provider.calls) == 1
        assert _types(events)[-2:] == ["error", "done"]
        assert store.get_task(result.task_id)["status"] == "failed"

    def test_invalid_redisplay_keeps_existing_diagram(self, repo_dir):
        provider = ScriptedProvider([
            [tool("display_diagram", xml=THREE_SERVICES)],
            [tool("display_diagram", xml=vertex("9", parent="missing"))],
            [tool("attempt_completion", result="done")],
        ])
        result, _ = _run(provider, repo_dir)
        assert result.status == "completed"
        assert count_cells(result.artifact) == 5


# ── Corrective message and turn limit ──


class TestNoToolCalls:
    def test_corrective_message_once_per_empty_turn(self, repo_dir, store):
        provider = ScriptedProvider([
            [text("The diagram is complete, let me know if you need anything else.")],
            [tool("attempt_completion", result="done")],
        ])
        result, _ = _run(provider, repo_dir, store)

        assert result.status == "completed"
        assert result.turns == 2
        assert provider.calls[1].last_text == NO_TOOLS_USED
        stored = store.load_api_messages(result.task_id)
        assert [m.text() for m in stored].count(NO_TOOLS_USED) == 1
        assert stored[1].role == "assistant"
        assert stored[2].text() == NO_TOOLS_USED

    def test_max_turns(self, repo_dir, store):
        provider = ScriptedProvider([], default=[text("Still thinking.")])
        result, events = _run(provider, repo_dir, store, max_turns=3)

        assert result.status == "max_turns"
        assert result.turns == 3
        assert len(provider.calls) == 3
        assert _types(events)[-2:] == ["max_turns_exceeded", "done"]
        assert events[-2].data["message"] == "Maximum conversation turns reached"
        stored = store.load_api_messages(result.task_id)
        assert [m.text() for m in stored].count(NO_TOOLS_USED) == 3
        assert store.get_task(result.task_id)["status"] == "max_turns"


# ── Tool execution ──


class TestToolExecution:
    def test_read_only_results_keep_call_order(self, repo_dir, store):
        paths = [repo_dir / "src" / "main.ts", repo_dir / "src" / "utils.ts", repo_dir / "server.py"]
        provider = ScriptedProvider([
            [tool("read_file", call_id=f"r{i}", path=str(p)) for i, p in enumerate(paths)],
            [tool("attempt_completion", result="done")],
        ])
        result, events = _run(provider, repo_dir, store)

        assert [r["id"] for r in _tool_results(events)][:3] == ["r0", "r1", "r2"]
        stored = store.load_api_messages(result.task_id)
        blocks = [m.content[0] for m in stored[2:5]]
        assert [b.tool_use_id for b in blocks] == ["r0", "r1", "r2"]
        for block, path in zip(blocks, paths):
            assert block.content.startswith(f"File: {path}")
            assert block.path == str(path)

    def test_mixed_batch_order(self, repo_dir, store):
        provider = ScriptedProvider([
            [
                tool("read_file", call_id="a", path=str(repo_dir / "README.md")),
                tool("display_diagram", call_id="b", xml=vertex("2")),
                tool("list_directories", call_id="c", path=str(repo_dir)),
            ],
            [tool("attempt_completion", result="done")],
        ])
        result, _ = _run(provider, repo_dir, store)
        stored = store.load_api_messages(result.task_id)
        assert [m.content[0].tool_use_id for m in stored[2:5]] == ["a", "b", "c"]

    def test_missing_parameter_is_reported(self, repo_dir):
        provider = ScriptedProvider([
            [tool("read_file")],
            [tool("attempt_completion", result="done")],
        ])
        result, events = _run(provider, repo_dir)
        first = _tool_results(events)[0]
        assert first["is_error"]
        assert first["content"] == "Error: Missing required parameter 'path' for tool 'read_file'."
        assert result.status == "completed"

    def test_unknown_tool_is_reported(self, repo_dir):
        provider = ScriptedProvider([
            [tool("execute_command", command="ls")],
            [tool("attempt_completion", result="done")],
        ])
        result, events = _run(provider, repo_dir)
        assert _tool_results(events)[0]["content"].startswith("Error: Unknown tool: execute_command")
        assert result.status == "completed"

    def test_tool_only_turn_is_recorded(self, repo_dir, store):
        provider = ScriptedProvider([
            [tool("list_directories", call_id="l1", path=str(repo_dir)), usage(300, 40)],
            [tool("attempt_completion", result="done")],
        ])
        result, _ = _run(provider, repo_dir, store)

        stored = store.load_api_messages(result.task_id)
        assert stored[1].role == "assistant"
        assert stored[1].content == (ToolUseBlock(id="l1", name="list_directories", input={"path": str(repo_dir)}),)
        assert stored[1].metrics.tokens_in == 300
        assert isinstance(stored[2].content[0], ToolResultBlock)

        conversation = store.load_conversation_messages(result.task_id)
        (request,) = [c for c in conversation if c.say == "api_req_started"]
        assert request.api_request_info()["tokensIn"] == 300
        assert request.conversation_history_index == 1
        tools = [c for c in conversation if c.say == "tool"]
        assert tools[0].tool_info["tool"] == "list_directories"
        assert tools[0].tool_info["path"] == str(repo_dir)

    def test_tool_preview_is_capped(self, repo_dir):
        provider = ScriptedProvider([
            [tool("read_file", path=str(repo_dir / "src" / "main.ts"))],
            [tool("attempt_completion", result="done")],
        ])
        _, events = _run(provider, repo_dir, tool_result_preview_chars=20)
        preview = _tool_results(events)[0]["content"]
        assert len(preview) == 23
        assert preview.endswith("...")


# ── Context management ──


SUMMARY = """1. Primary Request: architecture diagram
2. Key Findings: TypeScript app with a Python server
7. Next Steps: draw the diagram
8. Required Files:
   - /repo/src/main.ts
"""


class TestContextCompaction:
    def test_summarize_and_continue(self, repo_dir, store):
        small = ModelInfo(id="small", context_window=10_000)  # threshold 8000
        provider = ScriptedProvider([
            [text("Listing."), tool("list_directories", path=str(repo_dir)), usage(100, 20)],
            [text("Listing src."), tool("list_directories", path=str(repo_dir / "src")), usage(100, 20)],
            [text("Listing again."), tool("list_directories", path=str(repo_dir)), usage(9_000, 100)],
            [tool("summarize_task", context=SUMMARY), usage(9_500, 300)],
            [tool("attempt_completion", result="done"), usage(500, 20)],
        ], model=small)
        result, _ = _run(provider, repo_dir, store)

        assert result.status == "completed"
        assert result.turns == 5
        assert ["summarize_task" in c.tool_names for c in provider.calls] == [False, False, False, True, True]
        assert provider.calls[3].last_text == SUMMARIZE_TASK_PROMPT

        assert store.load_deleted_range(result.task_id) == (2, 8)
        stored = store.load_api_messages(result.task_id)
        assert [m.text() for m in stored].count(SUMMARIZE_TASK_PROMPT) == 1

        continued = provider.calls[4]
        assert len(continued.messages) == 3
        assert continued.messages[1].blocks[-1] == TextBlock(CONTEXT_TRUNCATION_NOTICE)
        assert "continued from a previous conversation" in continued.last_text
        assert "- /repo/src/main.ts" in continued.last_text

        conversation = store.load_conversation_messages(result.task_id)
        (summary,) = [c for c in conversation if c.say == "summary"]
        assert summary.text == SUMMARY
        assert summary.conversation_history_deleted_range == (2, 8)

    def test_empty_first_reply_keeps_truncation_anchor(self, repo_dir, store):
        small = ModelInfo(id="small", context_window=10_000)
        provider = ScriptedProvider([
            [usage(100, 5)],
            [text("Listing."), tool("list_directories", path=str(repo_dir)), usage(100, 20)],
            [text("Listing src."), tool("list_directories", path=str(repo_dir / "src")), usage(9_000, 100)],
            [tool("summarize_task", context=SUMMARY), usage(9_500, 300)],
            [tool("attempt_completion", result="done"), usage(500, 20)],
        ], model=small)
        result, _ = _run(provider, repo_dir, store)

        assert result.status == "completed"
        assert [m.role for m in provider.calls[1].messages] == ["user", "assistant", "user"]
        assert provider.calls[1].last_text == NO_TOOLS_USED
        assert provider.calls[3].last_text == SUMMARIZE_TASK_PROMPT

        assert store.load_deleted_range(result.task_id) == (2, 8)
        continued = provider.calls[4]
        assert [m.role for m in continued.messages] == ["user", "assistant", "user"]
        assert continued.messages[1].blocks == (TextBlock(CONTEXT_TRUNCATION_NOTICE),)

    def test_no_compaction_below_threshold(self, repo_dir):
        provider = ScriptedProvider([
            [tool("list_directories", path=str(repo_dir)), usage(100, 20)],
            [tool("list_directories", path=str(repo_dir)), usage(100, 20)],
            [tool("list_directories", path=str(repo_dir)), usage(100, 20)],
            [tool("attempt_completion", result="done")],
        ])
        _run(provider, repo_dir)
        assert all("summarize_task" not in c.tool_names for c in provider.calls)

    def test_dedup_avoids_summarization(self, repo_dir, store):
        big = repo_dir / "big.ts"
        big.write_text("export const value = 42;\n" * 400)  # ~10000 chars
        small = ModelInfo(id="small", context_window=10_000)
        provider = ScriptedProvider([
            [tool("read_file", path=str(big)), usage(100, 20)],
            [tool("read_file", path=str(big)), usage(100, 20)],
            [tool("read_file", path=str(big)), usage(8_100, 20)],
            [tool("attempt_completion", result="done")],
        ], model=small)
        result, _ = _run(provider, repo_dir, store)

        assert result.status == "completed"
        assert all("summarize_task" not in c.tool_names for c in provider.calls)
        # Two older reads collapsed in the last request
        reads = [
            m for m in provider.calls[3].messages
            if m.role == "user" and not isinstance(m.content, str)
        ]
        contents = [m.content[0].content for m in reads]
        assert sum("displayed previously" in c for c in contents) == 2
        assert sorted(store.load_context_updates(result.task_id)) == [2, 4]


# ── Failures ──


class TestFailures:
    def test_provider_error(self, repo_dir, store):
        result, events = _run(FailingProvider([]), repo_dir, store)

        assert result.status == "failed"
        assert "connection reset by peer" in result.error
        assert _types(events) == ["error", "done"]
        task = store.get_task(result.task_id)
        assert task["status"] == "failed"
        assert "connection reset" in task["error"]
        conversation = store.load_conversation_messages(result.task_id)
        assert conversation[-1].say == "error"

    def test_consumer_failure_does_not_stop_task(self, repo_dir, store):
        calls = []

        def sink(event):
            calls.append(event)
            raise BrokenPipeError("client went away")

        provider = ScriptedProvider([
            [text("Looking."), tool("display_diagram", xml=THREE_SERVICES)],
            [tool("attempt_completion", result="done")],
        ])
        loop = AgentLoop(provider, agent_config(), store)
        result = loop.run(TaskRequest(message="Diagram it", cwd=str(repo_dir)), on_event=sink)

        assert result.status == "completed"
        assert len(calls) == 1
        assert store.get_task(result.task_id)["artifact"] == result.artifact

    def test_unknown_diagram_type(self, repo_dir):
        loop = AgentLoop(ScriptedProvider([]), agent_config())
        with pytest.raises(ValueError, match="Unknown diagram type"):
            loop.run(TaskRequest(message="x", diagram_type="mind-map", cwd=str(repo_dir)))

    def test_runs_without_store_or_sink(self, repo_dir):
        provider = ScriptedProvider([[tool("attempt_completion", result="done")]])
        result = AgentLoop(provider, agent_config()).run(TaskRequest(message="x", cwd=str(repo_dir)))
        assert result.status == "completed"


class TestEventEmitter:
    def test_closed_without_sink(self):
        assert EventEmitter(None).closed

    def test_event_dict(self):
        assert StreamEvent("done", {"status": "completed"}).to_dict() == {"type": "done", "status": "completed"}
