"""Tests for TaskStore."""

from __future__ import annotations

from drawagent.agent.messages import (
    MessageMetrics,
    MessageModelInfo,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    api_request_message,
    create_assistant_message,
    create_user_message,
    tool_message,
)


class TestTasks:
    def test_insert_and_get(self, store):
        store.insert_task("t1", "Diagram the repo", "data-flow")
        task = store.get_task("t1")
        assert task["prompt"] == "Diagram the repo"
        assert task["diagram_type"] == "data-flow"
        assert task["status"] == "running"
        assert task["artifact"] is None

    def test_finish_and_artifact(self, store):
        store.insert_task("t1", "Diagram", "system-architecture")
        store.save_artifact("t1", "<mxfile/>")
        store.finish_task("t1", "completed", turns=4, duration_secs=1.5)
        task = store.get_task("t1")
        assert task["status"] == "completed"
        assert task["turns"] == 4
        assert task["artifact"] == "<mxfile/>"
        assert task["completed_at"] is not None

    def test_finish_with_error(self, store):
        store.insert_task("t1", "Diagram", "system-architecture")
        store.finish_task("t1", "failed", turns=1, duration_secs=0.1, error="boom")
        assert store.get_task("t1")["error"] == "boom"

    def test_list_tasks_omits_artifact(self, store):
        for i in range(3):
            store.insert_task(f"t{i}", f"Prompt {i}", "system-architecture")
        store.save_artifact("t0", "<mxfile/>")
        tasks = store.list_tasks(limit=2)
        assert len(tasks) == 2
        assert all("artifact" not in t for t in tasks)

    def test_missing_task(self, store):
        assert store.get_task("nope") is None
        assert not store.task_exists("nope")

    def test_delete_task(self, store):
        store.insert_task("t1", "Diagram", "system-architecture")
        store.save_api_messages("t1", [create_user_message("hi")])
        store.save_context_updates("t1", {0: create_user_message("short")})
        store.delete_task("t1")
        assert not store.task_exists("t1")
        assert store.load_api_messages("t1") == []
        assert store.load_context_updates("t1") == {}


class TestMessageSequences:
    def test_api_messages_round_trip(self, store):
        messages = [
            create_user_message("<task>\nDiagram it\n</task>"),
            create_assistant_message(
                (TextBlock("Listing"), ToolUseBlock(id="c1", name="list_directories", input={"path": "/r"})),
                model_info=MessageModelInfo(model_id="m", provider_id="openai"),
                metrics=MessageMetrics(tokens_in=10, tokens_out=2),
            ),
            create_user_message((ToolResultBlock("c1", "list_directories", "[FILE] a", is_error=False),)),
        ]
        store.save_api_messages("t1", messages)
        assert store.load_api_messages("t1") == messages

    def test_save_replaces_sequence(self, store):
        store.save_api_messages("t1", [create_user_message("a"), create_user_message("b")])
        store.save_api_messages("t1", [create_user_message("c")])
        assert [m.content for m in store.load_api_messages("t1")] == ["c"]

    def test_conversation_messages_round_trip(self, store):
        entries = [
            api_request_message(MessageMetrics(tokens_in=5, tokens_out=1)).stamped(1, None),
            tool_message("read_file", "File: /r/a.ts", "/r/a.ts").stamped(2, (2, 5)),
        ]
        store.save_conversation_messages("t1", entries)
        loaded = store.load_conversation_messages("t1")
        assert loaded == entries
        assert loaded[0].api_request_info()["tokensIn"] == 5
        assert loaded[1].tool_info == {"tool": "read_file", "content": "File: /r/a.ts", "path": "/r/a.ts"}

    def test_deleted_range(self, store):
        store.insert_task("t1", "Diagram", "system-architecture")
        assert store.load_deleted_range("t1") is None
        store.save_deleted_range("t1", (2, 7))
        assert store.load_deleted_range("t1") == (2, 7)
        store.save_deleted_range("t1", None)
        assert store.load_deleted_range("t1") is None

    def test_context_updates_merge(self, store):
        store.save_context_updates("t1", {2: create_user_message("x")})
        store.save_context_updates("t1", {4: create_user_message("y"), 2: create_user_message("z")})
        updates = store.load_context_updates("t1")
        assert {i: m.content for i, m in updates.items()} == {2: "z", 4: "y"}

    def test_task_exists_from_messages_only(self, store):
        store.save_api_messages("orphan", [create_user_message("hi")])
        assert store.task_exists("orphan")
