"""Tests for MessageStateHandler: stamping, atomic mutation, persistence, subscribers."""

from __future__ import annotations

import threading

import pytest

from drawagent.agent.messages import (
    ToolResultBlock,
    conversation_message,
    create_assistant_message,
    create_user_message,
)
from drawagent.storage.message_state import MessageStateHandler


@pytest.fixture
def persisted(store):
    store.insert_task("t1", "Diagram it", "system-architecture")
    return MessageStateHandler("t1", store)


class TestMutations:
    def test_conversation_entries_are_stamped(self):
        handler = MessageStateHandler("t1")
        handler.add_conversation_message(conversation_message("task", "Diagram it"))
        handler.add_api_message(create_user_message("<task>\nDiagram it\n</task>"))
        handler.add_api_message(create_assistant_message("Looking"))
        handler.add_conversation_message(conversation_message("text", "Looking"))

        first, second = handler.get_conversation_messages()
        assert first.conversation_history_index == -1
        assert second.conversation_history_index == 1
        assert second.conversation_history_deleted_range is None

    def test_stamp_carries_deleted_range(self):
        handler = MessageStateHandler("t1")
        for i in range(4):
            handler.add_api_message(create_user_message(f"m{i}"))
        handler.set_deleted_range((2, 3))
        handler.add_conversation_message(conversation_message("summary", "..."))
        assert handler.get_conversation_messages()[0].conversation_history_deleted_range == (2, 3)

    def test_update_api_message(self):
        handler = MessageStateHandler("t1")
        handler.add_api_message(create_user_message("old"))
        handler.update_api_message(0, create_user_message("new"))
        assert handler.get_api_messages()[0].content == "new"

    @pytest.mark.parametrize("index", [-1, 1, 5])
    def test_update_api_message_out_of_range(self, index):
        handler = MessageStateHandler("t1")
        handler.add_api_message(create_user_message("only"))
        with pytest.raises(IndexError, match=f"Invalid API message index: {index}"):
            handler.update_api_message(index, create_user_message("x"))

    def test_update_conversation_message_out_of_range(self):
        handler = MessageStateHandler("t1")
        with pytest.raises(IndexError, match="Invalid conversation message index: 0"):
            handler.update_conversation_message(0, conversation_message("text", "x"))

    def test_getters_return_copies(self):
        handler = MessageStateHandler("t1")
        handler.add_api_message(create_user_message("a"))
        handler.get_api_messages().append(create_user_message("b"))
        assert len(handler.get_api_messages()) == 1

    def test_clear(self):
        handler = MessageStateHandler("t1")
        handler.add_api_message(create_user_message("a"))
        handler.set_deleted_range((2, 3))
        state = handler.clear()
        assert state.api_messages == ()
        assert state.deleted_range is None


class TestConcurrency:
    def test_concurrent_appends_all_land(self):
        handler = MessageStateHandler("t1")

        def worker(n):
            for i in range(50):
                handler.add_api_message(create_user_message(f"{n}-{i}"))
                handler.add_conversation_message(conversation_message("text", f"{n}-{i}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(handler.get_api_messages()) == 400
        assert len(handler.get_conversation_messages()) == 400
        assert len({m.content for m in handler.get_api_messages()}) == 400

    def test_concurrent_appends_persist_consistently(self, persisted, store):
        def worker(n):
            for i in range(20):
                persisted.add_api_message(create_user_message(f"{n}-{i}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.load_api_messages("t1") == persisted.get_api_messages()


class TestPersistence:
    def test_state_round_trips(self, persisted, store):
        persisted.add_api_message(create_user_message("<task>\nDiagram it\n</task>"))
        persisted.add_api_message(create_assistant_message("Reading"))
        persisted.add_api_message(create_user_message((
            ToolResultBlock("c1", "read_file", "const a = 1;", path="/repo/a.ts"),
        )))
        persisted.add_conversation_message(conversation_message("text", "Reading"))
        persisted.set_deleted_range((2, 2))

        reloaded = MessageStateHandler("t1", store).load()
        assert list(reloaded.api_messages) == persisted.get_api_messages()
        assert list(reloaded.conversation_messages) == persisted.get_conversation_messages()
        assert reloaded.deleted_range == (2, 2)

    def test_load_without_persistence(self):
        handler = MessageStateHandler("t1")
        handler.add_api_message(create_user_message("a"))
        assert len(handler.load().api_messages) == 1


class TestSubscribers:
    def test_notified_after_each_mutation(self):
        handler = MessageStateHandler("t1")
        seen = []
        handler.subscribe(seen.append)
        handler.add_api_message(create_user_message("a"))
        handler.add_conversation_message(conversation_message("text", "a"))
        assert len(seen) == 2
        assert len(seen[0].api_messages) == 1
        assert len(seen[1].conversation_messages) == 1

    def test_unsubscribe(self):
        handler = MessageStateHandler("t1")
        seen = []
        unsubscribe = handler.subscribe(seen.append)
        handler.add_api_message(create_user_message("a"))
        unsubscribe()
        unsubscribe()
        handler.add_api_message(create_user_message("b"))
        assert len(seen) == 1

    def test_snapshot_is_immutable(self):
        handler = MessageStateHandler("t1")
        state = handler.add_api_message(create_user_message("a"))
        handler.add_api_message(create_user_message("b"))
        assert len(state.api_messages) == 1
