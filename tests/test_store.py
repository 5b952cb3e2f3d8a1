"""Tests for copilot_chat/chat/store.py -- generations and the pending-turn swap."""

import pytest

from copilot_chat.chat.schemas import Conversation, ConversationTurn
from copilot_chat.chat.store import ConversationStore
from copilot_chat.errors import ConversationBusy


def _begin(store: ConversationStore, conversation_id: str, prompt: str = "hi") -> int:
    return store.begin_turn(
        conversation_id,
        ConversationTurn(role="user", content=prompt),
        ConversationTurn(role="assistant", model="gpt-4o", pending=True),
    )


def _answer(content: str, pending: bool = False) -> ConversationTurn:
    return ConversationTurn(role="assistant", content=content, model="gpt-4o", pending=pending)


class TestConversationStore:
    def test_create_and_get_are_snapshots(self):
        store = ConversationStore()
        created = store.create(model="gpt-4o")
        created.title = "mutated"
        assert store.get(created.id).title == "New chat"

        snapshot = store.get(created.id)
        snapshot.turns.append(ConversationTurn(role="user", content="x"))
        assert store.get(created.id).turns == []

    def test_list_newest_first(self):
        store = ConversationStore()
        store.hydrate(
            [
                Conversation(id="old", created_at_ms=1),
                Conversation(id="new", created_at_ms=3),
                Conversation(id="mid", created_at_ms=2),
            ]
        )
        assert [c.id for c in store.list_conversations()] == ["new", "mid", "old"]

    def test_begin_turn_sets_title_once(self):
        store = ConversationStore()
        conversation = store.create()
        _begin(store, conversation.id, "x" * 60)
        store.replace_pending(conversation.id, 1, _answer("done"))
        _begin(store, conversation.id, "second prompt")

        assert store.get(conversation.id).title == "x" * 40

    def test_begin_turn_rejects_pending(self):
        store = ConversationStore()
        conversation = store.create()
        _begin(store, conversation.id)
        with pytest.raises(ConversationBusy):
            _begin(store, conversation.id)

    def test_begin_turn_unknown(self):
        with pytest.raises(KeyError):
            _begin(ConversationStore(), "missing")

    def test_replace_pending(self):
        store = ConversationStore()
        conversation = store.create()
        generation = _begin(store, conversation.id)

        assert store.replace_pending(conversation.id, generation, _answer("partial", pending=True))
        assert store.replace_pending(conversation.id, generation, _answer("final"))
        assert store.get(conversation.id).turns[-1].content == "final"

    def test_pending_cleared_exactly_once(self):
        store = ConversationStore()
        conversation = store.create()
        generation = _begin(store, conversation.id)
        store.replace_pending(conversation.id, generation, _answer("final"))

        assert not store.replace_pending(conversation.id, generation, _answer("late"))
        assert store.get(conversation.id).turns[-1].content == "final"

    def test_stale_generation_dropped(self):
        """A late write from an earlier turn never touches the newer turn."""
        store = ConversationStore()
        conversation = store.create()
        old = _begin(store, conversation.id, "one")
        store.replace_pending(conversation.id, old, _answer("stopped"))
        new = _begin(store, conversation.id, "two")

        assert new == old + 1
        assert not store.replace_pending(conversation.id, old, _answer("stale delta", pending=True))
        turns = store.get(conversation.id).turns
        assert turns[-1].pending is True
        assert turns[-1].content == ""

    def test_hydrate_clears_pending(self):
        store = ConversationStore()
        store.hydrate(
            [
                Conversation(
                    id="c1",
                    turns=[ConversationTurn(role="user", content="q"), _answer("half", pending=True)],
                )
            ]
        )
        assert store.get("c1").trailing_pending is False

    def test_delete(self):
        store = ConversationStore()
        conversation = store.create()
        assert store.delete(conversation.id)
        assert not store.delete(conversation.id)
        assert store.generation(conversation.id) == 0
