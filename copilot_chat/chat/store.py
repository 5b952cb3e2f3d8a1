"""In-memory conversation store -- the one mutable shared resource.

Turns are only ever changed through replace_pending(), which swaps the
trailing pending assistant turn of a conversation. Each begin_turn()
bumps the conversation's generation; a write carrying an older
generation is dropped, so a cancelled stream's late callback can never
touch a newer turn.
"""

from __future__ import annotations

import logging

from copilot_chat.chat.schemas import TITLE_LENGTH, Conversation, ConversationTurn
from copilot_chat.errors import ConversationBusy

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._generations: dict[str, int] = {}

    def create(
        self,
        model: str | None = None,
        title: str = "New chat",
        conversation_id: str | None = None,
    ) -> Conversation:
        kwargs = {"id": conversation_id} if conversation_id else {}
        conversation = Conversation(model=model, title=title, **kwargs)
        self._conversations[conversation.id] = conversation
        return conversation.model_copy(deep=True)

    def get(self, conversation_id: str) -> Conversation | None:
        """Snapshot of a conversation; mutations to it do not affect the store."""
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    def list_conversations(self) -> list[Conversation]:
        """All conversations, newest first."""
        return sorted(
            (c.model_copy(deep=True) for c in self._conversations.values()),
            key=lambda c: c.created_at_ms,
            reverse=True,
        )

    def delete(self, conversation_id: str) -> bool:
        self._generations.pop(conversation_id, None)
        return self._conversations.pop(conversation_id, None) is not None

    def hydrate(self, conversations: list[Conversation]) -> None:
        """Load persisted conversations. Stale pending flags are cleared."""
        for conversation in conversations:
            for turn in conversation.turns:
                turn.pending = False
            self._conversations[conversation.id] = conversation
        logger.info("Hydrated %d conversations", len(conversations))

    def generation(self, conversation_id: str) -> int:
        return self._generations.get(conversation_id, 0)

    def begin_turn(
        self,
        conversation_id: str,
        user_turn: ConversationTurn,
        placeholder: ConversationTurn,
    ) -> int:
        """Append the user turn and the pending placeholder; return the new generation."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        if conversation.trailing_pending:
            raise ConversationBusy(conversation_id)

        if not any(t.role == "user" for t in conversation.turns):
            conversation.title = user_turn.content[:TITLE_LENGTH] or conversation.title
        conversation.model = placeholder.model or conversation.model
        conversation.turns.extend([user_turn, placeholder.model_copy(update={"pending": True})])

        generation = self._generations.get(conversation_id, 0) + 1
        self._generations[conversation_id] = generation
        return generation

    def replace_pending(self, conversation_id: str, generation: int, turn: ConversationTurn) -> bool:
        """Replace the trailing pending turn. False if the write is stale."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return False
        if self._generations.get(conversation_id, 0) != generation:
            logger.debug("Dropping stale write to %s (generation %d)", conversation_id, generation)
            return False
        if not conversation.trailing_pending:
            # Already finalized; pending is cleared exactly once
            return False
        conversation.turns[-1] = turn
        return True
