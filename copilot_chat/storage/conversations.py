"""Conversation persistence -- one JSON blob per conversation.

The store in memory is authoritative while the server runs. This
repository is the storage collaborator behind it: it keeps only the
newest conversations and may drop older ones at any save.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError
from sqlalchemy import delete, select

from copilot_chat.chat.schemas import Conversation
from copilot_chat.storage.database import Database
from copilot_chat.storage.models import StoredConversation

logger = logging.getLogger(__name__)


class ConversationRepository:
    def __init__(self, database: Database, max_conversations: int = 20) -> None:
        self._db = database
        self._max = max_conversations

    async def save(self, conversation: Conversation) -> None:
        """Upsert the conversation, then prune to the newest max_conversations."""
        row = StoredConversation(
            id=conversation.id,
            title=conversation.title,
            model=conversation.model,
            created_at_ms=conversation.created_at_ms,
            blob=conversation.model_dump_json(),
        )
        async with self._db.session() as session:
            async with session.begin():
                await session.merge(row)
                await session.flush()
                keep = (
                    select(StoredConversation.id)
                    .order_by(StoredConversation.created_at_ms.desc(), StoredConversation.id.desc())
                    .limit(self._max)
                )
                result = await session.execute(
                    delete(StoredConversation).where(StoredConversation.id.not_in(keep))
                )
                if result.rowcount:
                    logger.debug("Pruned %d stored conversations", result.rowcount)

    async def load_all(self) -> list[Conversation]:
        """All stored conversations, newest first. Corrupt rows are skipped."""
        async with self._db.session() as session:
            result = await session.execute(
                select(StoredConversation).order_by(StoredConversation.created_at_ms.desc())
            )
            rows = result.scalars().all()

        conversations: list[Conversation] = []
        for row in rows:
            try:
                conversations.append(Conversation.model_validate_json(row.blob))
            except ValidationError as e:
                logger.warning("Skipping unreadable conversation %s: %s", row.id, e)
        return conversations

    async def delete(self, conversation_id: str) -> bool:
        async with self._db.session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(StoredConversation).where(StoredConversation.id == conversation_id)
                )
        return bool(result.rowcount)
