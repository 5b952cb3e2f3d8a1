"""Pydantic DTOs for conversations and their turns."""

from __future__ import annotations

import time
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

Role = Literal["user", "assistant", "system", "tool"]

TITLE_LENGTH = 40


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_conversation_id(prefix: str = "conv") -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class ConversationTurn(BaseModel):
    """One message in a conversation thread."""

    role: Role
    content: str = ""
    model: str | None = None
    pending: bool = False  # assistant placeholder still streaming
    error: bool = False
    tool_call_id: str | None = None


class Conversation(BaseModel):
    """A conversation thread with its full turn history."""

    id: str = Field(default_factory=new_conversation_id)
    title: str = "New chat"
    created_at_ms: int = Field(default_factory=_now_ms)
    model: str | None = None
    turns: list[ConversationTurn] = Field(default_factory=list)

    @property
    def trailing_pending(self) -> bool:
        return bool(self.turns) and self.turns[-1].pending
