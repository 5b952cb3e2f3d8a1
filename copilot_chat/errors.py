"""Error taxonomy for the chat engine.

Stream and tool errors are converted into terminal turn state by the
orchestrator. Only TurnCancelled crosses into the session coordinator.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base for errors that end up as a user-visible message."""


class TransientError(ChatError):
    """Network failure. Retrying is left to the caller."""


class UpstreamError(ChatError):
    """Non-success response from the upstream API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ProtocolError(ChatError):
    """A single stream frame could not be decoded."""


class ToolError(ChatError):
    """The search collaborator failed."""


class ModelUnavailable(ChatError):
    """The requested model is not in the credential's catalog."""

    def __init__(self, model_id: str) -> None:
        super().__init__(f"Model {model_id} is not available")
        self.model_id = model_id


class TurnCancelled(Exception):
    """The user stopped the turn. Not an error; no message is shown."""


class ConversationBusy(Exception):
    """A turn for this conversation is already running."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} already has an active turn")
        self.conversation_id = conversation_id
