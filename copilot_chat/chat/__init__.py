"""Chat engine -- turn orchestration, conversation state and cancellation.

Public API: SessionCoordinator drives sends; ChatOrchestrator runs one turn.
"""

from copilot_chat.cancellation import CancellationRegistry, CancellationToken
from copilot_chat.chat.orchestrator import ChatOrchestrator, TurnRequest, build_messages
from copilot_chat.chat.schemas import Conversation, ConversationTurn
from copilot_chat.chat.session import SessionCoordinator, TurnOutcome
from copilot_chat.chat.state import TurnPhase, TurnState, advance
from copilot_chat.chat.store import ConversationStore

__all__ = [
    "CancellationRegistry",
    "CancellationToken",
    "ChatOrchestrator",
    "Conversation",
    "ConversationStore",
    "ConversationTurn",
    "SessionCoordinator",
    "TurnOutcome",
    "TurnPhase",
    "TurnRequest",
    "TurnState",
    "advance",
    "build_messages",
]
