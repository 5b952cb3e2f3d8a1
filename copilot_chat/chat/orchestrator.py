"""Chat orchestrator -- runs one user turn against one model.

Builds the outbound message array, streams the response into the
conversation's pending placeholder, and runs the bounded tool-call loop.
State changes go through the pure advance() function; the side effects
(network, tools, store writes) happen between transitions.

Stream and tool errors end the turn in the failed state here. Only
TurnCancelled is raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from copilot_chat.api.copilot import CopilotClient
from copilot_chat.api.web_tools import ToolInvoker, progress_label
from copilot_chat.catalog.resolver import ModelCatalogResolver
from copilot_chat.cancellation import CancellationToken
from copilot_chat.chat.schemas import ConversationTurn
from copilot_chat.chat.state import (
    Cancelled,
    DeltaReceived,
    Failed,
    RequestStarted,
    StreamFinished,
    ToolFinished,
    ToolStarted,
    TurnPhase,
    TurnState,
    advance,
    start_turn,
)
from copilot_chat.chat.store import ConversationStore
from copilot_chat.config import Settings
from copilot_chat.errors import ChatError, ModelUnavailable, TurnCancelled

logger = logging.getLogger(__name__)

TurnListener = Callable[[str, TurnState], None]


@dataclass
class TurnRequest:
    """One prompt for one model in one conversation."""

    conversation_id: str
    model: str
    prompt: str
    system_prompt: str | None = None  # None: configured default, "": none
    temperature: float | None = None
    max_tokens: int | None = None
    brave_api_key: str | None = None


def build_messages(
    system_prompt: str | None,
    history: list[ConversationTurn],
    prompt: str,
) -> list[dict[str, Any]]:
    """System prompt + prior non-system turns + the new user turn."""
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in history:
        if turn.role == "system" or turn.pending:
            continue
        message: dict[str, Any] = {"role": turn.role, "content": turn.content}
        if turn.tool_call_id:
            message["tool_call_id"] = turn.tool_call_id
        messages.append(message)
    messages.append({"role": "user", "content": prompt})
    return messages


def to_turn(state: TurnState, model: str) -> ConversationTurn:
    """Render a turn state as the assistant turn stored in the conversation."""
    return ConversationTurn(
        role="assistant",
        content=state.content,
        model=model,
        pending=state.pending,
        error=state.phase is TurnPhase.FAILED,
    )


class ChatOrchestrator:
    """Runs turns: Drafting -> Streaming -> (ToolPending -> Streaming)* -> terminal."""

    def __init__(
        self,
        client: CopilotClient,
        invoker: ToolInvoker,
        store: ConversationStore,
        settings: Settings,
        resolver: ModelCatalogResolver | None = None,
    ) -> None:
        self._client = client
        self._invoker = invoker
        self._store = store
        self._settings = settings
        self._resolver = resolver

    async def run_turn(
        self,
        credential: str,
        request: TurnRequest,
        token: CancellationToken,
        listener: TurnListener | None = None,
    ) -> TurnState:
        """Run one turn to a terminal state and return that state.

        Raises TurnCancelled if the token was cancelled; the placeholder is
        already finalized (pending cleared, partial text kept) by then.
        """
        conversation_id = request.conversation_id
        conversation = self._store.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)

        system_prompt = (
            self._settings.system_prompt if request.system_prompt is None else request.system_prompt
        )
        messages = build_messages(system_prompt, conversation.turns, request.prompt)

        # Drafting: placeholder goes in before any network call
        generation = self._store.begin_turn(
            conversation_id,
            ConversationTurn(role="user", content=request.prompt),
            ConversationTurn(role="assistant", model=request.model, pending=True),
        )
        state = start_turn(messages, self._settings.max_round_trips)

        tool_credentials = self._invoker.credentials(request.brave_api_key)
        tools = self._invoker.tool_definitions(tool_credentials) or None

        def publish(new_state: TurnState) -> None:
            nonlocal state
            state = new_state
            self._store.replace_pending(conversation_id, generation, to_turn(state, request.model))
            if listener is not None:
                try:
                    listener(conversation_id, state)
                except Exception:
                    logger.exception("Turn listener failed for %s", conversation_id)

        def on_delta(text: str) -> None:
            publish(advance(state, DeltaReceived(text)))

        try:
            await self._check_model(credential, request.model)
            while True:
                token.raise_if_cancelled()
                publish(advance(state, RequestStarted()))
                result = await self._client.stream_chat(
                    credential,
                    request.model,
                    list(state.messages),
                    on_delta,
                    token,
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                    tools=tools,
                )
                publish(advance(state, StreamFinished(tuple(result.tool_calls), result.usage)))
                if state.phase is not TurnPhase.TOOL_PENDING:
                    break

                # Sequential, in call order
                for call in state.pending_tool_calls:
                    token.raise_if_cancelled()
                    publish(advance(state, ToolStarted(call, progress_label(call.name, call.arguments))))
                    result_text = await self._invoker.invoke(call.name, call.arguments, tool_credentials)
                    publish(advance(state, ToolFinished(call, result_text)))

        except (TurnCancelled, asyncio.CancelledError) as e:
            publish(advance(state, Cancelled()))
            logger.info("Turn cancelled for %s after %d round trips", conversation_id, state.round_trips)
            if isinstance(e, asyncio.CancelledError) and not token.cancelled:
                raise
            raise TurnCancelled(conversation_id) from None
        except ChatError as e:
            logger.error("Turn failed for %s (%s): %s", conversation_id, request.model, e)
            publish(advance(state, Failed(str(e))))
        except Exception as e:
            logger.exception("Unexpected error during turn for %s", conversation_id)
            publish(advance(state, Failed(str(e) or type(e).__name__)))

        if state.loop_exceeded:
            logger.warning(
                "Tool loop for %s reached max_round_trips=%d", conversation_id, state.max_round_trips
            )
        return state

    async def _check_model(self, credential: str, model_id: str) -> None:
        """Reject models the catalog knows to be unusable.

        A catalog that cannot be fetched does not block the turn.
        """
        if self._resolver is None:
            return
        try:
            descriptor = await self._resolver.lookup(credential, model_id)
        except ChatError as e:
            logger.warning("Model catalog unavailable, sending to %s unchecked: %s", model_id, e)
            return
        if descriptor is None:
            raise ModelUnavailable(model_id)
        if descriptor.tier == "premium":
            logger.debug("Turn uses premium model %s (x%s)", model_id, descriptor.multiplier)
