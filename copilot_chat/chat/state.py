"""Turn state machine for one user turn.

    drafting -> streaming -> (tool_pending -> streaming)* -> complete
                                                           | cancelled
                                                           | failed

advance() is a pure (TurnState, event) -> TurnState function. Network and
tool calls happen between transitions, in the orchestrator. Terminal states
absorb every further event, so a late callback cannot revive a turn.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any

from copilot_chat.api.stream import ToolCallRequest


class TurnPhase(StrEnum):
    DRAFTING = "drafting"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({TurnPhase.COMPLETE, TurnPhase.CANCELLED, TurnPhase.FAILED})


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestStarted:
    """A streaming request is about to be sent."""


@dataclass(frozen=True)
class DeltaReceived:
    text: str


@dataclass(frozen=True)
class StreamFinished:
    tool_calls: tuple[ToolCallRequest, ...] = ()
    usage: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolStarted:
    call: ToolCallRequest
    label: str


@dataclass(frozen=True)
class ToolFinished:
    call: ToolCallRequest
    result: str


@dataclass(frozen=True)
class Cancelled:
    pass


@dataclass(frozen=True)
class Failed:
    message: str


TurnEvent = RequestStarted | DeltaReceived | StreamFinished | ToolStarted | ToolFinished | Cancelled | Failed


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TurnState:
    """Immutable snapshot of a turn in progress."""

    messages: tuple[dict[str, Any], ...]  # outbound message array for the next request
    max_round_trips: int = 5
    phase: TurnPhase = TurnPhase.DRAFTING
    prefix: str = ""  # text of earlier segments plus tool progress lines
    segment: str = ""  # text of the segment currently streaming
    round_trips: int = 0
    pending_tool_calls: tuple[ToolCallRequest, ...] = ()
    usage: dict[str, Any] | None = None
    error: str | None = None
    loop_exceeded: bool = False
    tool_calls_made: int = 0

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def pending(self) -> bool:
        return not self.terminal

    @property
    def content(self) -> str:
        """What the assistant placeholder shows right now."""
        if self.phase is TurnPhase.FAILED:
            return f"[Error: {self.error}]"
        return self.prefix + self.segment

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "content": self.content,
            "pending": self.pending,
            "error": self.phase is TurnPhase.FAILED,
            "round_trips": self.round_trips,
            "tool_calls": self.tool_calls_made,
            "loop_exceeded": self.loop_exceeded,
            "usage": self.usage,
        }


def start_turn(messages: list[dict[str, Any]], max_round_trips: int = 5) -> TurnState:
    return TurnState(messages=tuple(messages), max_round_trips=max_round_trips)


def _assistant_tool_message(text: str, calls: tuple[ToolCallRequest, ...]) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": text or None,
        "tool_calls": [call.to_message() for call in calls],
    }


def advance(state: TurnState, event: TurnEvent) -> TurnState:
    """Apply one event. Events that do not fit the current phase are ignored."""
    if state.terminal:
        return state

    if isinstance(event, Cancelled):
        return replace(state, phase=TurnPhase.CANCELLED, pending_tool_calls=())

    if isinstance(event, Failed):
        return replace(state, phase=TurnPhase.FAILED, error=event.message, pending_tool_calls=())

    if isinstance(event, RequestStarted):
        if state.phase is TurnPhase.DRAFTING or (
            state.phase is TurnPhase.TOOL_PENDING and not state.pending_tool_calls
        ):
            return replace(
                state,
                phase=TurnPhase.STREAMING,
                round_trips=state.round_trips + 1,
                segment="",
            )
        return state

    if isinstance(event, DeltaReceived):
        if state.phase is not TurnPhase.STREAMING:
            return state
        return replace(state, segment=state.segment + event.text)

    if isinstance(event, StreamFinished):
        if state.phase is not TurnPhase.STREAMING:
            return state
        usage = event.usage if event.usage is not None else state.usage
        if not event.tool_calls:
            return replace(state, phase=TurnPhase.COMPLETE, usage=usage)
        if state.round_trips >= state.max_round_trips:
            # Bound hit: keep whatever text we have, skip the requested tools
            return replace(state, phase=TurnPhase.COMPLETE, usage=usage, loop_exceeded=True)
        return replace(
            state,
            phase=TurnPhase.TOOL_PENDING,
            usage=usage,
            prefix=state.prefix + state.segment,
            segment="",
            pending_tool_calls=tuple(event.tool_calls),
            messages=state.messages + (_assistant_tool_message(state.segment, event.tool_calls),),
        )

    if isinstance(event, ToolStarted):
        if state.phase is not TurnPhase.TOOL_PENDING or not state.pending_tool_calls:
            return state
        separator = "\n\n" if state.prefix and not state.prefix.endswith("\n") else ""
        return replace(state, prefix=f"{state.prefix}{separator}{event.label}\n\n")

    if isinstance(event, ToolFinished):
        if state.phase is not TurnPhase.TOOL_PENDING or not state.pending_tool_calls:
            return state
        if state.pending_tool_calls[0].id != event.call.id:
            # Results must be appended in call order
            return state
        tool_message = {"role": "tool", "tool_call_id": event.call.id, "content": event.result}
        return replace(
            state,
            pending_tool_calls=state.pending_tool_calls[1:],
            messages=state.messages + (tool_message,),
            tool_calls_made=state.tool_calls_made + 1,
        )

    return state
