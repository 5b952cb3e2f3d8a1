"""Cooperative cancellation for chat turns.

A CancellationToken is shared by every suspension point of one turn.
Cancelling it flips the flag checked between frames and tool calls, and
cancels the asyncio task doing the work so a stalled network read is
interrupted too.
"""

from __future__ import annotations

import asyncio
import itertools
import logging

from copilot_chat.errors import TurnCancelled

logger = logging.getLogger(__name__)

_token_ids = itertools.count(1)


class CancellationToken:
    """Per-turn cancellation flag bound to the task running the turn."""

    def __init__(self, label: str = "") -> None:
        self.id = next(_token_ids)
        self.label = label
        self._cancelled = False
        self._task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, task: asyncio.Task) -> None:
        """Bind the task to interrupt on cancel()."""
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        logger.debug("Cancelling turn token %d (%s)", self.id, self.label)
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TurnCancelled(self.label)


class CancellationRegistry:
    """Live tokens for every running turn in the session.

    stop_all() broadcasts to every registered token; tokens of other
    conversations are only touched by that explicit broadcast.
    """

    def __init__(self) -> None:
        self._tokens: dict[int, CancellationToken] = {}

    def register(self, token: CancellationToken) -> None:
        self._tokens[token.id] = token

    def discard(self, token: CancellationToken) -> None:
        self._tokens.pop(token.id, None)

    def cancel_all(self) -> int:
        tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel()
        self._tokens.clear()
        return len(tokens)

    def __len__(self) -> int:
        return len(self._tokens)
