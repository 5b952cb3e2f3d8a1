"""Tests for copilot_chat/cancellation.py."""

import asyncio

import pytest

from copilot_chat.cancellation import CancellationRegistry, CancellationToken
from copilot_chat.errors import TurnCancelled


class TestCancellationToken:
    def test_raise_if_cancelled(self):
        token = CancellationToken("conv_1")
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(TurnCancelled):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_cancel_interrupts_attached_task(self):
        token = CancellationToken()
        task = asyncio.create_task(asyncio.Event().wait())
        token.attach(task)
        await asyncio.sleep(0)
        token.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_attach_after_cancel(self):
        token = CancellationToken()
        token.cancel()
        task = asyncio.create_task(asyncio.Event().wait())
        token.attach(task)
        with pytest.raises(asyncio.CancelledError):
            await task

    def test_ids_unique(self):
        assert CancellationToken().id != CancellationToken().id


class TestCancellationRegistry:
    def test_cancel_all_only_touches_registered(self):
        registry = CancellationRegistry()
        a, b, outside = CancellationToken("a"), CancellationToken("b"), CancellationToken("c")
        registry.register(a)
        registry.register(b)

        assert registry.cancel_all() == 2
        assert a.cancelled and b.cancelled
        assert not outside.cancelled
        assert len(registry) == 0

    def test_discard(self):
        registry = CancellationRegistry()
        token = CancellationToken()
        registry.register(token)
        registry.discard(token)
        registry.discard(token)
        assert registry.cancel_all() == 0
        assert not token.cancelled
