"""Tests for copilot_chat/catalog -- normalization, caching, dedup and grouping.

The fetcher is an AsyncMock or a small fake with an asyncio.Event gate,
and the clock is injected, so no test touches the network or sleeps.
"""

import asyncio
import gc
from unittest.mock import AsyncMock

import pytest

from copilot_chat.catalog import (
    ModelCatalogResolver,
    ModelDescriptor,
    display_name,
    group_models,
    guess_provider,
    normalize_model,
    normalize_models,
    sort_models,
)
from copilot_chat.errors import UpstreamError


def _raw(model_id: str, **extra) -> dict:
    entry = {"id": model_id, "capabilities": {"limits": {"max_context_window_tokens": 128000}}}
    entry.update(extra)
    return entry


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class GatedFetcher:
    """Fetcher that blocks until released, counting calls per credential."""

    def __init__(self, entries: list[dict] | None = None) -> None:
        self.entries = entries if entries is not None else [_raw("gpt-4o")]
        self.calls: list[str] = []
        self.gate = asyncio.Event()
        self.error: Exception | None = None

    async def __call__(self, credential: str) -> list[dict]:
        self.calls.append(credential)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.entries


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestGuessProvider:
    @pytest.mark.parametrize(
        "model_id,provider",
        [
            ("gpt-4o", "OpenAI"),
            ("o3-mini", "OpenAI"),
            ("claude-3.5-sonnet", "Anthropic"),
            ("gemini-2.0-flash", "Google"),
            ("llama-3-70b", "Meta"),
            ("phi-4", "Microsoft"),
            ("something-else", "Unknown"),
        ],
    )
    def test_guess(self, model_id, provider):
        assert guess_provider(model_id) == provider


class TestNormalizeModel:
    def test_basic_entry(self):
        model = normalize_model(_raw("gpt-4o-mini", name="GPT-4o mini", vendor="Azure OpenAI"))
        assert model == ModelDescriptor(
            id="gpt-4o-mini",
            display_name="GPT-4o mini",
            provider="Azure OpenAI",
            tier="standard",
            multiplier=None,
            context_window_tokens=128000,
        )

    def test_missing_id_dropped(self):
        assert normalize_model({"capabilities": {"limits": {"max_context_window_tokens": 1}}}) is None

    def test_picker_disabled_dropped(self):
        assert normalize_model(_raw("gpt-4o", model_picker_enabled=False)) is None

    def test_no_context_window_dropped(self):
        """Embedding models and the like have no context window."""
        assert normalize_model({"id": "text-embedding-3-small"}) is None

    @pytest.mark.parametrize(
        "entry",
        [
            {"id": "m", "limits": {"max_context_window_tokens": 4096}},
            {"id": "m", "context_window": 4096},
            {"id": "m", "max_context_window_tokens": 4096},
        ],
    )
    def test_context_window_variants(self, entry):
        assert normalize_model(entry).context_window_tokens == 4096

    def test_billing_flag_beats_static_table(self):
        model = normalize_model(_raw("gpt-4o", billing={"is_premium": False}))
        assert model.tier == "standard"

    def test_policy_flag(self):
        assert normalize_model(_raw("custom-model", policy={"is_premium": True})).tier == "premium"

    def test_zero_multiplier_is_standard(self):
        model = normalize_model(_raw("claude-3.5-sonnet", billing={"is_premium": True, "multiplier": 0}))
        assert model.tier == "standard"
        assert model.multiplier == 0

    def test_static_table_fallback(self):
        assert normalize_model(_raw("claude-3.7-sonnet")).tier == "premium"
        assert normalize_model(_raw("brand-new-model")).tier == "standard"

    def test_multiplier_top_level(self):
        assert normalize_model(_raw("m", multiplier=1.5)).multiplier == 1.5

    def test_dedup_by_id(self):
        models = normalize_models([_raw("a"), _raw("a", name="dup"), _raw("b")])
        assert [m.id for m in models] == ["a", "b"]


# ---------------------------------------------------------------------------
# Resolver: cache, dedup, credential change
# ---------------------------------------------------------------------------


class TestModelCatalogResolver:
    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_fetch(self):
        fetcher = GatedFetcher()
        resolver = ModelCatalogResolver(fetcher)

        first = asyncio.create_task(resolver.resolve("tok"))
        second = asyncio.create_task(resolver.resolve("tok"))
        await asyncio.sleep(0)
        fetcher.gate.set()
        a, b = await asyncio.gather(first, second)

        assert fetcher.calls == ["tok"]
        assert [m.id for m in a] == [m.id for m in b] == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_cache_hit_within_ttl(self):
        fetch = AsyncMock(return_value=[_raw("gpt-4o")])
        clock = FakeClock()
        resolver = ModelCatalogResolver(fetch, ttl_seconds=60, clock=clock)

        await resolver.resolve("tok")
        clock.now += 59
        await resolver.resolve("tok")
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_cache_refetches(self):
        fetch = AsyncMock(return_value=[_raw("gpt-4o")])
        clock = FakeClock()
        resolver = ModelCatalogResolver(fetch, ttl_seconds=60, clock=clock)

        await resolver.resolve("tok")
        clock.now += 61
        await resolver.resolve("tok")
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_credential_change_refetches(self):
        """A new credential never reuses the previous credential's catalog."""
        fetch = AsyncMock(side_effect=[[_raw("gpt-4o")], [_raw("claude-3.5-sonnet")]])
        resolver = ModelCatalogResolver(fetch)

        first = await resolver.resolve("tok_a")
        second = await resolver.resolve("tok_b")

        assert [c.args[0] for c in fetch.await_args_list] == ["tok_a", "tok_b"]
        assert [m.id for m in first] == ["gpt-4o"]
        assert [m.id for m in second] == ["claude-3.5-sonnet"]
        assert resolver.cache.credential == "tok_b"

    @pytest.mark.asyncio
    async def test_stale_credential_result_not_cached(self):
        """A fetch that completes after the credential changed does not populate the cache."""
        fetcher = GatedFetcher()
        resolver = ModelCatalogResolver(fetcher)

        old = asyncio.create_task(resolver.resolve("tok_old"))
        await asyncio.sleep(0)
        resolver.cache.reset("tok_new")
        fetcher.gate.set()
        await old

        assert resolver.cache.entries is None
        assert resolver.cache.credential == "tok_new"

    @pytest.mark.asyncio
    async def test_force_refresh(self):
        fetch = AsyncMock(return_value=[_raw("gpt-4o")])
        resolver = ModelCatalogResolver(fetch)

        await resolver.resolve("tok")
        await resolver.resolve("tok", force_refresh=True)
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate(self):
        fetch = AsyncMock(return_value=[_raw("gpt-4o")])
        resolver = ModelCatalogResolver(fetch)

        await resolver.resolve("tok")
        resolver.invalidate()
        assert resolver.cache.entries is None
        await resolver.resolve("tok")
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_not_cached_and_propagates(self):
        fetch = AsyncMock(side_effect=[UpstreamError("boom", 500), [_raw("gpt-4o")]])
        resolver = ModelCatalogResolver(fetch)

        with pytest.raises(UpstreamError):
            await resolver.resolve("tok")
        assert resolver.cache.in_flight is None
        assert [m.id for m in await resolver.resolve("tok")] == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_returned_list_is_a_copy(self):
        resolver = ModelCatalogResolver(AsyncMock(return_value=[_raw("gpt-4o")]))
        models = await resolver.resolve("tok")
        models.clear()
        assert len(await resolver.resolve("tok")) == 1

    @pytest.mark.asyncio
    async def test_lookup(self):
        resolver = ModelCatalogResolver(AsyncMock(return_value=[_raw("gpt-4o"), _raw("o1")]))
        assert (await resolver.lookup("tok", "o1")).id == "o1"
        assert await resolver.lookup("tok", "missing") is None

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_fetch(self):
        fetcher = GatedFetcher()
        resolver = ModelCatalogResolver(fetcher)

        impatient = asyncio.create_task(resolver.resolve("tok"))
        patient = asyncio.create_task(resolver.resolve("tok"))
        await asyncio.sleep(0)
        impatient.cancel()
        await asyncio.sleep(0)
        fetcher.gate.set()

        assert [m.id for m in await patient] == ["gpt-4o"]
        assert fetcher.calls == ["tok"]

    @pytest.mark.asyncio
    async def test_failure_with_every_caller_cancelled_is_consumed(self):
        loop = asyncio.get_running_loop()
        reported: list[dict] = []
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            fetcher = GatedFetcher()
            fetcher.error = UpstreamError("boom", 500)
            resolver = ModelCatalogResolver(fetcher)

            caller = asyncio.create_task(resolver.resolve("tok"))
            await asyncio.sleep(0)
            fetch_task = resolver.cache.in_flight
            caller.cancel()
            await asyncio.gather(caller, return_exceptions=True)

            fetcher.gate.set()
            await asyncio.wait([fetch_task])
            assert resolver.cache.in_flight is None

            del fetch_task
            gc.collect()
        finally:
            loop.set_exception_handler(None)

        assert not [c for c in reported if "never retrieved" in c.get("message", "")]


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


def _model(model_id: str, provider: str, tier: str = "standard", multiplier: float | None = None) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        provider=provider,
        tier=tier,
        multiplier=multiplier,
        context_window_tokens=1000,
    )


class TestGrouping:
    def test_sort_standard_first_then_multiplier(self):
        models = [
            _model("z-premium-unknown", "OpenAI", "premium"),
            _model("b-premium", "OpenAI", "premium", 10),
            _model("a-premium", "OpenAI", "premium", 1),
            _model("std", "OpenAI"),
        ]
        assert [m.id for m in sort_models(models)] == ["std", "a-premium", "b-premium", "z-premium-unknown"]

    def test_group_order_and_other_bucket(self):
        models = [
            _model("llama", "Meta"),
            _model("gpt-4o", "OpenAI", "premium", 1),
            _model("claude", "Anthropic"),
            _model("gpt-4o-mini", "OpenAI"),
        ]
        groups = group_models(models)
        assert [g["provider"] for g in groups] == ["Anthropic", "OpenAI", "Other"]
        assert [m.id for m in groups[1]["models"]] == ["gpt-4o-mini", "gpt-4o"]
        assert [m.id for m in groups[2]["models"]] == ["llama"]

    def test_display_name_falls_back_to_id(self):
        assert display_name(_model("gpt-4o", "OpenAI")) == "gpt-4o"
        named = _model("gpt-4o", "OpenAI").model_copy(update={"display_name": "GPT-4o"})
        assert display_name(named) == "GPT-4o"
