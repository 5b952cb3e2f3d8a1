"""Model catalog resolution with a time-boxed cache and request dedup.

The cache is keyed by the bearer credential. At most one /models fetch is
outstanding per credential: concurrent resolve() calls share the same
task. A credential change drops the cache and the in-flight task
reference at once; a late result for the old credential is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from copilot_chat.catalog.schemas import ModelDescriptor, Tier

logger = logging.getLogger(__name__)

ModelFetcher = Callable[[str], Awaitable[list[dict[str, Any]]]]

# Fallback tiers -- only used when the API omits billing data
MODEL_META: dict[str, Tier] = {
    "gpt-4o": "premium",
    "gpt-4o-mini": "standard",
    "o1": "premium",
    "o1-mini": "premium",
    "o3-mini": "premium",
    "o4-mini": "premium",
    "claude-3.5-sonnet": "premium",
    "claude-3.5-haiku": "premium",
    "claude-3.7-sonnet": "premium",
    "claude-3.7-sonnet-thought": "premium",
    "gemini-2.0-flash": "premium",
    "gemini-2.5-pro": "premium",
}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _dig(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value):
        return None
    return float(value)


def guess_provider(model_id: str) -> str:
    """Guess the provider from a model id."""
    mid = model_id.lower()
    if "gpt" in mid or mid.startswith(("o1", "o3", "o4")):
        return "OpenAI"
    if "claude" in mid:
        return "Anthropic"
    if "gemini" in mid:
        return "Google"
    if "llama" in mid or "meta" in mid:
        return "Meta"
    if "phi" in mid or "mistral" in mid:
        return "Microsoft"
    return "Unknown"


def resolve_tier(model_id: str, is_premium: Any, multiplier: float | None) -> Tier:
    """Billing flags first, then the static table, then standard.

    A multiplier of 0 means the model costs nothing and is always standard.
    """
    if multiplier == 0:
        return "standard"
    if isinstance(is_premium, bool):
        return "premium" if is_premium else "standard"
    return MODEL_META.get(model_id, "standard")


def normalize_model(raw: dict[str, Any]) -> ModelDescriptor | None:
    """Turn a raw /models entry into a descriptor, or None if unusable for chat."""
    model_id = str(raw.get("id") or raw.get("name") or "")
    if not model_id:
        return None

    if raw.get("model_picker_enabled") is False:
        logger.debug("Dropping %s: not enabled for selection", model_id)
        return None

    context_window = _as_number(_first(
        _dig(raw, "capabilities", "limits", "max_context_window_tokens"),
        _dig(raw, "limits", "max_context_window_tokens"),
        raw.get("context_window"),
        raw.get("max_context_window_tokens"),
    ))
    if not context_window or context_window <= 0:
        logger.debug("Dropping %s: no context window", model_id)
        return None

    multiplier = _as_number(_first(_dig(raw, "billing", "multiplier"), raw.get("multiplier")))
    is_premium = _first(
        _dig(raw, "billing", "is_premium"),
        _dig(raw, "policy", "is_premium"),
        raw.get("is_premium"),
    )

    name = raw.get("name")
    return ModelDescriptor(
        id=model_id,
        display_name=str(name) if name and name != model_id else None,
        provider=str(raw.get("vendor") or guess_provider(model_id)),
        tier=resolve_tier(model_id, is_premium, multiplier),
        multiplier=multiplier,
        context_window_tokens=int(context_window),
    )


def normalize_models(entries: list[dict[str, Any]]) -> list[ModelDescriptor]:
    models: list[ModelDescriptor] = []
    seen: set[str] = set()
    for raw in entries:
        model = normalize_model(raw)
        if model is None or model.id in seen:
            continue
        seen.add(model.id)
        models.append(model)
    return models


# ---------------------------------------------------------------------------
# Cache + resolver
# ---------------------------------------------------------------------------


@dataclass
class CatalogCache:
    """Catalog state for the active credential."""

    credential: str | None = None
    entries: list[ModelDescriptor] | None = None
    fetched_at_ms: float = 0.0
    in_flight: asyncio.Task | None = None

    def reset(self, credential: str | None = None) -> None:
        self.credential = credential
        self.entries = None
        self.fetched_at_ms = 0.0
        self.in_flight = None


def _observe_failure(task: asyncio.Task) -> None:
    # Every caller may have been cancelled; the failure is still consumed here
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Model catalog fetch failed: %s", task.exception())


class ModelCatalogResolver:
    """Resolves the model catalog for a credential.

    Constructed once and handed to whoever needs the catalog; there is no
    module-level cache.
    """

    def __init__(
        self,
        fetch_models: ModelFetcher,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetch_models = fetch_models
        self._ttl_ms = ttl_seconds * 1000
        self._clock = clock
        self._cache = CatalogCache()

    @property
    def cache(self) -> CatalogCache:
        return self._cache

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def resolve(self, credential: str, force_refresh: bool = False) -> list[ModelDescriptor]:
        """Return the catalog for credential, fetching at most once at a time.

        Raises UpstreamError / TransientError when the fetch fails.
        """
        cache = self._cache
        if credential != cache.credential:
            if cache.credential is not None:
                logger.info("Credential changed, dropping model catalog cache")
            cache.reset(credential)

        if (
            not force_refresh
            and cache.entries is not None
            and self._now_ms() - cache.fetched_at_ms < self._ttl_ms
        ):
            logger.debug("Model catalog cache hit (%d models)", len(cache.entries))
            return list(cache.entries)

        task = cache.in_flight
        if task is not None:
            logger.debug("Joining in-flight model catalog fetch")
        else:
            task = asyncio.create_task(self._fetch(credential), name="model-catalog")
            task.add_done_callback(_observe_failure)
            cache.in_flight = task

        # shield: one cancelled caller must not cancel the fetch for the others
        return list(await asyncio.shield(task))

    async def lookup(self, credential: str, model_id: str) -> ModelDescriptor | None:
        for model in await self.resolve(credential):
            if model.id == model_id:
                return model
        return None

    def invalidate(self) -> None:
        """Drop cached entries and any in-flight fetch reference."""
        self._cache.reset()

    async def _fetch(self, credential: str) -> list[ModelDescriptor]:
        this_task = asyncio.current_task()
        try:
            raw = await self._fetch_models(credential)
            models = normalize_models(raw)
            cache = self._cache
            if cache.credential == credential and cache.in_flight is this_task:
                cache.entries = models
                cache.fetched_at_ms = self._now_ms()
                logger.info("Model catalog fetched: %d usable of %d entries", len(models), len(raw))
            else:
                logger.debug("Discarding model catalog fetched for a stale credential")
            return models
        finally:
            if self._cache.in_flight is this_task:
                self._cache.in_flight = None
