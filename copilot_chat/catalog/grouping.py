"""Ordering and grouping of catalog models for model pickers."""

from __future__ import annotations

import math
from typing import Any

from copilot_chat.catalog.schemas import ModelDescriptor

MAIN_PROVIDERS = ("Anthropic", "OpenAI", "Google")
OTHER_PROVIDER = "Other"


def sort_models(models: list[ModelDescriptor]) -> list[ModelDescriptor]:
    """Standard first, then by multiplier ascending (unknown last), then by id."""
    return sorted(
        models,
        key=lambda m: (
            m.tier != "standard",
            m.multiplier if m.multiplier is not None else math.inf,
            m.id,
        ),
    )


def display_name(model: ModelDescriptor) -> str:
    if model.display_name and model.display_name != model.id:
        return model.display_name
    return model.id


def group_models(models: list[ModelDescriptor]) -> list[dict[str, Any]]:
    """Bucket models by provider; main providers in fixed order, the rest under Other."""
    groups: dict[str, list[ModelDescriptor]] = {}
    for model in models:
        provider = model.provider if model.provider in MAIN_PROVIDERS else OTHER_PROVIDER
        groups.setdefault(provider, []).append(model)
    return [
        {"provider": provider, "models": sort_models(groups[provider])}
        for provider in (*MAIN_PROVIDERS, OTHER_PROVIDER)
        if provider in groups
    ]
