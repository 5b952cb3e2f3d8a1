"""Pydantic DTOs for the model catalog."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

Tier = Literal["standard", "premium"]


class ModelDescriptor(BaseModel):
    """A chat model as published by the catalog. Immutable once returned."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str | None = None
    provider: str = "Unknown"
    tier: Tier = "standard"
    multiplier: float | None = None  # premium requests per call, 0 = unlimited
    context_window_tokens: int | None = None
