"""Model catalog -- resolution, caching and presentation of available models.

Public API: ModelCatalogResolver + ModelDescriptor and the grouping helpers.
"""

from copilot_chat.catalog.grouping import display_name, group_models, sort_models
from copilot_chat.catalog.resolver import (
    MODEL_META,
    CatalogCache,
    ModelCatalogResolver,
    guess_provider,
    normalize_model,
    normalize_models,
)
from copilot_chat.catalog.schemas import ModelDescriptor, Tier

__all__ = [
    "CatalogCache",
    "MODEL_META",
    "ModelCatalogResolver",
    "ModelDescriptor",
    "Tier",
    "display_name",
    "group_models",
    "guess_provider",
    "normalize_model",
    "normalize_models",
    "sort_models",
]
