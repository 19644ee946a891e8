"""Read-only catalogs: node templates, pipeline templates, models, providers."""

from catalog.models import (
    MODEL_CATALOG,
    TIER_PREFERENCE,
    ModelCatalog,
    auto_select_model,
    parse_model_string,
    resolve_auto_model,
)
from catalog.providers import ProviderAvailability
from catalog.templates import NODE_TEMPLATES, PIPELINE_TEMPLATES, TemplateRegistry

__all__ = [
    "MODEL_CATALOG",
    "NODE_TEMPLATES",
    "PIPELINE_TEMPLATES",
    "TIER_PREFERENCE",
    "ModelCatalog",
    "ProviderAvailability",
    "TemplateRegistry",
    "auto_select_model",
    "parse_model_string",
    "resolve_auto_model",
]
