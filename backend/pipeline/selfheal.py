"""Self-heal: failure classification and provider fallback chains.

When a node's call fails, the engine classifies the error message and asks
for an ordered list of alternative models to retry with. Cheap and local
models come first so that healing can succeed without paid keys.
"""

from collections.abc import Iterable

from catalog.models import ModelCatalog
from models.schemas import ErrorCategory

MAX_HEAL_ATTEMPTS = 3

# Checked in order; the first category with a matching keyword wins.
_CATEGORY_KEYWORDS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (
        ErrorCategory.AUTH,
        (
            "401",
            "403",
            "unauthorized",
            "authentication",
            "invalid api key",
            "invalid_api_key",
            "cors",
            "permission",
            "no api key",
        ),
    ),
    (ErrorCategory.RATE_LIMIT, ("429", "rate limit", "rate_limit", "too many requests")),
    (ErrorCategory.SERVER_ERROR, ("500", "502", "503", "service unavailable", "server error")),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out", "deadline")),
    (
        ErrorCategory.UNAVAILABLE,
        ("econnrefused", "network", "unreachable", "failed to fetch", "connection refused"),
    ),
)

FALLBACK_PRIORITY: tuple[str, ...] = (
    "llama-70b",
    "deepseek-chat",
    "gemini-flash",
    "gpt-4o-mini",
    "ollama-gemma",
    "ollama-llama",
    "ollama-mistral",
    "gpt-4o",
    "gemini-pro",
    "deepseek-r1",
    "openrouter-claude",
    "claude-sonnet",
    "claude-opus",
)

# Categories where every model of the failing provider is likely broken too
_PROVIDER_WIDE = frozenset({ErrorCategory.AUTH, ErrorCategory.RATE_LIMIT})


def classify_error(message: str | None) -> ErrorCategory:
    """Map a failure message to an ErrorCategory (case-insensitive)."""
    text = (message or "").lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return ErrorCategory.UNKNOWN


def fallback_chain(
    failed_model_id: str,
    category: ErrorCategory,
    available_models: Iterable[str],
    *,
    catalog: ModelCatalog,
) -> list[str]:
    """Ordered fallback candidates for a failed model.

    Starts from FALLBACK_PRIORITY, then appends available models missing
    from it in catalog order. Only available models are kept, the failed
    model never appears, and for auth / rate-limit failures every model of
    the failed model's provider is dropped. May be empty.
    """
    available = set(available_models)
    failed_provider = catalog.provider_of(failed_model_id)

    ordered = list(FALLBACK_PRIORITY)
    ordered.extend(option.id for option in catalog if option.id not in FALLBACK_PRIORITY)

    chain: list[str] = []
    for model_id in ordered:
        if model_id == failed_model_id or model_id not in available:
            continue
        if (
            category in _PROVIDER_WIDE
            and failed_provider is not None
            and catalog.provider_of(model_id) == failed_provider
        ):
            continue
        chain.append(model_id)
    return chain
