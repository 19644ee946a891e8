"""Model catalog.

Every model a node can run on, keyed by a short catalog id. The
``litellm_model`` string is what the provider calling layer hands to
LiteLLM (``provider/model``).
"""

from catalog.providers import ProviderAvailability
from models.schemas import ModelOption, ModelTier

MODEL_CATALOG: tuple[ModelOption, ...] = (
    ModelOption(
        id="claude-opus",
        label="Claude Opus",
        provider="anthropic",
        litellm_model="anthropic/claude-opus-4-6",
        tier=ModelTier.FRONTIER,
    ),
    ModelOption(
        id="claude-sonnet",
        label="Claude Sonnet",
        provider="anthropic",
        litellm_model="anthropic/claude-sonnet-4-5-20250929",
        tier=ModelTier.FRONTIER,
    ),
    ModelOption(
        id="gpt-4o",
        label="GPT-4o",
        provider="openai",
        litellm_model="openai/gpt-4o",
        tier=ModelTier.FRONTIER,
    ),
    ModelOption(
        id="gpt-4o-mini",
        label="GPT-4o Mini",
        provider="openai",
        litellm_model="openai/gpt-4o-mini",
        tier=ModelTier.MID,
    ),
    ModelOption(
        id="gemini-flash",
        label="Gemini Flash",
        provider="gemini",
        litellm_model="gemini/gemini-2.0-flash",
        tier=ModelTier.FRONTIER,
    ),
    ModelOption(
        id="gemini-pro",
        label="Gemini Pro",
        provider="gemini",
        litellm_model="gemini/gemini-1.5-pro",
        tier=ModelTier.FRONTIER,
    ),
    ModelOption(
        id="openrouter-claude",
        label="Claude (OpenRouter)",
        provider="openrouter",
        litellm_model="openrouter/anthropic/claude-sonnet-4-5",
        tier=ModelTier.FRONTIER,
    ),
    ModelOption(
        id="deepseek-r1",
        label="DeepSeek R1",
        provider="deepseek",
        litellm_model="deepseek/deepseek-reasoner",
        tier=ModelTier.FRONTIER,
    ),
    ModelOption(
        id="deepseek-chat",
        label="DeepSeek Chat",
        provider="deepseek",
        litellm_model="deepseek/deepseek-chat",
        tier=ModelTier.MID,
    ),
    ModelOption(
        id="llama-70b",
        label="Llama 70B (Groq)",
        provider="groq",
        litellm_model="groq/llama-3.3-70b-versatile",
        tier=ModelTier.MID,
    ),
    ModelOption(
        id="llama-8b",
        label="Llama 8B (Groq)",
        provider="groq",
        litellm_model="groq/llama-3.1-8b-instant",
        tier=ModelTier.LOCAL,
    ),
    ModelOption(
        id="ollama-llama",
        label="Llama (Local)",
        provider="ollama",
        litellm_model="ollama/llama3.1",
        tier=ModelTier.LOCAL,
    ),
    ModelOption(
        id="ollama-mistral",
        label="Mistral (Local)",
        provider="ollama",
        litellm_model="ollama/mistral",
        tier=ModelTier.LOCAL,
    ),
    ModelOption(
        id="ollama-gemma",
        label="Gemma (Local)",
        provider="ollama",
        litellm_model="ollama/gemma2",
        tier=ModelTier.LOCAL,
    ),
)

# Preferred model per tier for nodes driven in auto mode.
TIER_PREFERENCE: dict[ModelTier, str] = {
    ModelTier.FRONTIER: "claude-sonnet",
    ModelTier.MID: "llama-70b",
    ModelTier.LOCAL: "ollama-llama",
}


def parse_model_string(model: str) -> tuple[str, str]:
    """Parse 'provider/model-name' into (provider, model)."""
    if "/" in model:
        provider, model_name = model.split("/", 1)
        return provider.lower(), model_name
    if model.startswith("claude"):
        return "anthropic", model
    if model.startswith("gpt") or model.startswith("o1") or model.startswith("o3"):
        return "openai", model
    if model.startswith("gemini"):
        return "gemini", model
    if model.startswith("deepseek"):
        return "deepseek", model
    return "", model


class ModelCatalog:
    """Read-only lookup over the model catalog."""

    def __init__(self, options: tuple[ModelOption, ...] | list[ModelOption] = MODEL_CATALOG) -> None:
        self._options = list(options)
        self._by_id = {option.id: option for option in self._options}

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._by_id

    def __iter__(self):
        return iter(self._options)

    def get(self, model_id: str) -> ModelOption | None:
        return self._by_id.get(model_id)

    def provider_of(self, model_id: str) -> str | None:
        """Return the provider of a catalog id or of a raw 'provider/model' string."""
        option = self._by_id.get(model_id)
        if option is not None:
            return option.provider
        provider, _ = parse_model_string(model_id)
        return provider or None

    def available(self, availability: ProviderAvailability) -> list[ModelOption]:
        """Models whose provider is callable, in catalog order."""
        return [option for option in self._options if availability.is_available(option.provider)]

    def by_tier(self, tier: ModelTier) -> list[ModelOption]:
        return [option for option in self._options if option.tier == tier]


def auto_select_model(tier: ModelTier | str) -> str:
    """Preferred catalog id for a tier, ignoring availability."""
    try:
        return TIER_PREFERENCE[ModelTier(tier)]
    except ValueError:
        return TIER_PREFERENCE[ModelTier.FRONTIER]


def resolve_auto_model(
    tier: ModelTier | str,
    availability: ProviderAvailability,
    catalog: ModelCatalog,
) -> str:
    """Pick the model an auto-driven node runs on.

    The tier preference if its provider is available, else the first
    available model of the same tier, else the preference anyway so that
    its failure goes through healing like any other.
    """
    preferred = auto_select_model(tier)
    provider = catalog.provider_of(preferred)
    if provider and availability.is_available(provider):
        return preferred
    for option in catalog.available(availability):
        if option.tier == tier:
            return option.id
    return preferred
