"""Provider availability.

Availability is an explicit value built from settings and handed to the
self-heal subsystem and the advisor at call time. It records only which
providers have credentials, never the credentials themselves.
"""

from dataclasses import dataclass, field

from config import Settings

# Providers that run locally and need no credentials.
KEYLESS_PROVIDERS = frozenset({"ollama"})


@dataclass(frozen=True)
class ProviderAvailability:
    """Which providers can be called right now."""

    configured: frozenset[str] = field(default_factory=frozenset)

    def is_available(self, provider: str) -> bool:
        return provider in KEYLESS_PROVIDERS or provider in self.configured

    @property
    def providers(self) -> frozenset[str]:
        """Every callable provider, keyless ones included."""
        return self.configured | KEYLESS_PROVIDERS

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderAvailability":
        """Build availability from the provider keys present in settings."""
        return cls(
            configured=frozenset(
                provider
                for provider, key in settings.provider_api_keys().items()
                if key and key.strip()
            )
        )

    @classmethod
    def of(cls, *providers: str) -> "ProviderAvailability":
        return cls(configured=frozenset(providers))
