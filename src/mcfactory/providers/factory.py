"""
Configuration-driven provider instantiation.
"""

import httpx

from ..config.settings import ProviderSettings, Settings
from ..core.errors import ConfigError
from ..observability.logging import get_logger
from .base import ProviderDescriptor
from .http import PROVIDER_KINDS, HTTPProvider
from .registry import ProviderRegistry

logger = get_logger(__name__)


def build_provider(
    name: str, settings: ProviderSettings, http_client: httpx.AsyncClient | None = None
) -> HTTPProvider:
    """Create the adapter for a configured provider."""
    kind = settings.kind or name
    provider_class = PROVIDER_KINDS.get(kind)
    if provider_class is None:
        raise ConfigError(
            f"Unknown provider kind '{kind}' for '{name}'. Available: {sorted(PROVIDER_KINDS)}"
        )
    return provider_class(name, settings, http_client=http_client)


def register_configured_providers(
    registry: ProviderRegistry,
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
) -> list[str]:
    """Register every provider declared in settings; returns the registered names."""
    registered = []
    for name, provider_settings in settings.providers.items():
        adapter = build_provider(name, provider_settings, http_client)
        registry.register(ProviderDescriptor.of(name, provider_settings.capabilities), adapter)
        registered.append(name)

    logger.info(f"Registered {len(registered)} configured provider(s)", providers=registered)
    return registered
