"""Provider adapters, the provider registry and configuration-driven construction."""

from .base import ProviderAdapter, ProviderDescriptor, classify_exception
from .factory import build_provider, register_configured_providers
from .function import FunctionProvider
from .http import AnthropicProvider, HTTPProvider, JSONTaskProvider, OpenAIProvider
from .registry import ProviderRegistry, SealedProviderRegistry, get_registry

__all__ = [
    "ProviderAdapter",
    "ProviderDescriptor",
    "classify_exception",
    "FunctionProvider",
    "HTTPProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "JSONTaskProvider",
    "ProviderRegistry",
    "SealedProviderRegistry",
    "get_registry",
    "build_provider",
    "register_configured_providers",
]
