"""Configuration management."""

from .loader import ConfigIssue, load_settings, validate_config, validate_config_file
from .settings import (
    EngineConfig,
    ObservabilityConfig,
    ProviderSettings,
    ResilienceConfig,
    Settings,
    get_settings,
)

__all__ = [
    "Settings",
    "ProviderSettings",
    "ResilienceConfig",
    "EngineConfig",
    "ObservabilityConfig",
    "get_settings",
    "ConfigIssue",
    "load_settings",
    "validate_config",
    "validate_config_file",
]
