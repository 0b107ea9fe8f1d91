"""
Loading and validation of ``mcf.config.json``.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..core.errors import ConfigError
from ..observability.logging import get_logger
from .settings import Settings

logger = get_logger(__name__)

CONFIG_PATH = "mcf.config.json"

DEFAULT_CONFIG: dict[str, Any] = {
    "providers": {},
    "defaultProviders": {},
    "defaults": {},
    "pipelines": {},
    "guardrails": {"enabled": True},
}


@dataclass(frozen=True)
class ConfigIssue:
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


def read_config_file(path: str | Path = CONFIG_PATH) -> dict[str, Any]:
    """Read a JSON config file into a mapping."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path.resolve()}")

    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to load configuration: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be a JSON object")
    return raw


def load_settings(path: str | Path = CONFIG_PATH, **overrides: Any) -> Settings:
    """Build ``Settings`` from a config file; environment variables fill the gaps."""
    raw = read_config_file(path)
    try:
        settings = Settings(**{**raw, **overrides})
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    logger.info(
        f"Loaded configuration from {path}",
        providers=len(settings.providers),
        pipelines=len(settings.pipelines),
    )
    return settings


def write_default_config(path: str | Path = CONFIG_PATH) -> bool:
    """Write the default config; returns False if the file already exists."""
    config_path = Path(path)
    if config_path.exists():
        return False
    config_path.write_text(json.dumps(DEFAULT_CONFIG, indent=2) + "\n", encoding="utf-8")
    logger.info(f"Created default configuration at {config_path}")
    return True


def _check_providers(providers: Any) -> list[ConfigIssue]:
    from ..providers.http import KEYLESS_KINDS, PROVIDER_KINDS

    if not isinstance(providers, dict):
        return [ConfigIssue("providers", "Providers section must be an object")]

    issues = []
    for name, provider in providers.items():
        if not isinstance(provider, dict):
            issues.append(ConfigIssue(f"providers.{name}", "Provider entry must be an object"))
            continue
        kind = provider.get("kind") or name
        if kind not in PROVIDER_KINDS:
            issues.append(
                ConfigIssue(
                    f"providers.{name}",
                    f"Unknown provider: {kind}. Valid providers: {', '.join(sorted(PROVIDER_KINDS))}",
                )
            )
        elif kind not in KEYLESS_KINDS and not (provider.get("apiKey") or provider.get("api_key")):
            issues.append(
                ConfigIssue(f"providers.{name}.apiKey", f"API key required for provider: {name}")
            )
    return issues


def _check_pipelines(pipelines: Any) -> list[ConfigIssue]:
    if not isinstance(pipelines, dict):
        return [ConfigIssue("pipelines", "Pipelines section must be an object")]

    return [
        ConfigIssue(f"pipelines.{name}", "Pipeline must have steps array")
        for name, pipeline in pipelines.items()
        if not isinstance(pipeline, dict) or not isinstance(pipeline.get("steps"), list)
    ]


def validate_config(raw: Any) -> list[ConfigIssue]:
    """Structural checks plus full model validation of a config mapping."""
    if not isinstance(raw, dict):
        return [ConfigIssue("root", "Configuration must be a valid object")]

    issues = _check_providers(raw.get("providers", {}))

    if "defaults" in raw and not isinstance(raw["defaults"], dict):
        issues.append(ConfigIssue("defaults", "Defaults section must be an object"))

    guardrails = raw.get("guardrails")
    if guardrails is not None:
        if not isinstance(guardrails, dict):
            issues.append(ConfigIssue("guardrails", "Guardrails section must be an object"))
        elif not isinstance(guardrails.get("enabled"), bool):
            issues.append(ConfigIssue("guardrails.enabled", "Guardrails enabled must be a boolean"))

    if "pipelines" in raw:
        issues.extend(_check_pipelines(raw["pipelines"]))

    if issues:
        return issues

    try:
        Settings(**raw)
    except ValidationError as e:
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"]) or "root"
            issues.append(ConfigIssue(location, error["msg"]))
    return issues


def validate_config_file(path: str | Path = CONFIG_PATH) -> list[ConfigIssue]:
    try:
        raw = read_config_file(path)
    except ConfigError as e:
        return [ConfigIssue("root", str(e))]
    return validate_config(raw)
