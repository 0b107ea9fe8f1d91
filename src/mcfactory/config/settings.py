"""
Typed configuration with Pydantic Settings.

Values come from (highest precedence first) explicit keyword arguments /
a loaded ``mcf.config.json`` file, then ``MCF_``-prefixed environment
variables with ``__`` as the nesting delimiter, e.g.::

    MCF_RESILIENCE__MAX_ATTEMPTS=5
    MCF_ENGINE__MAX_CONCURRENCY=8
    MCF_OBSERVABILITY__LOG_LEVEL=DEBUG

camelCase keys used by existing config files (``apiKey``, ``baseUrl``,
``maxAttempts``, ...) are accepted as aliases.
"""

from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.steps import PipelineDefinition

DEFAULT_TASK_TYPES = ["translate", "moderate", "detectAI", "summarize", "sentiment", "categorize"]


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class ProviderSettings(BaseModel):
    """Configuration of one remote provider."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: str | None = Field(None, description="Adapter kind; defaults to the provider name")
    api_key: str | None = Field(None, validation_alias=_alias("api_key", "apiKey"))
    model: str | None = None
    base_url: str | None = Field(None, validation_alias=_alias("base_url", "baseUrl"))
    timeout: float = Field(60.0, gt=0)
    capabilities: list[str] = Field(default_factory=lambda: list(DEFAULT_TASK_TYPES))
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class ResilienceConfig(BaseModel):
    """Retry / circuit breaker policy applied to every provider call."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    max_attempts: int = Field(3, ge=1, validation_alias=_alias("max_attempts", "maxAttempts"))
    base_delay: float = Field(0.5, ge=0, validation_alias=_alias("base_delay", "baseDelay"))
    max_delay: float = Field(8.0, ge=0, validation_alias=_alias("max_delay", "maxDelay"))
    backoff_factor: float = Field(
        2.0, ge=1.0, validation_alias=_alias("backoff_factor", "backoffFactor")
    )
    failure_threshold: int = Field(
        5, ge=1, validation_alias=_alias("failure_threshold", "failureThreshold")
    )
    open_timeout: float = Field(30.0, ge=0, validation_alias=_alias("open_timeout", "openTimeout"))
    call_timeout: float | None = Field(
        None, gt=0, validation_alias=_alias("call_timeout", "callTimeout")
    )

    @model_validator(mode="after")
    def check_delays(self) -> "ResilienceConfig":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


class EngineConfig(BaseModel):
    """Pipeline engine behaviour."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    max_concurrency: int = Field(
        4, ge=1, validation_alias=_alias("max_concurrency", "maxConcurrency")
    )
    max_loop_iterations: int = Field(
        100, ge=1, validation_alias=_alias("max_loop_iterations", "maxLoopIterations")
    )
    continue_on_error: bool = Field(
        False, validation_alias=_alias("continue_on_error", "continueOnError")
    )


class ObservabilityConfig(BaseModel):
    """Configuration for logging, metrics and tracing."""

    model_config = ConfigDict(extra="ignore")

    log_level: str = Field("INFO")
    enable_tracing: bool = Field(False)
    enable_metrics: bool = Field(True)
    otlp_endpoint: str | None = Field(None)
    service_name: str = Field("mcfactory")
    service_version: str = Field("1.0.0")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return v.upper()


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="MCF_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    providers: dict[str, ProviderSettings] = Field(default_factory=dict)
    # task type -> provider precedence (primary first, then fallbacks)
    default_providers: dict[str, list[str]] = Field(
        default_factory=dict, validation_alias=_alias("default_providers", "defaultProviders")
    )
    # task type -> default step options, e.g. {"translate": {"target_lang": "en"}}
    defaults: dict[str, dict[str, Any]] = Field(default_factory=dict)
    pipelines: dict[str, PipelineDefinition] = Field(default_factory=dict)

    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    debug: bool = Field(False)

    @field_validator("default_providers", mode="before")
    @classmethod
    def coerce_provider_lists(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {task: [names] if isinstance(names, str) else names for task, names in v.items()}
        return v

    @field_validator("pipelines", mode="before")
    @classmethod
    def name_pipelines(cls, v: Any) -> Any:
        """Pipelines keyed by name may omit their own ``name`` field."""
        if isinstance(v, dict):
            return {
                key: {"name": key, **p} if isinstance(p, dict) and "name" not in p else p
                for key, p in v.items()
            }
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
