"""
Dependency injection container wiring the runtime together.

settings -> provider registry (sealed) -> resilient caller -> step executor
-> pipeline engine. Services are created lazily on first ``get`` and the
registry is sealed the first time anything asks for it.
"""

from typing import Any

import httpx

from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        """Register a factory function for a service."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a singleton instance."""
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    async def cleanup(self) -> None:
        """Close provider adapters and the shared HTTP client."""
        registry = self._services.get("registry")
        if registry is not None:
            for adapter in registry.adapters():
                try:
                    await adapter.aclose()
                except Exception as e:
                    logger.error(f"Error closing provider {adapter.name}: {e}", provider=adapter.name)

        http_client = self._services.get("http_client")
        if http_client is not None:
            await http_client.aclose()

        self._services.clear()


def setup_container(
    settings: Settings | None = None,
    registry: Any = None,
    events: Any = None,
) -> Container:
    """Setup container with default service factories.

    ``registry`` is an optional ``ProviderRegistry`` builder holding
    in-process providers; configured HTTP providers are added to it before
    it is sealed.
    """
    container = Container(settings)

    def _http_client_factory(c: Container):
        return httpx.AsyncClient(
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
        )

    def _registry_factory(c: Container):
        from ..providers.factory import register_configured_providers
        from ..providers.registry import ProviderRegistry

        builder = registry if registry is not None else ProviderRegistry()
        if builder.is_ready:
            logger.debug("Reusing sealed provider registry")
        elif c.settings.providers:
            register_configured_providers(builder, c.settings, c.get("http_client"))
        return builder.ready()

    def _events_factory(c: Container):
        from ..observability.events import EventEmitter

        return EventEmitter()

    def _caller_factory(c: Container):
        from ..core.resilience import ResilientCaller

        return ResilientCaller(c.get("registry"), c.settings.resilience, c.get("events"))

    def _executor_factory(c: Container):
        from ..core.executor import StepExecutor

        return StepExecutor(c.get("registry"), c.get("caller"), c.settings)

    def _engine_factory(c: Container):
        from ..core.engine import PipelineEngine

        return PipelineEngine(c.get("executor"), c.settings, c.get("events"))

    container.register_factory("http_client", _http_client_factory)
    container.register_factory("registry", _registry_factory)
    if events is not None:
        container.register_singleton("events", events)
    else:
        container.register_factory("events", _events_factory)
    container.register_factory("caller", _caller_factory)
    container.register_factory("executor", _executor_factory)
    container.register_factory("engine", _engine_factory)

    return container

