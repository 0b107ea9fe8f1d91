"""
Provider registry with a two-phase lifecycle.

During startup providers are registered on a mutable ``ProviderRegistry``.
``ready()`` returns a ``SealedProviderRegistry``: a read-only snapshot that
has no mutation methods at all, so code holding it cannot register
providers. After ``ready()`` the builder itself refuses further mutation.
"""

from collections.abc import Iterator
from types import MappingProxyType

from ..core.errors import DuplicateProviderError, ProviderNotFoundError, RegistryFrozenError
from ..observability.logging import get_logger
from .base import ProviderAdapter, ProviderDescriptor

logger = get_logger(__name__)


class SealedProviderRegistry:
    """Immutable view of the registered providers; safe for concurrent reads."""

    def __init__(self, entries: dict[str, tuple[ProviderDescriptor, ProviderAdapter]]):
        self._entries = MappingProxyType(dict(entries))

    def get(self, name: str) -> ProviderAdapter:
        try:
            return self._entries[name][1]
        except KeyError:
            raise ProviderNotFoundError(f"provider '{name}' is not registered") from None

    def descriptor(self, name: str) -> ProviderDescriptor:
        try:
            return self._entries[name][0]
        except KeyError:
            raise ProviderNotFoundError(f"provider '{name}' is not registered") from None

    def providers_for(self, task_type: str) -> list[str]:
        """Registry-wide default candidates for a task type, in registration order."""
        return [d.name for d, _ in self._entries.values() if d.supports(task_type)]

    def adapters(self) -> Iterator[ProviderAdapter]:
        return (adapter for _, adapter in self._entries.values())

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # Must stay last: shadows the builtin `list` for annotations below it
    def list(self) -> list[ProviderDescriptor]:
        """Descriptors in registration order."""
        return [descriptor for descriptor, _ in self._entries.values()]


class ProviderRegistry:
    """Mutable registry used while the process is starting up."""

    def __init__(self):
        self._entries: dict[str, tuple[ProviderDescriptor, ProviderAdapter]] = {}
        self._sealed: SealedProviderRegistry | None = None

    @property
    def is_ready(self) -> bool:
        return self._sealed is not None

    def _check_mutable(self, action: str) -> None:
        if self._sealed is not None:
            raise RegistryFrozenError(f"cannot {action}: registry is sealed after ready()")

    def register(self, descriptor: ProviderDescriptor, adapter: ProviderAdapter) -> None:
        self._check_mutable(f"register '{descriptor.name}'")
        if descriptor.name in self._entries:
            raise DuplicateProviderError(f"provider '{descriptor.name}' is already registered")
        self._entries[descriptor.name] = (descriptor, adapter)
        logger.info(
            f"Registered provider: {descriptor.name}",
            provider=descriptor.name,
            capabilities=",".join(sorted(descriptor.capabilities)),
        )

    def add_capability(self, name: str, task_type: str) -> None:
        self._check_mutable(f"add capability to '{name}'")
        if name not in self._entries:
            raise ProviderNotFoundError(f"provider '{name}' is not registered")
        descriptor, adapter = self._entries[name]
        self._entries[name] = (descriptor.with_capability(task_type), adapter)

    def get(self, name: str) -> ProviderAdapter:
        if name not in self._entries:
            raise ProviderNotFoundError(f"provider '{name}' is not registered")
        return self._entries[name][1]

    def ready(self) -> SealedProviderRegistry:
        """Freeze the registry and return its read-only view. Idempotent."""
        if self._sealed is None:
            self._sealed = SealedProviderRegistry(self._entries)
            logger.info("Provider registry sealed", providers=len(self._entries))
        return self._sealed

    def list(self) -> list[ProviderDescriptor]:
        return [descriptor for descriptor, _ in self._entries.values()]


# Process-wide registry
_registry: ProviderRegistry | None = None


def get_registry() -> ProviderRegistry:
    """Get the process-wide registry builder."""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
    return _registry


def _reset_registry_for_tests() -> None:
    global _registry
    _registry = None
