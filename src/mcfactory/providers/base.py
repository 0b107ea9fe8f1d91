"""
Provider adapter contract.

Every backend (remote HTTP API or in-process callable) is wrapped in a
``ProviderAdapter`` exposing a single coroutine,
``invoke(task_type, payload, options)``, that returns the task output or
raises a classified ``ProviderError``.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..core.errors import ErrorKind, MCFactoryError, ProviderError


@dataclass(frozen=True)
class ProviderDescriptor:
    """Registry entry: unique name plus the task types a provider supports."""

    name: str
    capabilities: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, name: str, capabilities: Iterable[str] = ()) -> "ProviderDescriptor":
        return cls(name=name, capabilities=frozenset(capabilities))

    def supports(self, task_type: str) -> bool:
        return task_type in self.capabilities

    def with_capability(self, task_type: str) -> "ProviderDescriptor":
        return ProviderDescriptor(self.name, self.capabilities | {task_type})


class ProviderAdapter(ABC):
    """Base class for all provider variants."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def invoke(self, task_type: str, payload: Any, options: dict[str, Any]) -> Any:
        """Run one task; raise ProviderError on failure."""
        ...

    async def aclose(self) -> None:
        """Release resources held by the adapter (HTTP clients, ...)."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


def classify_exception(error: BaseException, provider: str | None = None) -> ProviderError:
    """Map an arbitrary exception escaping an adapter onto a ProviderError."""
    if isinstance(error, ProviderError):
        if error.provider is None:
            error.provider = provider
        return error
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ProviderError(ErrorKind.NETWORK_ERROR, f"timeout: {error}", provider=provider)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ProviderError(
            ErrorKind.NETWORK_ERROR, f"{type(error).__name__}: {error}", provider=provider
        )
    if isinstance(error, MCFactoryError):
        return ProviderError(ErrorKind.UNKNOWN, error.describe(), provider=provider)
    return ProviderError(ErrorKind.UNKNOWN, f"{type(error).__name__}: {error}", provider=provider)
