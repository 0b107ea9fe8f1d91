"""
In-process provider backed by a Python callable.

Useful for local models, deterministic rule-based steps and tests. The
callable may be sync or async and receives ``(task_type, payload, options)``.
"""

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from ..core.errors import ErrorKind, ProviderError
from .base import ProviderAdapter, classify_exception

TaskHandler = Callable[[str, Any, dict[str, Any]], Any | Awaitable[Any]]


class FunctionProvider(ProviderAdapter):
    """Adapter wrapping a single handler, or one handler per task type."""

    def __init__(self, name: str, handler: TaskHandler | dict[str, TaskHandler]):
        super().__init__(name)
        self._handler = handler

    @property
    def task_types(self) -> list[str]:
        """Task types served, when handlers are given per task."""
        return list(self._handler) if isinstance(self._handler, dict) else []

    def _resolve(self, task_type: str) -> TaskHandler:
        if not isinstance(self._handler, dict):
            return self._handler
        try:
            return self._handler[task_type]
        except KeyError:
            raise ProviderError(
                ErrorKind.INVALID_REQUEST,
                f"task '{task_type}' not supported",
                provider=self.name,
            ) from None

    async def invoke(self, task_type: str, payload: Any, options: dict[str, Any]) -> Any:
        handler = self._resolve(task_type)
        try:
            result = handler(task_type, payload, options)
            if inspect.isawaitable(result):
                result = await result
            return result
        except ProviderError as e:
            e.provider = e.provider or self.name
            raise
        except Exception as e:
            raise classify_exception(e, self.name) from e
