"""
High-level SDK facade.

    async with MCFactory(load_settings()) as mcf:
        text = await mcf.translate("hello", "es")
        result = await mcf.run_pipeline("safe-translate", "hello")

Single-task helpers raise the underlying ``MCFactoryError`` (usually
``AllProvidersExhaustedError``); ``run_pipeline`` always returns a
``PipelineResult``.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from .config.container import Container, setup_container
from .config.settings import DEFAULT_TASK_TYPES, Settings, get_settings
from .core.context import PipelineContext, PipelineResult
from .core.engine import PipelineEngine, RunOptions
from .core.errors import ClientClosedError, StepError
from .core.resilience import CancellationToken
from .core.steps import PipelineDefinition, SimpleStep
from .observability.events import EventEmitter
from .observability.logging import get_logger
from .providers.base import ProviderAdapter, ProviderDescriptor
from .providers.registry import ProviderRegistry

logger = get_logger(__name__)


def _pick(result: Any, *keys: str) -> Any:
    """First present key of a mapping result, or the result itself."""
    if isinstance(result, Mapping):
        for key in keys:
            if key in result:
                return result[key]
    return result


class MCFactory:
    """Entry point for running AI tasks and pipelines."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        providers: Iterable[ProviderAdapter] | None = None,
        events: EventEmitter | None = None,
    ):
        self.settings = settings or get_settings()
        self._builder = ProviderRegistry()
        self._events = events
        self._container: Container | None = None
        self._closed = False
        for adapter in providers or ():
            self.register(adapter)

    def register(
        self, adapter: ProviderAdapter, capabilities: Iterable[str] | None = None
    ) -> "MCFactory":
        """Register an in-process provider. Only possible before first use."""
        if capabilities is None:
            capabilities = getattr(adapter, "task_types", None) or DEFAULT_TASK_TYPES
        self._builder.register(ProviderDescriptor.of(adapter.name, capabilities), adapter)
        return self

    @property
    def container(self) -> Container:
        if self._closed:
            raise ClientClosedError("MCFactory client is closed")
        if self._container is None:
            self._container = setup_container(self.settings, self._builder, self._events)
        return self._container

    @property
    def engine(self) -> PipelineEngine:
        return self.container.get("engine")

    def list_providers(self) -> list[ProviderDescriptor]:
        return self.container.get("registry").list()

    async def run_task(
        self,
        task_type: str,
        payload: Any,
        *,
        provider: str | list[str] | None = None,
        fallbacks: list[str] | None = None,
        **options: Any,
    ) -> Any:
        """Run a single task through the resilience layer and return its output."""
        if provider is not None:
            options["provider"] = provider
        if fallbacks:
            options["fallbacks"] = fallbacks

        step = SimpleStep(type=task_type, options=options)
        try:
            context = await self.container.get("executor").execute(
                step, PipelineContext(data=payload), 0
            )
        except StepError as e:
            logger.warning(f"Task {task_type} failed: {e.cause.code}", task=task_type)
            raise e.cause from e
        return context.data

    async def translate(self, text: str, target_lang: str, **options: Any) -> Any:
        result = await self.run_task("translate", text, target_lang=target_lang, **options)
        return _pick(result, "translated", "text")

    async def moderate(self, text: str, **options: Any) -> Any:
        return await self.run_task("moderate", text, **options)

    async def detect_ai(self, text: str, **options: Any) -> bool:
        result = await self.run_task("detectAI", text, **options)
        return bool(_pick(result, "isAI", "is_ai"))

    async def summarize(self, text: str, length: str = "medium", **options: Any) -> Any:
        result = await self.run_task("summarize", text, length=length, **options)
        return _pick(result, "summary")

    async def run_pipeline(
        self,
        pipeline: str | PipelineDefinition | Mapping[str, Any],
        data: Any = None,
        *,
        continue_on_error: bool | None = None,
        deadline: float | None = None,
        debug: bool = False,
        max_concurrency: int | None = None,
        metadata: dict[str, Any] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> PipelineResult:
        options = RunOptions(
            debug=debug,
            continue_on_error=continue_on_error,
            deadline=deadline,
            max_concurrency=max_concurrency,
            metadata=metadata or {},
        )
        return await self.engine.run(pipeline, data, options, cancellation)

    async def aclose(self) -> None:
        """Release provider connections. The instance cannot be used afterwards."""
        if self._closed:
            return
        self._closed = True
        if self._container is not None:
            await self._container.cleanup()
            self._container = None

    async def __aenter__(self) -> "MCFactory":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
