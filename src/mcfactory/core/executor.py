"""
Execution of a single simple step.

The executor resolves which providers may serve the step, hands the call to
the resilience layer and folds the outcome into a new context. It never
decides whether a failure aborts the pipeline; that is the engine's call.
"""

from typing import Any

from ..config.settings import Settings, get_settings
from ..observability.logging import get_logger
from ..providers.registry import SealedProviderRegistry
from .context import PipelineContext, get_path
from .errors import InvalidStepError, MCFactoryError, ProviderNotFoundError, StepError
from .resilience import CancellationToken, ResilientCaller
from .steps import SimpleStep

logger = get_logger(__name__)

# Step options consumed by the engine and never forwarded to providers
RESERVED_OPTIONS = frozenset({"provider", "fallbacks", "preserve", "output_key", "input"})


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


class StepExecutor:
    """Runs ``SimpleStep``s through the resilient caller."""

    def __init__(
        self,
        registry: SealedProviderRegistry,
        caller: ResilientCaller,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.caller = caller
        self.settings = settings or get_settings()

    def resolve_candidates(self, step: SimpleStep) -> list[str]:
        """Provider precedence: step override > configured default > registry default."""
        explicit = _as_list(step.options.get("provider"))
        if explicit:
            return list(dict.fromkeys(explicit + _as_list(step.options.get("fallbacks"))))

        configured = self.settings.default_providers.get(step.type)
        if configured:
            return list(configured)

        return self.registry.providers_for(step.type)

    def provider_options(self, step: SimpleStep) -> dict[str, Any]:
        """Configured task defaults overlaid with the step's own options."""
        merged = {**self.settings.defaults.get(step.type, {}), **step.options}
        return {k: v for k, v in merged.items() if k not in RESERVED_OPTIONS}

    def select_payload(self, step: SimpleStep, data: Any) -> Any:
        accessor = step.options.get("input")
        if not accessor:
            return data
        try:
            return get_path(data, accessor)
        except (LookupError, TypeError) as e:
            raise InvalidStepError(f"input '{accessor}' not found in data") from e

    async def execute(
        self,
        step: SimpleStep,
        context: PipelineContext,
        index: int,
        *,
        path: str = "",
        deadline: float | None = None,
        cancellation: CancellationToken | None = None,
    ) -> PipelineContext:
        """Run one step; returns the new context or raises ``StepError``."""
        path = path or str(index)

        try:
            candidates = self.resolve_candidates(step)
            if not candidates:
                raise ProviderNotFoundError(f"no provider registered for task '{step.type}'")

            payload = self.select_payload(step, context.data)
            outcome = await self.caller.call(
                candidates,
                step.type,
                payload,
                self.provider_options(step),
                deadline=deadline,
                cancellation=cancellation,
            )
        except MCFactoryError as e:
            raise StepError(index, step.type, e, path=path, context=context) from e

        line = f"[{path}] {step.type} ok via {outcome.provider}"
        if outcome.attempts > 1 or outcome.fallbacks:
            line += f" (attempts={outcome.attempts}, fallbacks={outcome.fallbacks})"
        logger.debug(line, op="step", provider=outcome.provider, task=step.type)

        if step.options.get("preserve"):
            key = step.options.get("output_key") or step.type
            return context.with_result(outcome.output, line, replace_data=False).with_metadata(
                **{key: outcome.output}
            )
        return context.with_result(outcome.output, line)
