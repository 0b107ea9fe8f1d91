"""
Pipeline engine.

Interprets a ``PipelineDefinition`` step by step. Simple steps go to the
``StepExecutor``; composite steps (parallel, conditional, loop, batch) are
handled here and recurse into ``_run_steps``.

Failure policy lives here and nowhere else: a failing step either aborts
the run (the default) or, with ``continue_on_error``, leaves a log line,
keeps ``data`` as it was and lets the run go on. Cancellation and deadline
expiry always abort. ``run`` never raises for a failed run; it returns a
``PipelineResult`` carrying the logs up to the failure point.
"""

import asyncio
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from ..config.settings import Settings, get_settings
from ..observability.events import EventEmitter, EventType
from ..observability.logging import get_logger, trace_id_ctx
from ..observability.tracing import get_tracing_manager
from .context import PipelineContext, PipelineResult, RunStatus, get_path, merge_forks
from .errors import (
    DeadlineExceededError,
    InvalidStepError,
    LoopLimitExceededError,
    MCFactoryError,
    PipelineCancelledError,
    PipelineNotFoundError,
    PredicateEvaluationError,
    StepError,
)
from .executor import StepExecutor
from .expressions import evaluate_predicate
from .resilience import CancellationToken
from .steps import BatchStep, ConditionalStep, LoopStep, ParallelStep, PipelineDefinition, SimpleStep

logger = get_logger(__name__)

_INTERRUPTS = (PipelineCancelledError, DeadlineExceededError)


@dataclass(frozen=True)
class RunOptions:
    """Caller-supplied options for one run.

    ``deadline`` is in seconds from the start of the run. ``None`` values
    fall back to the engine settings.
    """

    debug: bool = False
    continue_on_error: bool | None = None
    deadline: float | None = None
    max_concurrency: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Run:
    """Mutable bookkeeping for a single run."""

    run_id: str
    pipeline: str
    continue_on_error: bool
    max_concurrency: int
    debug: bool
    deadline: float | None = None
    cancellation: CancellationToken | None = None
    status: RunStatus = RunStatus.READY


class PipelineEngine:
    """Drives pipeline definitions to a terminal ``PipelineResult``."""

    def __init__(
        self,
        executor: StepExecutor,
        settings: Settings | None = None,
        events: EventEmitter | None = None,
        *,
        clock=time.monotonic,
    ):
        self.executor = executor
        self.settings = settings or get_settings()
        self.events = events or EventEmitter()
        self.clock = clock

    def resolve(self, pipeline: str | PipelineDefinition | Mapping[str, Any]) -> PipelineDefinition:
        """Turn a pipeline name, definition or raw mapping into a definition."""
        if isinstance(pipeline, PipelineDefinition):
            return pipeline
        if isinstance(pipeline, str):
            definition = self.settings.pipelines.get(pipeline)
            if definition is None:
                raise PipelineNotFoundError(
                    f"Pipeline '{pipeline}' not found. Available: {sorted(self.settings.pipelines)}"
                )
            return definition
        try:
            return PipelineDefinition.model_validate(dict(pipeline))
        except ValidationError as e:
            raise InvalidStepError(f"invalid pipeline definition: {e}") from e

    async def run(
        self,
        pipeline: str | PipelineDefinition | Mapping[str, Any],
        initial_data: Any = None,
        options: RunOptions | None = None,
        cancellation: CancellationToken | None = None,
    ) -> PipelineResult:
        """Execute a pipeline and return its result."""
        options = options or RunOptions()
        started = self.clock()
        context = PipelineContext(data=initial_data, metadata=dict(options.metadata))

        try:
            definition = self.resolve(pipeline)
        except MCFactoryError as e:
            name = pipeline if isinstance(pipeline, str) else "-"
            logger.error(f"Cannot start pipeline: {e}", pipeline=name)
            return PipelineResult.from_context(
                context.with_log(f"pipeline failed: {e.describe()}"),
                pipeline_name=name,
                duration=0.0,
                error=e.code,
            )

        engine_config = self.settings.engine
        run = _Run(
            run_id=uuid.uuid4().hex[:12],
            pipeline=definition.name,
            continue_on_error=(
                engine_config.continue_on_error
                if options.continue_on_error is None
                else options.continue_on_error
            ),
            max_concurrency=options.max_concurrency or engine_config.max_concurrency,
            debug=options.debug,
            deadline=started + options.deadline if options.deadline is not None else None,
            cancellation=cancellation,
        )

        token = trace_id_ctx.set(run.run_id)
        try:
            with get_tracing_manager().span(
                "pipeline.run", {"pipeline": definition.name, "steps": len(definition.steps)}
            ):
                result = await self._execute(definition, context, run, started)
        finally:
            trace_id_ctx.reset(token)
        return result

    async def _execute(
        self, definition: PipelineDefinition, context: PipelineContext, run: _Run, started: float
    ) -> PipelineResult:
        run.status = RunStatus.RUNNING
        self.events.emit(
            EventType.PIPELINE_STARTED, pipeline=run.pipeline, steps=definition.count_steps()
        )
        logger.info(f"Starting pipeline: {run.pipeline}", pipeline=run.pipeline)

        error: str | None = None
        try:
            context = await self._run_steps(definition.steps, context, run, prefix="")
        except StepError as e:
            context = e.context or context
            error = e.root_cause.code
        except Exception as e:
            logger.exception(f"Pipeline {run.pipeline} crashed: {e}", pipeline=run.pipeline)
            context = context.with_log(f"pipeline crashed: {type(e).__name__}: {e}")
            error = type(e).__name__

        run.status = RunStatus.FAILED if error else RunStatus.SUCCEEDED
        duration = self.clock() - started

        self.events.emit(
            EventType.PIPELINE_FINISHED,
            pipeline=run.pipeline,
            success=error is None,
            duration=duration,
            status=run.status.value,
        )
        if error:
            logger.warning(
                f"Pipeline {run.pipeline} failed: {error}", pipeline=run.pipeline, ms=duration * 1000
            )
        else:
            logger.timed(f"Pipeline {run.pipeline} completed", duration * 1000, pipeline=run.pipeline)

        return PipelineResult.from_context(
            context, pipeline_name=run.pipeline, duration=duration, error=error
        )

    def _check_interrupts(self, run: _Run) -> None:
        if run.cancellation is not None:
            run.cancellation.raise_if_cancelled()
        if run.deadline is not None and self.clock() >= run.deadline:
            raise DeadlineExceededError(f"pipeline '{run.pipeline}' exceeded its deadline")

    async def _run_steps(
        self, steps: list[Any], context: PipelineContext, run: _Run, prefix: str
    ) -> PipelineContext:
        for index, step in enumerate(steps):
            path = f"{prefix}.{index}" if prefix else str(index)
            try:
                self._check_interrupts(run)
            except MCFactoryError as e:
                raise StepError(
                    index,
                    step.label,
                    e,
                    path=path,
                    context=context.with_log(f"[{path}] {step.label} not started: {e.describe()}"),
                ) from e
            context = await self._run_step(step, context, index, path, run)
        return context

    async def _run_step(
        self, step: Any, context: PipelineContext, index: int, path: str, run: _Run
    ) -> PipelineContext:
        started = self.clock()
        self.events.emit(EventType.STEP_STARTED, pipeline=run.pipeline, path=path, step_type=step.label)

        try:
            new_context = await self._dispatch(step, context, index, path, run)
        except StepError as e:
            # Failures of nested steps were already reported where they happened
            if e.path != path:
                raise
            return self._handle_failure(step, context, e, path, run, self.clock() - started)

        self.events.emit(
            EventType.STEP_SUCCEEDED,
            pipeline=run.pipeline,
            path=path,
            step_type=step.label,
            duration=self.clock() - started,
        )
        return new_context

    def _handle_failure(
        self,
        step: Any,
        context: PipelineContext,
        error: StepError,
        path: str,
        run: _Run,
        duration: float,
    ) -> PipelineContext:
        cause = error.root_cause
        partial = error.context or context
        failed = partial.with_log(f"[{path}] {step.label} failed: {error.cause.describe()}")

        self.events.emit(
            EventType.STEP_FAILED,
            pipeline=run.pipeline,
            path=path,
            step_type=step.label,
            duration=duration,
            error=cause.code,
        )

        if run.continue_on_error and not isinstance(cause, _INTERRUPTS):
            return failed.with_data(context.data)
        raise error.with_context(failed)

    async def _dispatch(
        self, step: Any, context: PipelineContext, index: int, path: str, run: _Run
    ) -> PipelineContext:
        if isinstance(step, SimpleStep):
            return await self.executor.execute(
                step,
                context,
                index,
                path=path,
                deadline=run.deadline,
                cancellation=run.cancellation,
            )
        if isinstance(step, ParallelStep):
            return await self._run_parallel(step, context, path, run)
        if isinstance(step, ConditionalStep):
            return await self._run_conditional(step, context, index, path, run)
        if isinstance(step, LoopStep):
            return await self._run_loop(step, context, index, path, run)
        if isinstance(step, BatchStep):
            return await self._run_batch(step, context, index, path, run)
        raise StepError(
            index,
            type(step).__name__,
            InvalidStepError(f"unsupported step {type(step).__name__}"),
            path=path,
            context=context,
        )

    async def _gather_forks(
        self, jobs: list[tuple[list[Any], PipelineContext, str]], run: _Run
    ) -> tuple[list[PipelineContext], StepError | None]:
        """Run step lists on forked contexts with bounded concurrency.

        Returns the forks in job order and the first failure in job order.
        """
        semaphore = asyncio.Semaphore(run.max_concurrency)

        async def run_job(steps: list[Any], fork: PipelineContext, prefix: str) -> PipelineContext:
            async with semaphore:
                return await self._run_steps(steps, fork, run, prefix)

        outcomes = await asyncio.gather(
            *(run_job(steps, fork, prefix) for steps, fork, prefix in jobs),
            return_exceptions=True,
        )

        forks: list[PipelineContext] = []
        first_failure: StepError | None = None
        for (_, fork, _), outcome in zip(jobs, outcomes, strict=True):
            if isinstance(outcome, StepError):
                forks.append(outcome.context or fork)
                first_failure = first_failure or outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                forks.append(outcome)
        return forks, first_failure

    async def _run_parallel(
        self, step: ParallelStep, context: PipelineContext, path: str, run: _Run
    ) -> PipelineContext:
        jobs = [(branch, context.fork(), f"{path}.{i}") for i, branch in enumerate(step.branches)]
        forks, failure = await self._gather_forks(jobs, run)

        merged = merge_forks(context, forks)
        if failure is not None:
            raise failure.with_context(merged)
        if run.debug:
            merged = merged.with_log(f"[{path}] parallel merged {len(forks)} branch(es)")
        return merged

    async def _run_conditional(
        self, step: ConditionalStep, context: PipelineContext, index: int, path: str, run: _Run
    ) -> PipelineContext:
        try:
            matched = evaluate_predicate(step.predicate, context)
        except PredicateEvaluationError as e:
            raise StepError(index, step.label, e, path=path, context=context) from e

        if run.debug:
            context = context.with_log(f"[{path}] conditional took {'true' if matched else 'false'} branch")
        return await self._run_steps(
            step.true_steps if matched else step.false_steps, context, run, path
        )

    async def _run_loop(
        self, step: LoopStep, context: PipelineContext, index: int, path: str, run: _Run
    ) -> PipelineContext:
        limit = step.max_iterations or self.settings.engine.max_loop_iterations
        iteration = 0

        while True:
            try:
                proceed = evaluate_predicate(step.predicate, context, iteration)
            except PredicateEvaluationError as e:
                raise StepError(index, step.label, e, path=path, context=context) from e

            if not proceed:
                break
            if iteration >= limit:
                raise StepError(
                    index, step.label, LoopLimitExceededError(limit), path=path, context=context
                )

            context = await self._run_steps(step.steps, context, run, f"{path}.{iteration}")
            iteration += 1
            # Yield even when the body has no awaits of its own
            await asyncio.sleep(0)

        if run.debug:
            context = context.with_log(f"[{path}] loop finished after {iteration} iteration(s)")
        return context

    async def _run_batch(
        self, step: BatchStep, context: PipelineContext, index: int, path: str, run: _Run
    ) -> PipelineContext:
        try:
            source = context.data if step.items is None else get_path(context.data, step.items)
        except (LookupError, TypeError) as e:
            raise StepError(
                index,
                step.label,
                InvalidStepError(f"batch items '{step.items}' not found in data"),
                path=path,
                context=context,
            ) from e

        if not isinstance(source, (list, tuple)):
            raise StepError(
                index,
                step.label,
                InvalidStepError(f"batch input must be a list, got {type(source).__name__}"),
                path=path,
                context=context,
            )

        size = step.batch_size
        jobs = [
            (step.steps, context.fork(data=list(source[start : start + size])), f"{path}.{n}")
            for n, start in enumerate(range(0, len(source), size))
        ]
        forks, failure = await self._gather_forks(jobs, run)

        merged = merge_forks(context, forks)
        if failure is not None:
            raise failure.with_context(merged)

        output: list[Any] = []
        for fork in forks:
            if isinstance(fork.data, list):
                output.extend(fork.data)
            else:
                output.append(fork.data)

        if run.debug:
            merged = merged.with_log(f"[{path}] batch of {len(source)} item(s) in {len(forks)} chunk(s)")
        return merged.with_data(output)
