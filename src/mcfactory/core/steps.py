"""
Declarative pipeline definitions.

Steps form a closed tagged union (``kind``): each variant only carries the
fields valid for it. The original ``{"type": ..., "options": {...}}`` shape
without a ``kind`` is read as a simple step, and a bare string such as
``"moderate"`` is shorthand for a simple step with no options.

Example:
    >>> PipelineDefinition.model_validate({
    ...     "name": "safe-translate",
    ...     "steps": [
    ...         "moderate",
    ...         {"kind": "conditional", "predicate": "result.safe === true",
    ...          "trueSteps": [{"type": "translate", "options": {"target_lang": "es"}}]},
    ...     ],
    ... })
"""

from collections.abc import Callable
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Discriminator, Field, Tag, model_validator

from .expressions import Predicate


class StepKind(str, Enum):
    SIMPLE = "simple"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    BATCH = "batch"


class _Step(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    @property
    def label(self) -> str:
        return self.kind  # type: ignore[attr-defined]


class SimpleStep(_Step):
    """A direct provider call for one task type."""

    kind: Literal["simple"] = "simple"
    type: str = Field(..., min_length=1, description="Task type, e.g. 'translate'")
    options: dict[str, Any] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.type


class ParallelStep(_Step):
    """Independent branches run concurrently against the same input context."""

    kind: Literal["parallel"] = "parallel"
    branches: list[list["PipelineStep"]] = Field(..., min_length=1)


class ConditionalStep(_Step):
    kind: Literal["conditional"] = "conditional"
    predicate: Predicate = Field(
        ..., validation_alias=AliasChoices("predicate", "predicateExpr", "condition")
    )
    true_steps: list["PipelineStep"] = Field(
        default_factory=list, validation_alias=AliasChoices("true_steps", "trueSteps", "then")
    )
    false_steps: list["PipelineStep"] = Field(
        default_factory=list, validation_alias=AliasChoices("false_steps", "falseSteps", "else")
    )


class LoopStep(_Step):
    """Repeat ``steps`` while the predicate holds (checked before every pass)."""

    kind: Literal["loop"] = "loop"
    predicate: Predicate = Field(
        ..., validation_alias=AliasChoices("predicate", "predicateExpr", "condition")
    )
    steps: list["PipelineStep"] = Field(default_factory=list)
    max_iterations: int | None = Field(
        None, gt=0, validation_alias=AliasChoices("max_iterations", "maxIterations")
    )


class BatchStep(_Step):
    """Run ``steps`` over fixed-size chunks of a sequence and reassemble the outputs."""

    kind: Literal["batch"] = "batch"
    batch_size: int = Field(..., gt=0, validation_alias=AliasChoices("batch_size", "batchSize"))
    steps: list["PipelineStep"] = Field(default_factory=list)
    items: str | None = Field(None, description="Dotted accessor into data; None means data itself")


def _step_kind(value: Any) -> str | None:
    if isinstance(value, dict):
        if "kind" in value:
            return value["kind"]
        return StepKind.SIMPLE.value if "type" in value else None
    return getattr(value, "kind", None)


PipelineStep = Annotated[
    Union[
        Annotated[SimpleStep, Tag("simple")],
        Annotated[ParallelStep, Tag("parallel")],
        Annotated[ConditionalStep, Tag("conditional")],
        Annotated[LoopStep, Tag("loop")],
        Annotated[BatchStep, Tag("batch")],
    ],
    Discriminator(_step_kind),
]

_NESTED_KEYS = ("steps", "true_steps", "trueSteps", "then", "false_steps", "falseSteps", "else")


def _normalize_steps(steps: Any) -> Any:
    if not isinstance(steps, list):
        return steps
    return [_normalize_step(s) for s in steps]


def _normalize_step(step: Any) -> Any:
    """Expand string shorthand recursively."""
    if isinstance(step, str):
        return {"type": step}
    if not isinstance(step, dict):
        return step
    normalized = dict(step)
    for key in _NESTED_KEYS:
        if key in normalized:
            normalized[key] = _normalize_steps(normalized[key])
    if isinstance(normalized.get("branches"), list):
        normalized["branches"] = [_normalize_steps(b) for b in normalized["branches"]]
    return normalized


class PipelineDefinition(BaseModel):
    """A named, ordered composition of steps. Immutable once loaded."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., min_length=1)
    steps: list[PipelineStep] = Field(default_factory=list)
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if isinstance(data, dict) and "steps" in data:
            data = {**data, "steps": _normalize_steps(data["steps"])}
        return data

    def count_steps(self) -> int:
        """Total number of steps including nested ones."""
        return sum(_count(s) for s in self.steps)


def _count(step: Any) -> int:
    if isinstance(step, SimpleStep):
        return 1
    if isinstance(step, ParallelStep):
        return 1 + sum(_count(s) for branch in step.branches for s in branch)
    if isinstance(step, ConditionalStep):
        return 1 + sum(_count(s) for s in (*step.true_steps, *step.false_steps))
    return 1 + sum(_count(s) for s in step.steps)


for _model in (ParallelStep, ConditionalStep, LoopStep, BatchStep, PipelineDefinition):
    _model.model_rebuild()


# Builders for defining pipelines in code


def task(task_type: str, **options: Any) -> SimpleStep:
    return SimpleStep(type=task_type, options=options)


def parallel(*branches: list[Any]) -> ParallelStep:
    return ParallelStep(branches=[_normalize_steps(list(b)) for b in branches])


def when(
    predicate: str | Callable[[dict[str, Any]], Any],
    then: list[Any],
    otherwise: list[Any] | None = None,
) -> ConditionalStep:
    return ConditionalStep(
        predicate=predicate,
        true_steps=_normalize_steps(list(then)),
        false_steps=_normalize_steps(list(otherwise or [])),
    )


def loop(
    predicate: str | Callable[[dict[str, Any]], Any],
    steps: list[Any],
    max_iterations: int | None = None,
) -> LoopStep:
    return LoopStep(
        predicate=predicate, steps=_normalize_steps(list(steps)), max_iterations=max_iterations
    )


def batch(batch_size: int, steps: list[Any], items: str | None = None) -> BatchStep:
    return BatchStep(batch_size=batch_size, steps=_normalize_steps(list(steps)), items=items)
