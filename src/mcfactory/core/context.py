"""
Context and result model threaded through a pipeline run.

A ``PipelineContext`` is treated as a value: every step returns a new
context instead of modifying the one it was given, and parallel branches
each work on their own ``fork()``.
"""

import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

_KEEP = object()


def get_path(data: Any, path: str) -> Any:
    """Resolve a dotted accessor such as ``items`` or ``payload.texts.0``.

    Raises ``LookupError`` when a segment does not exist.
    """
    value = data
    for part in path.split("."):
        if isinstance(value, Mapping):
            value = value[part]
        elif isinstance(value, Sequence) and not isinstance(value, str) and part.lstrip("-").isdigit():
            value = value[int(part)]
        else:
            raise KeyError(part)
    return value


@dataclass
class PipelineContext:
    """Working state of a pipeline run."""

    data: Any = None
    step_results: list[Any] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    logs: list[str] = field(default_factory=list)

    def fork(self, data: Any = _KEEP) -> "PipelineContext":
        """Independent copy for a branch or chunk.

        The fork starts with empty ``step_results`` and ``logs`` so that the
        parent can concatenate what the branch produced without duplicates.
        """
        return PipelineContext(
            data=copy.deepcopy(self.data) if data is _KEEP else data,
            step_results=[],
            metadata=copy.deepcopy(self.metadata),
            logs=[],
        )

    def with_result(self, result: Any, log: str, *, replace_data: bool = True) -> "PipelineContext":
        return replace(
            self,
            data=result if replace_data else self.data,
            step_results=[*self.step_results, result],
            logs=[*self.logs, log],
        )

    def with_log(self, line: str) -> "PipelineContext":
        return replace(self, logs=[*self.logs, line])

    def with_data(self, data: Any) -> "PipelineContext":
        return replace(self, data=data)

    def with_metadata(self, **values: Any) -> "PipelineContext":
        return replace(self, metadata={**self.metadata, **values})

    def extend(self, other: "PipelineContext") -> "PipelineContext":
        """Append another context's step results and logs, merging its metadata."""
        return replace(
            self,
            step_results=[*self.step_results, *other.step_results],
            logs=[*self.logs, *other.logs],
            metadata={**self.metadata, **other.metadata},
        )

    @property
    def last_result(self) -> Any:
        return self.step_results[-1] if self.step_results else None


def merge_forks(base: "PipelineContext", forks: list["PipelineContext"]) -> "PipelineContext":
    """Deterministic merge of branch/chunk contexts in declaration order.

    ``data`` becomes the list of each fork's final data; results, logs and
    metadata are folded in the order the forks are given.
    """
    merged = replace(base, data=[f.data for f in forks])
    for fork in forks:
        merged = merged.extend(fork)
    return merged


class RunStatus(Enum):
    """Pipeline run lifecycle."""

    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED)


@dataclass(frozen=True)
class PipelineResult:
    """Terminal, immutable outcome of a pipeline run."""

    success: bool
    data: Any
    logs: tuple[str, ...]
    pipeline_name: str = ""
    status: RunStatus = RunStatus.SUCCEEDED
    error: str | None = None
    step_results: tuple[Any, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0

    @classmethod
    def from_context(
        cls,
        context: PipelineContext,
        *,
        pipeline_name: str,
        duration: float,
        error: str | None = None,
    ) -> "PipelineResult":
        success = error is None
        return cls(
            success=success,
            data=context.data,
            logs=tuple(context.logs),
            pipeline_name=pipeline_name,
            status=RunStatus.SUCCEEDED if success else RunStatus.FAILED,
            error=error,
            step_results=tuple(context.step_results),
            metadata=dict(context.metadata),
            duration=duration,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline_name,
            "success": self.success,
            "status": self.status.value,
            "error": self.error,
            "data": self.data,
            "logs": list(self.logs),
            "step_results": list(self.step_results),
            "metadata": self.metadata,
            "duration": self.duration,
        }
