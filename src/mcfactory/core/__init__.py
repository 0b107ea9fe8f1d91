"""
Core pipeline model: steps, context/result types, predicate expressions and
the error taxonomy.

The runtime pieces (``resilience``, ``executor``, ``engine``) depend on
configuration and providers and are imported from their own modules.
"""

from .context import PipelineContext, PipelineResult, RunStatus
from .errors import (
    AllProvidersExhaustedError,
    CircuitOpenError,
    ClientClosedError,
    ConfigError,
    DeadlineExceededError,
    DuplicateProviderError,
    ErrorKind,
    InvalidStepError,
    LoopLimitExceededError,
    MCFactoryError,
    PipelineCancelledError,
    PipelineNotFoundError,
    PredicateEvaluationError,
    ProviderError,
    ProviderNotFoundError,
    RegistryFrozenError,
    StepError,
)
from .steps import (
    BatchStep,
    ConditionalStep,
    LoopStep,
    ParallelStep,
    PipelineDefinition,
    PipelineStep,
    SimpleStep,
    batch,
    loop,
    parallel,
    task,
    when,
)

__all__ = [
    "PipelineContext",
    "PipelineResult",
    "RunStatus",
    "PipelineDefinition",
    "PipelineStep",
    "SimpleStep",
    "ParallelStep",
    "ConditionalStep",
    "LoopStep",
    "BatchStep",
    "task",
    "parallel",
    "when",
    "loop",
    "batch",
    "MCFactoryError",
    "ErrorKind",
    "ProviderError",
    "AllProvidersExhaustedError",
    "CircuitOpenError",
    "StepError",
    "LoopLimitExceededError",
    "PredicateEvaluationError",
    "PipelineCancelledError",
    "DeadlineExceededError",
    "DuplicateProviderError",
    "ProviderNotFoundError",
    "RegistryFrozenError",
    "PipelineNotFoundError",
    "InvalidStepError",
    "ConfigError",
    "ClientClosedError",
]
