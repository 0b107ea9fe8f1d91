"""
Error taxonomy for providers, the resilience layer and the pipeline engine.

Every error carries a stable ``code`` that ends up in pipeline logs, so a
failed run can always be traced back to the failing step and the underlying
provider error kind.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .context import PipelineContext


class MCFactoryError(Exception):
    """Base class for all MCFactory errors."""

    code = "MCFactoryError"

    def describe(self) -> str:
        return f"{self.code}: {self}"


class ErrorKind(Enum):
    """Classification of provider failures."""

    RATE_LIMITED = "RateLimited"
    QUOTA_EXCEEDED = "QuotaExceeded"
    INVALID_REQUEST = "InvalidRequest"
    NETWORK_ERROR = "NetworkError"
    MODEL_ERROR = "ModelError"
    UNKNOWN = "Unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.NETWORK_ERROR)


class ProviderError(MCFactoryError):
    """A classified failure reported by a provider adapter."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        *,
        provider: str | None = None,
        retry_after: float | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message or kind.value)
        self.kind = kind
        self.provider = provider
        self.retry_after = retry_after
        self.status_code = status_code

    @property
    def code(self) -> str:  # type: ignore[override]
        return self.kind.value

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __repr__(self) -> str:
        return f"ProviderError({self.kind.value}, {str(self)!r}, provider={self.provider!r})"


class CircuitOpenError(MCFactoryError):
    """Provider skipped because its circuit is open."""

    code = "CircuitOpen"

    def __init__(self, provider: str):
        super().__init__(f"circuit open for provider '{provider}'")
        self.provider = provider


class AllProvidersExhaustedError(MCFactoryError):
    """Every candidate provider failed or was skipped."""

    code = "AllProvidersExhausted"

    def __init__(self, task_type: str, errors: dict[str, MCFactoryError]):
        self.task_type = task_type
        self.errors = errors
        detail = ", ".join(f"{name}={err.code}" for name, err in errors.items()) or "none"
        super().__init__(f"all providers exhausted for '{task_type}' ({detail})")


class DeadlineExceededError(MCFactoryError):
    code = "DeadlineExceeded"


class PipelineCancelledError(MCFactoryError):
    code = "Cancelled"


class LoopLimitExceededError(MCFactoryError):
    code = "LoopLimitExceeded"

    def __init__(self, limit: int):
        super().__init__(f"loop did not terminate within {limit} iterations")
        self.limit = limit


class PredicateEvaluationError(MCFactoryError):
    code = "PredicateEvaluationError"


class DuplicateProviderError(MCFactoryError):
    code = "DuplicateProvider"


class ProviderNotFoundError(MCFactoryError):
    code = "ProviderNotFound"


class RegistryFrozenError(MCFactoryError):
    code = "RegistryFrozen"


class PipelineNotFoundError(MCFactoryError):
    code = "PipelineNotFound"


class InvalidStepError(MCFactoryError):
    """A step cannot run with the context it was given (e.g. batch input is not a list)."""

    code = "InvalidStep"


class ConfigError(MCFactoryError):
    code = "ConfigError"


class ClientClosedError(MCFactoryError):
    """An ``MCFactory`` instance was used after ``aclose``."""

    code = "ClientClosed"


class StepError(MCFactoryError):
    """Failure of one step, wrapping the underlying cause.

    ``context`` is the pipeline context at the failure point, so the engine
    can keep partial logs and data when it turns the error into a result.
    """

    code = "StepError"

    def __init__(
        self,
        index: int,
        step_type: str,
        cause: MCFactoryError,
        *,
        path: str = "",
        context: "PipelineContext | None" = None,
    ):
        self.index = index
        self.step_type = step_type
        self.cause = cause
        self.path = path or str(index)
        self.context = context
        super().__init__(f"step {self.path} ({step_type}) failed: {cause.describe()}")

    @property
    def root_cause(self) -> MCFactoryError:
        cause: Any = self.cause
        while isinstance(cause, StepError):
            cause = cause.cause
        return cause

    def with_context(self, context: "PipelineContext") -> "StepError":
        return StepError(self.index, self.step_type, self.cause, path=self.path, context=context)
