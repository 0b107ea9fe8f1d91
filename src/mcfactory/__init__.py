"""
MCFactory: route AI tasks to pluggable providers and compose them into
resilient multi-step pipelines.
"""

__version__ = "1.0.0"

from .client import MCFactory
from .config.settings import Settings, get_settings
from .core.context import PipelineContext, PipelineResult
from .core.engine import PipelineEngine, RunOptions
from .core.errors import MCFactoryError, ProviderError
from .core.resilience import CancellationToken
from .core.steps import PipelineDefinition, batch, loop, parallel, task, when
from .providers import FunctionProvider, ProviderRegistry

__all__ = [
    "__version__",
    "MCFactory",
    "Settings",
    "get_settings",
    "PipelineContext",
    "PipelineResult",
    "PipelineEngine",
    "RunOptions",
    "PipelineDefinition",
    "MCFactoryError",
    "ProviderError",
    "CancellationToken",
    "FunctionProvider",
    "ProviderRegistry",
    "task",
    "parallel",
    "when",
    "loop",
    "batch",
]
