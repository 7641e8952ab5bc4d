"""Specwright runner - BDD spec execution engine.

Executes a tree of ``describe``/``it`` specs with nested lifecycle hooks,
focus and skip semantics, a composable middleware chain (filter, retry,
timeout), optional bounded parallelism, and produces a hierarchical
report of every spec's outcome.
"""

from specwright.runner.config import MiddlewarePlacement, RunnerConfig, build_pipeline
from specwright.runner.errors import (
    BuilderError,
    ConfigError,
    HookError,
    ReportError,
    SchedulerError,
    SpecCancelledError,
    SpecTimeoutError,
    SpecwrightError,
    TreeFrozenError,
)
from specwright.runner.events import RunEvent, RunEventEmitter, RunEventType
from specwright.runner.filters import build_predicate, name_filter, tag_filter
from specwright.runner.middleware import (
    FilterMiddleware,
    LoggingMiddleware,
    MiddlewarePhase,
    MiddlewarePipeline,
    RetryMiddleware,
    SpecMiddleware,
    TimeoutMiddleware,
)
from specwright.runner.models import (
    CancellationToken,
    ErrorDetail,
    ErrorKind,
    ExecutionContext,
    HookKind,
    RetryInfo,
    RetryPolicy,
    SkipReason,
    SpecContext,
    SpecDefinition,
    SpecResult,
    SpecStatus,
    current_execution,
)
from specwright.runner.report import (
    ContextReport,
    SpecReport,
    SpecSummary,
    StreamingStats,
    build_report,
)
from specwright.runner.scheduler import RunState, SpecRunner, run_specs

__all__ = [
    "BuilderError",
    "CancellationToken",
    "ConfigError",
    "ContextReport",
    "ErrorDetail",
    "ErrorKind",
    "ExecutionContext",
    "FilterMiddleware",
    "HookError",
    "HookKind",
    "LoggingMiddleware",
    "MiddlewarePhase",
    "MiddlewarePipeline",
    "MiddlewarePlacement",
    "ReportError",
    "RetryInfo",
    "RetryMiddleware",
    "RetryPolicy",
    "RunEvent",
    "RunEventEmitter",
    "RunEventType",
    "RunState",
    "RunnerConfig",
    "SchedulerError",
    "SpecCancelledError",
    "SpecContext",
    "SpecDefinition",
    "SpecMiddleware",
    "SpecReport",
    "SpecResult",
    "SpecRunner",
    "SpecStatus",
    "SpecSummary",
    "SpecTimeoutError",
    "SpecwrightError",
    "StreamingStats",
    "TimeoutMiddleware",
    "TreeFrozenError",
    "build_pipeline",
    "build_predicate",
    "build_report",
    "current_execution",
    "name_filter",
    "run_specs",
    "tag_filter",
]
