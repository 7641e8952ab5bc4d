"""Spec runner (scheduler).

Walks a context tree depth-first in declaration order and, for every spec,
either reports it without running anything (focus, skip, pending, bail,
cancellation) or drives it through the middleware pipeline with the hook
stage in the middle:

    selection middleware -> before_all (once) -> before_each chain
        -> execution middleware -> body -> after_each chain
    ... then after_all once the context's last spec is finalized.

Each run moves through ``NOT_STARTED -> SCANNING -> EXECUTING ->
FINALIZING -> DONE``.  In parallel mode the specs of one context run
concurrently under a semaphore; results are always stored and reported in
declaration order.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import replace

from specwright.runner.callables import task_is_cancelling
from specwright.runner.config import RunnerConfig, build_pipeline
from specwright.runner.errors import SchedulerError
from specwright.runner.events import RunEvent, RunEventEmitter, RunEventType
from specwright.runner.hooks import HookCoordinator
from specwright.runner.middleware import MiddlewarePipeline, Next
from specwright.runner.models import (
    CancellationToken,
    ErrorDetail,
    ExecutionContext,
    HookKind,
    SkipReason,
    SpecContext,
    SpecDefinition,
    SpecResult,
    SpecStatus,
    execution_scope,
)
from specwright.runner.report import SpecReport, build_report

logger = logging.getLogger(__name__)


class RunState(str, enum.Enum):
    """Lifecycle of a single run."""

    NOT_STARTED = "not_started"
    SCANNING = "scanning"
    EXECUTING = "executing"
    FINALIZING = "finalizing"
    DONE = "done"


_ACTIVE_STATES = frozenset({RunState.SCANNING, RunState.EXECUTING, RunState.FINALIZING})


class SpecRunner:
    """Executes a spec tree and returns its report.

    A runner may be reused for several runs, one at a time.

    Args:
        config: Run policies; defaults to sequential with no middleware.
        pipeline: Middleware chain; built from *config* when omitted.
        event_emitter: Receives run events for streaming reporters.
    """

    def __init__(
        self,
        config: RunnerConfig | None = None,
        pipeline: MiddlewarePipeline | None = None,
        event_emitter: RunEventEmitter | None = None,
    ) -> None:
        self._config = config or RunnerConfig()
        self._pipeline = pipeline if pipeline is not None else build_pipeline(self._config)
        self._event_emitter = event_emitter
        self._state = RunState.NOT_STARTED
        self._run_token = CancellationToken()
        self._bail_triggered = False
        self._hooks: HookCoordinator | None = None
        self._semaphore: asyncio.Semaphore | None = None

    @property
    def config(self) -> RunnerConfig:
        return self._config

    @property
    def pipeline(self) -> MiddlewarePipeline:
        return self._pipeline

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._run_token.is_cancelled

    def cancel(self) -> None:
        """Stop scheduling new specs and signal cancellation to running ones.

        Specs not yet started are reported skipped (``cancelled``); specs in
        flight see their cancellation token set and finish normally.  Called
        between runs, it cancels the next run.
        """
        if not self._run_token.is_cancelled:
            logger.warning("Run cancelled; no further specs will start")
        self._run_token.cancel()

    async def _emit(self, event: RunEvent) -> None:
        """Emit a run event if an emitter is configured."""
        if self._event_emitter is not None:
            await self._event_emitter.emit(event)

    async def run(self, root: SpecContext) -> SpecReport:
        """Execute every spec under *root* and return the report.

        Args:
            root: The tree to run.  It is frozen before execution.

        Returns:
            The :class:`SpecReport`, with exactly one result per spec.

        Raises:
            SchedulerError: If this runner is already executing a run.
        """
        if self._state in _ACTIVE_STATES:
            raise SchedulerError(f"Runner is busy (state: {self._state.value})")

        self._bail_triggered = False
        start_time = time.time()

        try:
            self._state = RunState.SCANNING
            root.freeze()
            focus_active = root.scan_focus()
            total = root.spec_count()
            parallelism = self._config.effective_parallelism
            logger.info(
                "Running %d spec(s)%s",
                total,
                f" with up to {parallelism} in parallel" if self._config.parallel else "",
            )
            await self._emit(RunEvent(
                type=RunEventType.RUN_STARTED,
                description=root.description,
                data={"total": total, "focus": focus_active, "parallel": self._config.parallel},
            ))

            self._state = RunState.EXECUTING
            self._hooks = HookCoordinator(
                root,
                hook_lock=asyncio.Lock() if self._config.parallel else None,
                on_failure=self._on_hook_failure,
            )
            self._semaphore = asyncio.Semaphore(parallelism)
            results: dict[SpecDefinition, SpecResult] = {}
            await self._run_context(
                root,
                focus_active=focus_active,
                focused_scope=False,
                skipped_scope=False,
                results=results,
            )

            self._state = RunState.FINALIZING
            await self._escalate_after_all_failures(results)
            report = build_report(root, results.values())
            duration = time.time() - start_time
            logger.info(
                "Run finished in %.2fs: %d passed, %d failed, %d pending, %d skipped",
                duration,
                report.summary.passed,
                report.summary.failed,
                report.summary.pending,
                report.summary.skipped,
            )
            await self._emit(RunEvent(
                type=RunEventType.RUN_COMPLETED,
                description=root.description,
                data={"report": report, "duration": duration},
            ))
            return report
        finally:
            self._state = RunState.DONE
            self._hooks = None
            self._semaphore = None
            # Token for the next run; a cancel() before it starts applies to it.
            self._run_token = CancellationToken()

    async def _run_context(
        self,
        context: SpecContext,
        focus_active: bool,
        focused_scope: bool,
        skipped_scope: bool,
        results: dict[SpecDefinition, SpecResult],
    ) -> None:
        focused_scope = focused_scope or context.focused
        skipped_scope = skipped_scope or context.skipped

        def select(spec: SpecDefinition) -> SkipReason | None:
            if focus_active and not (focused_scope or spec.focused):
                return SkipReason.NOT_FOCUSED
            if skipped_scope or spec.skipped:
                return SkipReason.SKIPPED
            return None

        specs = context.specs
        if self._config.parallel and len(specs) > 1:
            batch = await asyncio.gather(
                *(self._run_spec_bounded(spec, select(spec)) for spec in specs)
            )
            for spec, result in zip(specs, batch):
                results[spec] = result
            await self._emit(RunEvent(
                type=RunEventType.BATCH_COMPLETED,
                description=context.description,
                context_path=context.context_path,
                data={"results": list(batch)},
            ))
        else:
            for spec in specs:
                results[spec] = await self._run_spec(spec, select(spec))

        for child in context.children:
            await self._run_context(
                child, focus_active, focused_scope, skipped_scope, results
            )

    async def _run_spec_bounded(
        self, spec: SpecDefinition, skip: SkipReason | None
    ) -> SpecResult:
        assert self._semaphore is not None
        async with self._semaphore:
            return await self._run_spec(spec, skip)

    async def _run_spec(
        self, spec: SpecDefinition, skip: SkipReason | None
    ) -> SpecResult:
        """Produce the final result of *spec* and finalize it with the hooks."""
        assert self._hooks is not None and spec.context is not None

        if self._run_token.is_cancelled:
            result = SpecResult.skipped(spec, SkipReason.CANCELLED)
        elif self._bail_triggered:
            result = SpecResult.skipped(spec, SkipReason.BAILED)
        elif skip is not None:
            result = SpecResult.skipped(spec, skip)
        elif spec.is_pending:
            result = SpecResult.pending(spec)
        else:
            result = await self._execute(spec)

        if (
            result.status is SpecStatus.FAILED
            and self._config.bail
            and not self._bail_triggered
        ):
            self._bail_triggered = True
            logger.warning(
                "Bailing after failure of '%s'; remaining specs will be skipped",
                spec.full_description,
            )
            await self._emit(RunEvent(
                type=RunEventType.BAILED,
                description=spec.description,
                context_path=spec.context_path,
            ))

        await self._emit(RunEvent(
            type=RunEventType.SPEC_COMPLETED,
            description=spec.description,
            context_path=spec.context_path,
            data={"result": result},
        ))
        await self._hooks.finish(spec.context)
        return result

    async def _execute(self, spec: SpecDefinition) -> SpecResult:
        logger.debug("Executing '%s'", spec.full_description)
        await self._emit(RunEvent(
            type=RunEventType.SPEC_STARTED,
            description=spec.description,
            context_path=spec.context_path,
        ))
        ctx = ExecutionContext.for_spec(spec, self._run_token)
        with execution_scope(ctx):
            return await self._pipeline.run(ctx, around=self._hook_stage)

    async def _hook_stage(self, ctx: ExecutionContext, next_: Next) -> SpecResult:
        """Run the spec's hooks around the execution-phase middleware."""
        assert self._hooks is not None
        context = ctx.spec.context
        assert context is not None

        error = await self._hooks.enter(context)
        if error is not None:
            return SpecResult.failed(ctx, error)

        error = await self._hooks.run_before_each(context)
        if error is not None:
            result = SpecResult.failed(ctx, error)
        else:
            try:
                result = await next_(ctx)
            except (Exception, asyncio.CancelledError) as exc:
                if isinstance(exc, asyncio.CancelledError) and task_is_cancelling():
                    raise
                logger.error(
                    "Execution middleware error for spec '%s': %s",
                    ctx.spec.description,
                    exc,
                )
                result = SpecResult.failed(ctx, ErrorDetail.from_exception(exc))

        after_error = await self._hooks.run_after_each(context)
        if after_error is not None:
            if result.status is SpecStatus.FAILED:
                logger.warning(
                    "after_each failure for already failed spec '%s': %s",
                    ctx.spec.description,
                    after_error.message,
                )
            else:
                result = replace(
                    result, status=SpecStatus.FAILED, error=after_error, reason=None
                )
        return result

    async def _on_hook_failure(
        self, kind: HookKind, context: SpecContext, error: ErrorDetail
    ) -> None:
        await self._emit(RunEvent(
            type=RunEventType.HOOK_FAILED,
            description=context.description,
            context_path=context.context_path,
            data={"hook": kind.value, "error": error},
        ))

    async def _escalate_after_all_failures(
        self, results: dict[SpecDefinition, SpecResult]
    ) -> None:
        """Fail every passed spec under a context whose ``after_all`` failed.

        Each rewritten result is announced with a ``spec_revised`` event so
        streaming listeners can correct what ``spec_completed`` told them.
        """
        assert self._hooks is not None
        for context, error in self._hooks.after_all_failures.items():
            for spec in context.iter_specs():
                previous = results[spec]
                if previous.status is not SpecStatus.PASSED:
                    continue
                revised = replace(previous, status=SpecStatus.FAILED, error=error)
                results[spec] = revised
                await self._emit(RunEvent(
                    type=RunEventType.SPEC_REVISED,
                    description=spec.description,
                    context_path=spec.context_path,
                    data={"result": revised, "previous": previous},
                ))


def run_specs(root: SpecContext, config: RunnerConfig | None = None) -> SpecReport:
    """Run *root* to completion on a fresh event loop.

    Convenience wrapper for synchronous callers; use
    :meth:`SpecRunner.run` from async code.
    """
    return asyncio.run(SpecRunner(config).run(root))
