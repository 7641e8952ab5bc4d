"""Middleware pipeline wrapping the execution of a single spec.

A middleware receives the spec's :class:`ExecutionContext` and a ``next_``
continuation running the rest of the chain.  It may short-circuit (never
call ``next_``), call ``next_`` several times (retry), or race it against a
timer.  Whatever happens inside, :meth:`MiddlewarePipeline.run` always
returns a :class:`SpecResult`; exceptions never escape it.

Middleware is ordered outer to inner and split in two phases:

* ``SELECTION`` middleware runs before the runner's hook stage, so a
  short-circuit there also skips every hook of the spec.
* ``EXECUTION`` middleware (the default) runs inside the hook stage, around
  the body only.  Calling ``next_`` again re-runs the body, not the hooks.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import replace
from typing import Protocol, runtime_checkable

from specwright.runner.callables import invoke, task_is_cancelling
from specwright.runner.errors import SpecTimeoutError
from specwright.runner.models import (
    ErrorDetail,
    ErrorKind,
    ExecutionContext,
    RetryInfo,
    RetryPolicy,
    SkipReason,
    SpecDefinition,
    SpecResult,
    SpecStatus,
    bind_attempt_token,
)

logger = logging.getLogger(__name__)

Next = Callable[[ExecutionContext], Awaitable[SpecResult]]
Around = Callable[[ExecutionContext, Next], Awaitable[SpecResult]]


class MiddlewarePhase(str, enum.Enum):
    """Where in the spec lifecycle a middleware is applied."""

    SELECTION = "selection"
    EXECUTION = "execution"


@runtime_checkable
class SpecMiddleware(Protocol):
    """Protocol for spec middleware.

    Implementations may also define a ``phase`` attribute; middleware
    without one runs in :attr:`MiddlewarePhase.EXECUTION`.
    """

    async def execute(self, ctx: ExecutionContext, next_: Next) -> SpecResult:
        """Run (or decline to run) the rest of the chain for *ctx*.

        Args:
            ctx: The spec's execution context.
            next_: Continuation invoking the remaining middleware and,
                ultimately, the spec body.

        Returns:
            The spec's result.
        """
        ...


def phase_of(middleware: SpecMiddleware) -> MiddlewarePhase:
    return getattr(middleware, "phase", MiddlewarePhase.EXECUTION)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


async def run_body(ctx: ExecutionContext) -> SpecResult:
    """Invoke the spec body once and convert its outcome to a result.

    This is the innermost boundary of the pipeline: any exception raised by
    the body becomes a failed result here.
    """
    body = ctx.spec.body
    if body is None:
        return SpecResult.pending(ctx.spec)
    start = time.perf_counter()
    try:
        await invoke(body)
    except asyncio.CancelledError as exc:
        if task_is_cancelling():
            raise
        logger.debug("Spec '%s' raised CancelledError", ctx.spec.description)
        return SpecResult.failed(ctx, ErrorDetail.from_exception(exc), _elapsed_ms(start))
    except Exception as exc:
        logger.debug("Spec '%s' raised %s", ctx.spec.description, type(exc).__name__)
        return SpecResult.failed(ctx, ErrorDetail.from_exception(exc), _elapsed_ms(start))
    return SpecResult.passed(ctx, _elapsed_ms(start))


def compose(middlewares: Iterable[SpecMiddleware], terminal: Next) -> Next:
    """Fold *middlewares* (outer first) around *terminal*."""
    next_ = terminal
    for middleware in reversed(list(middlewares)):
        next_ = _bind(middleware, next_)
    return next_


def _bind(middleware: SpecMiddleware, next_: Next) -> Next:
    async def call(ctx: ExecutionContext) -> SpecResult:
        return await middleware.execute(ctx, next_)

    return call


class MiddlewarePipeline:
    """Ordered chain of :class:`SpecMiddleware`, outermost first."""

    def __init__(self, middlewares: Iterable[SpecMiddleware] | None = None) -> None:
        self._middlewares: list[SpecMiddleware] = list(middlewares or [])

    @property
    def middlewares(self) -> list[SpecMiddleware]:
        """Return a copy of the chain, outermost first."""
        return list(self._middlewares)

    def __len__(self) -> int:
        return len(self._middlewares)

    def add(self, middleware: SpecMiddleware) -> MiddlewarePipeline:
        """Append *middleware* as the innermost element."""
        self._middlewares.append(middleware)
        return self

    def insert(self, index: int, middleware: SpecMiddleware) -> MiddlewarePipeline:
        """Insert *middleware* at *index* (0 is outermost)."""
        self._middlewares.insert(index, middleware)
        return self

    def insert_before(
        self, target: type, middleware: SpecMiddleware
    ) -> MiddlewarePipeline:
        """Insert *middleware* just outside the first instance of *target*."""
        self._middlewares.insert(self._index_of(target), middleware)
        return self

    def insert_after(
        self, target: type, middleware: SpecMiddleware
    ) -> MiddlewarePipeline:
        """Insert *middleware* just inside the first instance of *target*."""
        self._middlewares.insert(self._index_of(target) + 1, middleware)
        return self

    def _index_of(self, target: type) -> int:
        for index, middleware in enumerate(self._middlewares):
            if isinstance(middleware, target):
                return index
        raise ValueError(f"No {target.__name__} in the pipeline")

    async def run(
        self,
        ctx: ExecutionContext,
        body: Next = run_body,
        around: Around | None = None,
    ) -> SpecResult:
        """Run the chain for *ctx* and return its result.

        Args:
            ctx: The spec's execution context.
            body: Terminal continuation; defaults to :func:`run_body`.
            around: Hook stage placed between the selection and execution
                phases.  It receives the execution chain as its ``next_``.

        Returns:
            The spec's result.  Errors raised by middleware are converted
            to a failed result rather than propagated.
        """
        selection = [m for m in self._middlewares if phase_of(m) is MiddlewarePhase.SELECTION]
        execution = [m for m in self._middlewares if phase_of(m) is MiddlewarePhase.EXECUTION]

        inner = compose(execution, body)
        if around is not None:
            hook_stage = inner

            async def stage(c: ExecutionContext) -> SpecResult:
                return await around(c, hook_stage)

            inner = stage

        chain = compose(selection, inner)
        start = time.perf_counter()
        try:
            return await chain(ctx)
        except asyncio.CancelledError as exc:
            if task_is_cancelling():
                raise
            logger.error(
                "Middleware for spec '%s' raised CancelledError", ctx.spec.description
            )
            return SpecResult.failed(
                ctx, ErrorDetail.from_exception(exc), _elapsed_ms(start)
            )
        except Exception as exc:
            logger.error(
                "Middleware error for spec '%s': %s", ctx.spec.description, exc
            )
            return SpecResult.failed(
                ctx, ErrorDetail.from_exception(exc), _elapsed_ms(start)
            )


# ---------------------------------------------------------------------------
# Built-in Middleware
# ---------------------------------------------------------------------------


class FilterMiddleware:
    """Skips specs for which *predicate* returns ``False``.

    Runs in the selection phase: a filtered spec never triggers its hooks.
    """

    phase = MiddlewarePhase.SELECTION

    def __init__(
        self,
        predicate: Callable[[SpecDefinition], bool],
        reason: SkipReason = SkipReason.FILTERED,
    ) -> None:
        if predicate is None:
            raise ValueError("predicate is required")
        self._predicate = predicate
        self._reason = reason

    async def execute(self, ctx: ExecutionContext, next_: Next) -> SpecResult:
        if not self._predicate(ctx.spec):
            logger.debug("Filtered out '%s'", ctx.spec.description)
            return SpecResult.skipped(ctx.spec, self._reason)
        return await next_(ctx)


class RetryMiddleware:
    """Re-runs the rest of the chain while it reports a failure.

    Only failed results are retried.  The reported duration covers every
    attempt; :class:`RetryInfo` is attached whenever retries are enabled.
    """

    def __init__(self, policy: RetryPolicy | int | None = None) -> None:
        if isinstance(policy, int):
            policy = RetryPolicy(max_retries=policy)
        self.policy = policy or RetryPolicy()

    async def execute(self, ctx: ExecutionContext, next_: Next) -> SpecResult:
        max_retries = self.policy.max_retries
        total_ms = 0.0
        attempts = 0
        while True:
            attempts += 1
            ctx.attempt = attempts
            result = await next_(ctx)
            total_ms += result.duration_ms
            if result.status is not SpecStatus.FAILED or attempts > max_retries:
                break
            if ctx.token.is_cancelled:
                break
            delay = self.policy.delay_for_attempt(attempts - 1)
            logger.warning(
                "Spec '%s' failed (attempt %d/%d), retrying after %.2fs",
                ctx.spec.description,
                attempts,
                max_retries + 1,
                delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)

        if max_retries == 0:
            return result
        return replace(
            result,
            duration_ms=total_ms,
            retry_info=RetryInfo(attempts=attempts, max_retries=max_retries),
        )


class TimeoutMiddleware:
    """Fails an attempt that does not finish within *timeout* seconds.

    Each call gets a child cancellation token, visible to the body through
    :attr:`ExecutionContext.cancellation`.  On expiry the token is
    cancelled and the attempt abandoned; whatever it later produces is
    ignored.
    """

    def __init__(self, timeout: float) -> None:
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        self.timeout = timeout

    async def execute(self, ctx: ExecutionContext, next_: Next) -> SpecResult:
        token = ctx.token.child()

        async def attempt() -> SpecResult:
            bind_attempt_token(token)
            return await next_(ctx)

        start = time.perf_counter()
        task = asyncio.create_task(attempt())
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        except asyncio.TimeoutError:
            # The token must be set before the attempt sees its CancelledError.
            token.cancel()
            task.cancel()
            logger.error(
                "Spec '%s' timed out after %.0fms",
                ctx.spec.description,
                self.timeout * 1000,
            )
            error = ErrorDetail.from_exception(
                SpecTimeoutError(self.timeout), ErrorKind.TIMEOUT
            )
            duration = max(_elapsed_ms(start), self.timeout * 1000)
            return SpecResult.failed(ctx, error, duration)


class LoggingMiddleware:
    """Logs each spec attempt and its outcome."""

    def __init__(self, log_level: int = logging.DEBUG) -> None:
        self._level = log_level

    async def execute(self, ctx: ExecutionContext, next_: Next) -> SpecResult:
        logger.log(
            self._level,
            "Spec start: %s (attempt %d)",
            " > ".join((*ctx.context_path, ctx.spec.description)),
            ctx.attempt,
        )
        result = await next_(ctx)
        logger.log(
            self._level,
            "Spec end: %s status=%s duration=%.1fms",
            ctx.spec.description,
            result.status.value,
            result.duration_ms,
        )
        return result
