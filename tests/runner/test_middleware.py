"""Tests for the spec middleware pipeline."""

import asyncio
import logging
import time

import pytest

from specwright.runner.middleware import (
    FilterMiddleware,
    LoggingMiddleware,
    MiddlewarePhase,
    MiddlewarePipeline,
    RetryMiddleware,
    SpecMiddleware,
    TimeoutMiddleware,
    run_body,
)
from specwright.runner.models import (
    ErrorKind,
    ExecutionContext,
    RetryPolicy,
    SkipReason,
    SpecContext,
    SpecDefinition,
    SpecResult,
    SpecStatus,
)


def _ctx(body=None, description: str = "spec") -> ExecutionContext:
    root = SpecContext("suite")
    spec = root.add_spec(SpecDefinition(description, body))
    return ExecutionContext.for_spec(spec)


class Tracer:
    """Middleware recording entry and exit around ``next_``."""

    def __init__(self, name: str, log: list[str], phase: MiddlewarePhase | None = None) -> None:
        self.name = name
        self.log = log
        if phase is not None:
            self.phase = phase

    async def execute(self, ctx, next_):
        self.log.append(f"{self.name}:in")
        result = await next_(ctx)
        self.log.append(f"{self.name}:out")
        return result


class ShortCircuit:
    """Middleware that never calls ``next_``."""

    async def execute(self, ctx, next_):
        return SpecResult.skipped(ctx.spec, SkipReason.SKIPPED)


class Exploding:
    async def execute(self, ctx, next_):
        raise RuntimeError("middleware bug")


class TestRunBody:
    async def test_passing_body(self) -> None:
        result = await run_body(_ctx(lambda: None))
        assert result.status is SpecStatus.PASSED
        assert result.context_path == ("suite",)
        assert result.duration_ms >= 0

    async def test_assertion_error(self) -> None:
        def body() -> None:
            raise AssertionError("numbers differ")

        result = await run_body(_ctx(body))
        assert result.status is SpecStatus.FAILED
        assert result.error.kind is ErrorKind.ASSERTION
        assert result.error.message == "numbers differ"
        assert result.error.exception_type == "AssertionError"
        assert "numbers differ" in result.error.stack

    async def test_other_exception(self) -> None:
        async def body() -> None:
            raise KeyError("missing")

        result = await run_body(_ctx(body))
        assert result.error.kind is ErrorKind.EXCEPTION
        assert result.error.exception_type == "KeyError"

    async def test_stray_cancelled_error_is_a_failure(self) -> None:
        async def body() -> None:
            raise asyncio.CancelledError()

        result = await run_body(_ctx(body))

        assert result.status is SpecStatus.FAILED
        assert result.error.kind is ErrorKind.EXCEPTION
        assert result.error.exception_type == "CancelledError"

    async def test_missing_body_is_pending(self) -> None:
        result = await run_body(_ctx(None))
        assert result.status is SpecStatus.PENDING


class TestPipelineOrdering:
    async def test_outer_to_inner(self) -> None:
        log: list[str] = []
        pipeline = MiddlewarePipeline([Tracer("a", log), Tracer("b", log)])

        result = await pipeline.run(_ctx(lambda: log.append("body")))

        assert result.status is SpecStatus.PASSED
        assert log == ["a:in", "b:in", "body", "b:out", "a:out"]

    async def test_selection_runs_outside_around(self) -> None:
        log: list[str] = []
        pipeline = MiddlewarePipeline([
            Tracer("exec", log),
            Tracer("select", log, phase=MiddlewarePhase.SELECTION),
        ])

        async def around(ctx, next_):
            log.append("hooks:in")
            result = await next_(ctx)
            log.append("hooks:out")
            return result

        await pipeline.run(_ctx(lambda: log.append("body")), around=around)

        assert log == [
            "select:in",
            "hooks:in",
            "exec:in",
            "body",
            "exec:out",
            "hooks:out",
            "select:out",
        ]

    async def test_short_circuit(self) -> None:
        calls: list[str] = []
        pipeline = MiddlewarePipeline([ShortCircuit()])

        result = await pipeline.run(_ctx(lambda: calls.append("body")))

        assert result.status is SpecStatus.SKIPPED
        assert calls == []

    async def test_middleware_exception_becomes_failure(self) -> None:
        pipeline = MiddlewarePipeline([Exploding()])

        result = await pipeline.run(_ctx(lambda: None))

        assert result.status is SpecStatus.FAILED
        assert result.error.message == "middleware bug"

    async def test_middleware_cancelled_error_becomes_failure(self) -> None:
        class Cancelling:
            async def execute(self, ctx, next_):
                raise asyncio.CancelledError()

        result = await MiddlewarePipeline([Cancelling()]).run(_ctx(lambda: None))

        assert result.status is SpecStatus.FAILED

    async def test_insert_helpers(self) -> None:
        retry = RetryMiddleware(1)
        timeout = TimeoutMiddleware(1.0)
        logging_mw = LoggingMiddleware()
        pipeline = MiddlewarePipeline([retry, timeout])

        pipeline.insert_before(TimeoutMiddleware, logging_mw)
        assert pipeline.middlewares == [retry, logging_mw, timeout]

        tracer = Tracer("t", [])
        pipeline.insert_after(TimeoutMiddleware, tracer)
        assert pipeline.middlewares[-1] is tracer

        pipeline.insert(0, ShortCircuit())
        assert isinstance(pipeline.middlewares[0], ShortCircuit)
        assert len(pipeline) == 5

    async def test_insert_relative_to_missing_type(self) -> None:
        pipeline = MiddlewarePipeline()
        with pytest.raises(ValueError, match="No RetryMiddleware"):
            pipeline.insert_before(RetryMiddleware, LoggingMiddleware())

    def test_protocol(self) -> None:
        assert isinstance(RetryMiddleware(), SpecMiddleware)
        assert isinstance(Tracer("t", []), SpecMiddleware)


class TestFilterMiddleware:
    async def test_requires_predicate(self) -> None:
        with pytest.raises(ValueError):
            FilterMiddleware(None)

    async def test_rejects_spec(self) -> None:
        calls: list[str] = []
        pipeline = MiddlewarePipeline([FilterMiddleware(lambda spec: False)])

        result = await pipeline.run(_ctx(lambda: calls.append("body")))

        assert result.status is SpecStatus.SKIPPED
        assert result.reason is SkipReason.FILTERED
        assert calls == []

    async def test_admits_spec(self) -> None:
        pipeline = MiddlewarePipeline([FilterMiddleware(lambda spec: spec.description == "keep")])

        result = await pipeline.run(_ctx(lambda: None, description="keep"))

        assert result.status is SpecStatus.PASSED

    def test_is_selection_phase(self) -> None:
        assert FilterMiddleware(lambda spec: True).phase is MiddlewarePhase.SELECTION


class TestRetryMiddleware:
    async def test_accepts_int(self) -> None:
        assert RetryMiddleware(3).policy.max_retries == 3

    async def test_passed_result_not_retried(self) -> None:
        calls: list[int] = []
        pipeline = MiddlewarePipeline([RetryMiddleware(2)])

        result = await pipeline.run(_ctx(lambda: calls.append(1)))

        assert calls == [1]
        assert result.retry_info.attempts == 1

    async def test_attempt_number_visible_on_context(self) -> None:
        attempts: list[int] = []
        ctx = _ctx()

        async def next_(c):
            attempts.append(c.attempt)
            return SpecResult.failed(c, error=None)

        await RetryMiddleware(2).execute(ctx, next_)

        assert attempts == [1, 2, 3]

    async def test_durations_are_summed(self) -> None:
        async def next_(c):
            return SpecResult.failed(c, error=None, duration_ms=10.0)

        result = await RetryMiddleware(2).execute(_ctx(), next_)

        assert result.duration_ms == pytest.approx(30.0)

    async def test_no_retry_info_without_retries(self) -> None:
        pipeline = MiddlewarePipeline([RetryMiddleware(0)])
        result = await pipeline.run(_ctx(lambda: None))
        assert result.retry_info is None

    async def test_stops_when_cancelled(self) -> None:
        ctx = _ctx()
        calls: list[int] = []

        async def next_(c):
            calls.append(1)
            c.cancel()
            return SpecResult.failed(c, error=None)

        result = await RetryMiddleware(5).execute(ctx, next_)

        assert calls == [1]
        assert result.status is SpecStatus.FAILED

    async def test_waits_between_attempts(self) -> None:
        async def next_(c):
            return SpecResult.failed(c, error=None)

        policy = RetryPolicy(max_retries=2, base_delay_seconds=0.02)
        start = time.perf_counter()
        await RetryMiddleware(policy).execute(_ctx(), next_)

        assert time.perf_counter() - start >= 0.04


class TestTimeoutMiddleware:
    def test_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValueError):
            TimeoutMiddleware(0)

    async def test_sync_body_is_bounded(self) -> None:
        pipeline = MiddlewarePipeline([TimeoutMiddleware(0.05)])
        start = time.perf_counter()

        result = await pipeline.run(_ctx(lambda: time.sleep(0.3)))

        assert time.perf_counter() - start < 0.25
        assert result.status is SpecStatus.FAILED
        assert result.error.kind is ErrorKind.TIMEOUT
        assert result.error.exception_type == "SpecTimeoutError"

    async def test_each_retry_attempt_is_bounded(self) -> None:
        attempts = 0

        async def body() -> None:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                await asyncio.sleep(0.5)

        pipeline = MiddlewarePipeline([RetryMiddleware(1), TimeoutMiddleware(0.05)])
        result = await pipeline.run(_ctx(body))

        assert result.status is SpecStatus.PASSED
        assert result.retry_info.attempts == 2

    async def test_fresh_token_per_attempt(self) -> None:
        observed: list[bool] = []
        ctx = _ctx()

        async def next_(c):
            observed.append(c.is_cancelled)
            return SpecResult.passed(c, 1.0)

        mw = TimeoutMiddleware(1.0)
        await mw.execute(ctx, next_)
        await mw.execute(ctx, next_)

        assert observed == [False, False]


class TestLoggingMiddleware:
    async def test_logs_start_and_end(self, caplog: pytest.LogCaptureFixture) -> None:
        pipeline = MiddlewarePipeline([LoggingMiddleware(logging.INFO)])

        with caplog.at_level(logging.INFO, logger="specwright.runner.middleware"):
            await pipeline.run(_ctx(lambda: None, description="adds"))

        assert "Spec start: suite > adds (attempt 1)" in caplog.text
        assert "status=passed" in caplog.text
