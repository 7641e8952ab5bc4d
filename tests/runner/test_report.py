"""Tests for result aggregation and the JSON report."""

import json

import pytest

from specwright.runner.errors import ReportError
from specwright.runner.events import RunEvent, RunEventEmitter, RunEventType
from specwright.runner.models import (
    ErrorDetail,
    ErrorKind,
    RetryInfo,
    SkipReason,
    SpecContext,
    SpecDefinition,
    SpecResult,
    SpecStatus,
)
from specwright.runner.report import SpecReport, SpecSummary, StreamingStats, build_report


def _tree():
    root = SpecContext("Calculator")
    a = root.add_spec(SpecDefinition("a", lambda: None, tags=frozenset({"fast"})))
    empty = root.add_child(SpecContext("empty"))
    empty.add_child(SpecContext("also empty"))
    wrapper = root.add_child(SpecContext("wrapper"))
    inner = wrapper.add_child(SpecContext("inner"))
    b = inner.add_spec(SpecDefinition("b", lambda: None))
    c = inner.add_spec(SpecDefinition("c"))
    return root, a, b, c


def _result(spec, status=SpecStatus.PASSED, duration_ms=1.0, **kwargs) -> SpecResult:
    return SpecResult(spec, spec.context_path, status, duration_ms, **kwargs)


class TestBuildReport:
    def test_tree_shape_and_order(self) -> None:
        root, a, b, c = _tree()
        # Completion order differs from declaration order.
        results = [_result(c, SpecStatus.PENDING, 0.0), _result(b), _result(a)]

        report = build_report(root, results)

        (top,) = report.contexts
        assert top.description == "Calculator"
        assert [r.spec for r in top.results] == [a]
        # "empty" has no specs anywhere below it and is dropped.
        assert [ctx.description for ctx in top.contexts] == ["wrapper"]
        (inner,) = top.contexts[0].contexts
        assert [r.spec for r in inner.results] == [b, c]
        assert [r.spec for r in report.iter_results()] == [a, b, c]

    def test_summary(self) -> None:
        root, a, b, c = _tree()
        results = [
            _result(a, duration_ms=2.0),
            _result(b, SpecStatus.FAILED, 3.0, error=ErrorDetail("x")),
            _result(c, SpecStatus.SKIPPED, 0.0, reason=SkipReason.FILTERED),
        ]

        summary = build_report(root, results).summary

        assert summary == SpecSummary(
            total=3, passed=1, failed=1, pending=0, skipped=1, duration_ms=5.0
        )
        assert not summary.success

    def test_missing_result(self) -> None:
        root, a, b, _ = _tree()
        with pytest.raises(ReportError, match="No result for spec 'Calculator wrapper inner c'"):
            build_report(root, [_result(a), _result(b)])

    def test_duplicate_result(self) -> None:
        root, a, b, c = _tree()
        with pytest.raises(ReportError, match="Duplicate"):
            build_report(root, [_result(a), _result(a), _result(b), _result(c)])

    def test_result_outside_tree(self) -> None:
        root, a, b, c = _tree()
        stray = SpecDefinition("stray")
        with pytest.raises(ReportError, match="outside the tree"):
            build_report(root, [_result(a), _result(b), _result(c), _result(stray)])

    def test_empty_tree(self) -> None:
        report = build_report(SpecContext("nothing"), [])
        assert report.contexts == ()
        assert report.summary.total == 0


class TestJson:
    def _report(self) -> SpecReport:
        root, a, b, c = _tree()
        return build_report(root, [
            _result(a, duration_ms=2.0),
            _result(
                b,
                SpecStatus.FAILED,
                3.0,
                error=ErrorDetail("boom", ErrorKind.ASSERTION, "AssertionError"),
                retry_info=RetryInfo(attempts=3, max_retries=2),
            ),
            _result(c, SpecStatus.SKIPPED, 0.0, reason=SkipReason.NOT_FOCUSED),
        ])

    def test_field_names(self) -> None:
        data = json.loads(self._report().to_json())

        assert data["summary"] == {
            "total": 3,
            "passed": 1,
            "failed": 1,
            "pending": 0,
            "skipped": 1,
            "totalDurationMs": 5.0,
        }
        top = data["contexts"][0]
        assert top["specs"][0] == {
            "description": "a",
            "status": "passed",
            "durationMs": 2.0,
            "tags": ["fast"],
        }
        inner = top["contexts"][0]["contexts"][0]
        failed, skipped = inner["specs"]
        assert failed["error"]["message"] == "boom"
        assert failed["error"]["kind"] == "assertion"
        assert failed["retry"] == {"attempts": 3, "maxRetries": 2}
        assert skipped["reason"] == "not_focused"

    def test_save_and_load(self, tmp_path) -> None:
        report = self._report()
        path = report.save_to_file(tmp_path / "out" / "report.json")

        loaded = SpecReport.load_from_file(path)

        assert loaded.summary == report.summary
        assert [r.description for r in loaded.iter_results()] == ["a", "b", "c"]
        assert loaded.results[1].error.kind is ErrorKind.ASSERTION
        assert loaded.results[1].context_path == ("Calculator", "wrapper", "inner")
        assert loaded.results[2].reason is SkipReason.NOT_FOCUSED
        assert loaded.to_dict() == report.to_dict()


class TestStreamingStats:
    def test_counts(self) -> None:
        root, a, b, c = _tree()
        stats = StreamingStats()
        stats.add(_result(a))
        stats.add(_result(b, SpecStatus.FAILED))

        assert stats.total == 2
        assert stats.failed == 1
        summary = stats.to_summary()
        assert summary.passed == 1
        assert summary.duration_ms == 2.0

        stats.reset()
        assert stats.total == 0

    def test_revise_moves_a_count(self) -> None:
        _, a, _, _ = _tree()
        stats = StreamingStats()
        passed = _result(a)
        stats.add(passed)

        stats.revise(passed, _result(a, SpecStatus.FAILED))

        summary = stats.to_summary()
        assert summary.total == 1
        assert summary.passed == 0
        assert summary.failed == 1

    async def test_attach_to_emitter(self) -> None:
        _, a, _, _ = _tree()
        emitter = RunEventEmitter()
        stats = StreamingStats().attach(emitter)

        await emitter.emit(RunEvent(RunEventType.SPEC_COMPLETED, data={"result": _result(a)}))
        await emitter.emit(RunEvent(RunEventType.SPEC_STARTED))

        assert stats.total == 1
