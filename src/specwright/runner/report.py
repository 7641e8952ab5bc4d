"""Result aggregation.

Rebuilds the tree-shaped :class:`SpecReport` from the flat set of
:class:`SpecResult` objects and the context tree they came from.  Results are
joined to nodes by spec identity, so the report lists specs in declaration
order no matter in which order they completed.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specwright.runner.errors import ReportError
from specwright.runner.events import RunEvent, RunEventEmitter, RunEventType
from specwright.runner.models import (
    ErrorDetail,
    RetryInfo,
    SkipReason,
    SpecContext,
    SpecDefinition,
    SpecResult,
    SpecStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpecSummary:
    """Counts over every result of a run."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    pending: int = 0
    skipped: int = 0
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.failed == 0

    @classmethod
    def from_results(cls, results: Iterable[SpecResult]) -> SpecSummary:
        counts = {status: 0 for status in SpecStatus}
        total = 0
        duration = 0.0
        for result in results:
            total += 1
            counts[result.status] += 1
            duration += result.duration_ms
        return cls(
            total=total,
            passed=counts[SpecStatus.PASSED],
            failed=counts[SpecStatus.FAILED],
            pending=counts[SpecStatus.PENDING],
            skipped=counts[SpecStatus.SKIPPED],
            duration_ms=duration,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "pending": self.pending,
            "skipped": self.skipped,
            "totalDurationMs": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpecSummary:
        return cls(
            total=data["total"],
            passed=data["passed"],
            failed=data["failed"],
            pending=data["pending"],
            skipped=data["skipped"],
            duration_ms=data.get("totalDurationMs", 0.0),
        )


@dataclass(frozen=True)
class ContextReport:
    """One context node of the report.

    Attributes:
        description: The context's description.
        results: Results of the context's own specs, in declaration order.
        contexts: Reports of the child contexts, in declaration order.
    """

    description: str
    results: tuple[SpecResult, ...] = ()
    contexts: tuple[ContextReport, ...] = ()

    def iter_results(self) -> Iterator[SpecResult]:
        yield from self.results
        for child in self.contexts:
            yield from child.iter_results()

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "specs": [_result_to_dict(r) for r in self.results],
            "contexts": [c.to_dict() for c in self.contexts],
        }


def _result_to_dict(result: SpecResult) -> dict[str, Any]:
    data: dict[str, Any] = {
        "description": result.description,
        "status": result.status.value,
        "durationMs": result.duration_ms,
    }
    if result.spec.all_tags:
        data["tags"] = sorted(result.spec.all_tags)
    if result.error is not None:
        data["error"] = result.error.to_dict()
    if result.reason is not None:
        data["reason"] = result.reason.value
    if result.retry_info is not None:
        data["retry"] = {
            "attempts": result.retry_info.attempts,
            "maxRetries": result.retry_info.max_retries,
        }
    return data


def _result_from_dict(data: dict[str, Any], path: tuple[str, ...]) -> SpecResult:
    retry = data.get("retry")
    return SpecResult(
        spec=SpecDefinition(data["description"], tags=frozenset(data.get("tags", ()))),
        context_path=path,
        status=SpecStatus(data["status"]),
        duration_ms=data.get("durationMs", 0.0),
        error=ErrorDetail.from_dict(data["error"]) if data.get("error") else None,
        reason=SkipReason(data["reason"]) if data.get("reason") else None,
        retry_info=(
            RetryInfo(attempts=retry["attempts"], max_retries=retry["maxRetries"])
            if retry
            else None
        ),
    )


def _context_from_dict(data: dict[str, Any], path: tuple[str, ...]) -> ContextReport:
    description = data["description"]
    own_path = (*path, description) if description else path
    return ContextReport(
        description=description,
        results=tuple(_result_from_dict(s, own_path) for s in data.get("specs", [])),
        contexts=tuple(_context_from_dict(c, own_path) for c in data.get("contexts", [])),
    )


@dataclass(frozen=True)
class SpecReport:
    """Complete, immutable outcome of a run.

    Attributes:
        contexts: Top-level context reports (the tree's root).
        summary: Counts and total duration.
        timestamp: UNIX epoch when the report was built.
    """

    contexts: tuple[ContextReport, ...]
    summary: SpecSummary
    timestamp: float = field(default_factory=time.time)

    def iter_results(self) -> Iterator[SpecResult]:
        """Yield every result in declaration order."""
        for context in self.contexts:
            yield from context.iter_results()

    @property
    def results(self) -> list[SpecResult]:
        return list(self.iter_results())

    @property
    def success(self) -> bool:
        return self.summary.success

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible ``dict`` with the stable field names."""
        return {
            "timestamp": self.timestamp,
            "summary": self.summary.to_dict(),
            "contexts": [c.to_dict() for c in self.contexts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpecReport:
        """Rebuild a report from :meth:`to_dict` output.

        The spec nodes of the rebuilt results are detached copies holding
        only description and tags.
        """
        return cls(
            contexts=tuple(_context_from_dict(c, ()) for c in data["contexts"]),
            summary=SpecSummary.from_dict(data["summary"]),
            timestamp=data.get("timestamp", time.time()),
        )

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def save_to_file(self, path: str | Path) -> Path:
        """Write this report as JSON to *path*.

        Parent directories are created automatically.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json())
        logger.debug("Report saved to %s", path)
        return path

    @classmethod
    def load_from_file(cls, path: str | Path) -> SpecReport:
        return cls.from_dict(json.loads(Path(path).read_text()))


def build_report(root: SpecContext, results: Iterable[SpecResult]) -> SpecReport:
    """Join *results* back onto the tree rooted at *root*.

    Contexts without specs of their own are kept when a descendant has
    specs; contexts with neither are dropped.

    Raises:
        ReportError: If a spec of the tree has no result, has more than
            one, or a result belongs to a spec outside the tree.
    """
    results = list(results)
    lookup: dict[SpecDefinition, SpecResult] = {}
    for result in results:
        if result.spec in lookup:
            raise ReportError(
                f"Duplicate result for spec '{result.spec.full_description}'"
            )
        lookup[result.spec] = result

    ordered: list[SpecResult] = []

    def build(context: SpecContext) -> ContextReport | None:
        own: list[SpecResult] = []
        for spec in context.specs:
            result = lookup.pop(spec, None)
            if result is None:
                raise ReportError(f"No result for spec '{spec.full_description}'")
            own.append(result)
            ordered.append(result)
        children = [r for r in (build(c) for c in context.children) if r is not None]
        if not own and not children:
            return None
        return ContextReport(
            description=context.description,
            results=tuple(own),
            contexts=tuple(children),
        )

    top = build(root)
    if lookup:
        stray = ", ".join(s.full_description for s in lookup)
        raise ReportError(f"Results for specs outside the tree: {stray}")

    return SpecReport(
        contexts=(top,) if top is not None else (),
        summary=SpecSummary.from_results(ordered),
    )


class StreamingStats:
    """Accumulates summary counts as specs complete.

    Safe to feed from several threads; :meth:`attach` subscribes it to an
    emitter's ``spec_completed`` and ``spec_revised`` events.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = {status: 0 for status in SpecStatus}
        self._duration_ms = 0.0

    def add(self, result: SpecResult) -> None:
        with self._lock:
            self._counts[result.status] += 1
            self._duration_ms += result.duration_ms

    def revise(self, previous: SpecResult, result: SpecResult) -> None:
        """Replace the counted *previous* outcome of a spec with *result*."""
        with self._lock:
            self._counts[previous.status] -= 1
            self._counts[result.status] += 1

    def reset(self) -> None:
        with self._lock:
            self._counts = {status: 0 for status in SpecStatus}
            self._duration_ms = 0.0

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())

    @property
    def failed(self) -> int:
        with self._lock:
            return self._counts[SpecStatus.FAILED]

    def to_summary(self) -> SpecSummary:
        with self._lock:
            return SpecSummary(
                total=sum(self._counts.values()),
                passed=self._counts[SpecStatus.PASSED],
                failed=self._counts[SpecStatus.FAILED],
                pending=self._counts[SpecStatus.PENDING],
                skipped=self._counts[SpecStatus.SKIPPED],
                duration_ms=self._duration_ms,
            )

    def attach(self, emitter: RunEventEmitter) -> StreamingStats:
        emitter.on(RunEventType.SPEC_COMPLETED, self._on_spec_completed)
        emitter.on(RunEventType.SPEC_REVISED, self._on_spec_revised)
        return self

    async def _on_spec_completed(self, event: RunEvent) -> None:
        self.add(event.data["result"])

    async def _on_spec_revised(self, event: RunEvent) -> None:
        self.revise(event.data["previous"], event.data["result"])
