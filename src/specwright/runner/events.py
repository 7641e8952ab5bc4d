"""Run event system for reporters.

Provides typed events emitted while a tree executes, so streaming
reporters can render progress as specs finish and receive the complete
report at the end.
"""

from __future__ import annotations

import enum
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class RunEventType(str, enum.Enum):
    """Typed event categories emitted during a run.

    ``spec_completed`` carries the result as first known.  A result changed
    later (an ``after_all`` failure fails the context's passed specs) is
    re-announced at finalization as ``spec_revised``, with both the new
    ``result`` and the ``previous`` one.
    """

    RUN_STARTED = "run_started"
    SPEC_STARTED = "spec_started"
    SPEC_COMPLETED = "spec_completed"
    SPEC_REVISED = "spec_revised"
    BATCH_COMPLETED = "batch_completed"
    HOOK_FAILED = "hook_failed"
    BAILED = "bailed"
    RUN_COMPLETED = "run_completed"


@dataclass
class RunEvent:
    """A single run lifecycle event.

    Attributes:
        type: The event category.
        description: Spec or context description (empty for run-level events).
        context_path: Enclosing context descriptions, root first.
        timestamp: UNIX epoch when the event occurred.
        data: Event-specific payload.  ``spec_completed`` carries
            ``result``; ``batch_completed`` carries ``results`` in
            declaration order; ``hook_failed`` carries ``hook`` and
            ``error``; ``run_completed`` carries ``report``.
    """

    type: RunEventType
    description: str = ""
    context_path: tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)


# Callback type: async function that receives a RunEvent
EventCallback = Callable[[RunEvent], Coroutine[Any, Any, None]]


class RunEventEmitter:
    """Observer-pattern event emitter for run lifecycle events.

    Register callbacks with :meth:`on` (or :meth:`on_any`) and fire events
    with :meth:`emit`.
    """

    def __init__(self) -> None:
        self._listeners: dict[RunEventType, list[EventCallback]] = defaultdict(list)
        self._any_listeners: list[EventCallback] = []

    @property
    def listeners(self) -> dict[RunEventType, list[EventCallback]]:
        """Typed listeners, keyed by event category."""
        return dict(self._listeners)

    def on(self, event_type: RunEventType, callback: EventCallback) -> None:
        """Subscribe *callback* to one event category.

        Args:
            event_type: The event category to listen for.
            callback: Coroutine function receiving the event.
        """
        self._listeners[event_type].append(callback)

    def on_any(self, callback: EventCallback) -> None:
        """Register a callback for every event type."""
        self._any_listeners.append(callback)

    async def emit(self, event: RunEvent) -> None:
        """Deliver *event* to its typed listeners, then to catch-all ones.

        A listener that raises is logged and skipped; the remaining
        listeners still run and spec results are never affected.

        Args:
            event: The event to emit.
        """
        for callback in [*self._listeners.get(event.type, []), *self._any_listeners]:
            try:
                await callback(event)
            except Exception as exc:
                logger.error(
                    "Event callback error for %s: %s",
                    event.type.value,
                    exc,
                )
