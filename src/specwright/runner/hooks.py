"""Hook ordering engine.

Computes the before/after-each chains for a spec and tracks the one-time
``before_all`` / ``after_all`` hooks of every context.  All one-time hook
bookkeeping goes through a per-context :class:`asyncio.Lock`, so the same
code is correct whether siblings run one at a time or concurrently.

For a spec under contexts ``[C0 (root) ... Cn]``:

* ``before_all`` of each ``Ci`` runs once, root first, the first time any
  spec of its subtree is about to execute.
* ``before_each`` runs ``C0 ... Cn`` before the body; ``after_each`` runs
  the exact reverse after it.
* ``after_all`` of ``Ci`` runs once, when the last spec of its subtree has
  been finalized, and before ``Ci``'s parent is told that spec finished.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from specwright.runner.callables import invoke, task_is_cancelling
from specwright.runner.errors import HookError, SchedulerError
from specwright.runner.models import (
    ErrorDetail,
    ErrorKind,
    Hook,
    HookKind,
    SpecContext,
)

logger = logging.getLogger(__name__)

# Async callback fired once for every hook failure.
HookFailureCallback = Callable[[HookKind, SpecContext, ErrorDetail], Awaitable[None]]


@dataclass(eq=False)
class ContextState:
    """Mutable one-time-hook state for one context.

    Attributes:
        remaining: Specs of the subtree not yet finalized.
        lock: Guards every field below.
        entered: ``before_all`` has been started.
        before_all_error: Failure recorded by ``before_all``, if any.
        after_all_error: Failure recorded by ``after_all``, if any.
        finished: ``after_all`` has run (or was not needed).
    """

    remaining: int
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    entered: bool = False
    before_all_error: ErrorDetail | None = None
    after_all_error: ErrorDetail | None = None
    finished: bool = False


def before_each_chain(context: SpecContext) -> list[tuple[SpecContext, Hook]]:
    """Return ``before_each`` hooks root to leaf, each list in declared order."""
    return [(node, hook) for node in context.chain() for hook in node.before_each]


def after_each_chain(context: SpecContext) -> list[tuple[SpecContext, Hook]]:
    """Return ``after_each`` hooks: the mirror image of the before chain."""
    pairs = [(node, hook) for node in context.chain() for hook in node.after_each]
    pairs.reverse()
    return pairs


class HookCoordinator:
    """Runs lifecycle hooks for specs of one tree, during one run.

    Args:
        root: The (frozen) tree being executed.
        hook_lock: When given, every before/after-each chain runs while
            holding it, so chains of concurrent siblings never interleave.
        on_failure: Called once per failing hook invocation.
    """

    def __init__(
        self,
        root: SpecContext,
        hook_lock: asyncio.Lock | None = None,
        on_failure: HookFailureCallback | None = None,
    ) -> None:
        self._states: dict[SpecContext, ContextState] = {
            node: ContextState(remaining=node.spec_count())
            for node in root.iter_contexts()
        }
        self._hook_lock = hook_lock
        self._on_failure = on_failure

    def state(self, context: SpecContext) -> ContextState:
        return self._states[context]

    @property
    def after_all_failures(self) -> dict[SpecContext, ErrorDetail]:
        """Contexts whose ``after_all`` failed, with the recorded error."""
        return {
            node: state.after_all_error
            for node, state in self._states.items()
            if state.after_all_error is not None
        }

    async def enter(self, context: SpecContext) -> ErrorDetail | None:
        """Run any pending ``before_all`` hooks from the root down to *context*.

        The first caller for a context runs its hooks; concurrent callers
        wait on the context's lock and then observe the outcome.

        Returns:
            The ``before_all`` failure of the nearest failing ancestor (or
            *context* itself), or ``None`` if the spec may run.
        """
        for node in context.chain():
            state = self._states[node]
            async with state.lock:
                if not state.entered:
                    state.entered = True
                    if node.before_all:
                        logger.debug("Running before_all for '%s'", node.description)
                    state.before_all_error = await self._run_hooks(
                        HookKind.BEFORE_ALL,
                        [(node, hook) for hook in node.before_all],
                        stop_on_error=True,
                    )
                if state.before_all_error is not None:
                    return state.before_all_error
        return None

    async def run_before_each(self, context: SpecContext) -> ErrorDetail | None:
        """Run the ``before_each`` chain; stops at the first failing hook."""
        return await self._run_chain(
            HookKind.BEFORE_EACH, before_each_chain(context), stop_on_error=True
        )

    async def run_after_each(self, context: SpecContext) -> ErrorDetail | None:
        """Run the ``after_each`` chain; every hook is attempted."""
        return await self._run_chain(
            HookKind.AFTER_EACH, after_each_chain(context), stop_on_error=False
        )

    async def finish(self, context: SpecContext) -> None:
        """Record that one spec directly in *context* has been finalized.

        Walks from *context* up to the root decrementing each remaining
        counter.  A counter reaching zero on an entered context runs its
        ``after_all`` hooks before the parent is decremented, which keeps
        ``after_all`` leaf-to-root.  ``after_all`` runs even if the
        context's ``before_all`` failed; its own failure is recorded but
        does not replace the ``before_all`` one.
        """
        for node in reversed(context.chain()):
            state = self._states[node]
            async with state.lock:
                state.remaining -= 1
                if state.remaining < 0:
                    raise SchedulerError(
                        f"Context '{node.description}' finalized more specs "
                        f"than it contains"
                    )
                if state.remaining > 0 or state.finished:
                    continue
                state.finished = True
                if not state.entered:
                    continue
                after_all = [(node, hook) for hook in node.after_all]
                after_all.reverse()
                if after_all:
                    logger.debug("Running after_all for '%s'", node.description)
                error = await self._run_hooks(
                    HookKind.AFTER_ALL, after_all, stop_on_error=False
                )
                if error is not None and state.before_all_error is not None:
                    logger.warning(
                        "after_all for '%s' failed after a before_all failure: %s",
                        node.description,
                        error.message,
                    )
                elif error is not None:
                    state.after_all_error = error

    async def _run_chain(
        self,
        kind: HookKind,
        pairs: list[tuple[SpecContext, Hook]],
        stop_on_error: bool,
    ) -> ErrorDetail | None:
        if not pairs:
            return None
        if self._hook_lock is None:
            return await self._run_hooks(kind, pairs, stop_on_error)
        async with self._hook_lock:
            return await self._run_hooks(kind, pairs, stop_on_error)

    async def _run_hooks(
        self,
        kind: HookKind,
        pairs: list[tuple[SpecContext, Hook]],
        stop_on_error: bool,
    ) -> ErrorDetail | None:
        first_error: ErrorDetail | None = None
        for node, hook in pairs:
            try:
                await invoke(hook)
            except (Exception, asyncio.CancelledError) as exc:
                if isinstance(exc, asyncio.CancelledError) and task_is_cancelling():
                    raise
                error = ErrorDetail.from_exception(
                    HookError(kind.value, node.description, exc), ErrorKind.HOOK
                )
                logger.error("%s", error.message)
                if self._on_failure is not None:
                    await self._on_failure(kind, node, error)
                if first_error is None:
                    first_error = error
                else:
                    logger.warning(
                        "Additional %s failure ignored: %s", kind.value, error.message
                    )
                if stop_on_error:
                    break
        return first_error
