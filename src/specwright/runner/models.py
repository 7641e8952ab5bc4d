"""Spec tree and result data models.

Defines the context/spec tree handed to the runner, the per-invocation
:class:`ExecutionContext`, and the :class:`SpecResult` produced for every
spec in the tree.
"""

from __future__ import annotations

import enum
import threading
import traceback
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

from specwright.runner.errors import HookError, SpecCancelledError, TreeFrozenError

# A hook or spec body: zero-argument, sync or async.
Hook = Callable[[], Any]


class SpecStatus(str, enum.Enum):
    """Final outcome of a spec."""

    PASSED = "passed"
    FAILED = "failed"
    PENDING = "pending"
    SKIPPED = "skipped"


class SkipReason(str, enum.Enum):
    """Why a spec was reported as skipped."""

    SKIPPED = "skipped"
    NOT_FOCUSED = "not_focused"
    FILTERED = "filtered"
    BAILED = "bailed"
    CANCELLED = "cancelled"


class ErrorKind(str, enum.Enum):
    """Classification of a failed spec's error."""

    ASSERTION = "assertion"
    EXCEPTION = "exception"
    TIMEOUT = "timeout"
    HOOK = "hook"


class HookKind(str, enum.Enum):
    """The four hook lists of a context; values are attribute names."""

    BEFORE_ALL = "before_all"
    AFTER_ALL = "after_all"
    BEFORE_EACH = "before_each"
    AFTER_EACH = "after_each"


_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float:
    """Parse a duration string like '250ms', '2s', '1m' into seconds.

    A bare number is taken as seconds.
    """
    value = value.strip()
    for suffix, multiplier in sorted(
        _DURATION_UNITS.items(), key=lambda x: -len(x[0])
    ):
        if value.endswith(suffix):
            return float(value[: -len(suffix)]) * multiplier
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid duration: {value!r}") from None


# ---------------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class SpecDefinition:
    """A single spec (``it`` block).

    Equality and hashing are by identity: two specs with the same
    description are still distinct nodes.

    Attributes:
        description: Human-readable name of the behaviour under test.
        body: Callable run as the spec; ``None`` marks the spec pending.
        tags: Tags declared on this spec only.
        focused: Declared with ``fit``.
        skipped: Declared with ``xit``.
        context: Owning context, set by :meth:`SpecContext.add_spec`.
    """

    description: str
    body: Hook | None = None
    tags: frozenset[str] = frozenset()
    focused: bool = False
    skipped: bool = False
    context: SpecContext | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.tags = frozenset(self.tags)

    @property
    def is_pending(self) -> bool:
        return self.body is None

    @property
    def all_tags(self) -> frozenset[str]:
        """Own tags plus every tag inherited from enclosing contexts."""
        if self.context is None:
            return self.tags
        return self.tags | self.context.all_tags

    @property
    def context_path(self) -> tuple[str, ...]:
        if self.context is None:
            return ()
        return self.context.context_path

    @property
    def full_description(self) -> str:
        return " ".join((*self.context_path, self.description))


@dataclass(eq=False)
class SpecContext:
    """A ``describe`` / ``context`` group.

    Children and specs keep declaration order.  Once :meth:`freeze` has
    been called (the runner does this before executing) the node and its
    subtree reject any further additions.

    Attributes:
        description: Group name; empty for an anonymous root.
        tags: Tags inherited by every descendant spec.
        focused: Declared with ``fdescribe``; every spec inside runs.
        skipped: Declared with ``xdescribe``; every spec inside is skipped.
        parent: Enclosing context (non-owning back-reference).
        children: Nested contexts in declaration order.
        specs: Own specs in declaration order.
        before_all: Hooks run once before the first spec of the subtree.
        after_all: Hooks run once after the last spec of the subtree.
        before_each: Hooks run before every spec of the subtree.
        after_each: Hooks run after every spec of the subtree.
        subtree_has_focus: Set by the runner's scan; ``True`` when a
            focused spec or context exists in this subtree.
    """

    description: str = ""
    tags: frozenset[str] = frozenset()
    focused: bool = False
    skipped: bool = False
    parent: SpecContext | None = field(default=None, repr=False)
    children: list[SpecContext] = field(default_factory=list, repr=False)
    specs: list[SpecDefinition] = field(default_factory=list, repr=False)
    before_all: list[Hook] = field(default_factory=list, repr=False)
    after_all: list[Hook] = field(default_factory=list, repr=False)
    before_each: list[Hook] = field(default_factory=list, repr=False)
    after_each: list[Hook] = field(default_factory=list, repr=False)
    subtree_has_focus: bool = field(default=False, init=False)
    _frozen: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self.tags = frozenset(self.tags)
        if self.parent is not None and not any(
            c is self for c in self.parent.children
        ):
            self.parent.add_child(self)

    # -- building ----------------------------------------------------------

    def add_child(self, child: SpecContext) -> SpecContext:
        """Append *child* as the last nested context and return it."""
        self._check_mutable()
        child.parent = self
        self.children.append(child)
        return child

    def add_spec(self, spec: SpecDefinition) -> SpecDefinition:
        """Append *spec* as the last spec of this context and return it."""
        self._check_mutable()
        spec.context = self
        self.specs.append(spec)
        return spec

    def add_hook(self, kind: HookKind, hook: Hook) -> Hook:
        """Append *hook* to the hook list named by *kind*."""
        self._check_mutable()
        getattr(self, kind.value).append(hook)
        return hook

    def hooks(self, kind: HookKind) -> list[Hook]:
        return getattr(self, kind.value)

    def freeze(self) -> None:
        """Make this subtree read-only."""
        self._frozen = True
        for child in self.children:
            child.freeze()

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self) -> None:
        if self._frozen:
            raise TreeFrozenError(
                f"Context '{self.description}' is frozen; the tree cannot "
                f"change once handed to the runner"
            )

    # -- navigation --------------------------------------------------------

    def chain(self) -> list[SpecContext]:
        """Return the contexts from the root down to this one."""
        nodes: list[SpecContext] = []
        node: SpecContext | None = self
        while node is not None:
            nodes.append(node)
            node = node.parent
        nodes.reverse()
        return nodes

    @property
    def context_path(self) -> tuple[str, ...]:
        """Non-empty descriptions from the root down to this context."""
        return tuple(c.description for c in self.chain() if c.description)

    @property
    def all_tags(self) -> frozenset[str]:
        tags: frozenset[str] = frozenset()
        for node in self.chain():
            tags |= node.tags
        return tags

    def iter_specs(self) -> Iterator[SpecDefinition]:
        """Yield every spec in the subtree in execution order.

        A context's own specs come before those of its children.
        """
        yield from self.specs
        for child in self.children:
            yield from child.iter_specs()

    def iter_contexts(self) -> Iterator[SpecContext]:
        """Yield this context and every descendant, pre-order."""
        yield self
        for child in self.children:
            yield from child.iter_contexts()

    def spec_count(self) -> int:
        return sum(1 for _ in self.iter_specs())

    def scan_focus(self) -> bool:
        """Compute :attr:`subtree_has_focus` bottom-up and return it."""
        has_focus = self.focused or any(s.focused for s in self.specs)
        for child in self.children:
            # Every child must be scanned, so no short-circuit here.
            if child.scan_focus():
                has_focus = True
        self.subtree_has_focus = has_focus
        return has_focus


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorDetail:
    """Everything a formatter needs to render a failure.

    Attributes:
        message: The error message.
        kind: Failure classification.
        exception_type: Class name of the raised exception.
        stack: Formatted traceback, when one was captured.
    """

    message: str
    kind: ErrorKind = ErrorKind.EXCEPTION
    exception_type: str = ""
    stack: str | None = None

    @classmethod
    def from_exception(
        cls, exc: BaseException, kind: ErrorKind | None = None
    ) -> ErrorDetail:
        if kind is None:
            if isinstance(exc, HookError):
                kind = ErrorKind.HOOK
            elif isinstance(exc, AssertionError):
                kind = ErrorKind.ASSERTION
            else:
                kind = ErrorKind.EXCEPTION
        stack = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
        return cls(
            message=str(exc) or type(exc).__name__,
            kind=kind,
            exception_type=type(exc).__name__,
            stack=stack,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "exceptionType": self.exception_type,
            "stack": self.stack,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorDetail:
        return cls(
            message=data["message"],
            kind=ErrorKind(data.get("kind", ErrorKind.EXCEPTION.value)),
            exception_type=data.get("exceptionType", ""),
            stack=data.get("stack"),
        )


@dataclass(frozen=True)
class RetryInfo:
    """Attempt bookkeeping attached by :class:`RetryMiddleware`."""

    attempts: int
    max_retries: int


@dataclass(frozen=True)
class SpecResult:
    """Outcome of one spec.

    Attributes:
        spec: The spec node this result belongs to.
        context_path: Enclosing context descriptions, root first.
        status: Final status.
        duration_ms: Wall-clock time of the body (all attempts).
        error: Failure detail; set only for failed specs.
        reason: Why the spec was skipped; set only for skipped specs.
        retry_info: Attempt counts when a retry policy was active.
    """

    spec: SpecDefinition
    context_path: tuple[str, ...]
    status: SpecStatus
    duration_ms: float = 0.0
    error: ErrorDetail | None = None
    reason: SkipReason | None = None
    retry_info: RetryInfo | None = None

    @property
    def description(self) -> str:
        return self.spec.description

    @property
    def full_description(self) -> str:
        return " ".join((*self.context_path, self.spec.description))

    @classmethod
    def passed(cls, ctx: ExecutionContext, duration_ms: float) -> SpecResult:
        return cls(ctx.spec, ctx.context_path, SpecStatus.PASSED, duration_ms)

    @classmethod
    def failed(
        cls,
        ctx: ExecutionContext,
        error: ErrorDetail,
        duration_ms: float = 0.0,
    ) -> SpecResult:
        return cls(
            ctx.spec, ctx.context_path, SpecStatus.FAILED, duration_ms, error=error
        )

    @classmethod
    def skipped(
        cls, spec: SpecDefinition, reason: SkipReason = SkipReason.SKIPPED
    ) -> SpecResult:
        return cls(spec, spec.context_path, SpecStatus.SKIPPED, reason=reason)

    @classmethod
    def pending(cls, spec: SpecDefinition) -> SpecResult:
        return cls(spec, spec.context_path, SpecStatus.PENDING)


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------


class CancellationToken:
    """Cooperative, thread-safe cancellation signal.

    A child token reports cancelled when it or any ancestor is cancelled;
    cancelling a child never affects its parent.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise SpecCancelledError("Spec execution was cancelled")


_current_execution: ContextVar[ExecutionContext | None] = ContextVar(
    "specwright_current_execution", default=None
)
_attempt_token: ContextVar[CancellationToken | None] = ContextVar(
    "specwright_attempt_token", default=None
)


def current_execution() -> ExecutionContext | None:
    """Return the :class:`ExecutionContext` of the spec running in this task.

    Spec bodies are zero-argument callables; this is how they reach the
    state bag and the cancellation signal.  Returns ``None`` outside a run.
    """
    return _current_execution.get()


@contextmanager
def execution_scope(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    """Publish *ctx* as the current execution for the enclosed block."""
    reset_token = _current_execution.set(ctx)
    try:
        yield ctx
    finally:
        _current_execution.reset(reset_token)


def bind_attempt_token(token: CancellationToken) -> None:
    """Scope *token* to the current task as the attempt's cancellation signal."""
    _attempt_token.set(token)


@dataclass(eq=False)
class ExecutionContext:
    """Per-spec state threaded through the middleware chain.

    Created right before a spec enters the pipeline and discarded once its
    result is final; never shared between specs.

    Data is stored privately in ``_state``.  Use :meth:`get`, :meth:`set`,
    :meth:`has` and :meth:`delete` to interact with it.
    """

    spec: SpecDefinition
    context_path: tuple[str, ...]
    token: CancellationToken = field(default_factory=CancellationToken)
    attempt: int = 1
    _state: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_spec(
        cls, spec: SpecDefinition, parent_token: CancellationToken | None = None
    ) -> ExecutionContext:
        token = parent_token.child() if parent_token else CancellationToken()
        return cls(spec=spec, context_path=spec.context_path, token=token)

    def get(self, key: str, default: Any = None) -> Any:
        return self._state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._state[key] = value

    def has(self, key: str) -> bool:
        return key in self._state

    def delete(self, key: str) -> None:
        self._state.pop(key, None)

    def keys(self) -> Iterable[str]:
        return list(self._state)

    @property
    def cancellation(self) -> CancellationToken:
        """The signal for the attempt running in the calling task.

        Inside a timeout-bounded attempt this is the attempt's own child
        token, so an abandoned attempt stays cancelled even after a retry
        starts a fresh one.
        """
        token = _attempt_token.get()
        return token if token is not None else self.token

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation.is_cancelled

    def cancel(self) -> None:
        """Cancel this spec (every attempt, current and future)."""
        self.token.cancel()


@dataclass
class RetryPolicy:
    """How often, and how patiently, a failing spec body is re-run.

    Delays grow as ``base_delay_seconds * multiplier ** n`` for the n-th
    retry (zero-based), capped at ``max_delay_seconds``.

    Raises:
        ValueError: If any constraint is violated (negative retries or
            delay, non-positive multiplier, or max below base delay).
    """

    max_retries: int = 0
    base_delay_seconds: float = 0.0
    multiplier: float = 1.0
    max_delay_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_seconds < 0:
            raise ValueError(
                f"base_delay_seconds must be >= 0, got {self.base_delay_seconds}"
            )
        if self.multiplier <= 0:
            raise ValueError(f"multiplier must be > 0, got {self.multiplier}")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError(
                f"max_delay_seconds ({self.max_delay_seconds}) must be "
                f">= base_delay_seconds ({self.base_delay_seconds})"
            )

    def delay_for_attempt(self, attempt: int) -> float:
        """Return the pause before retry number *attempt* (zero-based)."""
        delay = self.base_delay_seconds * (self.multiplier**attempt)
        return min(delay, self.max_delay_seconds)
