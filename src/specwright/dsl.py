"""Builder DSL for declaring spec trees in plain Python.

Usage::

    spec = SpecBuilder("Calculator")

    with spec.describe("add", tags=["math"]):

        @spec.before_each
        def reset():
            calc.clear()

        spec.it("adds two numbers", lambda: calc.add(1, 2) == 3)
        spec.xit("handles overflow", check_overflow)
        spec.it("supports complex numbers")  # pending

    root = spec.build()
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from specwright.runner.errors import BuilderError
from specwright.runner.models import (
    Hook,
    HookKind,
    SpecContext,
    SpecDefinition,
)


class SpecBuilder:
    """Incrementally builds a :class:`SpecContext` tree.

    ``describe`` blocks nest through a ``with`` statement; ``it`` and the
    hook registrars always target the innermost open block.

    Args:
        description: Description of the root context; may be empty.
        tags: Tags inherited by every spec of the tree.
    """

    def __init__(self, description: str = "", tags: Iterable[str] = ()) -> None:
        self._root = SpecContext(description=description, tags=frozenset(tags))
        self._stack: list[SpecContext] = [self._root]

    @property
    def root(self) -> SpecContext:
        return self._root

    @property
    def current(self) -> SpecContext:
        """The innermost open context."""
        return self._stack[-1]

    # -- contexts ----------------------------------------------------------

    @contextmanager
    def describe(
        self,
        description: str,
        *,
        tags: Iterable[str] = (),
        focused: bool = False,
        skipped: bool = False,
    ) -> Iterator[SpecContext]:
        """Open a nested context for the duration of the ``with`` block."""
        if not description or not description.strip():
            raise BuilderError("describe() requires a non-empty description")
        if focused and skipped:
            raise BuilderError(
                f"Context '{description}' cannot be both focused and skipped"
            )
        child = self.current.add_child(
            SpecContext(
                description=description,
                tags=frozenset(tags),
                focused=focused,
                skipped=skipped,
            )
        )
        self._stack.append(child)
        try:
            yield child
        finally:
            self._stack.pop()

    context = describe

    def fdescribe(self, description: str, *, tags: Iterable[str] = ()):
        """Focused ``describe``: while any focus exists, only focused specs run."""
        return self.describe(description, tags=tags, focused=True)

    def xdescribe(self, description: str, *, tags: Iterable[str] = ()):
        """Skipped ``describe``: every spec inside is reported skipped."""
        return self.describe(description, tags=tags, skipped=True)

    # -- specs -------------------------------------------------------------

    def it(
        self,
        description: str,
        body: Hook | None = None,
        *,
        tags: Iterable[str] = (),
        focused: bool = False,
        skipped: bool = False,
    ) -> SpecDefinition:
        """Declare a spec in the current context.

        A spec without *body* is pending.
        """
        if not description or not description.strip():
            raise BuilderError("it() requires a non-empty description")
        if body is not None and not callable(body):
            raise BuilderError(f"Body of spec '{description}' is not callable")
        if focused and skipped:
            raise BuilderError(
                f"Spec '{description}' cannot be both focused and skipped"
            )
        return self.current.add_spec(
            SpecDefinition(
                description=description,
                body=body,
                tags=frozenset(tags),
                focused=focused,
                skipped=skipped,
            )
        )

    def fit(
        self, description: str, body: Hook | None = None, *, tags: Iterable[str] = ()
    ) -> SpecDefinition:
        return self.it(description, body, tags=tags, focused=True)

    def xit(
        self, description: str, body: Hook | None = None, *, tags: Iterable[str] = ()
    ) -> SpecDefinition:
        return self.it(description, body, tags=tags, skipped=True)

    # -- hooks -------------------------------------------------------------

    def _hook(self, kind: HookKind, fn: Hook) -> Hook:
        if not callable(fn):
            raise BuilderError(f"{kind.value} hook must be callable")
        return self.current.add_hook(kind, fn)

    def before_all(self, fn: Hook) -> Hook:
        """Register *fn* to run once before the context's first spec.

        Returns *fn*, so this works as a decorator.
        """
        return self._hook(HookKind.BEFORE_ALL, fn)

    def after_all(self, fn: Hook) -> Hook:
        return self._hook(HookKind.AFTER_ALL, fn)

    def before_each(self, fn: Hook) -> Hook:
        return self._hook(HookKind.BEFORE_EACH, fn)

    def after_each(self, fn: Hook) -> Hook:
        return self._hook(HookKind.AFTER_EACH, fn)

    # -- result ------------------------------------------------------------

    def build(self) -> SpecContext:
        """Return the root of the declared tree.

        Raises:
            BuilderError: If called inside an open ``describe`` block.
        """
        if len(self._stack) > 1:
            raise BuilderError(
                f"build() called inside open context '{self.current.description}'"
            )
        return self._root
