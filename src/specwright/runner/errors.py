"""Error hierarchy for the spec runner.

User code failures (a raising hook or body) never surface as exceptions
from the runner; they are captured on the :class:`SpecResult`.  The
exceptions below are raised for misuse of the engine itself, or raised
*into* user code (timeouts, cooperative cancellation).
"""

from __future__ import annotations


class SpecwrightError(Exception):
    """Base exception for all specwright errors."""


class TreeFrozenError(SpecwrightError):
    """Raised when a frozen context tree is mutated."""


class BuilderError(SpecwrightError):
    """Raised for invalid use of the :class:`SpecBuilder` DSL."""


class SchedulerError(SpecwrightError):
    """Raised when the runner is driven outside its state machine."""


class ReportError(SpecwrightError):
    """Raised when results cannot be joined back onto the tree."""


class ConfigError(SpecwrightError):
    """Raised for invalid runner configuration values."""


class SpecTimeoutError(SpecwrightError):
    """A spec attempt exceeded its timeout.

    Attributes:
        timeout: The bound that was exceeded, in seconds.
    """

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Spec timed out after {timeout * 1000:.0f}ms")
        self.timeout = timeout


class SpecCancelledError(SpecwrightError):
    """Raised by :meth:`CancellationToken.raise_if_cancelled`."""


class HookError(SpecwrightError):
    """A lifecycle hook raised.

    Attributes:
        phase: Hook list name (``before_all``, ``after_each``, ...).
        context: Description of the context that owns the hook.
    """

    def __init__(self, phase: str, context: str, cause: BaseException) -> None:
        where = f" in '{context}'" if context else ""
        super().__init__(f"{phase} hook failed{where}: {cause}")
        self.phase = phase
        self.context = context
        self.__cause__ = cause
