"""Uniform invocation of sync and async user callables."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any

from specwright.runner.models import Hook


async def invoke(fn: Hook) -> Any:
    """Call *fn* and wait for it, whether it is sync or async.

    Coroutine functions are awaited on the loop.  Plain callables run in a
    worker thread so a blocking body can still be raced by a timeout and
    can overlap with its siblings in parallel mode; if such a callable
    returns an awaitable, that is awaited too.
    """
    if inspect.iscoroutinefunction(fn):
        return await fn()
    result = await asyncio.to_thread(fn)
    if inspect.isawaitable(result):
        result = await result
    return result


def task_is_cancelling() -> bool:
    """Whether the running task itself has a pending cancellation request.

    A ``CancelledError`` raised while this is false came from user code,
    for instance a body awaiting a task someone else cancelled, and counts
    as an ordinary failure.
    """
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0
