"""Guarded asyncio background tasks."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Raised inside a guarded task to stop it without exiting the process."""

    pass


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Done callback that raises SystemExit if the task failed."""
    if task.cancelled():
        return
    exception = task.exception()
    if exception is not None and not isinstance(exception, SafeTaskExitError):
        logger.error(
            f'Background task {task.get_name()!r} failed: {exception!r}',
        )
        raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[None]:
    """Run a coroutine function as a background task that cannot fail silently.

    A traceback is logged for any exception raised by the coroutine and
    [`exit_on_error()`][roomrelay.utils.tasks.exit_on_error] is attached as
    the done callback, so an unexpected failure stops the process instead
    of leaving the server running without its maintenance tasks.

    Args:
        coro: Coroutine function to run.
        args: Positional arguments for the coroutine.
        name: Optional name of the task.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """

    async def _guarded() -> None:
        try:
            await coro(*args, **kwargs)
        except Exception:
            logger.error(traceback.format_exc())
            raise

    task = asyncio.create_task(_guarded(), name=name)
    task.add_done_callback(exit_on_error)
    return task


def spawn_periodic_task(
    callback: Callable[[], Any],
    interval: float,
    name: str | None = None,
) -> asyncio.Task[None]:
    """Invoke a synchronous callback every `interval` seconds.

    The callback runs on the event loop so it must not block. The first
    invocation happens after one interval. The task runs until cancelled.

    Args:
        callback: Zero argument callable to invoke.
        interval: Seconds between invocations.
        name: Optional name of the task.

    Returns:
        Asyncio task handle guarded by
        [`spawn_guarded_background_task()`][roomrelay.utils.tasks.spawn_guarded_background_task].
    """

    async def _loop() -> None:
        while True:
            await asyncio.sleep(interval)
            callback()

    return spawn_guarded_background_task(_loop, name=name)
