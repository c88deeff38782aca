"""Run coroutines from sync entry points (Celery tasks, CLI scripts).

Celery prefork workers and the CLI have no running loop, but a task can be
invoked eagerly from inside one (tests, `task.apply()` under an ASGI app), so
the runner falls back to a private thread with its own loop.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound for one coroutine run in the fallback thread.
THREAD_RESULT_TIMEOUT_SECONDS = 3600


def _run_in_thread(coro: Coroutine[Any, Any, T]) -> T:
    """Run coroutine in a new thread with a fresh event loop."""

    def _run() -> T:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()
            asyncio.set_event_loop(None)

    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(_run)
        return future.result(timeout=THREAD_RESULT_TIMEOUT_SECONDS)


def run_async_safe(
    coro: Coroutine[Any, Any, T],
    context_info: Optional[dict[str, Any]] = None,
    force_thread: bool = False,
) -> T:
    """Run `coro` to completion from sync code and return its result.

    Uses asyncio.run() when no loop is running in this thread, otherwise (or
    when force_thread=True) a dedicated thread with a new loop. Exceptions
    raised by the coroutine propagate unchanged.
    """
    context_info = context_info or {}

    if force_thread:
        logger.debug(f"run_async_safe: force_thread=True (context: {context_info})")
        return _run_in_thread(coro)

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        logger.debug(f"run_async_safe: no running loop, using asyncio.run() (context: {context_info})")
        return asyncio.run(coro)

    logger.info(f"run_async_safe: running loop detected, using thread pool (context: {context_info})")
    return _run_in_thread(coro)
