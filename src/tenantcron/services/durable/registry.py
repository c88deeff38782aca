"""Event bus for durable functions.

Functions declare the event they respond to and their per-step time limit:

    @durable_function("gbp-token-refresh", event="gbp/token.refresh", max_step_seconds=60)
    async def token_refresh(event, step):
        ...

`send_event` creates one durable run per subscribed function and enqueues it on
Celery, which owns retries (see tenantcron.tasks.durable).
"""

from __future__ import annotations

import importlib
import logging
from typing import Any, Dict, List, Optional

from tenantcron import settings
from tenantcron.services.durable.executor import (
    DurableFunction,
    Handler,
    create_run,
    mark_run_failed,
    run_until_settled,
)

logger = logging.getLogger(__name__)

FUNCTION_MODULES = (
    "tenantcron.services.durable.functions.token_refresh",
    "tenantcron.services.durable.functions.places_refresh",
)

_FUNCTIONS: Dict[str, DurableFunction] = {}
_loaded = False


class DurableFunctionNotFound(Exception):
    """Raised when no durable function is registered under the given id."""


class EventDispatchError(Exception):
    """Raised when an event could not be handed to the queue."""


def durable_function(
    function_id: str,
    *,
    event: str,
    max_step_seconds: Optional[float] = 60.0,
    max_attempts: Optional[int] = None,
):
    def decorator(handler: Handler) -> Handler:
        _FUNCTIONS[function_id] = DurableFunction(
            function_id=function_id,
            event_name=event,
            handler=handler,
            max_step_seconds=max_step_seconds,
            max_attempts=max_attempts or settings.DURABLE_MAX_ATTEMPTS,
        )
        return handler

    return decorator


def _ensure_loaded() -> None:
    global _loaded
    if _loaded:
        return
    for name in FUNCTION_MODULES:
        importlib.import_module(name)
    _loaded = True


def get_function(function_id: str) -> DurableFunction:
    _ensure_loaded()
    try:
        return _FUNCTIONS[function_id]
    except KeyError:
        raise DurableFunctionNotFound(f"No durable function '{function_id}'") from None


def functions_for_event(event_name: str) -> List[DurableFunction]:
    _ensure_loaded()
    return [fn for fn in _FUNCTIONS.values() if fn.event_name == event_name]


def send_event(event_name: str, data: Optional[Dict[str, Any]] = None, *, engine=None) -> List[str]:
    """Enqueue one run per subscribed function. Returns the created run ids.

    Raises EventDispatchError if the broker rejects the message; the run that
    could not be enqueued is marked failed so it does not linger as queued.
    """
    from tenantcron.tasks.durable import execute_durable_function  # Local import for Celery

    run_ids: List[str] = []
    for fn in functions_for_event(event_name):
        run_id = create_run(fn.function_id, event_name, data, engine=engine)
        try:
            execute_durable_function.delay(fn.function_id, run_id)
        except Exception as exc:
            mark_run_failed(run_id, f"enqueue failed: {type(exc).__name__}: {exc}", engine=engine)
            raise EventDispatchError(f"failed to enqueue {fn.function_id} for {event_name}: {exc}") from exc
        logger.info(f"send_event: {event_name} -> {fn.function_id} run_id={run_id}")
        run_ids.append(run_id)
    if not run_ids:
        logger.warning(f"send_event: no durable function subscribed to {event_name}")
    return run_ids


async def run_event_inline(
    event_name: str,
    data: Optional[Dict[str, Any]] = None,
    *,
    engine=None,
) -> Dict[str, Dict[str, Any]]:
    """Execute every subscribed function in-process (broker unavailable)."""
    results: Dict[str, Dict[str, Any]] = {}
    for fn in functions_for_event(event_name):
        run_id = create_run(fn.function_id, event_name, data, engine=engine)
        results[fn.function_id] = await run_until_settled(fn, run_id, engine=engine)
    return results
