"""Registry of per-tenant processors.

Domain modules own the work done for one tenant; they register it here:

    @register_processor("nap-sync")
    async def sync_location(tenant: TenantHandle, engine) -> dict | None:
        ...

A returned dict of integers is summed into the batch counters.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from tenantcron import settings
from tenantcron.services.tenants import TenantHandle

logger = logging.getLogger(__name__)

ProcessorCallable = Callable[[TenantHandle, Any], Any]
Applicability = Callable[[TenantHandle], bool]


class ProcessorNotRegistered(Exception):
    """Raised when a batch job runs without a registered per-tenant processor."""


@dataclass(frozen=True)
class ProcessorSpec:
    job_name: str
    process: ProcessorCallable
    applies_to: Optional[Applicability] = None


_PROCESSORS: Dict[str, ProcessorSpec] = {}


def register_processor(job_name: str, *, applies_to: Optional[Applicability] = None):
    def decorator(func: ProcessorCallable) -> ProcessorCallable:
        if job_name in _PROCESSORS and _PROCESSORS[job_name].process is not func:
            logger.warning(f"register_processor: replacing processor for {job_name}")
        _PROCESSORS[job_name] = ProcessorSpec(job_name=job_name, process=func, applies_to=applies_to)
        return func

    return decorator


def unregister_processor(job_name: str) -> None:
    _PROCESSORS.pop(job_name, None)


def get_processor(job_name: str) -> ProcessorSpec:
    try:
        return _PROCESSORS[job_name]
    except KeyError:
        raise ProcessorNotRegistered(f"No tenant processor registered for job '{job_name}'") from None


def load_processor_modules(modules: Optional[Iterable[str]] = None) -> List[str]:
    """Import domain modules so their @register_processor decorators run."""
    imported: List[str] = []
    for name in settings.PROCESSOR_MODULES if modules is None else modules:
        try:
            importlib.import_module(name)
        except Exception as e:
            raise RuntimeError(f"Failed to import processor module '{name}'") from e
        imported.append(name)
    if imported:
        logger.info(f"load_processor_modules: imported {imported}")
    return imported
