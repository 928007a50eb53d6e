"""Context variables for log record enrichment.

Values set here are picked up by the formatters for every record emitted in
the same task. Each asyncio task inherits a copy of the context at creation,
so a worker can set its stage once at start-up.
"""

from contextvars import ContextVar
from typing import Dict, Optional

_domain: ContextVar[Optional[str]] = ContextVar("log_domain", default=None)
_stage: ContextVar[Optional[str]] = ContextVar("log_stage", default=None)
_cycle_id: ContextVar[Optional[str]] = ContextVar("log_cycle_id", default=None)
_worker_id: ContextVar[Optional[str]] = ContextVar("log_worker_id", default=None)

_VARS = {
    "domain": _domain,
    "stage": _stage,
    "cycle_id": _cycle_id,
    "worker_id": _worker_id,
}


def set_log_context(
    domain: Optional[str] = None,
    stage: Optional[str] = None,
    cycle_id: Optional[str] = None,
    worker_id: Optional[str] = None,
) -> None:
    """
    Set logging context variables.

    Only non-None arguments are applied; existing values are kept otherwise.
    """
    if domain is not None:
        _domain.set(domain)
    if stage is not None:
        _stage.set(stage)
    if cycle_id is not None:
        _cycle_id.set(cycle_id)
    if worker_id is not None:
        _worker_id.set(worker_id)


def get_log_context() -> Dict[str, Optional[str]]:
    """Get current logging context as a dict."""
    return {name: var.get() for name, var in _VARS.items()}


def clear_log_context() -> None:
    """Reset all logging context variables."""
    for var in _VARS.values():
        var.set(None)
