"""Per-task execution context carrying the active tenant.

The binding lives in a ContextVar so that concurrent jobs and requests each
see their own tenant. It is only ever set through ``tenant_context()``,
which restores the previous binding on exit.
"""

import contextvars
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

_execution_ctx: contextvars.ContextVar[Optional[Dict[str, Any]]] = contextvars.ContextVar(
    "schedule_engine_execution_ctx", default=None
)


@contextmanager
def tenant_context(tenant_id: Optional[str] = None, **values: Any) -> Iterator[Dict[str, Any]]:
    """Run the enclosed block with ``tenant_id`` (and extra values) bound.

    A ``None`` tenant means the platform-level database.
    """
    ctx: Dict[str, Any] = dict(values)
    if tenant_id:
        ctx["tenantId"] = tenant_id
    token = _execution_ctx.set(ctx)
    try:
        yield ctx
    finally:
        _execution_ctx.reset(token)


def get_context(key: str, default: Any = None) -> Any:
    """Read a value from the bound execution context."""
    ctx = _execution_ctx.get()
    if ctx is None:
        return default
    return ctx.get(key, default)


def current_tenant_id() -> Optional[str]:
    return get_context("tenantId")
