"""Action registry: maps action names to the handlers that jobs invoke.

Business modules register their handlers here; the engine only resolves
and calls them by name.
"""

import asyncio
import functools
import importlib
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from schedule_engine.core.exceptions import ActionNotFoundError

logger = logging.getLogger("schedule_engine.actions")

# handler(data, entity_id, user_id)
HandlerFn = Callable[[Dict[str, Any], Optional[str], Optional[str]], Any]


@dataclass
class ActionHandler:
    name: str
    handler: HandlerFn
    description: str = ""
    # None runs the handler without a time budget
    timeout_seconds: Optional[float] = None


class ActionRegistry:
    """In-process name -> handler lookup."""

    def __init__(self):
        self._actions: Dict[str, ActionHandler] = {}

    def register(
        self,
        name: str,
        handler: HandlerFn,
        description: str = "",
        timeout_seconds: Optional[float] = None,
    ) -> ActionHandler:
        entry = ActionHandler(
            name=name, handler=handler, description=description, timeout_seconds=timeout_seconds,
        )
        self._actions[name] = entry
        logger.info("📝 Registered action: %s", name)
        return entry

    def action(
        self, name: str, description: str = "", timeout_seconds: Optional[float] = None,
    ) -> Callable[[HandlerFn], HandlerFn]:
        """Decorator form of ``register``."""
        def decorator(fn: HandlerFn) -> HandlerFn:
            self.register(name, fn, description, timeout_seconds)
            return fn
        return decorator

    def unregister(self, name: str) -> bool:
        removed = self._actions.pop(name, None) is not None
        if removed:
            logger.info("🗑️ Unregistered action: %s", name)
        return removed

    def resolve(self, name: Optional[str]) -> Optional[ActionHandler]:
        if not name:
            return None
        return self._actions.get(name)

    def get_or_raise(self, name: Optional[str]) -> ActionHandler:
        entry = self.resolve(name)
        if entry is None:
            raise ActionNotFoundError(f"Action '{name}' not found in registry")
        return entry

    def names(self) -> List[str]:
        return sorted(self._actions)


action_registry = ActionRegistry()


def load_action_modules(modules: Iterable[str]) -> None:
    """Import modules whose import side effect registers actions."""
    for module in modules:
        importlib.import_module(module)
        logger.info("Loaded action module %s", module)


def _record_outcome(schedule_id: str, success: bool, error: Optional[str] = None) -> None:
    from schedule_engine.db.session import tenant_session
    from schedule_engine.services.schedule_service import schedule_service

    with tenant_session() as db:
        schedule_service.track_execution(db, schedule_id, success, error)
        schedule_service.execute_and_update_next(db, schedule_id)


def tracked_action(fn: HandlerFn) -> HandlerFn:
    """Wrap a handler so each run is recorded on its originating schedule.

    Records the outcome with ``track_execution`` and advances the schedule
    with ``execute_and_update_next``. Errors are re-raised so the queue can
    retry. Jobs without a ``scheduleId`` run untracked. Coroutine handlers
    get a coroutine wrapper, so their failures are recorded once awaited.
    """
    if inspect.iscoroutinefunction(fn):
        @functools.wraps(fn)
        async def async_wrapper(
            data: Dict[str, Any], entity_id: Optional[str] = None, user_id: Optional[str] = None,
        ) -> Any:
            schedule_id = (data or {}).get("scheduleId")
            if not schedule_id:
                return await fn(data, entity_id, user_id)
            try:
                result = await fn(data, entity_id, user_id)
            except asyncio.CancelledError:
                _record_outcome(schedule_id, False, "Action cancelled before completion")
                raise
            except Exception as e:
                _record_outcome(schedule_id, False, str(e))
                raise
            _record_outcome(schedule_id, True)
            return result

        return async_wrapper

    @functools.wraps(fn)
    def wrapper(data: Dict[str, Any], entity_id: Optional[str] = None, user_id: Optional[str] = None) -> Any:
        schedule_id = (data or {}).get("scheduleId")
        if not schedule_id:
            return fn(data, entity_id, user_id)

        try:
            result = fn(data, entity_id, user_id)
        except Exception as e:
            _record_outcome(schedule_id, False, str(e))
            raise
        _record_outcome(schedule_id, True)
        return result

    return wrapper
