"""Job dispatcher: runs queue jobs against their registered action handlers."""

import asyncio
import contextvars
import inspect
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Dict, Optional

from schedule_engine.core.context import tenant_context
from schedule_engine.core.exceptions import ActionNotFoundError, ActionTimeoutError
from schedule_engine.services.action_registry import ActionHandler, ActionRegistry, action_registry
from schedule_engine.services.queue import ScheduleQueue, schedule_queue

logger = logging.getLogger("schedule_engine.dispatcher")

# runs sync handlers that have a time budget
_handler_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="action")


async def _await(awaitable: Any, timeout: Optional[float] = None) -> Any:
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout)


class JobDispatcher:
    """Resolves a job's action and invokes it inside the job's tenant context."""

    def __init__(self, registry: Optional[ActionRegistry] = None):
        self.registry = registry or action_registry

    def dispatch(self, job_name: str, payload: Dict[str, Any]) -> Any:
        """Run one job payload. Handler errors propagate to the caller.

        Returns None without running anything when the action is unknown.
        Raises ``ActionTimeoutError`` when the handler outlives its
        ``timeout_seconds``.
        """
        data = dict(payload or {})
        action = data.pop("action", None) or job_name
        tenant_id = data.pop("tenantId", None)

        try:
            entry = self.registry.get_or_raise(action)
        except ActionNotFoundError:
            logger.warning("No handler registered for action '%s', dropping job", action)
            return None

        entity_id = data.get("entityId")
        user_id = data.get("userId")
        with tenant_context(tenant_id):
            logger.info(
                "🔄 Executing action: %s (Entity: %s, Tenant: %s)",
                action, entity_id, tenant_id or "platform",
            )
            started = time.perf_counter()
            try:
                result = self._invoke(entry, {**data, "tenantId": tenant_id}, entity_id, user_id)
            except Exception as e:
                elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
                logger.error("❌ Action %s failed after %sms: %s", action, elapsed_ms, e)
                raise
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.info("✅ Action %s finished in %sms", action, elapsed_ms)
        return result

    def _invoke(self, entry: ActionHandler, data: Dict[str, Any], entity_id, user_id) -> Any:
        timeout = entry.timeout_seconds
        if timeout is None or inspect.iscoroutinefunction(entry.handler):
            result = entry.handler(data, entity_id, user_id)
        else:
            ctx = contextvars.copy_context()
            future = _handler_pool.submit(ctx.run, entry.handler, data, entity_id, user_id)
            try:
                result = future.result(timeout=timeout)
            except FutureTimeoutError:
                future.cancel()
                raise ActionTimeoutError(
                    f"Action '{entry.name}' timed out after {timeout}s", action=entry.name,
                ) from None

        if inspect.isawaitable(result):
            try:
                result = asyncio.run(_await(result, timeout))
            except asyncio.TimeoutError:
                if timeout is None:
                    raise
                raise ActionTimeoutError(
                    f"Action '{entry.name}' timed out after {timeout}s", action=entry.name,
                ) from None
        return result


dispatcher = JobDispatcher()


def process_queue_job(
    job_id: str,
    queue: Optional[ScheduleQueue] = None,
    job_dispatcher: Optional[JobDispatcher] = None,
) -> Dict[str, Any]:
    """Consume one job: activate, dispatch, then complete, retry or fail it.

    Raises the handler's error once the job has no attempts left.
    """
    queue = queue or schedule_queue
    job_dispatcher = job_dispatcher or dispatcher

    job = queue.move_to_active(job_id)
    if job is None:
        logger.info("Job %s is no longer queued, skipping", job_id)
        return {"job_id": job_id, "status": "removed"}

    try:
        job_dispatcher.dispatch(job.name, job.data)
    except Exception as e:
        if queue.fail(job, str(e)):
            logger.warning(
                "Job %s attempt %d/%d failed, retrying in %ss: %s",
                job.id, job.attempts_made, job.attempts, job.backoff_seconds, e,
            )
            return {"job_id": job_id, "status": "retrying", "attempts_made": job.attempts_made}
        logger.error("❌ Job %s failed after %d attempt(s): %s", job.id, job.attempts_made, e)
        raise

    queue.complete(job)
    logger.info("✅ Job %s completed", job.id)
    return {"job_id": job_id, "status": "completed"}
