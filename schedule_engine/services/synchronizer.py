"""Daily synchronizer: arms today's schedules for every tenant.

Runs at the daily trigger and once when a worker starts: clears the
previous cycle's queue state, then walks the platform database and each
tenant database in turn and arms a job for every schedule due today.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from schedule_engine.core.config import settings
from schedule_engine.core.context import tenant_context
from schedule_engine.core.exceptions import QueueTimeoutError
from schedule_engine.db.session import TenantDatabaseManager, database_manager
from schedule_engine.services.arming import ScheduleArmer, ScheduleSnapshot
from schedule_engine.services.queue import (
    COMPLETED, FAILED, JOB_STATES, QueueJob, ScheduleQueue, schedule_queue,
)
from schedule_engine.services.recurrence import utcnow
from schedule_engine.services.schedule_service import ScheduleService, schedule_service
from schedule_engine.services.tenant_service import TenantService, tenant_service

logger = logging.getLogger("schedule_engine.synchronizer")

_queue_ops = ThreadPoolExecutor(max_workers=8, thread_name_prefix="schedule-queue-ops")


def _with_timeout(fn: Callable[[], Any], seconds: float, message: str) -> Any:
    future = _queue_ops.submit(fn)
    try:
        return future.result(timeout=seconds)
    except FutureTimeout:
        future.cancel()
        raise QueueTimeoutError(message)


def _label(tenant_id: Optional[str]) -> str:
    return f"tenant {tenant_id}" if tenant_id else "main database"


@dataclass
class SyncReport:
    started_at: datetime
    cleanup_ok: bool = True
    tenants_processed: int = 0
    tenants_failed: List[str] = field(default_factory=list)
    jobs_armed: int = 0

    def as_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["started_at"] = self.started_at.isoformat()
        return result


class DailyScheduleSynchronizer:
    """Re-derives and arms the schedules due today across all tenants."""

    def __init__(
        self,
        queue: Optional[ScheduleQueue] = None,
        armer: Optional[ScheduleArmer] = None,
        service: Optional[ScheduleService] = None,
        databases: Optional[TenantDatabaseManager] = None,
        tenants: Optional[TenantService] = None,
        list_timeout: Optional[float] = None,
        remove_timeout: Optional[float] = None,
        clean_timeout: Optional[float] = None,
    ):
        self.queue = queue or schedule_queue
        self.armer = armer or ScheduleArmer(self.queue)
        self.service = service or schedule_service
        self.databases = databases or database_manager
        self.tenants = tenants or tenant_service
        self.list_timeout = list_timeout or settings.QUEUE_LIST_TIMEOUT_SECONDS
        self.remove_timeout = remove_timeout or settings.QUEUE_REMOVE_TIMEOUT_SECONDS
        self.clean_timeout = clean_timeout or settings.QUEUE_CLEAN_TIMEOUT_SECONDS

    def setup_daily_schedules(self, now: Optional[datetime] = None) -> SyncReport:
        """Clean up, then arm today's schedules for the platform and every tenant."""
        now = now or utcnow()
        report = SyncReport(started_at=now)
        logger.info("🕐 Setting up schedules for today...")

        report.cleanup_ok = self.cleanup_previous_schedules()

        # Platform-level schedules live in the main database
        self._run_tenant(None, now, report)

        try:
            tenant_ids = self._tenant_ids()
        except Exception as e:
            logger.error("Failed to load the tenant directory: %s", e)
            report.tenants_failed.append("tenant directory")
            tenant_ids = []

        logger.info("Found %d business tenant(s) to check for schedules", len(tenant_ids))
        for tenant_id in tenant_ids:
            self._run_tenant(tenant_id, now, report)

        logger.info(
            "✅ Daily schedules setup completed: %d job(s) armed, %d tenant failure(s)",
            report.jobs_armed, len(report.tenants_failed),
        )
        return report

    def _tenant_ids(self) -> List[str]:
        db = self.databases.session(None)
        try:
            return [b.tenant_id for b in self.tenants.list_tenants_with_id(db)]
        finally:
            db.close()

    def _run_tenant(self, tenant_id: Optional[str], now: datetime, report: SyncReport) -> None:
        try:
            report.jobs_armed += self.setup_schedules_for_tenant(tenant_id, now)
            report.tenants_processed += 1
        except Exception as e:
            logger.error("Failed to setup schedules for %s: %s", _label(tenant_id), e)
            report.tenants_failed.append(_label(tenant_id))

    def setup_schedules_for_tenant(self, tenant_id: Optional[str], now: Optional[datetime] = None) -> int:
        """Arm today's schedules in one tenant database. Returns jobs armed."""
        now = now or utcnow()
        label = _label(tenant_id)

        with tenant_context(tenant_id):
            db = self.databases.session(tenant_id)
            try:
                snapshots = [
                    ScheduleSnapshot.from_model(s)
                    for s in self.service.get_due_today(db, now=now)
                ]
            finally:
                db.close()

            if not snapshots:
                logger.info("No schedules for today in %s", label)
                return 0

            logger.info("Found %d schedule(s) for today in %s", len(snapshots), label)
            armed = 0
            for snapshot in snapshots:
                if self.setup_schedule(snapshot, now) is not None:
                    armed += 1
            return armed

    def setup_schedule(self, snapshot: ScheduleSnapshot, now: Optional[datetime] = None) -> Optional[QueueJob]:
        """Arm one schedule if its next run falls on today's date."""
        try:
            return self.armer.arm_if_due_today(snapshot, now)
        except Exception as e:
            logger.error("Failed to setup schedule %s: %s", snapshot.title, e)
            return None

    def cleanup_previous_schedules(self) -> bool:
        """Empty the queue of the previous cycle's jobs. Never raises."""
        try:
            logger.info("Cleaning up previous day's schedules...")
            jobs = _with_timeout(
                lambda: self.queue.get_jobs(JOB_STATES), self.list_timeout, "Timeout getting jobs",
            )
            logger.info("Found %d jobs to clean up", len(jobs))

            removals = [(job, _queue_ops.submit(job.remove)) for job in jobs]
            for job, future in removals:
                try:
                    future.result(timeout=self.remove_timeout)
                    logger.debug("Removed job: %s from schedule queue", job.id)
                except FutureTimeout:
                    logger.error("Failed to remove job %s: Timeout removing job", job.id)
                except Exception as e:
                    logger.error("Failed to remove job %s: %s", job.id, e)

            _with_timeout(
                lambda: (self.queue.clean(0, COMPLETED), self.queue.clean(0, FAILED)),
                self.clean_timeout,
                "Timeout cleaning queue",
            )
            logger.info("Previous day's schedules cleaned up successfully")
            return True
        except Exception as e:
            # Must not block the new cycle or worker startup
            logger.error("Failed to cleanup previous schedules: %s", e)
            return False
