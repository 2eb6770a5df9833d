"""Arming: turning a schedule due today into a queue job.

``ScheduleArmer`` is shared by the daily sync and by the write hook that
arms schedules created or changed during the day.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from schedule_engine.core.config import settings
from schedule_engine.models.schedule import Schedule, ScheduleStatus
from schedule_engine.services.queue import (
    DELAYED, WAITING, QueueJob, RepeatOptions, ScheduleQueue, schedule_queue,
)
from schedule_engine.services.recurrence import (
    DEFAULT_TIMEZONE, local_date, today_at, utcnow,
)

logger = logging.getLogger("schedule_engine.arming")

DEFAULT_END_TIME = "23:59"


@dataclass(frozen=True)
class ScheduleSnapshot:
    """Detached copy of the schedule fields arming needs."""

    id: str
    tenant_id: Optional[str]
    title: str
    action: Optional[str]
    entity_id: Optional[str]
    data: Optional[Dict[str, Any]]
    status: ScheduleStatus
    next_run_date: datetime
    time_of_day: Optional[str]
    end_time: Optional[str]
    timezone: str
    interval: Optional[int]
    retry_on_failure: bool
    max_retries: int
    retry_delay_minutes: int

    @classmethod
    def from_model(cls, schedule: Schedule) -> "ScheduleSnapshot":
        return cls(
            id=schedule.id,
            tenant_id=schedule.tenant_id,
            title=schedule.title,
            action=schedule.action,
            entity_id=schedule.entity_id,
            data=dict(schedule.data) if schedule.data else None,
            status=schedule.status,
            next_run_date=schedule.next_run_date,
            time_of_day=schedule.time_of_day,
            end_time=schedule.end_time,
            timezone=schedule.timezone or DEFAULT_TIMEZONE,
            interval=schedule.interval,
            retry_on_failure=bool(schedule.retry_on_failure),
            max_retries=schedule.max_retries or 1,
            retry_delay_minutes=schedule.retry_delay_minutes or 0,
        )

    @property
    def schedule_key(self) -> str:
        return f"{self.tenant_id or 'platform'}:{self.id}"

    @property
    def job_id(self) -> str:
        return f"{self.schedule_key}:{int(self.next_run_date.timestamp())}"


class ScheduleArmer:
    """Arms one queue job per schedule occurrence."""

    def __init__(self, queue: Optional[ScheduleQueue] = None):
        self.queue = queue or schedule_queue

    @staticmethod
    def is_due_today(snapshot: ScheduleSnapshot, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return local_date(snapshot.next_run_date, snapshot.timezone) == local_date(now, snapshot.timezone)

    def arm_if_due_today(self, snapshot: ScheduleSnapshot, now: Optional[datetime] = None) -> Optional[QueueJob]:
        now = now or utcnow()
        if snapshot.status != ScheduleStatus.ACTIVE or not self.is_due_today(snapshot, now):
            return None
        return self.arm(snapshot, now)

    def arm(self, snapshot: ScheduleSnapshot, now: Optional[datetime] = None) -> QueueJob:
        """Enqueue the job for today's occurrence; re-arming the same occurrence is a no-op."""
        now = now or utcnow()

        existing = self.queue.get_job(snapshot.job_id)
        if existing is not None:
            logger.debug("Job %s already armed (%s)", existing.id, existing.state)
            return existing
        for stale in self.queue.jobs_for_schedule(snapshot.schedule_key):
            if stale.state in (WAITING, DELAYED):
                stale.remove()
                logger.info("Replaced pending job %s for schedule %s", stale.id, snapshot.id)

        start = today_at(snapshot.time_of_day, snapshot.timezone, now)
        # A time already past today runs right away
        delay = max(0.0, (start - now).total_seconds())

        repeat = None
        if snapshot.interval:
            until = today_at(snapshot.end_time or DEFAULT_END_TIME, snapshot.timezone, now)
            if until <= now:
                until += timedelta(days=1)
            repeat = RepeatOptions(every_seconds=snapshot.interval * 60, until=until)

        job = self.queue.add(
            snapshot.action or "schedule",
            self.build_payload(snapshot),
            delay_seconds=delay,
            attempts=snapshot.max_retries if snapshot.retry_on_failure else 1,
            remove_on_fail=settings.FAILED_JOBS_RETAINED if snapshot.retry_on_failure else 0,
            backoff_seconds=snapshot.retry_delay_minutes * 60,
            repeat=repeat,
            job_id=snapshot.job_id,
            schedule_key=snapshot.schedule_key,
        )
        logger.info(
            "Scheduled job: %s at %s (Job ID: %s)",
            snapshot.title, snapshot.time_of_day or "00:00", job.id,
        )
        return job

    @staticmethod
    def build_payload(snapshot: ScheduleSnapshot) -> Dict[str, Any]:
        return {
            **(snapshot.data or {}),
            "date": snapshot.next_run_date.isoformat(),
            "action": snapshot.action,
            "scheduleId": snapshot.id,
            "isRepeating": bool(snapshot.interval),
            "entityId": snapshot.entity_id,
            "tenantId": snapshot.tenant_id,
        }


_arming_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="schedule-arming")


class ImmediateArmingHook:
    """Write hook that arms a schedule right away when it is due today.

    The arm runs off the caller's thread; its failures are logged only.
    """

    def __init__(
        self,
        armer: Optional[ScheduleArmer] = None,
        submit: Optional[Callable[..., Any]] = None,
    ):
        self.armer = armer or ScheduleArmer()
        self._submit = submit or _arming_executor.submit

    def __call__(self, schedule: Schedule) -> None:
        if schedule.status != ScheduleStatus.ACTIVE:
            return
        self._submit(self._arm, ScheduleSnapshot.from_model(schedule))

    def _arm(self, snapshot: ScheduleSnapshot) -> None:
        try:
            self.armer.arm_if_due_today(snapshot)
        except Exception:
            logger.exception("Failed to arm schedule %s after write", snapshot.id)


_installed_hook: Optional[ImmediateArmingHook] = None


def install_arming_hook(service=None) -> ImmediateArmingHook:
    """Register the immediate arming hook on the schedule service (once)."""
    global _installed_hook
    from schedule_engine.services.schedule_service import schedule_service

    if _installed_hook is None:
        _installed_hook = ImmediateArmingHook()
    (service or schedule_service).register_write_hook(_installed_hook)
    return _installed_hook
