"""Schedule service: owns every write to schedule records.

Create (with duplicate suppression), update (with recurrence recomputation),
execution tracking, and the "due today" query used by the daily sync.
Committed writes are announced to registered write hooks.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel
from sqlalchemy.orm import Session

from schedule_engine.core.config import settings
from schedule_engine.core.context import current_tenant_id
from schedule_engine.core.exceptions import ResourceNotFoundError, ValidationError
from schedule_engine.models.schedule import (
    Schedule, ScheduleFrequency, ScheduleStatus, ExecutionStatus,
)
from schedule_engine.schemas.schemas import ScheduleCreate
from schedule_engine.services.recurrence import (
    DEFAULT_TIME_OF_DAY,
    DEFAULT_TIMEZONE,
    RecurrenceConfig,
    interval_minutes,
    local_midnight,
    next_occurrence,
    next_occurrence_after,
    normalize_end_date,
    normalize_start_date,
    parse_instant,
    parse_time_of_day,
    synthesize_cron,
    utcnow,
    validate_recurrence,
    validate_timezone,
)

logger = logging.getLogger("schedule_engine.schedules")

# Changing any of these regenerates the cron expression and next run
RECURRENCE_FIELDS = ("start_date", "frequency", "time_of_day", "week_days", "month_days", "months")

# Fields the service derives itself; never copied verbatim from a patch
_DERIVED_FIELDS = {
    "id", "cron_expression", "interval", "start_date", "end_date", "next_run_date",
    "timezone", "execution_count", "success_count", "failure_count",
    "execution_history", "created_at", "updated_at",
}

WriteHook = Callable[[Schedule], None]


class ScheduleService:
    """Manages schedule records in the session's tenant database."""

    def __init__(self, history_limit: Optional[int] = None):
        self.history_limit = history_limit or settings.EXECUTION_HISTORY_LIMIT
        self._write_hooks: List[WriteHook] = []

    # ---- write hooks ----

    def register_write_hook(self, hook: WriteHook) -> None:
        if hook not in self._write_hooks:
            self._write_hooks.append(hook)

    def unregister_write_hook(self, hook: WriteHook) -> None:
        if hook in self._write_hooks:
            self._write_hooks.remove(hook)

    def _save(self, db: Session, schedule: Schedule) -> Schedule:
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
        for hook in list(self._write_hooks):
            try:
                hook(schedule)
            except Exception:
                logger.exception("Write hook failed for schedule %s", schedule.id)
        return schedule

    # ---- queries ----

    def get(self, db: Session, schedule_id: str) -> Schedule:
        """Get a schedule by id."""
        schedule = db.query(Schedule).filter(Schedule.id == schedule_id).first()
        if not schedule:
            raise ResourceNotFoundError(f"Schedule {schedule_id} not found")
        return schedule

    def list_schedules(
        self,
        db: Session,
        status: Optional[ScheduleStatus] = None,
        frequency: Optional[ScheduleFrequency] = None,
        entity_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        """List schedules with filters."""
        query = db.query(Schedule)

        if status:
            query = query.filter(Schedule.status == status)
        if frequency:
            query = query.filter(Schedule.frequency == frequency)
        if entity_id:
            query = query.filter(Schedule.entity_id == entity_id)

        total = query.count()
        schedules = (
            query.order_by(Schedule.next_run_date.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return {"schedules": schedules, "total": total, "page": page, "page_size": page_size}

    def get_due_today(
        self,
        db: Session,
        now: Optional[datetime] = None,
        tz_name: Optional[str] = None,
    ) -> List[Schedule]:
        """Active schedules whose next run is on or after today's midnight."""
        midnight = local_midnight(tz_name or settings.SCHEDULER_TIMEZONE, now)
        return (
            db.query(Schedule)
            .filter(Schedule.status == ScheduleStatus.ACTIVE)
            .filter(Schedule.next_run_date >= midnight)
            .order_by(Schedule.time_of_day.asc())
            .all()
        )

    def _find_duplicate(
        self, db: Session, entity_id: str, action: str, recipient_id: Any = None,
    ) -> Optional[Schedule]:
        candidates = (
            db.query(Schedule)
            .filter(Schedule.entity_id == entity_id)
            .filter(Schedule.action == action)
            .filter(Schedule.status == ScheduleStatus.ACTIVE)
            .order_by(Schedule.created_at.asc())
            .all()
        )
        for candidate in candidates:
            if recipient_id is None:
                return candidate
            if str((candidate.data or {}).get("recipientId")) == str(recipient_id):
                return candidate
        return None

    # ---- writes ----

    def create(
        self,
        db: Session,
        data: ScheduleCreate,
        timezone: Optional[str] = None,
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Schedule:
        """Create a schedule, or update the matching active one in place."""
        if data.entity_id and data.action:
            existing = self._find_duplicate(
                db, data.entity_id, data.action, (data.data or {}).get("recipientId"),
            )
            if existing:
                return self._merge_duplicate(db, existing, data)

        frequency = data.frequency or ScheduleFrequency.ONCE
        config = RecurrenceConfig(frequency, data.week_days, data.month_days, data.months)
        validate_recurrence(config)
        if data.end_time:
            parse_time_of_day(data.end_time)

        selected_tz = validate_timezone(data.timezone or timezone or DEFAULT_TIMEZONE)
        start_date = normalize_start_date(data.start_date, selected_tz, now)
        end_date = normalize_end_date(data.end_date, selected_tz)
        time_of_day = data.time_of_day or DEFAULT_TIME_OF_DAY

        cron_expression = synthesize_cron(config, time_of_day, 0)
        next_run = next_occurrence(cron_expression, start_date, end_date, selected_tz, now=now)

        override = None
        if data.next_run_date is not None:
            override = parse_instant(data.next_run_date, selected_tz, "nextRunDate")

        schedule = Schedule(
            tenant_id=data.tenant_id or tenant_id or current_tenant_id(),
            title=data.title or "Schedule",
            description=data.description,
            entity_id=data.entity_id,
            action=data.action,
            data=data.data,
            frequency=frequency,
            start_date=start_date,
            end_date=end_date,
            time_of_day=time_of_day,
            end_time=data.end_time,
            interval_value=data.interval_value,
            interval_unit=data.interval_unit,
            interval=interval_minutes(data.interval_value, data.interval_unit),
            timezone=selected_tz,
            week_days=data.week_days,
            month_days=data.month_days,
            months=data.months,
            cron_expression=cron_expression,
            status=ScheduleStatus.ACTIVE if next_run.is_active else ScheduleStatus.COMPLETED,
            next_run_date=override or next_run.next_run_at,
            execution_count=0,
            success_count=0,
            failure_count=0,
            execution_history=[],
            retry_on_failure=True if data.retry_on_failure is None else data.retry_on_failure,
            max_retries=data.max_retries or 1,
            current_retries=0,
            retry_delay_minutes=data.retry_delay_minutes or 15,
        )
        schedule = self._save(db, schedule)
        logger.info(
            "Created schedule %s (%s, cron '%s', next run %s)",
            schedule.id, frequency.value, cron_expression, schedule.next_run_date,
        )
        return schedule

    def _merge_duplicate(self, db: Session, existing: Schedule, data: ScheduleCreate) -> Schedule:
        if data.next_run_date is not None:
            existing.next_run_date = parse_instant(
                data.next_run_date, existing.timezone, "nextRunDate"
            )
        existing.title = data.title or existing.title
        existing.description = data.description or existing.description
        if data.data:
            existing.data = {**(existing.data or {}), **data.data}
        logger.info(
            "Schedule for %s/%s already exists, updated %s in place",
            existing.entity_id, existing.action, existing.id,
        )
        return self._save(db, existing)

    def update(
        self,
        db: Session,
        schedule_id: str,
        changes: Union[Dict[str, Any], BaseModel],
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Schedule:
        """Apply a patch; recurrence changes recompute cron, next run and status."""
        if isinstance(changes, BaseModel):
            changes = changes.model_dump(exclude_unset=True)
        changes = dict(changes)
        schedule = self.get(db, schedule_id)

        if schedule.status == ScheduleStatus.COMPLETED and changes.get("status") == ScheduleStatus.ACTIVE:
            raise ValidationError("status cannot return to ACTIVE once a schedule is COMPLETED")
        if changes.get("end_time"):
            parse_time_of_day(changes["end_time"])

        if any(field in changes for field in RECURRENCE_FIELDS):
            merged = {
                key: changes[key] if key in changes else getattr(schedule, key)
                for key in ("frequency", "week_days", "month_days", "months", "time_of_day", "timezone")
            }
            config = RecurrenceConfig.from_fields(merged)
            validate_recurrence(config)

            selected_tz = validate_timezone(merged["timezone"] or timezone or DEFAULT_TIMEZONE)
            start_date = (
                normalize_start_date(changes["start_date"], selected_tz, now)
                if changes.get("start_date")
                else schedule.start_date
            )
            end_date = (
                normalize_end_date(changes["end_date"], selected_tz)
                if "end_date" in changes
                else schedule.end_date
            )
            cron_expression = synthesize_cron(config, merged["time_of_day"] or DEFAULT_TIME_OF_DAY, 0)
            next_run = next_occurrence(cron_expression, start_date, end_date, selected_tz, now=now)

            self._apply_fields(schedule, changes)
            schedule.frequency = config.frequency
            schedule.start_date = start_date
            schedule.end_date = end_date
            schedule.timezone = selected_tz
            schedule.cron_expression = cron_expression
            schedule.next_run_date = next_run.next_run_at
            if not next_run.is_active:
                schedule.status = ScheduleStatus.COMPLETED
        else:
            self._apply_fields(schedule, changes)
            if "end_date" in changes:
                schedule.end_date = normalize_end_date(changes["end_date"], schedule.timezone)
            if "timezone" in changes:
                schedule.timezone = validate_timezone(changes["timezone"] or DEFAULT_TIMEZONE)
            if changes.get("next_run_date") is not None:
                schedule.next_run_date = parse_instant(
                    changes["next_run_date"], schedule.timezone, "nextRunDate"
                )

        if "interval_value" in changes or "interval_unit" in changes:
            schedule.interval = interval_minutes(schedule.interval_value, schedule.interval_unit)

        return self._save(db, schedule)

    @staticmethod
    def _apply_fields(schedule: Schedule, changes: Dict[str, Any]) -> None:
        for key, value in changes.items():
            if key in _DERIVED_FIELDS or not hasattr(schedule, key):
                continue
            setattr(schedule, key, value)

    def delete(self, db: Session, schedule_id: str) -> None:
        """Hard-delete a schedule. Write hooks are not notified."""
        schedule = self.get(db, schedule_id)
        db.delete(schedule)
        db.commit()

    def track_execution(
        self,
        db: Session,
        schedule_id: str,
        success: bool,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Record one execution outcome in counters and the bounded history."""
        schedule = self.get(db, schedule_id)
        executed_at = now or utcnow()
        status = ExecutionStatus.success if success else ExecutionStatus.failed

        schedule.execution_count = (schedule.execution_count or 0) + 1
        schedule.last_run_at = executed_at
        schedule.last_execution_status = status.value
        if success:
            schedule.success_count = (schedule.success_count or 0) + 1
            schedule.last_error_message = None
        else:
            schedule.failure_count = (schedule.failure_count or 0) + 1
            schedule.last_error_message = error_message or "Unknown error"

        entry: Dict[str, Any] = {"executed_at": executed_at.isoformat(), "status": status.value}
        if not success and error_message:
            entry["error_message"] = error_message
        # A new list, so the JSON column registers the change
        history = list(schedule.execution_history or [])
        schedule.execution_history = [entry] + history[: self.history_limit - 1]

        self._save(db, schedule)

    def execute_and_update_next(
        self, db: Session, schedule_id: str, now: Optional[datetime] = None,
    ) -> Schedule:
        """Advance a schedule past an execution that happened now."""
        schedule = self.get(db, schedule_id)
        now = now or utcnow()
        schedule.last_run_at = now

        if schedule.frequency == ScheduleFrequency.ONCE:
            schedule.status = ScheduleStatus.COMPLETED
        elif schedule.cron_expression:
            next_run_at = next_occurrence_after(
                schedule.cron_expression, now, schedule.timezone or DEFAULT_TIMEZONE
            )
            schedule.next_run_date = next_run_at
            if schedule.end_date and next_run_at > schedule.end_date:
                schedule.status = ScheduleStatus.COMPLETED
                logger.info("Schedule %s passed its end date, marked completed", schedule.id)

        return self._save(db, schedule)


schedule_service = ScheduleService()
