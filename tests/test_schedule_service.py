from datetime import date, datetime, timedelta, timezone

import pytest

from schedule_engine.core.context import tenant_context
from schedule_engine.core.exceptions import ResourceNotFoundError, ValidationError
from schedule_engine.models.schedule import Schedule, ScheduleFrequency, ScheduleStatus
from schedule_engine.schemas.schemas import ScheduleCreate, ScheduleUpdate
from schedule_engine.services.recurrence import normalize_end_date

UTC = timezone.utc


def _daily(**overrides):
    payload = {
        "title": "Morning report",
        "frequency": ScheduleFrequency.DAILY,
        "startDate": "2025-01-01T00:00:00",
        "timeOfDay": "09:00",
        "action": "send_report",
        "entityId": "report-1",
    }
    payload.update(overrides)
    return ScheduleCreate(**payload)


class TestCreate:
    def test_daily_schedule(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        assert schedule.cron_expression == "0 9 * * *"
        assert schedule.next_run_date == datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
        assert schedule.status == ScheduleStatus.ACTIVE
        assert schedule.timezone == "UTC"
        assert schedule.execution_count == 0
        assert schedule.execution_history == []
        assert schedule.retry_on_failure is True
        assert schedule.max_retries == 1
        assert schedule.retry_delay_minutes == 15

    def test_caller_timezone_is_used(self, db, service, now):
        schedule = service.create(db, _daily(), timezone="Asia/Kolkata", now=now)
        assert schedule.timezone == "Asia/Kolkata"
        # 09:00 IST on Jan 1 already passed at 08:00 UTC
        assert schedule.next_run_date == datetime(2025, 1, 2, 3, 30, tzinfo=UTC)

    def test_input_timezone_wins_over_caller(self, db, service, now):
        schedule = service.create(db, _daily(timezone="Europe/Paris"), timezone="Asia/Kolkata", now=now)
        assert schedule.timezone == "Europe/Paris"

    def test_weekly_requires_week_days(self, db, service, now):
        with pytest.raises(ValidationError) as exc:
            service.create(db, _daily(frequency=ScheduleFrequency.WEEKLY), now=now)
        assert exc.value.message == "weekDays is required for WEEKLY frequency"
        assert db.query(Schedule).count() == 0

    def test_end_date_before_first_run_completes_immediately(self, db, service, now):
        schedule = service.create(db, _daily(startDate="2025-01-05T00:00:00", endDate="2025-01-03T00:00:00"), now=now)
        assert schedule.status == ScheduleStatus.COMPLETED

    def test_interval_in_hours(self, db, service, now):
        schedule = service.create(db, _daily(intervalValue=2, intervalUnit="hours", endTime="17:00"), now=now)
        assert schedule.interval == 120

    def test_explicit_next_run_date_overrides(self, db, service, now):
        schedule = service.create(db, _daily(nextRunDate="2025-02-01T12:00:00Z"), now=now)
        assert schedule.next_run_date == datetime(2025, 2, 1, 12, 0, tzinfo=UTC)

    def test_tenant_comes_from_bound_context(self, db, service, now):
        with tenant_context("acme"):
            schedule = service.create(db, _daily(), now=now)
        assert schedule.tenant_id == "acme"

    def test_yearly_date_that_never_occurs_is_rejected(self, db, service, now):
        with pytest.raises(ValidationError, match="monthDays contains no day"):
            service.create(
                db, _daily(frequency=ScheduleFrequency.YEARLY, months=[2], month_days=[31]), now=now,
            )
        assert db.query(Schedule).count() == 0


class TestDuplicateSuppression:
    def test_same_entity_and_action_updates_in_place(self, db, service, now):
        first = service.create(db, _daily(data={"recipientId": 7, "note": "a"}), now=now)
        second = service.create(
            db,
            _daily(title="Renamed", data={"recipientId": 7, "extra": True}, nextRunDate="2025-01-03T10:00:00Z"),
            now=now,
        )
        assert second.id == first.id
        assert db.query(Schedule).count() == 1
        assert second.title == "Renamed"
        assert second.data == {"recipientId": 7, "note": "a", "extra": True}
        assert second.next_run_date == datetime(2025, 1, 3, 10, 0, tzinfo=UTC)

    def test_different_recipient_creates_new_schedule(self, db, service, now):
        service.create(db, _daily(data={"recipientId": 7}), now=now)
        service.create(db, _daily(data={"recipientId": 8}), now=now)
        assert db.query(Schedule).count() == 2

    def test_completed_schedule_is_not_reused(self, db, service, now):
        first = service.create(db, _daily(), now=now)
        first.status = ScheduleStatus.COMPLETED
        db.commit()
        second = service.create(db, _daily(), now=now)
        assert second.id != first.id

    def test_bad_next_run_date_on_merge(self, db, service, now):
        service.create(db, _daily(), now=now)
        with pytest.raises(ValidationError, match="nextRunDate"):
            service.create(db, ScheduleCreate.model_construct(
                entity_id="report-1", action="send_report", next_run_date="not a date",
                title=None, description=None, data=None,
            ), now=now)


class TestUpdate:
    def test_recurrence_change_recomputes(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        updated = service.update(
            db, schedule.id,
            {"frequency": ScheduleFrequency.WEEKLY, "week_days": [1], "time_of_day": "18:00"},
            now=now,
        )
        assert updated.cron_expression == "0 18 * * 1"
        # first Monday after Wed 2025-01-01
        assert updated.next_run_date == datetime(2025, 1, 6, 18, 0, tzinfo=UTC)

    def test_partial_recurrence_change_is_validated_against_merged_state(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        with pytest.raises(ValidationError, match="monthDays is required"):
            service.update(db, schedule.id, {"frequency": ScheduleFrequency.MONTHLY}, now=now)

    def test_plain_fields_keep_next_run(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        before = schedule.next_run_date
        updated = service.update(db, schedule.id, ScheduleUpdate(title="New title"), now=now)
        assert updated.title == "New title"
        assert updated.next_run_date == before
        assert updated.cron_expression == "0 9 * * *"

    def test_end_date_is_normalized(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        updated = service.update(db, schedule.id, {"end_date": "2025-03-01"}, now=now)
        assert updated.end_date == normalize_end_date(date(2025, 3, 1), "UTC")

    def test_completed_cannot_be_reactivated(self, db, service, now):
        schedule = service.create(db, _daily(frequency=ScheduleFrequency.ONCE), now=now)
        service.execute_and_update_next(db, schedule.id, now=now)
        with pytest.raises(ValidationError):
            service.update(db, schedule.id, {"status": ScheduleStatus.ACTIVE}, now=now)

    def test_not_found(self, db, service):
        with pytest.raises(ResourceNotFoundError, match="Schedule missing not found"):
            service.update(db, "missing", {"title": "x"})


class TestExecution:
    def test_track_success_and_failure(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        service.track_execution(db, schedule.id, False, "boom", now=now)
        service.track_execution(db, schedule.id, True, now=now + timedelta(minutes=1))
        schedule = service.get(db, schedule.id)
        assert schedule.execution_count == 2
        assert schedule.success_count == 1
        assert schedule.failure_count == 1
        assert schedule.last_execution_status == "success"
        assert schedule.last_error_message is None
        assert [h["status"] for h in schedule.execution_history] == ["success", "failed"]
        assert schedule.execution_history[1]["error_message"] == "boom"

    def test_history_is_bounded_newest_first(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        for i in range(55):
            service.track_execution(db, schedule.id, True, now=now + timedelta(minutes=i))
        schedule = service.get(db, schedule.id)
        assert schedule.execution_count == 55
        assert len(schedule.execution_history) == 50
        newest = (now + timedelta(minutes=54)).isoformat()
        assert schedule.execution_history[0]["executed_at"] == newest

    def test_once_completes(self, db, service, now):
        schedule = service.create(db, _daily(frequency=ScheduleFrequency.ONCE), now=now)
        done = service.execute_and_update_next(db, schedule.id, now=now)
        assert done.status == ScheduleStatus.COMPLETED
        assert done.last_run_at == now

    def test_recurring_advances_from_now(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        ran_at = datetime(2025, 1, 4, 9, 0, 5, tzinfo=UTC)
        advanced = service.execute_and_update_next(db, schedule.id, now=ran_at)
        assert advanced.status == ScheduleStatus.ACTIVE
        assert advanced.next_run_date == datetime(2025, 1, 5, 9, 0, tzinfo=UTC)

    def test_completes_past_end_date_keeping_next_run(self, db, service, now):
        schedule = service.create(db, _daily(endDate="2025-01-10T00:00:00"), now=now)
        ran_at = datetime(2025, 1, 10, 9, 0, tzinfo=UTC)
        done = service.execute_and_update_next(db, schedule.id, now=ran_at)
        assert done.status == ScheduleStatus.COMPLETED
        assert done.next_run_date == datetime(2025, 1, 11, 9, 0, tzinfo=UTC)


class TestQueries:
    def test_due_today_filters_and_orders(self, db, service, now):
        late = service.create(db, _daily(entityId="a", timeOfDay="17:00"), now=now)
        early = service.create(db, _daily(entityId="b", timeOfDay="10:00"), now=now)
        done = service.create(db, _daily(entityId="c", frequency=ScheduleFrequency.ONCE), now=now)
        service.execute_and_update_next(db, done.id, now=now)

        due = service.get_due_today(db, now=now)
        assert [s.id for s in due] == [early.id, late.id]

    def test_list_with_filters(self, db, service, now):
        service.create(db, _daily(entityId="a"), now=now)
        service.create(db, _daily(entityId="b", frequency=ScheduleFrequency.MONTHLY, monthDays=[1]), now=now)
        result = service.list_schedules(db, frequency=ScheduleFrequency.MONTHLY)
        assert result["total"] == 1
        assert result["schedules"][0].entity_id == "b"

    def test_delete(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        service.delete(db, schedule.id)
        with pytest.raises(ResourceNotFoundError):
            service.get(db, schedule.id)


class TestWriteHooks:
    def test_hooks_see_committed_schedule(self, db, service, now):
        seen = []
        service.register_write_hook(lambda s: seen.append((s.id, s.status)))
        schedule = service.create(db, _daily(), now=now)
        service.update(db, schedule.id, {"title": "x"}, now=now)
        assert seen == [(schedule.id, ScheduleStatus.ACTIVE)] * 2

    def test_failing_hook_does_not_break_the_write(self, db, service, now):
        def broken(_):
            raise RuntimeError("hook down")

        service.register_write_hook(broken)
        schedule = service.create(db, _daily(), now=now)
        assert service.get(db, schedule.id).title == "Morning report"

    def test_delete_does_not_fire_hooks(self, db, service, now):
        schedule = service.create(db, _daily(), now=now)
        seen = []
        service.register_write_hook(seen.append)
        service.delete(db, schedule.id)
        assert seen == []
