from datetime import datetime, timedelta, timezone

import pytest

from schedule_engine.core.exceptions import QueueError
from schedule_engine.services.queue import (
    ACTIVE, COMPLETED, DELAYED, DISPATCH_TASK_NAME, FAILED, WAITING,
    QueueJob, RepeatOptions,
)


def _add(queue, job_id="job-1", **kwargs):
    return queue.add("send_report", {"scheduleId": "s1"}, job_id=job_id, **kwargs)


class TestAdd:
    def test_delayed_job_is_dispatched_with_countdown(self, queue, sender):
        job = _add(queue, delay_seconds=90)
        assert job.state == DELAYED
        task_name, kwargs = sender.calls[-1]
        assert task_name == DISPATCH_TASK_NAME
        assert kwargs["args"] == ["job-1"]
        assert kwargs["countdown"] == 90
        assert kwargs["queue"] == "schedule-test"
        assert kwargs["task_id"] == job.task_id

    def test_immediate_job_is_waiting(self, queue, sender):
        job = _add(queue)
        assert job.state == WAITING
        assert sender.calls[-1][1]["countdown"] == 0

    def test_same_id_replaces_and_revokes(self, queue, revoker):
        first = _add(queue, delay_seconds=60)
        second = _add(queue, delay_seconds=30)
        assert revoker.revoked == [first.task_id]
        assert queue.get_job("job-1").task_id == second.task_id
        assert len(queue.get_jobs()) == 1

    def test_backend_errors_become_queue_errors(self, queue, redis_client, monkeypatch):
        import redis

        def down(*args, **kwargs):
            raise redis.ConnectionError("refused")

        monkeypatch.setattr(redis_client, "get", down)
        with pytest.raises(QueueError, match="refused"):
            _add(queue)


class TestRegistry:
    def test_get_jobs_by_state(self, queue):
        _add(queue, "a", delay_seconds=10)
        _add(queue, "b")
        assert {j.id for j in queue.get_jobs([DELAYED])} == {"a"}
        assert {j.id for j in queue.get_jobs()} == {"a", "b"}

    def test_jobs_for_schedule(self, queue):
        _add(queue, "a", schedule_key="acme:s1")
        _add(queue, "b", schedule_key="acme:s2")
        assert [j.id for j in queue.jobs_for_schedule("acme:s1")] == ["a"]

    def test_job_remove(self, queue, revoker):
        job = _add(queue, delay_seconds=10, schedule_key="acme:s1")
        queue.get_job(job.id).remove()
        assert queue.get_job(job.id) is None
        assert queue.jobs_for_schedule("acme:s1") == []
        assert revoker.revoked == [job.task_id]

    def test_detached_job_cannot_remove(self):
        with pytest.raises(QueueError):
            QueueJob(id="x", name="n", data={}).remove()

    def test_active_job_is_not_revoked(self, queue, revoker):
        job = _add(queue)
        queue.move_to_active(job.id)
        queue.remove(job.id)
        assert revoker.revoked == []

    def test_clean_removes_finished_jobs(self, queue):
        done = _add(queue, "done")
        queue.complete(queue.move_to_active(done.id))
        _add(queue, "pending")
        assert queue.clean(0, COMPLETED) == ["done"]
        assert [j.id for j in queue.get_jobs()] == ["pending"]

    def test_clean_respects_grace(self, queue):
        done = _add(queue, "done")
        queue.complete(queue.move_to_active(done.id))
        assert queue.clean(3600, COMPLETED) == []


class TestConsumer:
    def test_move_to_active_missing_job(self, queue):
        assert queue.move_to_active("nope") is None

    def test_complete(self, queue):
        job = queue.move_to_active(_add(queue).id)
        assert job.state == ACTIVE
        queue.complete(job)
        stored = queue.get_job(job.id)
        assert stored.state == COMPLETED
        assert stored.finished_at is not None

    def test_fail_retries_with_backoff(self, queue, sender):
        job = queue.move_to_active(_add(queue, attempts=3, backoff_seconds=900).id)
        assert queue.fail(job, "boom") is True
        stored = queue.get_job(job.id)
        assert stored.state == DELAYED
        assert stored.attempts_made == 1
        assert stored.failed_reason == "boom"
        assert sender.calls[-1][1]["countdown"] == 900

    def test_fail_after_last_attempt(self, queue):
        job = queue.move_to_active(_add(queue, attempts=1).id)
        assert queue.fail(job, "boom") is False
        assert queue.get_job(job.id).state == FAILED

    def test_failed_jobs_are_capped(self, queue):
        for i in range(4):
            job = queue.move_to_active(_add(queue, f"j{i}", remove_on_fail=2).id)
            queue.fail(job, "boom")
        assert sorted(j.id for j in queue.get_jobs([FAILED])) == ["j2", "j3"]

    def test_zero_keeps_all_failed_jobs(self, queue):
        for i in range(4):
            job = queue.move_to_active(_add(queue, f"j{i}", remove_on_fail=0).id)
            queue.fail(job, "boom")
        assert len(queue.get_jobs([FAILED])) == 4

    def test_repeat_until_end(self, queue, sender):
        until = datetime.now(timezone.utc) + timedelta(hours=1)
        job = _add(queue, repeat=RepeatOptions(every_seconds=600, until=until))
        queue.complete(queue.move_to_active(job.id))
        stored = queue.get_job(job.id)
        assert stored.state == DELAYED
        assert stored.repeat_count == 1
        assert sender.calls[-1][1]["countdown"] == 600

    def test_no_repeat_past_end(self, queue):
        until = datetime.now(timezone.utc) + timedelta(minutes=5)
        job = _add(queue, repeat=RepeatOptions(every_seconds=600, until=until))
        queue.complete(queue.move_to_active(job.id))
        assert queue.get_job(job.id).state == COMPLETED

    def test_repeat_continues_after_failure(self, queue):
        until = datetime.now(timezone.utc) + timedelta(hours=1)
        job = _add(queue, remove_on_fail=50, repeat=RepeatOptions(every_seconds=600, until=until))
        queue.fail(queue.move_to_active(job.id), "boom")
        stored = queue.get_job(job.id)
        assert stored.state == DELAYED
        assert stored.attempts_made == 0

    def test_removed_while_running_is_not_completed_or_repeated(self, queue, sender):
        until = datetime.now(timezone.utc) + timedelta(hours=1)
        job = queue.move_to_active(_add(queue, repeat=RepeatOptions(every_seconds=600, until=until)).id)
        queue.remove(job.id)
        calls = len(sender.calls)
        queue.complete(job)
        assert queue.get_job(job.id) is None
        assert len(sender.calls) == calls

    def test_removed_while_running_is_not_retried(self, queue, sender):
        job = queue.move_to_active(_add(queue, attempts=3, backoff_seconds=60).id)
        queue.remove(job.id)
        calls = len(sender.calls)
        assert queue.fail(job, "boom") is False
        assert queue.get_job(job.id) is None
        assert queue.get_jobs([FAILED]) == []
        assert len(sender.calls) == calls
