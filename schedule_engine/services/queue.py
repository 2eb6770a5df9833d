"""Schedule queue: delayed, retryable, repeatable jobs.

Celery carries the delayed task messages; Redis keeps a registry of every
job so the daily sync can list, remove and clean them. A job whose
registry entry is gone is treated as cancelled when its message arrives.
"""

import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import redis

from schedule_engine.core.config import settings
from schedule_engine.core.exceptions import QueueError

logger = logging.getLogger("schedule_engine.queue")

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
DELAYED = "delayed"
JOB_STATES = (WAITING, ACTIVE, COMPLETED, FAILED, DELAYED)

DISPATCH_TASK_NAME = "dispatch_schedule_job"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class RepeatOptions:
    every_seconds: int
    until: datetime


@dataclass
class QueueJob:
    """A job in the registry. ``remove()`` cancels it."""

    id: str
    name: str
    data: Dict[str, Any]
    state: str = WAITING
    attempts: int = 1
    attempts_made: int = 0
    backoff_seconds: int = 0
    remove_on_fail: int = 0
    repeat_every_seconds: Optional[int] = None
    repeat_until: Optional[str] = None
    repeat_count: int = 0
    schedule_key: Optional[str] = None
    task_id: Optional[str] = None
    run_at: Optional[str] = None
    created_at: Optional[str] = None
    finished_at: Optional[str] = None
    failed_reason: Optional[str] = None
    _queue: Optional["ScheduleQueue"] = field(default=None, repr=False, compare=False)

    def remove(self) -> None:
        if self._queue is None:
            raise QueueError(f"Job {self.id} is not attached to a queue")
        self._queue.remove(self.id)

    def to_json(self) -> str:
        payload = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "_queue"}
        return json.dumps(payload, default=str)

    @classmethod
    def from_json(cls, raw: str, queue: Optional["ScheduleQueue"] = None) -> "QueueJob":
        job = cls(**json.loads(raw))
        job._queue = queue
        return job


class ScheduleQueue:
    """Redis-tracked job queue dispatched through Celery."""

    def __init__(
        self,
        name: Optional[str] = None,
        prefix: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        sender: Optional[Callable[..., Any]] = None,
        revoker: Optional[Callable[[str], Any]] = None,
    ):
        self.name = name or settings.SCHEDULE_QUEUE_NAME
        self.prefix = prefix or settings.SCHEDULE_QUEUE_PREFIX
        self._client = client
        self._sender = sender
        self._revoker = revoker

    # ---- backends ----

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                max_connections=100,
            )
        return self._client

    def _send(self, **kwargs: Any) -> Any:
        if self._sender is None:
            from schedule_engine.tasks.celery_app import celery_app
            self._sender = celery_app.send_task
        return self._sender(DISPATCH_TASK_NAME, **kwargs)

    def _revoke(self, task_id: str) -> None:
        if self._revoker is None:
            from schedule_engine.tasks.celery_app import celery_app
            self._revoker = celery_app.control.revoke
        self._revoker(task_id)

    @contextmanager
    def _backend(self, operation: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as e:
            raise QueueError(f"Queue '{self.name}' failed to {operation}: {e}") from e

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix, self.name) + parts)

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    # ---- registry ----

    def _store(self, job: QueueJob) -> None:
        self.client.set(self._key("job", job.id), job.to_json())

    def _set_state(self, job: QueueJob, state: str) -> None:
        for s in JOB_STATES:
            if s != state:
                self.client.srem(self._key("state", s), job.id)
        self.client.sadd(self._key("state", state), job.id)
        job.state = state
        self._store(job)

    def _dispatch(self, job: QueueJob, countdown: float) -> None:
        job.task_id = f"{job.id}:{uuid.uuid4().hex[:12]}"
        job.run_at = _iso(_now() + timedelta(seconds=max(0.0, countdown)))
        self._store(job)
        self._send(
            args=[job.id],
            countdown=max(0.0, countdown),
            task_id=job.task_id,
            queue=self.name,
        )

    def add(
        self,
        name: str,
        data: Dict[str, Any],
        delay_seconds: float = 0,
        attempts: int = 1,
        remove_on_fail: int = 0,
        backoff_seconds: int = 0,
        repeat: Optional[RepeatOptions] = None,
        job_id: Optional[str] = None,
        schedule_key: Optional[str] = None,
    ) -> QueueJob:
        """Enqueue a job to run after ``delay_seconds``.

        An existing job with the same id is replaced.
        """
        job = QueueJob(
            id=job_id or str(uuid.uuid4()),
            name=name,
            data=data,
            attempts=max(1, attempts),
            remove_on_fail=remove_on_fail,
            backoff_seconds=backoff_seconds,
            repeat_every_seconds=repeat.every_seconds if repeat else None,
            repeat_until=_iso(repeat.until) if repeat else None,
            schedule_key=schedule_key,
            created_at=_iso(_now()),
            _queue=self,
        )
        with self._backend("add job"):
            if self.client.get(self._key("job", job.id)) is not None:
                self.remove(job.id)
            self._set_state(job, DELAYED if delay_seconds > 0 else WAITING)
            if schedule_key:
                self.client.sadd(self._key("schedule", schedule_key), job.id)
            self._dispatch(job, delay_seconds)
        return job

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        with self._backend("read job"):
            raw = self.client.get(self._key("job", job_id))
        return QueueJob.from_json(raw, self) if raw else None

    def get_jobs(self, states: Iterable[str] = JOB_STATES) -> List[QueueJob]:
        jobs: List[QueueJob] = []
        seen = set()
        with self._backend("list jobs"):
            for state in states:
                for job_id in sorted(self.client.smembers(self._key("state", state))):
                    if job_id in seen:
                        continue
                    seen.add(job_id)
                    job = self.get_job(job_id)
                    if job is not None:
                        jobs.append(job)
        return jobs

    def jobs_for_schedule(self, schedule_key: str) -> List[QueueJob]:
        with self._backend("list schedule jobs"):
            job_ids = sorted(self.client.smembers(self._key("schedule", schedule_key)))
        return [job for job in (self.get_job(j) for j in job_ids) if job is not None]

    def remove(self, job_id: str) -> None:
        """Drop a job from the registry and revoke its pending message."""
        with self._backend("remove job"):
            raw = self.client.get(self._key("job", job_id))
            job = QueueJob.from_json(raw) if raw else None
            if job and job.task_id and job.state in (WAITING, DELAYED):
                self._revoke(job.task_id)
            self.client.delete(self._key("job", job_id))
            for state in JOB_STATES:
                self.client.srem(self._key("state", state), job_id)
            self.client.lrem(self._key("failed-order"), 0, job_id)
            if job and job.schedule_key:
                self.client.srem(self._key("schedule", job.schedule_key), job_id)

    def clean(self, grace_seconds: float, state: str) -> List[str]:
        """Remove jobs in ``state`` that finished more than ``grace_seconds`` ago."""
        cutoff = _now() - timedelta(seconds=grace_seconds)
        removed = []
        for job in self.get_jobs([state]):
            finished = _parse(job.finished_at)
            if finished is None or finished <= cutoff:
                self.remove(job.id)
                removed.append(job.id)
        return removed

    # ---- consumer side ----

    def move_to_active(self, job_id: str) -> Optional[QueueJob]:
        job = self.get_job(job_id)
        if job is None:
            return None
        with self._backend("activate job"):
            self._set_state(job, ACTIVE)
        return job

    def _still_registered(self, job: QueueJob) -> bool:
        if self.client.get(self._key("job", job.id)) is None:
            logger.info("Job %s was removed while running, discarding its outcome", job.id)
            return False
        return True

    def complete(self, job: QueueJob) -> None:
        with self._backend("complete job"):
            if not self._still_registered(job):
                return
            job.finished_at = _iso(_now())
            self._set_state(job, COMPLETED)
            self._repeat_if_due(job)

    def fail(self, job: QueueJob, reason: str) -> bool:
        """Record a failed attempt. Returns True when another attempt was queued."""
        with self._backend("fail job"):
            if not self._still_registered(job):
                return False
            job.attempts_made += 1
            job.failed_reason = reason
            if job.attempts_made < job.attempts:
                self._set_state(job, DELAYED)
                self._dispatch(job, job.backoff_seconds)
                return True

            job.finished_at = _iso(_now())
            self._set_state(job, FAILED)
            self._retain_failed(job)
            self._repeat_if_due(job)
        return False

    def _retain_failed(self, job: QueueJob) -> None:
        # 0 keeps every failed job until the next cleanup
        if job.remove_on_fail <= 0:
            return
        order_key = self._key("failed-order")
        self.client.lpush(order_key, job.id)
        for stale_id in self.client.lrange(order_key, job.remove_on_fail, -1):
            self.remove(stale_id)
        self.client.ltrim(order_key, 0, job.remove_on_fail - 1)

    def _repeat_if_due(self, job: QueueJob) -> None:
        if not job.repeat_every_seconds or not job.repeat_until:
            return
        if self.client.get(self._key("job", job.id)) is None:
            return
        next_at = _now() + timedelta(seconds=job.repeat_every_seconds)
        if next_at > _parse(job.repeat_until):
            return
        job.repeat_count += 1
        job.attempts_made = 0
        job.finished_at = None
        self.client.lrem(self._key("failed-order"), 0, job.id)
        self._set_state(job, DELAYED)
        self._dispatch(job, job.repeat_every_seconds)
        logger.info("Repeating job %s (#%d) in %ss", job.id, job.repeat_count, job.repeat_every_seconds)


schedule_queue = ScheduleQueue()
