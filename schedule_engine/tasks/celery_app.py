"""Celery app and tasks for the daily sync and schedule job dispatch."""

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_init, worker_process_init, worker_ready

from schedule_engine.core.config import settings

logger = logging.getLogger("schedule_engine.worker")

celery_app = Celery(
    "schedule_engine",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.SCHEDULER_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_default_queue=settings.SCHEDULE_QUEUE_NAME,
    worker_concurrency=settings.CONCURRENCY,
    task_soft_time_limit=600,  # 10 min soft limit
    task_time_limit=900,  # 15 min hard limit
    beat_schedule={
        "daily-schedule-sync": {
            "task": "setup_daily_schedules",
            "schedule": crontab(
                hour=settings.DAILY_SYNC_HOUR,
                minute=settings.DAILY_SYNC_MINUTE,
            ),
        },
    },
)


def _bootstrap_worker() -> None:
    from schedule_engine.services.action_registry import action_registry, load_action_modules
    from schedule_engine.services.arming import install_arming_hook

    load_action_modules(settings.ACTION_MODULES)
    logger.info("Registered actions: %s", ", ".join(action_registry.names()) or "none")
    install_arming_hook()


@worker_init.connect
def _on_worker_init(**kwargs):
    _bootstrap_worker()


@worker_process_init.connect
def _on_worker_process_init(**kwargs):
    _bootstrap_worker()


@worker_ready.connect
def _on_worker_ready(sender=None, **kwargs):
    logger.info("🚀 Worker started - Setting up schedules for today...")
    setup_daily_schedules.delay()


@celery_app.task(name="setup_daily_schedules")
def setup_daily_schedules() -> dict:
    """Arm today's schedules for every tenant (beat-triggered and at startup)."""
    from schedule_engine.services.synchronizer import DailyScheduleSynchronizer

    report = DailyScheduleSynchronizer().setup_daily_schedules()
    return report.as_dict()


@celery_app.task(name="dispatch_schedule_job")
def dispatch_schedule_job(job_id: str) -> dict:
    """Consume one schedule queue job.

    Every job name goes through this task; the job's action picks the handler.
    """
    from schedule_engine.services.dispatcher import process_queue_job

    return process_queue_job(job_id)
