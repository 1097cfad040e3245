from celery import Celery

from scrapedeck.core.celery_settings import is_test_env
from scrapedeck.core.config import _env

BROKER_URL = (
    _env("CELERY_BROKER_URL")
    or _env("REDIS_URL")
    or "redis://localhost:6379/0"
)

RESULT_BACKEND = _env("CELERY_RESULT_BACKEND") or BROKER_URL

# the variable name MUST be `celery_app` (celery -A scrapedeck.worker.celery_app)
celery_app = Celery(
    "scrapedeck",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
)

celery_app.autodiscover_tasks(["scrapedeck.worker"])

celery_app.conf.update(
    task_track_started=True,
    result_extended=True,
    enable_utc=True,
    timezone="UTC",
    # ENV=test: run tasks inline, no broker needed
    task_always_eager=is_test_env(),
    task_eager_propagates=is_test_env(),
    task_store_eager_result=False,
)

# Scheduled jobs and quiet-hours notifications are picked up by celery beat once a minute
celery_app.conf.beat_schedule = {
    "run-due-scraping-jobs": {
        "task": "jobs.run_due",
        "schedule": float(_env("SCHEDULER_POLL_SEC", "60")),
    },
    "deliver-queued-notifications": {
        "task": "notifications.deliver_queued",
        "schedule": float(_env("SCHEDULER_POLL_SEC", "60")),
    },
}

__all__ = ["celery_app"]
