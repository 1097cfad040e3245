from __future__ import annotations

from typing import Any, Dict

from scrapedeck.worker import tasks as worker_tasks


# API-level job_type -> Celery task object
JOB_TYPE_TO_TASK = {
    "execute_scraping_job": worker_tasks.execute_job_task,
    "run_due_jobs": worker_tasks.run_due_jobs_task,
    "deliver_queued_notifications": worker_tasks.deliver_queued_notifications_task,
}


def dispatch_job(job_type: str, payload: Dict[str, Any] | None = None):
    """
    Dispatch through the task object (.apply_async) so ENV=test eager mode works.
    Returns the celery result (EagerResult or AsyncResult).
    """
    payload = payload or {}

    task = JOB_TYPE_TO_TASK.get(job_type)
    if not task:
        raise ValueError(f"Unknown job_type: {job_type}")

    return task.apply_async(kwargs=payload)
