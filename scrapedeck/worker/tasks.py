import logging

from sqlalchemy.orm import Session

from scrapedeck.core.errors import get_error_handler
from scrapedeck.db.session import SessionLocal
from scrapedeck.models import Job, Result
from scrapedeck.services.job_executor import execute_job
from scrapedeck.services.llm import get_generator
from scrapedeck.services.notifications import NotificationDispatcher, deliver_queued
from scrapedeck.services.realtime import connect_change_relay
from scrapedeck.services.repository import Repository
from scrapedeck.services.scheduler import run_due_jobs
from scrapedeck.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


def _notify(db: Session, job: Job, result: Result) -> None:
    """Job outcome notifications, only for users with notification settings."""
    repo = Repository(db)
    if repo.notification_settings.for_user(job.user_id) is None:
        return
    dispatcher = NotificationDispatcher(db)
    execution = repo.executions.list(limit=1, job_id=job.id)
    execution_id = execution[0].id if execution else None
    try:
        if result.status == "success":
            items = execution[0].items_scraped if execution else 0
            dispatcher.job_completed(
                job.user_id,
                job.name,
                items_scraped=items or 0,
                duration_ms=result.execution_time_ms or 0,
                job_id=job.id,
                execution_id=execution_id,
            )
        else:
            dispatcher.job_failed(
                job.user_id,
                job.name,
                error_message=result.error_message or "Unknown error",
                job_id=job.id,
                execution_id=execution_id,
            )
    except Exception as e:
        # a notification problem never fails the run
        get_error_handler().handle(e, {"job_id": job.id, "user_id": job.user_id, "step": "notify"})


@celery_app.task(name="jobs.execute_scraping_job")
def execute_job_task(job_id: int) -> dict:
    # publish execution/progress rows to the API processes
    connect_change_relay()
    db: Session = SessionLocal()
    try:
        result = execute_job(db, job_id, generator=get_generator())
        job = Repository(db).jobs.get(job_id)
        _notify(db, job, result)
        return {
            "ok": True,
            "job_id": job_id,
            "result_id": result.id,
            "status": result.status,
            "job_status": job.status,
        }
    except Exception:
        logger.exception("Scraping job %s did not run to completion", job_id)
        raise
    finally:
        db.close()


@celery_app.task(name="jobs.run_due")
def run_due_jobs_task() -> dict:
    db: Session = SessionLocal()
    try:
        triggered = run_due_jobs(db, run=lambda jid: execute_job_task.apply_async(kwargs={"job_id": jid}))
        return {"ok": True, "triggered": triggered}
    finally:
        db.close()


@celery_app.task(name="notifications.deliver_queued")
def deliver_queued_notifications_task() -> dict:
    db: Session = SessionLocal()
    try:
        delivered = deliver_queued(db)
        return {"ok": True, "delivered": delivered}
    finally:
        db.close()
