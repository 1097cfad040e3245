"""
Job execution.

One run = claim -> execution/progress rows -> AI scrape -> Result -> final
status. Exactly one Result row is written per executed run, including failed
and cancelled runs.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from sqlalchemy.orm import Session

from scrapedeck.core.clock import as_utc, utcnow
from scrapedeck.core.errors import AppError, AppErrorType, ErrorHandler, get_error_handler
from scrapedeck.models import Job, JobExecution, JobProgress, Result
from scrapedeck.services.llm import TextGenerator
from scrapedeck.services.repository import Repository
from scrapedeck.services.scraping import (
    ScrapeOutcome,
    get_prompt_template,
    is_text_wrapper,
    scrape_with_ai,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Execution cancelled"

# progress checkpoints (percent)
STEP_CLAIMED = ("claimed", 10)
STEP_SCRAPING = ("scraping", 40)
STEP_SAVING = ("saving", 80)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running", "paused"},
    "running": {"completed", "failed", "paused"},
    "completed": {"running"},
    "failed": {"running"},
    "paused": {"running"},
}


def check_transition(current: str, target: str) -> None:
    if current == target:
        return
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise AppError(
            AppErrorType.VALIDATION_ERROR,
            f"Invalid job status transition: {current} -> {target}",
            context={"from": current, "to": target},
        )


# ----------------------------
# Cancellation
# ----------------------------

class ExecutionCancelled(Exception):
    pass


class CancelToken:
    """
    Set in-process with cancel(), or through the job's persisted
    `cancel_requested` flag once a run binds a poll to it.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._poll: Callable[[], bool] | None = None

    def cancel(self) -> None:
        self._event.set()

    def bind(self, poll: Callable[[], bool]) -> None:
        self._poll = poll

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self._poll is not None and self._poll():
            self._event.set()
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExecutionCancelled(CANCELLED_MESSAGE)


_running: dict[int, CancelToken] = {}
_running_lock = threading.Lock()


def request_cancel(job_id: int) -> bool:
    """Cancel an in-process run. Returns False when the job is not running here."""
    with _running_lock:
        token = _running.get(job_id)
    if token is None:
        return False
    token.cancel()
    logger.info("Cancellation requested for job %s", job_id)
    return True


def pause_job(db: Session, job_id: int) -> Job:
    """
    Pending jobs pause at once. A running job stays `running` with
    `cancel_requested` set; whichever process holds the run moves it to
    `paused` at its next checkpoint.
    """
    repo = Repository(db)
    job = repo.jobs.get(job_id)
    if job.status not in ("pending", "running"):
        raise AppError(
            AppErrorType.VALIDATION_ERROR,
            f"Job {job_id} cannot be paused from status {job.status}",
            context={"job_id": job_id, "status": job.status},
        )
    if job.status == "pending":
        return repo.jobs.update(job_id, status="paused")

    request_cancel(job_id)
    if not repo.jobs.request_cancel(job_id):
        # the run settled in the meantime
        db.refresh(job)
        return job
    logger.info("Pause requested for running job %s", job_id)
    return repo.jobs.get(job_id)


# ----------------------------
# Helpers
# ----------------------------

def count_items(data: Any) -> int:
    if not data:
        return 0
    if is_text_wrapper(data):
        return 1
    if isinstance(data, list):
        return len(data)
    if isinstance(data, dict):
        lists = [len(v) for v in data.values() if isinstance(v, list)]
        return max(lists) if lists else 1
    return 1


def preview(data: Any, max_keys: int = 10) -> dict[str, Any] | None:
    if not isinstance(data, dict):
        return None
    out: dict[str, Any] = {}
    for k in list(data.keys())[:max_keys]:
        v = data[k]
        if isinstance(v, str) and len(v) > 200:
            v = v[:200] + "..."
        elif isinstance(v, list):
            v = v[:3]
        out[k] = v
    return out


# ----------------------------
# Executor
# ----------------------------

class JobExecutor:
    def __init__(
        self,
        db: Session,
        generator: TextGenerator | None = None,
        error_handler: ErrorHandler | None = None,
        result_retries: int = 3,
        retry_backoff_ms: int = 1000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.repo = Repository(db)
        self.generator = generator
        self.errors = error_handler or get_error_handler()
        self.result_retries = result_retries
        self.retry_backoff_ms = retry_backoff_ms
        self.sleep = sleep

    def execute(self, job_id: int, cancel: CancelToken | None = None) -> Result:
        try:
            job = self.repo.jobs.claim(job_id)
        except Exception as e:
            raise self.errors.handle(e, {"job_id": job_id, "step": "claim"})

        token = cancel or CancelToken()
        token.bind(lambda: self.repo.jobs.cancel_requested(job.id))
        with _running_lock:
            _running[job.id] = token

        logger.info("Executing job %s (%s)", job.id, job.name)
        started = time.monotonic()
        execution: JobExecution | None = None
        progress: JobProgress | None = None
        result: Result | None = None
        write_exhausted = False
        step = "claim"

        try:
            step, pct = STEP_CLAIMED
            execution = self.repo.executions.create(
                job_id=job.id,
                user_id=job.user_id,
                status="running",
                current_step=step,
                progress_percentage=pct,
            )
            progress = self.repo.progress.create(
                job_id=job.id,
                execution_id=execution.id,
                user_id=job.user_id,
                progress_percentage=pct,
                current_step=step,
                status_message=f"Job {job.name} claimed",
            )
            token.raise_if_cancelled()

            prompt = job.ai_prompt or get_prompt_template(job.scraping_type)
            step, pct = STEP_SCRAPING
            self._advance(execution, progress, step, pct, "Extracting data with AI")
            outcome = scrape_with_ai(
                job.url,
                prompt,
                use_vision=bool(job.use_vision),
                model=job.ai_model or None,
                generator=self.generator,
            )
            token.raise_if_cancelled()

            step, pct = STEP_SAVING
            self._advance(execution, progress, step, pct, "Saving results")
            try:
                result = self._write_result(job, outcome)
            except AppError:
                write_exhausted = True
                logger.error(
                    "Result for job %s could not be saved, extracted data follows: %r",
                    job.id,
                    outcome.data,
                )
                raise

            status = "completed" if outcome.success else "failed"
            self._settle(job.id, status)
            self._close(execution, progress, status, started, outcome=outcome)
            logger.info("Job %s finished: %s", job.id, status)
            return result

        except ExecutionCancelled:
            logger.info("Job %s cancelled during %s", job.id, step)
            self._settle(job.id, "paused")
            result = self._best_effort_result(job, CANCELLED_MESSAGE, started)
            self._close(execution, progress, "cancelled", started, error=CANCELLED_MESSAGE)
            return result

        except Exception as e:
            app_error = self.errors.handle(e, {"job_id": job.id, "user_id": job.user_id, "step": step})
            self._settle(job.id, "failed")
            if result is None and not write_exhausted:
                result = self._best_effort_result(job, app_error.message, started)
            self._close(execution, progress, "failed", started, error=app_error.message)
            if result is None:
                raise app_error
            return result

        finally:
            with _running_lock:
                _running.pop(job.id, None)

    # ---- steps ----

    def _advance(self, execution: JobExecution, progress: JobProgress, step: str, pct: int, message: str) -> None:
        self.repo.executions.update(execution.id, current_step=step, progress_percentage=pct)
        self.repo.progress.update(progress.id, current_step=step, progress_percentage=pct, status_message=message)

    def _write_result(self, job: Job, outcome: ScrapeOutcome) -> Result:
        def write() -> Result:
            return self.repo.results.create(
                job_id=job.id,
                user_id=job.user_id,
                data=outcome.data or {},
                status="success" if outcome.success else "failed",
                error_message=outcome.error,
                execution_time_ms=outcome.execution_time_ms,
                tokens_used=outcome.tokens_used or 0,
                scraped_at=utcnow(),
            )

        return self.errors.retry(
            write,
            max_retries=self.result_retries,
            backoff_ms=self.retry_backoff_ms,
            sleep=self.sleep,
        )

    def _best_effort_result(self, job: Job, message: str, started: float) -> Result | None:
        try:
            return self.repo.results.create(
                job_id=job.id,
                user_id=job.user_id,
                data={},
                status="failed",
                error_message=message,
                execution_time_ms=int((time.monotonic() - started) * 1000),
                tokens_used=0,
                scraped_at=utcnow(),
            )
        except Exception as e:
            self.errors.handle(e, {"job_id": job.id, "user_id": job.user_id, "step": "failed_result"})
            return None

    def _settle(self, job_id: int, status: str) -> None:
        try:
            self.repo.jobs.finish(job_id, status)
        except Exception as e:
            self.errors.handle(e, {"job_id": job_id, "step": f"mark_{status}"})

    def _close(
        self,
        execution: JobExecution | None,
        progress: JobProgress | None,
        status: str,
        started: float,
        outcome: ScrapeOutcome | None = None,
        error: str | None = None,
    ) -> None:
        step = "done" if status == "completed" else status
        now = utcnow()
        data = outcome.data if outcome else None
        try:
            if execution is not None:
                begun = as_utc(execution.started_at) or now
                self.repo.executions.update(
                    execution.id,
                    status=status,
                    completed_at=now,
                    duration=round((now - begun).total_seconds(), 3),
                    items_scraped=count_items(data),
                    progress_percentage=100,
                    current_step=step,
                    error_message=error or (outcome.error if outcome else None),
                    ai_insights={
                        "tokens_used": outcome.tokens_used if outcome else 0,
                        "execution_time_ms": outcome.execution_time_ms if outcome else int((time.monotonic() - started) * 1000),
                    },
                    results_preview=preview(data),
                )
            if progress is not None:
                self.repo.progress.update(
                    progress.id,
                    progress_percentage=100,
                    current_step=step,
                    items_processed=count_items(data),
                    status_message=error or f"Execution {status}",
                )
        except Exception as e:
            self.errors.handle(
                e,
                {
                    "execution_id": getattr(execution, "id", None),
                    "user_id": getattr(execution, "user_id", None),
                    "step": "close",
                },
            )


def execute_job(
    db: Session,
    job_id: int,
    cancel: CancelToken | None = None,
    generator: TextGenerator | None = None,
    **kwargs: Any,
) -> Result:
    return JobExecutor(db, generator=generator, **kwargs).execute(job_id, cancel=cancel)


def test_job(fields: dict[str, Any], generator: TextGenerator | None = None) -> ScrapeOutcome:
    """Dry run: prompt resolution + AI call, nothing persisted."""
    url = fields.get("url")
    scraping_type = fields.get("scraping_type")
    if not url or not scraping_type:
        return ScrapeOutcome(success=False, error="URL and scraping type are required")

    return scrape_with_ai(
        url,
        fields.get("ai_prompt") or get_prompt_template(scraping_type),
        use_vision=bool(fields.get("use_vision")),
        model=fields.get("ai_model") or None,
        generator=generator,
    )
