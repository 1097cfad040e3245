from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from scrapedeck.api.deps import get_user_id, load_owned
from scrapedeck.core.errors import AppError, AppErrorType, validation_error
from scrapedeck.db.session import get_db
from scrapedeck.models.job import SCRAPING_TYPES
from scrapedeck.services import job_executor
from scrapedeck.services.export import export_filename, export_results, render
from scrapedeck.services.job_dispatch import dispatch_job
from scrapedeck.services.repository import Repository, row_to_dict
from scrapedeck.services.scheduler import ScheduleConfig, schedule_job

router = APIRouter(prefix="/jobs", tags=["jobs"])


class JobConfig(BaseModel):
    """Known job options; any other keys are kept as-is."""

    model_config = ConfigDict(extra="allow")

    template: str | None = None
    template_id: str | None = None
    retry_count: int | None = Field(default=None, ge=0, le=10)
    schedule_enabled: bool | None = None
    respectful_scraping: bool | None = None


class JobCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    url: str = Field(min_length=1)
    scraping_type: str = "general"
    ai_prompt: str | None = None
    use_vision: bool = False
    ai_model: str | None = None
    selectors: dict[str, str] = {}
    config: JobConfig = JobConfig()


class JobUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    url: str | None = None
    status: str | None = None
    scraping_type: str | None = None
    ai_prompt: str | None = None
    use_vision: bool | None = None
    ai_model: str | None = None
    selectors: dict[str, str] | None = None
    config: JobConfig | None = None


class JobTestRequest(BaseModel):
    url: str | None = None
    scraping_type: str | None = None
    ai_prompt: str | None = None
    use_vision: bool = False
    ai_model: str | None = None


class JobRunResponse(BaseModel):
    ok: bool
    job_id: int
    task_id: str
    status: str


class ScheduleRequest(BaseModel):
    frequency: str = "manual"
    time: str | None = None
    days: list[int] = []
    interval: int | None = None
    timezone: str = "UTC"


def _check_type(scraping_type: str) -> None:
    if scraping_type not in SCRAPING_TYPES:
        raise validation_error(f"Unknown scraping type: {scraping_type}", field="scraping_type")


@router.get("")
def list_jobs(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    repo = Repository(db)
    rows = repo.jobs.list(limit=limit, offset=offset, user_id=user_id, status=status)
    return {
        "ok": True,
        "total": repo.jobs.count(user_id=user_id, status=status),
        "limit": limit,
        "offset": offset,
        "jobs": [row_to_dict(j) for j in rows],
    }


@router.post("")
def create_job(req: JobCreateRequest, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    _check_type(req.scraping_type)
    job = Repository(db).jobs.create(
        user_id=user_id,
        name=req.name.strip(),
        url=req.url.strip(),
        status="pending",
        scraping_type=req.scraping_type,
        ai_prompt=req.ai_prompt,
        use_vision=req.use_vision,
        ai_model=req.ai_model,
        selectors=req.selectors,
        config=req.config.model_dump(exclude_unset=True),
    )
    return {"ok": True, "job": row_to_dict(job)}


@router.post("/test")
def test_job_config(req: JobTestRequest):
    """Dry run of a job configuration; nothing is persisted."""
    outcome = job_executor.test_job(req.model_dump())
    return {"ok": outcome.success, "result": outcome.to_dict()}


@router.get("/{job_id}")
def get_job(job_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    job = load_owned(Repository(db).jobs, job_id, user_id)
    return {"ok": True, "job": row_to_dict(job)}


@router.patch("/{job_id}")
def update_job(
    job_id: int,
    req: JobUpdateRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    repo = Repository(db)
    job = load_owned(repo.jobs, job_id, user_id)
    values = req.model_dump(exclude_unset=True)
    if "scraping_type" in values and values["scraping_type"] is not None:
        _check_type(values["scraping_type"])
    if values.get("status"):
        if job.status == "running":
            raise AppError(
                AppErrorType.DATA_INTEGRITY_ERROR,
                f"Job {job_id} is running; use /pause or /cancel",
                context={"job_id": job_id},
            )
        if values["status"] == "running":
            raise validation_error("Use POST /jobs/{id}/run to start a job", field="status")
        job_executor.check_transition(job.status, values["status"])
    values = {k: v for k, v in values.items() if v is not None or k in ("ai_prompt", "ai_model")}
    if not values:
        return {"ok": True, "job": row_to_dict(job)}
    job = repo.jobs.update(job_id, **values)
    return {"ok": True, "job": row_to_dict(job)}


@router.delete("/{job_id}")
def delete_job(job_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    repo = Repository(db)
    job = load_owned(repo.jobs, job_id, user_id)
    if job.status == "running":
        raise AppError(
            AppErrorType.DATA_INTEGRITY_ERROR,
            f"Job {job_id} is running and cannot be deleted",
            context={"job_id": job_id},
        )
    repo.jobs.delete(job_id)
    return {"ok": True, "job_id": job_id}


@router.post("/{job_id}/run", response_model=JobRunResponse)
def run_job(job_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)) -> JobRunResponse:
    repo = Repository(db)
    job = load_owned(repo.jobs, job_id, user_id)
    if job.status == "running":
        raise HTTPException(status_code=409, detail=f"Job {job_id} is already running")

    async_result = dispatch_job("execute_scraping_job", {"job_id": job_id})

    # eager mode (ENV=test) has already executed the run in another session
    db.expire_all()
    job = repo.jobs.get(job_id)
    return JobRunResponse(ok=True, job_id=job_id, task_id=async_result.id, status=job.status)


@router.post("/{job_id}/pause")
def pause(job_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    load_owned(Repository(db).jobs, job_id, user_id)
    job = job_executor.pause_job(db, job_id)
    return {"ok": True, "job": row_to_dict(job)}


@router.post("/{job_id}/cancel")
def cancel(job_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    """
    Ask the run holding this job to stop. The job stays `running` until that
    run reaches its next checkpoint and settles it as `paused`.
    """
    repo = Repository(db)
    job = load_owned(repo.jobs, job_id, user_id)
    if job.status != "running":
        raise HTTPException(status_code=409, detail=f"Job {job_id} is not running")
    local = job_executor.request_cancel(job_id)
    requested = repo.jobs.request_cancel(job_id)
    if not (local or requested):
        raise HTTPException(status_code=409, detail=f"Job {job_id} is not running")
    job = repo.jobs.get(job_id)
    return {
        "ok": True,
        "job_id": job_id,
        "cancel_requested": True,
        "status": job.status,
    }


@router.post("/{job_id}/schedule")
def schedule(
    job_id: int,
    req: ScheduleRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    load_owned(Repository(db).jobs, job_id, user_id)
    job = schedule_job(db, job_id, ScheduleConfig.from_dict(req.model_dump()))
    return {"ok": True, "job": row_to_dict(job)}


@router.get("/{job_id}/results")
def list_results(
    job_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    repo = Repository(db)
    load_owned(repo.jobs, job_id, user_id)
    rows = repo.results.list(limit=limit, offset=offset, job_id=job_id, status=status)
    return {
        "ok": True,
        "job_id": job_id,
        "total": repo.results.count(job_id=job_id, status=status),
        "results": [row_to_dict(r) for r in rows],
    }


@router.get("/{job_id}/executions")
def list_executions(
    job_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    limit: int = Query(default=20, ge=1, le=200),
):
    repo = Repository(db)
    load_owned(repo.jobs, job_id, user_id)
    rows = repo.executions.list(limit=limit, job_id=job_id)
    return {"ok": True, "job_id": job_id, "executions": [row_to_dict(e) for e in rows]}


@router.get("/{job_id}/results/export")
def export_job_results(
    job_id: int,
    format: str = Query(default="csv"),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    repo = Repository(db)
    job = load_owned(repo.jobs, job_id, user_id)
    data = export_results(repo.results.list(job_id=job_id))
    data.metadata["jobName"] = job.name
    content, media_type, ext = render(data, format)
    filename = export_filename(f"scraper_results_{job_id}", ext)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
