from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from scrapedeck.api.deps import get_user_id
from scrapedeck.db.session import get_db
from scrapedeck.models import Job, JobExecution
from scrapedeck.services.analytics import compute_analytics, resolve_range
from scrapedeck.services.export import export_analytics, export_executions, export_filename, render

router = APIRouter(prefix="/analytics", tags=["analytics"])


def _attachment(content: str, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("")
def get_analytics(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    time_range: str = Query(default="30d"),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
):
    return {"ok": True, **compute_analytics(db, user_id=user_id, time_range=time_range, start=start, end=end)}


@router.get("/export")
def export(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    format: str = Query(default="csv"),
    time_range: str = Query(default="30d"),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
):
    analytics = compute_analytics(db, user_id=user_id, time_range=time_range, start=start, end=end)
    content, media_type, ext = render(export_analytics(analytics), format)
    return _attachment(content, media_type, export_filename("scraper_analytics", ext))


@router.get("/executions/export")
def export_execution_history(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    format: str = Query(default="csv"),
    time_range: str = Query(default="30d"),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
):
    begin, finish = resolve_range(time_range, start, end)
    rows = (
        db.query(JobExecution)
        .filter(
            JobExecution.user_id == user_id,
            JobExecution.started_at >= begin,
            JobExecution.started_at <= finish,
        )
        .order_by(JobExecution.started_at.desc())
        .all()
    )
    names = {j.id: j.name for j in db.query(Job).filter(Job.user_id == user_id).all()}
    content, media_type, ext = render(export_executions(rows, names), format)
    return _attachment(content, media_type, export_filename("job_executions", ext))
