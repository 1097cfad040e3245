from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from scrapedeck.api.deps import get_user_id, load_owned
from scrapedeck.db.session import get_db
from scrapedeck.services.notifications import CHANNELS, NotificationDispatcher, NotificationRequest
from scrapedeck.services.repository import Repository, row_to_dict

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationSettingsRequest(BaseModel):
    email_enabled: bool | None = None
    sms_enabled: bool | None = None
    webhook_enabled: bool | None = None
    email_address: str | None = None
    phone_number: str | None = None
    webhook_url: str | None = None
    webhook_secret: str | None = None
    job_completed: bool | None = None
    job_failed: bool | None = None
    job_started: bool | None = None
    job_scheduled: bool | None = None
    system_alerts: bool | None = None
    performance_alerts: bool | None = None
    quiet_hours_enabled: bool | None = None
    quiet_hours_start: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    quiet_hours_end: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    timezone: str | None = None
    max_per_hour: int | None = Field(default=None, ge=0)
    max_per_day: int | None = Field(default=None, ge=0)


class NotificationSendRequest(BaseModel):
    type: str
    title: str
    body: str
    job_id: int | None = None
    execution_id: int | None = None
    metadata: dict | None = None
    channels: list[str] = ["email"]
    account_email: str | None = None


class NotificationTestRequest(BaseModel):
    channels: list[str] = list(CHANNELS)
    account_email: str | None = None


def _settings(row) -> dict:
    d = row_to_dict(row)
    if d.get("webhook_secret"):
        d["webhook_secret"] = "********"
    return d


@router.get("")
def list_notifications(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
):
    repo = Repository(db)
    rows = repo.notifications.list(limit=limit, user_id=user_id, read=False if unread_only else None)
    return {
        "ok": True,
        "unread": repo.notifications.count(user_id=user_id, read=False),
        "notifications": [row_to_dict(n) for n in rows],
    }


@router.post("/{notification_id}/read")
def mark_read(notification_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    repo = Repository(db)
    load_owned(repo.notifications, notification_id, user_id, "Notification")
    return {"ok": True, "notification": row_to_dict(repo.notifications.mark_as_read(notification_id))}


@router.get("/settings/{user_id}")
def get_settings(user_id: str, db: Session = Depends(get_db)):
    row = Repository(db).notification_settings.for_user(user_id)
    return {"ok": True, "settings": _settings(row) if row else None}


@router.put("/settings/{user_id}")
def put_settings(user_id: str, req: NotificationSettingsRequest, db: Session = Depends(get_db)):
    values = req.model_dump(exclude_none=True)
    row = Repository(db).notification_settings.upsert(user_id, **values)
    return {"ok": True, "settings": _settings(row)}


@router.post("/send")
def send(req: NotificationSendRequest, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    if req.job_id is not None:
        load_owned(Repository(db).jobs, req.job_id, user_id)
    statuses = NotificationDispatcher(db).dispatch(
        user_id,
        NotificationRequest(
            type=req.type,
            title=req.title,
            body=req.body,
            job_id=req.job_id,
            execution_id=req.execution_id,
            metadata=req.metadata,
        ),
        channels=req.channels,
        account_email=req.account_email,
    )
    return {"ok": all(s.success for s in statuses), "statuses": [s.to_dict() for s in statuses]}


@router.post("/test")
def send_test(req: NotificationTestRequest, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    unknown = [c for c in req.channels if c not in CHANNELS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unsupported notification channel: {unknown[0]}")
    results = NotificationDispatcher(db).test_channels(user_id, req.channels, account_email=req.account_email)
    return {"ok": True, "results": {c: s.to_dict() for c, s in results.items()}}
