from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from sqlalchemy.orm import Session

from scrapedeck.core.clock import utcnow
from scrapedeck.core.config import settings
from scrapedeck.core.errors import AppError, AppErrorType, get_error_handler
from scrapedeck.models import Job
from scrapedeck.services.repository import Repository, loads

logger = logging.getLogger(__name__)

FREQUENCIES = ("manual", "hourly", "daily", "weekly", "monthly", "custom")


@dataclass
class ScheduleConfig:
    frequency: str = "manual"
    time: str | None = None        # "HH:MM" in `timezone`
    days: list[int] = field(default_factory=list)  # 0-6, Sunday first
    interval: int | None = None    # hours, custom frequency only
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        if self.frequency not in FREQUENCIES:
            raise AppError(AppErrorType.VALIDATION_ERROR, f"Unknown schedule frequency: {self.frequency}")
        if self.time is not None:
            _parse_time(self.time)
        for d in self.days or []:
            if not 0 <= int(d) <= 6:
                raise AppError(AppErrorType.VALIDATION_ERROR, f"Invalid schedule day: {d}")
        if self.interval is not None and int(self.interval) <= 0:
            raise AppError(AppErrorType.VALIDATION_ERROR, "Schedule interval must be > 0 hours")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScheduleConfig":
        data = data or {}
        return cls(
            frequency=data.get("frequency") or "manual",
            time=data.get("time"),
            days=list(data.get("days") or []),
            interval=data.get("interval"),
            timezone=data.get("timezone") or "UTC",
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_time(value: str) -> tuple[int, int]:
    try:
        h, m = (int(x) for x in value.split(":", 1))
    except (AttributeError, ValueError):
        raise AppError(AppErrorType.VALIDATION_ERROR, f"Invalid schedule time: {value!r}")
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise AppError(AppErrorType.VALIDATION_ERROR, f"Invalid schedule time: {value!r}")
    return h, m


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise AppError(AppErrorType.VALIDATION_ERROR, f"Unknown timezone: {name}")


def _at_time(dt: datetime, time_str: str | None) -> datetime:
    if not time_str:
        return dt
    h, m = _parse_time(time_str)
    return dt.replace(hour=h, minute=m, second=0, microsecond=0)


def calculate_next_run(config: ScheduleConfig, now: datetime | None = None) -> datetime | None:
    """
    Next run time in UTC, or None for manual schedules.

    Wall-clock arithmetic happens in the config timezone:
    - hourly: now + 1h
    - daily: tomorrow at `time`
    - weekly: next day listed in `days` (Sunday=0), else +7 days, at `time`
    - monthly: first day of next month at `time`
    - custom: now + `interval` hours (default 1)
    """
    if config.frequency == "manual":
        return None

    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(_zone(config.timezone))

    if config.frequency == "hourly":
        nxt = local + timedelta(hours=1)
    elif config.frequency == "daily":
        nxt = _at_time(local + timedelta(days=1), config.time)
    elif config.frequency == "weekly":
        nxt = None
        wanted = {int(d) for d in config.days or []}
        if wanted:
            for step in range(1, 8):
                candidate = local + timedelta(days=step)
                if (candidate.weekday() + 1) % 7 in wanted:
                    nxt = candidate
                    break
        nxt = _at_time(nxt or local + timedelta(days=7), config.time)
    elif config.frequency == "monthly":
        year, month = (local.year + 1, 1) if local.month == 12 else (local.year, local.month + 1)
        nxt = _at_time(local.replace(year=year, month=month, day=1), config.time)
    else:  # custom
        nxt = local + timedelta(hours=int(config.interval or 1))

    return nxt.astimezone(timezone.utc)


def _forward_to_scheduler_function(job_id: int, config: ScheduleConfig) -> None:
    headers = {"Content-Type": "application/json"}
    if settings.functions_api_key:
        headers["Authorization"] = f"Bearer {settings.functions_api_key}"
    with httpx.Client(timeout=settings.functions_timeout_sec) as client:
        r = client.post(
            settings.scheduler_function_url,
            json={"jobId": job_id, "scheduleConfig": config.to_dict()},
            headers=headers,
        )
        r.raise_for_status()


def schedule_job(
    db: Session,
    job_id: int,
    config: ScheduleConfig,
    now: datetime | None = None,
    forward: bool = True,
) -> Job:
    repo = Repository(db)
    repo.jobs.get(job_id)

    next_run = calculate_next_run(config, now)
    job = repo.jobs.update(
        job_id,
        schedule_config=config.to_dict(),
        schedule_enabled=config.frequency != "manual",
        next_run_at=next_run,
    )
    logger.info("Job %s scheduled (%s), next run %s", job_id, config.frequency, next_run)

    if forward and settings.scheduler_function_url:
        try:
            _forward_to_scheduler_function(job_id, config)
        except Exception as e:
            # local schedule stays authoritative
            get_error_handler().handle(e, {"job_id": job_id, "step": "forward_schedule"})
    return job


def due_jobs(db: Session, now: datetime | None = None) -> list[Job]:
    return Repository(db).jobs.due(now or utcnow())


def run_due_jobs(
    db: Session,
    run: Callable[[int], Any],
    now: datetime | None = None,
) -> list[int]:
    """
    Advance next_run_at for every due job, then hand it to `run`.
    Returns the ids handed off.
    """
    now = now or utcnow()
    repo = Repository(db)
    triggered: list[int] = []

    for job in due_jobs(db, now):
        config = ScheduleConfig.from_dict(loads(job.schedule_config_json, {}))
        repo.jobs.update(job.id, next_run_at=calculate_next_run(config, now))
        try:
            run(job.id)
            triggered.append(job.id)
        except Exception as e:
            get_error_handler().handle(e, {"job_id": job.id, "user_id": job.user_id, "step": "scheduled_run"})

    if triggered:
        logger.info("Triggered %d scheduled job(s): %s", len(triggered), triggered)
    return triggered
