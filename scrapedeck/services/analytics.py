"""
Execution analytics aggregated from persisted Results and JobExecutions.

One Result exists per executed run, so Results are the unit for counts,
success rates and durations. Items scraped come from the execution rows.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from scrapedeck.core.clock import as_utc, utcnow
from scrapedeck.core.errors import validation_error
from scrapedeck.models import Job, JobExecution, Result

TIME_RANGES = {"7d": 7, "30d": 30, "90d": 90}
TOP_N = 5


def resolve_range(
    time_range: str = "30d",
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    end = as_utc(end) or now or utcnow()
    if time_range in TIME_RANGES:
        return end - timedelta(days=TIME_RANGES[time_range]), end
    if time_range == "custom":
        begin = as_utc(start) or end - timedelta(days=30)
        if begin > end:
            raise validation_error("start must be before end", field="start")
        return begin, end
    raise validation_error(f"Unknown time range: {time_range}", field="time_range")


def _rate(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 1) if whole else 0.0


def _avg(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _error_type(message: str | None) -> str:
    m = (message or "Unknown error").strip()
    head = m.split(":", 1)[0].strip() or m
    return head[:60]


def compute_analytics(
    db: Session,
    user_id: str | None = None,
    time_range: str = "30d",
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    begin, finish = resolve_range(time_range, start, end, now)

    rq = db.query(Result).filter(Result.scraped_at >= begin, Result.scraped_at <= finish)
    eq = db.query(JobExecution).filter(JobExecution.started_at >= begin, JobExecution.started_at <= finish)
    jq = db.query(Job)
    if user_id:
        rq = rq.filter(Result.user_id == user_id)
        eq = eq.filter(JobExecution.user_id == user_id)
        jq = jq.filter(Job.user_id == user_id)

    results = rq.all()
    executions = eq.all()
    job_names = {j.id: j.name for j in jq.all()}

    # ---- overview ----
    total = len(results)
    successes = sum(1 for r in results if r.status == "success")
    durations = [(r.execution_time_ms or 0) / 1000.0 for r in results]
    items_by_day: dict[date, int] = defaultdict(int)
    total_items = 0
    for e in executions:
        n = e.items_scraped or 0
        total_items += n
        items_by_day[as_utc(e.started_at).date()] += n

    overview = {
        "total_jobs": len(job_names),
        "total_executions": total,
        "success_rate": _rate(successes, total),
        "average_duration": _avg(durations),
        "total_items_scraped": total_items,
        "average_items_per_execution": round(total_items / len(executions), 2) if executions else 0.0,
    }

    # ---- trends ----
    by_day: dict[date, list[Result]] = defaultdict(list)
    by_hour: dict[int, list[Result]] = defaultdict(list)
    for r in results:
        ts = as_utc(r.scraped_at)
        by_day[ts.date()].append(r)
        by_hour[ts.hour].append(r)

    daily = []
    day = begin.date()
    while day <= finish.date():
        rows = by_day.get(day, [])
        ok = sum(1 for r in rows if r.status == "success")
        failed = len(rows) - ok
        daily.append(
            {
                "date": day.isoformat(),
                "executions": len(rows),
                "successes": ok,
                "failures": failed,
                "success_rate": _rate(ok, len(rows)),
                "error_rate": _rate(failed, len(rows)),
                "average_duration": _avg([(r.execution_time_ms or 0) / 1000.0 for r in rows]),
                "items_scraped": items_by_day.get(day, 0),
            }
        )
        day += timedelta(days=1)

    hourly = [
        {
            "hour": h,
            "executions": len(by_hour.get(h, [])),
            "average_duration": _avg([(r.execution_time_ms or 0) / 1000.0 for r in by_hour.get(h, [])]),
        }
        for h in range(24)
    ]

    # ---- per job ----
    per_job: dict[int, list[Result]] = defaultdict(list)
    for r in results:
        per_job[r.job_id].append(r)
    items_per_job: dict[int, list[int]] = defaultdict(list)
    for e in executions:
        items_per_job[e.job_id].append(e.items_scraped or 0)

    job_stats = []
    for job_id, rows in per_job.items():
        ok = sum(1 for r in rows if r.status == "success")
        job_stats.append(
            {
                "job_id": job_id,
                "job_name": job_names.get(job_id, "Unknown"),
                "success_rate": _rate(ok, len(rows)),
                "average_duration": _avg([(r.execution_time_ms or 0) / 1000.0 for r in rows]),
                "total_executions": len(rows),
                "average_items_scraped": _avg([float(n) for n in items_per_job.get(job_id, [])]),
            }
        )

    top = sorted(job_stats, key=lambda s: (-s["success_rate"], -s["total_executions"], s["job_id"]))[:TOP_N]
    slowest = [
        {
            "job_id": s["job_id"],
            "job_name": s["job_name"],
            "average_duration": s["average_duration"],
            "execution_count": s["total_executions"],
        }
        for s in sorted(job_stats, key=lambda s: (-s["average_duration"], s["job_id"]))[:TOP_N]
    ]

    # ---- errors ----
    failures = [r for r in results if r.status == "failed"]
    grouped: dict[str, list[Result]] = defaultdict(list)
    for r in failures:
        grouped[_error_type(r.error_message)].append(r)
    error_analysis = sorted(
        (
            {
                "error_type": kind,
                "count": len(rows),
                "percentage": _rate(len(rows), len(failures)),
                "jobs_affected": sorted({job_names.get(r.job_id, str(r.job_id)) for r in rows}),
            }
            for kind, rows in grouped.items()
        ),
        key=lambda e: (-e["count"], e["error_type"]),
    )

    return {
        "overview": overview,
        "trends": {"daily_executions": daily, "hourly_distribution": hourly},
        "performance": {
            "top_performing_jobs": top,
            "slowest_jobs": slowest,
            "error_analysis": error_analysis,
        },
        "date_range": {
            "start": begin.isoformat(),
            "end": finish.isoformat(),
            "total_days": (finish.date() - begin.date()).days,
        },
    }
