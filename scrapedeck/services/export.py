from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass, field
from typing import Any, Iterable

from scrapedeck.core.clock import as_utc, utcnow
from scrapedeck.core.errors import validation_error
from scrapedeck.models import JobExecution, Result
from scrapedeck.services.repository import loads

Cell = str | int | float | bool | None

FORMATS = {
    "csv": ("text/csv; charset=utf-8", "csv"),
    "json": ("application/json; charset=utf-8", "json"),
}


@dataclass
class ExportData:
    headers: list[str]
    rows: list[list[Cell]]
    metadata: dict[str, Any] = field(default_factory=dict)


def _cell(value: Cell) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def generate_csv(data: ExportData) -> str:
    """Comma-delimited; a value is quoted only if it holds a comma, quote or newline."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow([_cell(h) for h in data.headers])
    for row in data.rows:
        writer.writerow([_cell(v) for v in row])
    return buf.getvalue()


def generate_json(data: ExportData) -> str:
    doc = {
        "metadata": {
            "exportDate": utcnow().isoformat(),
            "totalRecords": len(data.rows),
            **data.metadata,
        },
        "headers": data.headers,
        "data": [dict(zip(data.headers, row)) for row in data.rows],
    }
    return json.dumps(doc, ensure_ascii=False, indent=2, default=str)


def render(data: ExportData, fmt: str) -> tuple[str, str, str]:
    """Returns (content, media_type, file_extension)."""
    fmt = (fmt or "").lower()
    if fmt not in FORMATS:
        raise validation_error(f"Unsupported export format: {fmt}", field="format")
    media_type, ext = FORMATS[fmt]
    content = generate_csv(data) if fmt == "csv" else generate_json(data)
    return content, media_type, ext


def export_filename(prefix: str, ext: str) -> str:
    return f"{prefix}_{utcnow().date().isoformat()}.{ext}"


# ----------------------------
# Builders
# ----------------------------

def _iso(value: Any) -> str | None:
    dt = as_utc(value)
    return dt.isoformat() if dt else None


def export_results(results: Iterable[Result]) -> ExportData:
    rows: list[list[Cell]] = []
    statuses: dict[str, int] = {}
    for r in results:
        statuses[r.status] = statuses.get(r.status, 0) + 1
        rows.append(
            [
                r.id,
                r.job_id,
                r.status,
                _iso(r.scraped_at),
                r.execution_time_ms or 0,
                r.tokens_used or 0,
                r.error_message or "",
                json.dumps(loads(r.data_json, {}), ensure_ascii=False),
            ]
        )
    return ExportData(
        headers=["Result ID", "Job ID", "Status", "Scraped At", "Execution Time (ms)", "Tokens Used", "Error Message", "Data"],
        rows=rows,
        metadata={
            "successfulResults": statuses.get("success", 0),
            "failedResults": statuses.get("failed", 0),
        },
    )


def export_executions(executions: Iterable[JobExecution], job_names: dict[int, str] | None = None) -> ExportData:
    job_names = job_names or {}
    items = list(executions)
    return ExportData(
        headers=["Job ID", "Job Name", "Status", "Start Time", "End Time", "Duration (s)", "Items Scraped", "Error Message"],
        rows=[
            [
                e.job_id,
                job_names.get(e.job_id, "Unknown"),
                e.status,
                _iso(e.started_at),
                _iso(e.completed_at) or "",
                e.duration or 0,
                e.items_scraped or 0,
                e.error_message or "",
            ]
            for e in items
        ],
        metadata={
            "totalExecutions": len(items),
            "successfulExecutions": sum(1 for e in items if e.status == "completed"),
            "failedExecutions": sum(1 for e in items if e.status == "failed"),
        },
    )


def export_analytics(analytics: dict[str, Any]) -> ExportData:
    daily = analytics.get("trends", {}).get("daily_executions", [])
    overview = analytics.get("overview", {})
    return ExportData(
        headers=[
            "Date",
            "Total Executions",
            "Success Rate (%)",
            "Average Duration (s)",
            "Total Items Scraped",
            "Failed Executions",
            "Error Rate (%)",
        ],
        rows=[
            [
                day["date"],
                day["executions"],
                f"{day['success_rate']:.1f}",
                day["average_duration"],
                day["items_scraped"],
                day["failures"],
                f"{day['error_rate']:.1f}",
            ]
            for day in daily
        ],
        metadata={
            "dateRange": analytics.get("date_range"),
            "totalJobs": overview.get("total_jobs"),
            "totalExecutions": overview.get("total_executions"),
            "overallSuccessRate": overview.get("success_rate"),
        },
    )
