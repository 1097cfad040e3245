"""
Typed access to the scraper collections.

Each collection wraps one model with list/get/create/update/delete. Results
and price history are append-only. Every committed write publishes a
ChangeEvent to the realtime feed. Database exceptions surface as AppError
(DATABASE_ERROR, or DATA_INTEGRITY_ERROR for constraint violations).
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Generic, Iterator, Type, TypeVar

from sqlalchemy import exists, inspect, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from scrapedeck.core.clock import as_utc, utcnow
from scrapedeck.core.errors import AppError, AppErrorType
from scrapedeck.models import (
    AISession,
    Job,
    JobExecution,
    JobProgress,
    Notification,
    NotificationHistory,
    NotificationSettings,
    PriceHistory,
    Product,
    QueuedNotification,
    Result,
    Website,
)
from scrapedeck.models.ai_session import TERMINAL_SESSION_STATUSES
from scrapedeck.services.realtime import ChangeEvent, ChangeFeed, get_change_feed

logger = logging.getLogger(__name__)

M = TypeVar("M")


def dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def loads(value: str | None, default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


def row_to_dict(row: Any) -> dict[str, Any]:
    """
    Plain dict view of a model row.
    - `*_json` columns are decoded and exposed without the suffix
    - datetimes become ISO strings (UTC)
    """
    out: dict[str, Any] = {}
    for attr in inspect(row).mapper.column_attrs:
        key = attr.key
        value = getattr(row, key)
        if key.endswith("_json"):
            out[key[: -len("_json")]] = loads(value)
            continue
        if isinstance(value, datetime):
            value = as_utc(value).isoformat()
        out[key] = value
    return out


class Collection(Generic[M]):
    model: Type[M]
    table: str
    order_by: str = "created_at"
    can_update = True
    can_delete = True

    def __init__(self, db: Session, feed: ChangeFeed | None = None) -> None:
        self.db = db
        self.feed = feed or get_change_feed()
        self._json_columns = {
            c.key[: -len("_json")]: c.key
            for c in inspect(self.model).column_attrs
            if c.key.endswith("_json")
        }

    # ---- helpers ----

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except AppError:
            raise
        except IntegrityError as e:
            self.db.rollback()
            raise AppError(
                AppErrorType.DATA_INTEGRITY_ERROR,
                f"{action} on {self.table} violated a constraint: {e.orig}",
                context={"table": self.table, "action": action},
            ) from e
        except OperationalError as e:
            self.db.rollback()
            raise AppError(
                AppErrorType.SERVICE_UNAVAILABLE,
                f"{action} on {self.table} failed, database unavailable: {e.orig}",
                context={"table": self.table, "action": action},
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise AppError(
                AppErrorType.DATABASE_ERROR,
                f"{action} on {self.table} failed: {e}",
                context={"table": self.table, "action": action},
            ) from e

    def _columns(self, values: dict[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for k, v in values.items():
            if k in self._json_columns:
                out[self._json_columns[k]] = None if v is None else dumps(v)
            else:
                out[k] = v
        return out

    def _publish(self, event_type: str, new: dict | None, old: dict | None) -> None:
        self.feed.publish(ChangeEvent(event_type=event_type, table=self.table, new=new, old=old))

    def _not_found(self, id: int) -> AppError:
        if self.model is Job:
            return AppError(AppErrorType.JOB_NOT_FOUND, f"Job not found: {id}", context={"job_id": id})
        return AppError(
            AppErrorType.VALIDATION_ERROR,
            f"{self.table} row not found: {id}",
            context={"table": self.table, "id": id},
        )

    # ---- operations ----

    def list(self, limit: int | None = None, offset: int = 0, **filters: Any) -> list[M]:
        with self._guard("list"):
            q = self.db.query(self.model)
            for k, v in filters.items():
                if v is None:
                    continue
                q = q.filter(getattr(self.model, k) == v)
            q = q.order_by(getattr(self.model, self.order_by).desc(), self.model.id.desc())
            if offset:
                q = q.offset(offset)
            if limit is not None:
                q = q.limit(limit)
            return q.all()

    def count(self, **filters: Any) -> int:
        with self._guard("count"):
            q = self.db.query(self.model)
            for k, v in filters.items():
                if v is not None:
                    q = q.filter(getattr(self.model, k) == v)
            return q.count()

    def find(self, id: int) -> M | None:
        with self._guard("get"):
            return self.db.query(self.model).filter(self.model.id == id).first()

    def get(self, id: int) -> M:
        row = self.find(id)
        if row is None:
            raise self._not_found(id)
        return row

    def create(self, **values: Any) -> M:
        with self._guard("create"):
            row = self.model(**self._columns(values))
            self.db.add(row)
            self.db.commit()
            self.db.refresh(row)
        self._publish("INSERT", row_to_dict(row), None)
        return row

    def update(self, id: int, **values: Any) -> M:
        if not self.can_update:
            raise AppError(
                AppErrorType.DATA_INTEGRITY_ERROR,
                f"{self.table} rows are immutable",
                context={"table": self.table, "id": id},
            )
        row = self.get(id)
        old = row_to_dict(row)
        with self._guard("update"):
            for k, v in self._columns(values).items():
                setattr(row, k, v)
            self.db.commit()
            self.db.refresh(row)
        self._publish("UPDATE", row_to_dict(row), old)
        return row

    def delete(self, id: int) -> None:
        if not self.can_delete:
            raise AppError(
                AppErrorType.DATA_INTEGRITY_ERROR,
                f"{self.table} rows cannot be deleted",
                context={"table": self.table, "id": id},
            )
        row = self.get(id)
        old = row_to_dict(row)
        with self._guard("delete"):
            self.db.delete(row)
            self.db.commit()
        self._publish("DELETE", None, old)


class JobCollection(Collection[Job]):
    model = Job
    table = "scraper_jobs"

    NOT_DUE_STATUSES = ("running", "paused")

    def claim(self, id: int) -> Job:
        """
        Conditional transition to `running`.

        Only one run may hold a job: the UPDATE matches a job that is not
        `running` and has no execution still marked `running`, so two
        concurrent claims cannot both succeed.
        """
        before = self.find(id)
        if before is None:
            raise self._not_found(id)
        old = row_to_dict(before)

        in_flight = exists().where(JobExecution.job_id == Job.id, JobExecution.status == "running")
        now = utcnow()
        with self._guard("claim"):
            res = self.db.execute(
                update(Job)
                .where(Job.id == id, Job.status != "running", ~in_flight)
                .values(status="running", cancel_requested=False, last_run_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()

        if res.rowcount != 1:
            raise AppError(
                AppErrorType.DATA_INTEGRITY_ERROR,
                f"Job {id} is already running",
                context={"job_id": id},
            )

        job = self.get(id)
        self.db.refresh(job)
        self._publish("UPDATE", row_to_dict(job), old)
        return job

    def request_cancel(self, id: int) -> bool:
        """Flag a running job for cancellation. False when the job is not running."""
        with self._guard("cancel"):
            res = self.db.execute(
                update(Job)
                .where(Job.id == id, Job.status == "running")
                .values(cancel_requested=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        if res.rowcount != 1:
            return False
        job = self.get(id)
        self.db.refresh(job)
        self._publish("UPDATE", row_to_dict(job), None)
        return True

    def cancel_requested(self, id: int) -> bool:
        # column query, always read from the database
        with self._guard("get"):
            return bool(self.db.query(Job.cancel_requested).filter(Job.id == id).scalar())

    def finish(self, id: int, status: str) -> bool:
        """
        Settle a run: `running` -> `status`, clearing any cancel request.
        Returns False (and writes nothing) when the job is no longer running.
        """
        with self._guard("finish"):
            res = self.db.execute(
                update(Job)
                .where(Job.id == id, Job.status == "running")
                .values(status=status, cancel_requested=False, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        if res.rowcount != 1:
            logger.warning("Job %s left the running state before its run settled as %s", id, status)
            return False
        job = self.get(id)
        self.db.refresh(job)
        self._publish("UPDATE", row_to_dict(job), None)
        return True

    def due(self, now: datetime) -> list[Job]:
        """Scheduled jobs whose next run has passed; running and paused jobs are left alone."""
        with self._guard("due"):
            return (
                self.db.query(Job)
                .filter(
                    Job.schedule_enabled.is_(True),
                    Job.next_run_at.isnot(None),
                    Job.next_run_at <= now,
                    Job.status.notin_(self.NOT_DUE_STATUSES),
                )
                .order_by(Job.next_run_at.asc(), Job.id.asc())
                .all()
            )


class ResultCollection(Collection[Result]):
    model = Result
    table = "scraper_results"
    order_by = "scraped_at"
    can_update = False


class ExecutionCollection(Collection[JobExecution]):
    model = JobExecution
    table = "scraper_job_executions"
    order_by = "started_at"


class ProgressCollection(Collection[JobProgress]):
    model = JobProgress
    table = "scraper_job_progress"
    order_by = "last_update"


class ProductCollection(Collection[Product]):
    model = Product
    table = "scraper_products"


class PriceHistoryCollection(Collection[PriceHistory]):
    model = PriceHistory
    table = "scraper_price_history"
    order_by = "recorded_at"
    can_update = False
    can_delete = False


class NotificationCollection(Collection[Notification]):
    model = Notification
    table = "scraper_notifications"

    def mark_as_read(self, id: int) -> Notification:
        return self.update(id, read=True, read_at=utcnow())


class NotificationHistoryCollection(Collection[NotificationHistory]):
    model = NotificationHistory
    table = "scraper_notification_history"
    order_by = "sent_at"
    can_update = False

    def count_since(self, user_id: str, since: datetime) -> int:
        with self._guard("count"):
            return (
                self.db.query(NotificationHistory)
                .filter(NotificationHistory.user_id == user_id, NotificationHistory.sent_at >= since)
                .count()
            )


class NotificationQueueCollection(Collection[QueuedNotification]):
    model = QueuedNotification
    table = "scraper_notification_queue"
    order_by = "scheduled_for"

    def due(self, now: datetime, limit: int = 100) -> list[QueuedNotification]:
        with self._guard("due"):
            return (
                self.db.query(QueuedNotification)
                .filter(QueuedNotification.status == "pending", QueuedNotification.scheduled_for <= now)
                .order_by(QueuedNotification.scheduled_for.asc(), QueuedNotification.id.asc())
                .limit(limit)
                .all()
            )


class WebsiteCollection(Collection[Website]):
    model = Website
    table = "scraper_websites"

    def list_by_category(self, category: str, user_id: str | None = None) -> list[Website]:
        return self.list(category=category, is_active=True, user_id=user_id)

    def validate(self, id: int, valid: bool = True) -> Website:
        return self.update(
            id,
            validation_status="valid" if valid else "invalid",
            last_validated_at=utcnow(),
        )


class AISessionCollection(Collection[AISession]):
    model = AISession
    table = "scraper_ai_sessions"
    order_by = "started_at"

    def complete(self, id: int, status: str = "completed", **values: Any) -> AISession:
        """Terminal transition; a session completes exactly once."""
        if status not in TERMINAL_SESSION_STATUSES:
            raise AppError(AppErrorType.VALIDATION_ERROR, f"Invalid terminal status: {status}")
        session = self.get(id)
        if session.status in TERMINAL_SESSION_STATUSES:
            raise AppError(
                AppErrorType.DATA_INTEGRITY_ERROR,
                f"AI session {id} already {session.status}",
                context={"session_id": id},
            )
        now = utcnow()
        started = as_utc(session.started_at) or now
        values.setdefault("execution_time_ms", int((now - started).total_seconds() * 1000))
        return self.update(id, status=status, completed_at=now, **values)


class NotificationSettingsCollection(Collection[NotificationSettings]):
    model = NotificationSettings
    table = "scraper_notification_settings"

    def for_user(self, user_id: str) -> NotificationSettings | None:
        with self._guard("get"):
            return self.db.query(NotificationSettings).filter(NotificationSettings.user_id == user_id).first()

    def upsert(self, user_id: str, **values: Any) -> NotificationSettings:
        existing = self.for_user(user_id)
        if existing is None:
            return self.create(user_id=user_id, **values)
        return self.update(existing.id, **values)


class Repository:
    """All collections bound to one session."""

    def __init__(self, db: Session, feed: ChangeFeed | None = None) -> None:
        self.db = db
        feed = feed or get_change_feed()
        self.jobs = JobCollection(db, feed)
        self.results = ResultCollection(db, feed)
        self.executions = ExecutionCollection(db, feed)
        self.progress = ProgressCollection(db, feed)
        self.products = ProductCollection(db, feed)
        self.price_history = PriceHistoryCollection(db, feed)
        self.notifications = NotificationCollection(db, feed)
        self.notification_history = NotificationHistoryCollection(db, feed)
        self.notification_queue = NotificationQueueCollection(db, feed)
        self.websites = WebsiteCollection(db, feed)
        self.ai_sessions = AISessionCollection(db, feed)
        self.notification_settings = NotificationSettingsCollection(db, feed)
