"""
Typed application errors.

Every failure that reaches an orchestration boundary (job executor, discovery,
notification settings, API) is normalised into an AppError:

- a closed set of kinds (AppErrorType)
- a fixed user-facing message and recoverability flag per kind
- a bounded in-memory queue of recent errors (ErrorQueue) for analytics and
  for the /errors endpoint; it is never persisted
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import openai
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from scrapedeck.core import sentry
from scrapedeck.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorContext = dict[str, Any]


class AppErrorType(str, Enum):
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    INVALID_URL = "INVALID_URL"
    NETWORK_ERROR = "NETWORK_ERROR"
    AI_SERVICE_ERROR = "AI_SERVICE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"


USER_MESSAGES: dict[AppErrorType, str] = {
    AppErrorType.JOB_NOT_FOUND: "The requested job could not be found.",
    AppErrorType.INVALID_URL: "The URL provided is not valid. Please check and try again.",
    AppErrorType.NETWORK_ERROR: "Network connection error. Please check your internet connection.",
    AppErrorType.AI_SERVICE_ERROR: "AI service is temporarily unavailable. Please try again later.",
    AppErrorType.DATABASE_ERROR: "Database error occurred. Our team has been notified.",
    AppErrorType.AUTHENTICATION_ERROR: "Authentication failed. Please sign in again.",
    AppErrorType.RATE_LIMIT_ERROR: "Too many requests. Please wait a moment and try again.",
    AppErrorType.UNKNOWN_ERROR: "An unexpected error occurred. Please try again.",
    AppErrorType.VALIDATION_ERROR: "The information provided is not valid. Please check your input.",
    AppErrorType.PERMISSION_ERROR: "You do not have permission to perform this action.",
    AppErrorType.CONFIGURATION_ERROR: "Configuration error. Please contact support.",
    AppErrorType.SERVICE_UNAVAILABLE: "Service is temporarily unavailable. Please try again later.",
    AppErrorType.TIMEOUT_ERROR: "The request timed out. Please try again.",
    AppErrorType.QUOTA_EXCEEDED: "Usage quota exceeded. Please upgrade your plan or try again later.",
    AppErrorType.DATA_INTEGRITY_ERROR: "Data integrity error. Please refresh and try again.",
}

RECOVERABLE_TYPES = frozenset(
    {
        AppErrorType.NETWORK_ERROR,
        AppErrorType.TIMEOUT_ERROR,
        AppErrorType.RATE_LIMIT_ERROR,
        AppErrorType.SERVICE_UNAVAILABLE,
        AppErrorType.QUOTA_EXCEEDED,
    }
)

# Kinds that block the whole UI rather than showing a transient toast
CRITICAL_TYPES = frozenset(
    {
        AppErrorType.DATABASE_ERROR,
        AppErrorType.AI_SERVICE_ERROR,
        AppErrorType.AUTHENTICATION_ERROR,
        AppErrorType.CONFIGURATION_ERROR,
    }
)

LOG_LEVELS: dict[AppErrorType, int] = {
    AppErrorType.DATABASE_ERROR: logging.ERROR,
    AppErrorType.AI_SERVICE_ERROR: logging.ERROR,
    AppErrorType.AUTHENTICATION_ERROR: logging.ERROR,
    AppErrorType.PERMISSION_ERROR: logging.ERROR,
    AppErrorType.CONFIGURATION_ERROR: logging.ERROR,
    AppErrorType.DATA_INTEGRITY_ERROR: logging.ERROR,
    AppErrorType.UNKNOWN_ERROR: logging.ERROR,
    AppErrorType.SERVICE_UNAVAILABLE: logging.WARNING,
    AppErrorType.NETWORK_ERROR: logging.WARNING,
    AppErrorType.TIMEOUT_ERROR: logging.WARNING,
    AppErrorType.RATE_LIMIT_ERROR: logging.WARNING,
    AppErrorType.QUOTA_EXCEEDED: logging.WARNING,
    AppErrorType.JOB_NOT_FOUND: logging.INFO,
    AppErrorType.VALIDATION_ERROR: logging.INFO,
    AppErrorType.INVALID_URL: logging.INFO,
}

# Ordered: first match wins
_MESSAGE_RULES: list[tuple[tuple[str, ...], AppErrorType]] = [
    (("network", "fetch", "connection"), AppErrorType.NETWORK_ERROR),
    (("timeout", "timed out"), AppErrorType.TIMEOUT_ERROR),
    (("unauthorized", "authentication"), AppErrorType.AUTHENTICATION_ERROR),
    (("permission", "forbidden"), AppErrorType.PERMISSION_ERROR),
    (("validation", "invalid"), AppErrorType.VALIDATION_ERROR),
    (("rate limit", "too many requests"), AppErrorType.RATE_LIMIT_ERROR),
    (("quota", "limit exceeded"), AppErrorType.QUOTA_EXCEEDED),
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AppError(Exception):
    def __init__(
        self,
        type: AppErrorType,
        message: str,
        user_message: str | None = None,
        recoverable: bool | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message)
        self.type = AppErrorType(type)
        self.message = message
        self.user_message = user_message or USER_MESSAGES.get(self.type, "An error occurred. Please try again.")
        self.recoverable = (self.type in RECOVERABLE_TYPES) if recoverable is None else bool(recoverable)
        self.context = context
        self.user_id: str | None = None  # owner, when the error arose on behalf of a user
        created = _now()
        self.created_at = created
        self.timestamp = created.isoformat()
        self.error_id = f"{self.type.value}-{int(created.timestamp() * 1000)}-{uuid.uuid4().hex[:9]}"

    @property
    def critical(self) -> bool:
        return self.type in CRITICAL_TYPES

    def to_dict(self, include_message: bool = True) -> dict[str, Any]:
        d = {
            "type": self.type.value,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "critical": self.critical,
            "context": self.context,
            "timestamp": self.timestamp,
            "error_id": self.error_id,
        }
        if include_message:
            d["message"] = self.message
        return d

    def __repr__(self) -> str:
        return f"AppError({self.type.value}, {self.message!r})"


def classify_message(message: str) -> AppErrorType:
    m = (message or "").lower()
    for needles, kind in _MESSAGE_RULES:
        if any(n in m for n in needles):
            return kind
    return AppErrorType.UNKNOWN_ERROR


def _classify_exception(exc: BaseException) -> AppErrorType | None:
    """Typed exceptions from our stack map directly; None means 'use the message'."""
    if isinstance(exc, IntegrityError):
        return AppErrorType.DATA_INTEGRITY_ERROR
    if isinstance(exc, OperationalError):
        return AppErrorType.SERVICE_UNAVAILABLE
    if isinstance(exc, SQLAlchemyError):
        return AppErrorType.DATABASE_ERROR

    if isinstance(exc, httpx.TimeoutException):
        return AppErrorType.TIMEOUT_ERROR
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        if code == 401:
            return AppErrorType.AUTHENTICATION_ERROR
        if code == 403:
            return AppErrorType.PERMISSION_ERROR
        if code == 429:
            return AppErrorType.RATE_LIMIT_ERROR
        if code in (502, 503, 504):
            return AppErrorType.SERVICE_UNAVAILABLE
        return None
    if isinstance(exc, httpx.TransportError):
        return AppErrorType.NETWORK_ERROR

    if isinstance(exc, openai.APITimeoutError):
        return AppErrorType.TIMEOUT_ERROR
    if isinstance(exc, openai.APIConnectionError):
        return AppErrorType.NETWORK_ERROR
    if isinstance(exc, openai.AuthenticationError):
        return AppErrorType.AUTHENTICATION_ERROR
    if isinstance(exc, openai.PermissionDeniedError):
        return AppErrorType.PERMISSION_ERROR
    if isinstance(exc, openai.RateLimitError):
        return AppErrorType.RATE_LIMIT_ERROR
    if isinstance(exc, openai.APIError):
        return AppErrorType.AI_SERVICE_ERROR

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return AppErrorType.TIMEOUT_ERROR
    if isinstance(exc, PermissionError):
        return AppErrorType.PERMISSION_ERROR
    if isinstance(exc, ConnectionError):
        return AppErrorType.NETWORK_ERROR
    return None


# ----------------------------
# Bounded error queue
# ----------------------------

Listener = Callable[[list[AppError]], None]


class ErrorQueue:
    """
    Ring buffer of recent errors; oldest entries are evicted past maxlen.
    Request threads push concurrently, so every access holds the lock.
    """

    def __init__(self, maxlen: int = 50) -> None:
        if maxlen <= 0:
            raise ValueError("maxlen must be > 0")
        self._items: deque[AppError] = deque(maxlen=maxlen)
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()

    @property
    def maxlen(self) -> int:
        return self._items.maxlen or 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def items(self) -> list[AppError]:
        with self._lock:
            return list(self._items)

    def contains(self, error: AppError) -> bool:
        with self._lock:
            return any(e is error for e in self._items)

    def push(self, error: AppError) -> None:
        with self._lock:
            self._items.append(error)
        self._broadcast()

    def dismiss(self, error_id: str, user_id: str | None = None) -> bool:
        with self._lock:
            match = next(
                (e for e in self._items if e.error_id == error_id and (user_id is None or e.user_id == user_id)),
                None,
            )
            if match is None:
                return False
            self._items.remove(match)
        self._broadcast()
        return True

    def clear(self, user_id: str | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._items.clear()
            else:
                kept = [e for e in self._items if e.user_id != user_id]
                self._items.clear()
                self._items.extend(kept)
        self._broadcast()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _broadcast(self) -> None:
        snapshot = self.items()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Error queue listener failed")


# ----------------------------
# Handler
# ----------------------------

class ErrorHandler:
    def __init__(self, queue_size: int | None = None, report: bool = True) -> None:
        self.queue = ErrorQueue(queue_size or settings.error_queue_size)
        self.report = report

    def handle(self, error: Any, context: ErrorContext | None = None) -> AppError:
        if isinstance(error, AppError):
            if self.queue.contains(error):
                # already logged and queued on its way up
                self._tag_user(error, context)
                return error
            app_error = error
        elif isinstance(error, BaseException):
            app_error = self.categorize(error, context)
        else:
            app_error = AppError(AppErrorType.UNKNOWN_ERROR, str(error), recoverable=False, context=context)

        if context and not app_error.context:
            app_error.context = context
        self._tag_user(app_error, context)

        self._log(app_error)
        self.queue.push(app_error)
        return app_error

    @staticmethod
    def _tag_user(error: AppError, context: ErrorContext | None) -> None:
        if error.user_id is None and context and context.get("user_id"):
            error.user_id = str(context["user_id"])

    def categorize(self, error: BaseException, context: ErrorContext | None = None) -> AppError:
        message = str(error) or error.__class__.__name__
        kind = _classify_exception(error) or classify_message(message)
        return AppError(kind, message, context=context)

    def _log(self, error: AppError) -> None:
        level = LOG_LEVELS.get(error.type, logging.ERROR)
        logger.log(level, "AppError %s [%s]: %s context=%s", error.type.value, error.error_id, error.message, error.context)
        if self.report and error.critical:
            sentry.capture_app_error(error.to_dict(), level="error")

    # ---- analytics ----

    def analytics(self, now: datetime | None = None, user_id: str | None = None) -> dict[str, Any]:
        now = now or _now()
        hour_ago = now - timedelta(hours=1)
        items = self._scoped(user_id)
        recent = [e for e in items if e.created_at > hour_ago]

        by_type: dict[str, int] = {}
        for e in items:
            by_type[e.type.value] = by_type.get(e.type.value, 0) + 1

        return {
            "total_errors": len(items),
            "errors_by_type": by_type,
            "recent_errors": recent[-10:],
            "error_rate": len(recent),  # errors in the last hour
        }

    def recent(self, limit: int = 50, user_id: str | None = None) -> list[AppError]:
        return self._scoped(user_id)[-limit:]

    def _scoped(self, user_id: str | None) -> list[AppError]:
        items = self.queue.items()
        if user_id is None:
            return items
        return [e for e in items if e.user_id == user_id]

    # ---- retry ----

    def retry(
        self,
        operation: Callable[[], T],
        max_retries: int = 3,
        backoff_ms: int = 1000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """
        Opt-in retry with exponential backoff.
        Non-recoverable errors are raised immediately.
        """
        last: AppError | None = None
        for attempt in range(1, max_retries + 1):
            try:
                return operation()
            except Exception as e:
                last = self.handle(e, {"attempt": attempt, "max_retries": max_retries})
                if not last.recoverable or attempt == max_retries:
                    raise last from (None if e is last else e)
                sleep(backoff_ms * (2 ** (attempt - 1)) / 1000.0)
        assert last is not None
        raise last

    async def retry_async(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: int = 3,
        backoff_ms: int = 1000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        last: AppError | None = None
        for attempt in range(1, max_retries + 1):
            try:
                return await operation()
            except Exception as e:
                last = self.handle(e, {"attempt": attempt, "max_retries": max_retries})
                if not last.recoverable or attempt == max_retries:
                    raise last from (None if e is last else e)
                await sleep(backoff_ms * (2 ** (attempt - 1)) / 1000.0)
        assert last is not None
        raise last

    def safe(self, operation: Callable[[], T], context: ErrorContext | None = None) -> tuple[T | None, AppError | None]:
        try:
            return operation(), None
        except Exception as e:
            return None, self.handle(e, context)


def validation_error(message: str, field: str | None = None) -> AppError:
    return AppError(AppErrorType.VALIDATION_ERROR, message, recoverable=False, context={"field": field})


def network_error(message: str, url: str | None = None) -> AppError:
    return AppError(AppErrorType.NETWORK_ERROR, message, recoverable=True, context={"url": url})


def job_not_found(job_id: Any) -> AppError:
    return AppError(AppErrorType.JOB_NOT_FOUND, f"Job not found: {job_id}", context={"job_id": job_id})


# Application-scoped handler
_handler: ErrorHandler | None = None


def get_error_handler() -> ErrorHandler:
    global _handler
    if _handler is None:
        _handler = ErrorHandler()
    return _handler


def reset_error_handler(handler: ErrorHandler | None = None) -> ErrorHandler:
    global _handler
    _handler = handler or ErrorHandler()
    return _handler
