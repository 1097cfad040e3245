"""
Notification dispatch.

The dispatcher resolves one recipient per channel from the user's settings and
hands a payload to a delivery function. Email and SMS go to the remote
notification function (NOTIFY_FUNCTION_URL); webhooks are posted directly to
the user's URL with an HMAC signature header.

Channels are independent: each one yields exactly one NotificationStatus.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from sqlalchemy.orm import Session

from scrapedeck.core.clock import utcnow
from scrapedeck.core.config import settings
from scrapedeck.core.errors import AppError, AppErrorType
from scrapedeck.models import NotificationSettings
from scrapedeck.models.notification import NOTIFICATION_TYPES
from scrapedeck.services.repository import Repository, loads

logger = logging.getLogger(__name__)

CHANNELS = ("email", "sms", "webhook")
REQUEST_TYPES = (
    "job_completed",
    "job_failed",
    "job_started",
    "job_scheduled",
    "system_alert",
    "performance_alert",
    "test",
)

# request type -> settings toggle column
EVENT_TOGGLES = {
    "job_completed": "job_completed",
    "job_failed": "job_failed",
    "job_started": "job_started",
    "job_scheduled": "job_scheduled",
    "system_alert": "system_alerts",
    "performance_alert": "performance_alerts",
}

USER_AGENT = "ScrapeDeckNotificationBot/1.0"
SIGNATURE_HEADER = "X-Webhook-Signature"

SendFn = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass
class NotificationRequest:
    type: str
    title: str
    body: str
    job_id: int | None = None
    execution_id: int | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class NotificationStatus:
    success: bool
    message: str
    sent: bool
    channel: str | None = None
    queued: bool | None = None
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ----------------------------
# Delivery
# ----------------------------

def sign_payload(body: str | bytes, secret: str) -> str:
    raw = body.encode("utf-8") if isinstance(body, str) else body
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def deliver_webhook(
    url: str,
    payload: dict[str, Any],
    secret: str | None = None,
    timeout: float | None = None,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any]:
    body = json.dumps(payload, ensure_ascii=False)
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    if secret:
        headers[SIGNATURE_HEADER] = sign_payload(body, secret)

    with httpx.Client(timeout=timeout or settings.functions_timeout_sec, transport=transport) as client:
        r = client.post(url, content=body.encode("utf-8"), headers=headers)
        r.raise_for_status()

    return {"success": True, "message": "Notification sent successfully", "sent": True,
            "details": f"Webhook delivered with status {r.status_code}"}


def post_to_notify_function(payload: dict[str, Any], transport: httpx.BaseTransport | None = None) -> dict[str, Any]:
    if not settings.notify_function_url:
        raise AppError(
            AppErrorType.CONFIGURATION_ERROR,
            "NOTIFY_FUNCTION_URL is not configured",
            context={"setting": "NOTIFY_FUNCTION_URL"},
        )
    headers = {"Content-Type": "application/json"}
    if settings.functions_api_key:
        headers["Authorization"] = f"Bearer {settings.functions_api_key}"

    with httpx.Client(timeout=settings.functions_timeout_sec, transport=transport) as client:
        r = client.post(settings.notify_function_url, json=payload, headers=headers)
        r.raise_for_status()
        return r.json()


# ----------------------------
# Policy
# ----------------------------

SEND = "send"
SKIP = "skip"
QUEUE = "queue"


def _parse_hhmm(value: str) -> tuple[int, int]:
    h, m = (value or "00:00").split(":", 1)
    return int(h), int(m)


def in_quiet_hours(start: str, end: str, current: str) -> bool:
    """Inclusive window on "HH:MM" strings; start > end wraps past midnight."""
    s, e, c = _parse_hhmm(start), _parse_hhmm(end), _parse_hhmm(current)
    if s <= e:
        return s <= c <= e
    return c >= s or c <= e


def _zone(tz_name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _local_hhmm(now: datetime, tz_name: str | None) -> str:
    return now.astimezone(_zone(tz_name)).strftime("%H:%M")


def quiet_hours_over_at(now: datetime, end: str, tz_name: str | None) -> datetime:
    """First minute after the quiet window's (inclusive) end, in UTC."""
    local = now.astimezone(_zone(tz_name))
    h, m = _parse_hhmm(end)
    at = local.replace(hour=h, minute=m, second=0, microsecond=0) + timedelta(minutes=1)
    if at <= local:
        at += timedelta(days=1)
    return at.astimezone(timezone.utc)


def should_deliver(
    db: Session,
    prefs: NotificationSettings,
    notification_type: str,
    channel: str,
    now: datetime | None = None,
) -> tuple[str, str]:
    """
    Evaluate the user's delivery policy for one channel.

    Returns (action, reason) where action is SEND, SKIP or QUEUE (quiet
    hours). Caps count every channel message delivered in the last hour/day.
    Test notifications bypass the policy.
    """
    if notification_type == "test":
        return SEND, "ok"

    now = now or utcnow()

    if not getattr(prefs, f"{channel}_enabled", False):
        return SKIP, "Notification skipped due to user settings"
    toggle = EVENT_TOGGLES.get(notification_type)
    if toggle is not None and not getattr(prefs, toggle, False):
        return SKIP, "Notification skipped due to user settings"

    if prefs.quiet_hours_enabled and in_quiet_hours(
        prefs.quiet_hours_start, prefs.quiet_hours_end, _local_hhmm(now, prefs.timezone)
    ):
        return QUEUE, "Notification queued for after quiet hours"

    history = Repository(db).notification_history
    if history.count_since(prefs.user_id, now - timedelta(hours=1)) >= (prefs.max_per_hour or 10):
        return SKIP, "Notification skipped due to hourly limit"
    if history.count_since(prefs.user_id, now - timedelta(days=1)) >= (prefs.max_per_day or 50):
        return SKIP, "Notification skipped due to daily limit"

    return SEND, "ok"


def _was_sent(reply: dict[str, Any]) -> bool:
    success = bool(reply.get("success", True))
    return bool(reply.get("sent", success))


# ----------------------------
# Dispatcher
# ----------------------------

class NotificationDispatcher:
    def __init__(self, db: Session, send: SendFn | None = None) -> None:
        self.db = db
        self.repo = Repository(db)
        self._send = send

    def _deliver(self, payload: dict[str, Any], prefs: NotificationSettings | None) -> dict[str, Any]:
        if self._send is not None:
            return self._send(payload)
        if payload["channel"] == "webhook":
            body = {
                "type": payload["type"],
                "message": payload["message"],
                "timestamp": utcnow().isoformat(),
                "user_id": prefs.user_id if prefs else None,
            }
            return deliver_webhook(payload["recipient"], body, secret=prefs.webhook_secret if prefs else None)
        return post_to_notify_function(payload)

    @staticmethod
    def resolve_recipient(channel: str, prefs: NotificationSettings | None, account_email: str | None = None) -> str:
        if channel == "email":
            return (prefs.email_address if prefs else None) or account_email or ""
        if channel == "sms":
            return (prefs.phone_number if prefs else None) or ""
        if channel == "webhook":
            return (prefs.webhook_url if prefs else None) or ""
        return ""

    def dispatch(
        self,
        user_id: str,
        request: NotificationRequest,
        channels: Iterable[str] = ("email",),
        account_email: str | None = None,
        now: datetime | None = None,
    ) -> list[NotificationStatus]:
        if request.type not in REQUEST_TYPES:
            raise AppError(AppErrorType.VALIDATION_ERROR, f"Unknown notification type: {request.type}")

        prefs = self.repo.notification_settings.for_user(user_id)
        statuses: list[NotificationStatus] = []

        for channel in channels:
            if channel not in CHANNELS:
                statuses.append(NotificationStatus(False, f"Unsupported notification channel: {channel}", False, channel))
                continue

            recipient = self.resolve_recipient(channel, prefs, account_email)
            if not recipient:
                statuses.append(NotificationStatus(False, f"No {channel} recipient configured", False, channel))
                continue

            payload = {
                "type": request.type,
                "channel": channel,
                "recipient": recipient,
                "message": self._message(request),
            }

            if prefs is not None:
                action, reason = should_deliver(self.db, prefs, request.type, channel, now=now)
                if action == QUEUE:
                    self._enqueue(user_id, payload, quiet_hours_over_at(now or utcnow(), prefs.quiet_hours_end, prefs.timezone))
                    statuses.append(NotificationStatus(True, reason, False, channel, queued=True))
                    continue
                if action == SKIP:
                    statuses.append(NotificationStatus(True, reason, False, channel))
                    continue

            try:
                data = self._deliver(payload, prefs) or {}
                sent = _was_sent(data)
                statuses.append(
                    NotificationStatus(
                        success=bool(data.get("success", True)),
                        message=data.get("message") or ("Notification sent successfully" if sent else "Notification failed to send"),
                        sent=sent,
                        channel=channel,
                        queued=data.get("queued"),
                        details=data.get("details"),
                    )
                )
            except Exception as e:
                logger.warning("Notification delivery failed user=%s channel=%s: %s", user_id, channel, e)
                statuses.append(
                    NotificationStatus(
                        success=False,
                        message=f"Failed to send {channel} notification: {e}",
                        sent=False,
                        channel=channel,
                        details=str(e),
                    )
                )
                continue

            if sent:
                self._log_delivery(user_id, payload, now)

        if any(s.sent for s in statuses):
            self._record(user_id, request)
        return statuses

    def deliver_queued(self, now: datetime | None = None) -> int:
        """Send queued messages whose quiet hours are over. Returns how many went out."""
        now = now or utcnow()
        delivered = 0
        for item in self.repo.notification_queue.due(now):
            prefs = self.repo.notification_settings.for_user(item.user_id)
            payload = {
                "type": item.type,
                "channel": item.channel,
                "recipient": item.recipient,
                "message": loads(item.message_json, {}),
            }
            try:
                data = self._deliver(payload, prefs) or {}
            except Exception as e:
                logger.warning("Queued notification %s failed: %s", item.id, e)
                self.repo.notification_queue.update(item.id, status="failed", error_message=str(e))
                continue

            if not _was_sent(data):
                self.repo.notification_queue.update(
                    item.id, status="failed", error_message=data.get("message") or "Notification failed to send"
                )
                continue
            self._log_delivery(item.user_id, payload, now)
            self.repo.notification_queue.update(item.id, status="sent", delivered_at=now)
            delivered += 1

        if delivered:
            logger.info("Delivered %d queued notification(s)", delivered)
        return delivered

    def _message(self, request: NotificationRequest) -> dict[str, Any]:
        message: dict[str, Any] = {
            "title": request.title,
            "body": request.body,
            "timestamp": utcnow().isoformat(),
        }
        if request.job_id is not None:
            message["job_id"] = request.job_id
        if request.execution_id is not None:
            message["execution_id"] = request.execution_id
        if request.metadata:
            message["metadata"] = request.metadata
        return message

    def _enqueue(self, user_id: str, payload: dict[str, Any], scheduled_for: datetime) -> None:
        self.repo.notification_queue.create(
            user_id=user_id,
            type=payload["type"],
            channel=payload["channel"],
            recipient=payload["recipient"],
            message=payload["message"],
            status="pending",
            scheduled_for=scheduled_for,
        )

    def _log_delivery(self, user_id: str, payload: dict[str, Any], now: datetime | None = None) -> None:
        self.repo.notification_history.create(
            user_id=user_id,
            job_id=payload["message"].get("job_id"),
            type=payload["type"],
            channel=payload["channel"],
            recipient=payload["recipient"],
            message=payload["message"],
            sent_at=now or utcnow(),
        )

    def _record(self, user_id: str, request: NotificationRequest) -> None:
        # inbox rows exist only for the persisted kinds
        if request.type not in NOTIFICATION_TYPES:
            return
        self.repo.notifications.create(
            user_id=user_id,
            job_id=request.job_id,
            type=request.type,
            title=request.title,
            message=request.body,
            sent=True,
        )

    # ---- builders ----

    def job_completed(self, user_id: str, job_name: str, items_scraped: int, duration_ms: int,
                      job_id: int | None = None, execution_id: int | None = None, **kw: Any) -> list[NotificationStatus]:
        return self.dispatch(user_id, NotificationRequest(
            type="job_completed",
            title="Job Completed Successfully",
            body=f"{job_name} has completed successfully. Scraped {items_scraped} items in {round(duration_ms / 1000)}s.",
            job_id=job_id,
            execution_id=execution_id,
            metadata={"items_scraped": items_scraped, "duration": duration_ms},
        ), **kw)

    def job_failed(self, user_id: str, job_name: str, error_message: str,
                   job_id: int | None = None, execution_id: int | None = None, **kw: Any) -> list[NotificationStatus]:
        return self.dispatch(user_id, NotificationRequest(
            type="job_failed",
            title="Job Failed",
            body=f"{job_name} has failed with error: {error_message}",
            job_id=job_id,
            execution_id=execution_id,
            metadata={"error_message": error_message},
        ), **kw)

    def job_started(self, user_id: str, job_name: str,
                    job_id: int | None = None, execution_id: int | None = None, **kw: Any) -> list[NotificationStatus]:
        return self.dispatch(user_id, NotificationRequest(
            type="job_started",
            title="Job Started",
            body=f"{job_name} has started execution.",
            job_id=job_id,
            execution_id=execution_id,
        ), **kw)

    def job_scheduled(self, user_id: str, job_name: str, scheduled_time: datetime,
                      job_id: int | None = None, **kw: Any) -> list[NotificationStatus]:
        return self.dispatch(user_id, NotificationRequest(
            type="job_scheduled",
            title="Job Scheduled",
            body=f"{job_name} has been scheduled to run at {scheduled_time.strftime('%Y-%m-%d %H:%M %Z').strip()}.",
            job_id=job_id,
            metadata={"scheduled_time": scheduled_time.isoformat()},
        ), **kw)

    def system_alert(self, user_id: str, title: str, message: str,
                     metadata: dict[str, Any] | None = None, **kw: Any) -> list[NotificationStatus]:
        return self.dispatch(user_id, NotificationRequest("system_alert", title, message, metadata=metadata), **kw)

    def performance_alert(self, user_id: str, title: str, message: str,
                          metadata: dict[str, Any] | None = None, **kw: Any) -> list[NotificationStatus]:
        return self.dispatch(user_id, NotificationRequest("performance_alert", title, message, metadata=metadata), **kw)

    def test_channels(self, user_id: str, channels: Iterable[str] = CHANNELS,
                      account_email: str | None = None) -> dict[str, NotificationStatus]:
        out: dict[str, NotificationStatus] = {}
        for channel in channels:
            statuses = self.dispatch(
                user_id,
                NotificationRequest(
                    type="test",
                    title="Test Notification",
                    body=f"This is a test {channel} notification from ScrapeDeck.",
                    metadata={"test": True},
                ),
                channels=[channel],
                account_email=account_email,
            )
            out[channel] = statuses[0]
        return out


def deliver_queued(db: Session, now: datetime | None = None) -> int:
    return NotificationDispatcher(db).deliver_queued(now)
