from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from scrapedeck.core.clock import utcnow
from scrapedeck.db.base import Base

NOTIFICATION_TYPES = ("price_drop", "back_in_stock", "job_completed", "job_failed")


class Notification(Base):
    __tablename__ = "scraper_notifications"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[int | None] = mapped_column(ForeignKey("scraper_products.id", ondelete="CASCADE"), nullable=True)
    job_id: Mapped[int | None] = mapped_column(ForeignKey("scraper_jobs.id", ondelete="CASCADE"), nullable=True)

    type: Mapped[str] = mapped_column(String(32), nullable=False)  # price_drop|back_in_stock|job_completed|job_failed
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class NotificationSettings(Base):
    """One row per user."""

    __tablename__ = "scraper_notification_settings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    # channels
    email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sms_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    webhook_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # recipients
    email_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # events
    job_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    job_failed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    job_started: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    job_scheduled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    system_alerts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    performance_alerts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # quiet hours ("HH:MM", window may wrap midnight)
    quiet_hours_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quiet_hours_start: Mapped[str] = mapped_column(String(5), nullable=False, default="22:00")
    quiet_hours_end: Mapped[str] = mapped_column(String(5), nullable=False, default="08:00")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    # rate limits
    max_per_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    max_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=50)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class NotificationHistory(Base):
    """One row per delivered channel message; hourly/daily caps count these."""

    __tablename__ = "scraper_notification_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_id: Mapped[int | None] = mapped_column(ForeignKey("scraper_jobs.id", ondelete="SET NULL"), nullable=True)

    type: Mapped[str] = mapped_column(String(32), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)  # email|sms|webhook
    recipient: Mapped[str] = mapped_column(Text, nullable=False)
    message_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON string

    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class QueuedNotification(Base):
    """Channel message held back by quiet hours, delivered once `scheduled_for` passes."""

    __tablename__ = "scraper_notification_queue"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    type: Mapped[str] = mapped_column(String(32), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient: Mapped[str] = mapped_column(Text, nullable=False)
    message_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)  # pending|sent|failed
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
