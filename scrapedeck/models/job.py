from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from scrapedeck.core.clock import utcnow
from scrapedeck.db.base import Base

JOB_STATUSES = ("pending", "running", "completed", "failed", "paused")
SCRAPING_TYPES = ("general", "product", "price", "content")


class Job(Base):
    __tablename__ = "scraper_jobs"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_scraper_jobs_user_name"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)  # pending|running|completed|failed|paused
    # set by pause/cancel while a run is in flight; the run polls it between steps
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scraping_type: Mapped[str] = mapped_column(String(16), nullable=False, default="general")  # general|product|price|content

    # AI
    ai_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    use_vision: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ai_model: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # scheduling
    schedule_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    schedule_cron: Mapped[str | None] = mapped_column(String(64), nullable=True)
    schedule_config_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON string: ScheduleConfig
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    config_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    selectors_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
