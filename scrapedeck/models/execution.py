from __future__ import annotations

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text

from scrapedeck.core.clock import utcnow
from scrapedeck.db.base import Base


class JobExecution(Base):
    __tablename__ = "scraper_job_executions"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("scraper_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    status = Column(String(16), nullable=False, default="pending", index=True)  # pending|running|completed|failed|cancelled
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration = Column(Float, nullable=True)  # seconds

    items_scraped = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Integer, nullable=False, default=0)
    current_step = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)

    ai_insights_json = Column(Text, nullable=True)       # JSON string
    results_preview_json = Column(Text, nullable=True)   # JSON string


class JobProgress(Base):
    __tablename__ = "scraper_job_progress"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("scraper_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    execution_id = Column(
        Integer,
        ForeignKey("scraper_job_executions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    user_id = Column(String(64), nullable=False, index=True)

    progress_percentage = Column(Integer, nullable=False, default=0)  # 0..100
    current_step = Column(String(64), nullable=True)
    items_processed = Column(Integer, nullable=False, default=0)
    total_items = Column(Integer, nullable=True)
    status_message = Column(Text, nullable=True)

    last_update = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
