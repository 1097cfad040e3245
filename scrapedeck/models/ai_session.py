from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from scrapedeck.core.clock import utcnow
from scrapedeck.db.base import Base

SESSION_TYPES = ("product_discovery", "price_check", "source_discovery")
TERMINAL_SESSION_STATUSES = ("completed", "failed", "cancelled")


class AISession(Base):
    __tablename__ = "scraper_ai_sessions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    session_type: Mapped[str] = mapped_column(String(32), nullable=False)  # product_discovery|price_check|source_discovery
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")  # running|completed|failed|cancelled
    model_used: Mapped[str | None] = mapped_column(String(64), nullable=True)

    search_query: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_category: Mapped[str | None] = mapped_column(String(64), nullable=True)

    products_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prices_extracted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sources_discovered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    ai_insights_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON string
    error_log: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
