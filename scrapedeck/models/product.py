from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from scrapedeck.core.clock import utcnow
from scrapedeck.db.base import Base

DISCOVERY_URL_PREFIX = "discovery://"


class Product(Base):
    __tablename__ = "scraper_products"
    __table_args__ = (UniqueConstraint("user_id", "url", name="uq_scraper_products_user_url"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_id: Mapped[int | None] = mapped_column(ForeignKey("scraper_jobs.id", ondelete="SET NULL"), nullable=True)

    name: Mapped[str] = mapped_column(String(512), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)  # discovery://<uuid> for AI-discovered products
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    current_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    target_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    in_stock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    check_frequency_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sources_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON string: [{url,name,price,...}]

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PriceHistory(Base):
    """Append-only price observations."""

    __tablename__ = "scraper_price_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("scraper_products.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    price: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    in_stock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    scraped_from: Mapped[str | None] = mapped_column(Text, nullable=True)

    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
