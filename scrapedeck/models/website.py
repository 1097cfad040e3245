from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

from scrapedeck.core.clock import utcnow
from scrapedeck.db.base import Base


class Website(Base):
    __tablename__ = "scraper_websites"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    base_url = Column(Text, nullable=False)
    category = Column(String(64), nullable=False, default="general", index=True)

    scraping_rules_json = Column(Text, nullable=False, default="{}")  # JSON string
    rate_limit_seconds = Column(Integer, nullable=False, default=1)
    requires_auth = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    last_validated_at = Column(DateTime(timezone=True), nullable=True)
    validation_status = Column(String(16), nullable=False, default="pending")  # valid|invalid|pending
    robots_txt_compliant = Column(Boolean, nullable=False, default=True)

    discovered_by_ai = Column(Boolean, nullable=False, default=False)
    ai_confidence_score = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
