"""initial scraper tables

Revision ID: 4f2a9c1e7b10
Revises:
Create Date: 2026-10-17 09:12:41.503218

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4f2a9c1e7b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "scraper_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("scraping_type", sa.String(length=16), nullable=False, server_default="general"),
        sa.Column("ai_prompt", sa.Text(), nullable=True),
        sa.Column("use_vision", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ai_model", sa.String(length=64), nullable=True),
        sa.Column("schedule_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("schedule_cron", sa.String(length=64), nullable=True),
        sa.Column("schedule_config_json", sa.Text(), nullable=True),
        _ts("next_run_at", nullable=True),
        sa.Column("config_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("selectors_json", sa.Text(), nullable=False, server_default="{}"),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("last_run_at", nullable=True),
        sa.UniqueConstraint("user_id", "name", name="uq_scraper_jobs_user_name"),
    )
    op.create_index("ix_scraper_jobs_user_id", "scraper_jobs", ["user_id"])
    op.create_index("ix_scraper_jobs_status", "scraper_jobs", ["status"])
    op.create_index("ix_scraper_jobs_next_run_at", "scraper_jobs", ["next_run_at"])

    op.create_table(
        "scraper_results",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("scraper_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("data_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        _ts("scraped_at"),
        _ts("created_at"),
    )
    op.create_index("ix_scraper_results_job_id", "scraper_results", ["job_id"])
    op.create_index("ix_scraper_results_user_id", "scraper_results", ["user_id"])
    op.create_index("ix_scraper_results_scraped_at", "scraper_results", ["scraped_at"])

    op.create_table(
        "scraper_job_executions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("scraper_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        _ts("started_at"),
        _ts("completed_at", nullable=True),
        sa.Column("duration", sa.Float(), nullable=True),
        sa.Column("items_scraped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_step", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("ai_insights_json", sa.Text(), nullable=True),
        sa.Column("results_preview_json", sa.Text(), nullable=True),
    )
    op.create_index("ix_scraper_job_executions_id", "scraper_job_executions", ["id"])
    op.create_index("ix_scraper_job_executions_job_id", "scraper_job_executions", ["job_id"])
    op.create_index("ix_scraper_job_executions_user_id", "scraper_job_executions", ["user_id"])
    op.create_index("ix_scraper_job_executions_status", "scraper_job_executions", ["status"])

    op.create_table(
        "scraper_job_progress",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("scraper_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "execution_id",
            sa.Integer(),
            sa.ForeignKey("scraper_job_executions.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_step", sa.String(length=64), nullable=True),
        sa.Column("items_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_items", sa.Integer(), nullable=True),
        sa.Column("status_message", sa.Text(), nullable=True),
        _ts("last_update"),
    )
    op.create_index("ix_scraper_job_progress_id", "scraper_job_progress", ["id"])
    op.create_index("ix_scraper_job_progress_job_id", "scraper_job_progress", ["job_id"])
    op.create_index("ix_scraper_job_progress_user_id", "scraper_job_progress", ["user_id"])

    op.create_table(
        "scraper_products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("scraper_jobs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("current_price", sa.Float(), nullable=True),
        sa.Column("target_price", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
        sa.Column("in_stock", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("check_frequency_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("notifications_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sources_json", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("last_checked_at", nullable=True),
        sa.UniqueConstraint("user_id", "url", name="uq_scraper_products_user_url"),
    )
    op.create_index("ix_scraper_products_user_id", "scraper_products", ["user_id"])

    op.create_table(
        "scraper_price_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("scraper_products.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
        sa.Column("in_stock", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("scraped_from", sa.Text(), nullable=True),
        _ts("recorded_at"),
    )
    op.create_index("ix_scraper_price_history_product_id", "scraper_price_history", ["product_id"])
    op.create_index("ix_scraper_price_history_user_id", "scraper_price_history", ["user_id"])
    op.create_index("ix_scraper_price_history_recorded_at", "scraper_price_history", ["recorded_at"])

    op.create_table(
        "scraper_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("scraper_products.id", ondelete="CASCADE"), nullable=True),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("scraper_jobs.id", ondelete="CASCADE"), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
        _ts("read_at", nullable=True),
    )
    op.create_index("ix_scraper_notifications_user_id", "scraper_notifications", ["user_id"])
    op.create_index("ix_scraper_notifications_created_at", "scraper_notifications", ["created_at"])

    op.create_table(
        "scraper_notification_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sms_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("webhook_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_address", sa.String(length=255), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("webhook_secret", sa.String(length=255), nullable=True),
        sa.Column("job_completed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("job_failed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("job_started", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("job_scheduled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("system_alerts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("performance_alerts", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("quiet_hours_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("quiet_hours_start", sa.String(length=5), nullable=False, server_default="22:00"),
        sa.Column("quiet_hours_end", sa.String(length=5), nullable=False, server_default="08:00"),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("max_per_hour", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("max_per_day", sa.Integer(), nullable=False, server_default="50"),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "scraper_websites",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("base_url", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False, server_default="general"),
        sa.Column("scraping_rules_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("rate_limit_seconds", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("requires_auth", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_validated_at", nullable=True),
        sa.Column("validation_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("robots_txt_compliant", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("discovered_by_ai", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ai_confidence_score", sa.Float(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_scraper_websites_id", "scraper_websites", ["id"])
    op.create_index("ix_scraper_websites_user_id", "scraper_websites", ["user_id"])
    op.create_index("ix_scraper_websites_category", "scraper_websites", ["category"])

    op.create_table(
        "scraper_ai_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("session_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("model_used", sa.String(length=64), nullable=True),
        sa.Column("search_query", sa.Text(), nullable=True),
        sa.Column("target_category", sa.String(length=64), nullable=True),
        sa.Column("products_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prices_extracted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sources_discovered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ai_insights_json", sa.Text(), nullable=True),
        sa.Column("error_log", sa.Text(), nullable=True),
        _ts("started_at"),
        _ts("completed_at", nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
    )
    op.create_index("ix_scraper_ai_sessions_user_id", "scraper_ai_sessions", ["user_id"])
    op.create_index("ix_scraper_ai_sessions_started_at", "scraper_ai_sessions", ["started_at"])


def downgrade() -> None:
    op.drop_table("scraper_ai_sessions")
    op.drop_table("scraper_websites")
    op.drop_table("scraper_notification_settings")
    op.drop_table("scraper_notifications")
    op.drop_table("scraper_price_history")
    op.drop_table("scraper_products")
    op.drop_table("scraper_job_progress")
    op.drop_table("scraper_job_executions")
    op.drop_table("scraper_results")
    op.drop_table("scraper_jobs")
