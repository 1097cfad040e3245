"""job cancel flag, notification history and queue

Revision ID: 9c3e71d5a2b8
Revises: 4f2a9c1e7b10
Create Date: 2026-10-24 14:03:17.220961

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "9c3e71d5a2b8"
down_revision: Union[str, None] = "4f2a9c1e7b10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "scraper_jobs",
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    op.create_table(
        "scraper_notification_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("scraper_jobs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("recipient", sa.Text(), nullable=False),
        sa.Column("message_json", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_scraper_notification_history_user_id", "scraper_notification_history", ["user_id"])
    op.create_index("ix_scraper_notification_history_sent_at", "scraper_notification_history", ["sent_at"])

    op.create_table(
        "scraper_notification_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("recipient", sa.Text(), nullable=False),
        sa.Column("message_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_scraper_notification_queue_user_id", "scraper_notification_queue", ["user_id"])
    op.create_index("ix_scraper_notification_queue_status", "scraper_notification_queue", ["status"])
    op.create_index("ix_scraper_notification_queue_scheduled_for", "scraper_notification_queue", ["scheduled_for"])


def downgrade() -> None:
    op.drop_table("scraper_notification_queue")
    op.drop_table("scraper_notification_history")
    op.drop_column("scraper_jobs", "cancel_requested")
