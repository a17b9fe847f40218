"""tasks, queue and common tables

Revision ID: 0001_tasks_queue
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql


# revision identifiers, used by Alembic.
revision = "0001_tasks_queue"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # lock ownership compares timestamps; keep microseconds on MySQL
    dt6 = sa.DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")
    big_id = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

    op.create_table(
        "tasks",
        sa.Column("id", big_id, primary_key=True, autoincrement=True),
        sa.Column("site_id", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("type", sa.String(length=255), nullable=False),
        sa.Column("cron_expression", sa.String(length=255), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_exit_code", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("last_execution", dt6, nullable=True),
        sa.Column("last_run_end", dt6, nullable=True),
        sa.Column("next_execution", dt6, nullable=True),
        sa.Column("times_executed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("times_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("locked_at", dt6, nullable=True),
        sa.Column("params", sa.Text(), nullable=False),
        sa.Column("storage", sa.Text(), nullable=False),
        sa.Column("created_at", dt6, nullable=True),
        sa.Column("updated_at", dt6, nullable=True),
        mysql_charset="utf8mb4",
        mysql_collate="utf8mb4_unicode_ci",
    )
    op.create_index("ix_tasks_due", "tasks", ["enabled", "next_execution"])
    op.create_index("ix_tasks_site_type", "tasks", ["site_id", "type"])
    op.create_index("ix_tasks_locked_at", "tasks", ["locked_at"])

    op.create_table(
        "queue",
        sa.Column("id", big_id, primary_key=True, autoincrement=True),
        sa.Column("queue_type", sa.String(length=64), nullable=False),
        sa.Column("site_id", sa.BigInteger(), nullable=True),
        sa.Column("data", sa.Text(), nullable=False),
        sa.Column("available_at", dt6, nullable=False),
        sa.Column("created_at", dt6, nullable=False),
        mysql_charset="utf8mb4",
        mysql_collate="utf8mb4_unicode_ci",
    )
    op.create_index("ix_queue_partition", "queue", ["queue_type", "site_id", "available_at"])

    op.create_table(
        "common",
        sa.Column("key", sa.String(length=190), primary_key=True),
        sa.Column("value", sa.Text(), nullable=True),
        mysql_charset="utf8mb4",
        mysql_collate="utf8mb4_unicode_ci",
    )


def downgrade() -> None:
    op.drop_table("common")

    op.drop_index("ix_queue_partition", table_name="queue")
    op.drop_table("queue")

    op.drop_index("ix_tasks_locked_at", table_name="tasks")
    op.drop_index("ix_tasks_site_type", table_name="tasks")
    op.drop_index("ix_tasks_due", table_name="tasks")
    op.drop_table("tasks")
