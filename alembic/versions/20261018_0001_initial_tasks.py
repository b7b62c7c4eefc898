"""Create shop task queue and task event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "shop_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("resource_title", sa.String(), nullable=True),
        sa.Column("field_type", sa.String(), nullable=True),
        sa.Column("target_locale", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("progress_message", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("estimated_tokens", sa.Integer(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_shop_tasks_shop", "shop_tasks", ["shop"], unique=False)
    op.create_index("ix_shop_tasks_task_type", "shop_tasks", ["task_type"], unique=False)
    op.create_index("ix_shop_tasks_status", "shop_tasks", ["status"], unique=False)
    op.create_index(
        "idx_shop_tasks_status_created",
        "shop_tasks",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_shop_tasks_status_updated",
        "shop_tasks",
        ["status", "updated_at"],
        unique=False,
    )
    op.create_index(
        "idx_shop_tasks_target",
        "shop_tasks",
        ["shop", "resource_type", "resource_id", "field_type"],
        unique=False,
    )

    op.create_table(
        "shop_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["shop_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_shop_task_events_task_time",
        "shop_task_events",
        ["task_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_shop_task_events_task_time", table_name="shop_task_events")
    op.drop_table("shop_task_events")
    op.drop_index("idx_shop_tasks_target", table_name="shop_tasks")
    op.drop_index("idx_shop_tasks_status_updated", table_name="shop_tasks")
    op.drop_index("idx_shop_tasks_status_created", table_name="shop_tasks")
    op.drop_index("ix_shop_tasks_status", table_name="shop_tasks")
    op.drop_index("ix_shop_tasks_task_type", table_name="shop_tasks")
    op.drop_index("ix_shop_tasks_shop", table_name="shop_tasks")
    op.drop_table("shop_tasks")
