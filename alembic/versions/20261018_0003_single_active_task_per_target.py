"""Enforce a single active task per shop resource field."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0003"
down_revision = "20261018_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Keep the newest active row per target, mark older duplicates as failed.
    op.execute(
        sa.text(
            """
            WITH ranked AS (
                SELECT
                    task_id,
                    ROW_NUMBER() OVER (
                        PARTITION BY
                            shop,
                            COALESCE(resource_type, ''),
                            resource_id,
                            COALESCE(field_type, '')
                        ORDER BY created_at DESC, task_id DESC
                    ) AS rn
                FROM shop_tasks
                WHERE resource_id IS NOT NULL
                  AND status IN ('pending', 'queued', 'running')
            )
            UPDATE shop_tasks
            SET
                status = 'failed',
                completed_at = COALESCE(completed_at, CURRENT_TIMESTAMP),
                updated_at = CURRENT_TIMESTAMP,
                error = COALESCE(
                    error,
                    'Auto-closed during migration: duplicate active tasks.'
                )
            WHERE task_id IN (SELECT task_id FROM ranked WHERE rn > 1)
            """,
        ),
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_shop_tasks_active_target
            ON shop_tasks (
                shop,
                COALESCE(resource_type, ''),
                resource_id,
                COALESCE(field_type, '')
            )
            WHERE resource_id IS NOT NULL
              AND status IN ('pending', 'queued', 'running')
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_shop_tasks_active_target"))
