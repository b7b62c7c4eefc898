"""Add per-shop AI provider rate limit overrides."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0004"
down_revision = "20261018_0003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "shop_rate_limits",
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("max_requests_per_minute", sa.Integer(), nullable=False),
        sa.Column("max_tokens_per_minute", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("shop", "provider"),
    )


def downgrade() -> None:
    op.drop_table("shop_rate_limits")
