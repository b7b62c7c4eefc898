"""Add local content store written by catalog sync runs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "synced_resources",
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("group_id", sa.String(), nullable=False, server_default=""),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("group_name", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("shop", "resource_id", "group_id"),
    )
    op.create_index(
        "idx_synced_resources_shop_type",
        "synced_resources",
        ["shop", "resource_type"],
        unique=False,
    )

    op.create_table(
        "synced_translations",
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("locale", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("digest", sa.String(), nullable=True),
        sa.Column("outdated", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("shop", "resource_id", "key", "locale"),
    )
    op.create_index(
        "idx_synced_translations_resource",
        "synced_translations",
        ["shop", "resource_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_synced_translations_resource", table_name="synced_translations")
    op.drop_table("synced_translations")
    op.drop_index("idx_synced_resources_shop_type", table_name="synced_resources")
    op.drop_table("synced_resources")
