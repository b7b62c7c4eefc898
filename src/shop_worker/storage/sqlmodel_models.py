"""SQLModel ORM tables for task and sync storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ShopTask(SQLModel, table=True):
    __tablename__ = "shop_tasks"  # type: ignore[bad-override]
    # uq_shop_tasks_active_target is a partial expression index, created in migration 0003.
    __table_args__ = (
        Index("idx_shop_tasks_status_created", "status", "created_at"),
        Index("idx_shop_tasks_status_updated", "status", "updated_at"),
        Index(
            "idx_shop_tasks_target",
            "shop",
            "resource_type",
            "resource_id",
            "field_type",
        ),
    )

    task_id: str = Field(primary_key=True)
    shop: str = Field(index=True)
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    resource_type: str | None = None
    resource_id: str | None = None
    resource_title: str | None = None
    field_type: str | None = None
    target_locale: str | None = None
    provider: str | None = None
    prompt: str | None = Field(default=None, sa_column=Column(Text))
    result: str | None = Field(default=None, sa_column=Column(Text))
    progress: int = Field(default=0)
    progress_message: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    estimated_tokens: int | None = None
    worker_id: str | None = None
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ShopTaskEvent(SQLModel, table=True):
    __tablename__ = "shop_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_shop_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("shop_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SyncedResource(SQLModel, table=True):
    __tablename__ = "synced_resources"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_synced_resources_shop_type", "shop", "resource_type"),)

    shop: str = Field(primary_key=True)
    resource_id: str = Field(primary_key=True)
    group_id: str = Field(default="", primary_key=True)
    resource_type: str
    title: str | None = None
    group_name: str | None = None
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    synced_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SyncedTranslation(SQLModel, table=True):
    __tablename__ = "synced_translations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_synced_translations_resource", "shop", "resource_id"),)

    shop: str = Field(primary_key=True)
    resource_id: str = Field(primary_key=True)
    key: str = Field(primary_key=True)
    locale: str = Field(primary_key=True)
    resource_type: str
    value: str | None = Field(default=None, sa_column=Column(Text))
    digest: str | None = None
    outdated: bool = False
    synced_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ShopRateLimit(SQLModel, table=True):
    __tablename__ = "shop_rate_limits"  # type: ignore[bad-override]

    shop: str = Field(primary_key=True)
    provider: str = Field(primary_key=True)
    max_requests_per_minute: int
    max_tokens_per_minute: int
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
