"""Local content store written by sync runs."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from shop_worker.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from shop_worker.storage.sqlmodel_models import SyncedResource, SyncedTranslation
from shop_worker.sync.translations import TranslationRecord


@dataclass(slots=True)
class ResourceWrite:
    """One synced resource, or one content group of a theme resource."""

    resource_id: str
    resource_type: str
    title: str | None
    payload: dict[str, Any]
    group_id: str = ""
    group_name: str | None = None


class ContentSink(Protocol):
    def save(
        self,
        shop: str,
        resource: ResourceWrite,
        translations: Sequence[TranslationRecord],
    ) -> None: ...

    def prune(self, shop: str, resource_type: str, keep: set[tuple[str, str]]) -> int: ...


class SqlContentSink:
    """Persists synced resources and their translations in SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def save(
        self,
        shop: str,
        resource: ResourceWrite,
        translations: Sequence[TranslationRecord],
        *,
        now: datetime | None = None,
    ) -> None:
        db_now = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            session.merge(
                SyncedResource(
                    shop=shop,
                    resource_id=resource.resource_id,
                    group_id=resource.group_id,
                    resource_type=resource.resource_type,
                    title=resource.title,
                    group_name=resource.group_name,
                    payload_json=json.dumps(resource.payload, ensure_ascii=False, sort_keys=True),
                    synced_at=db_now,
                ),
            )
            for record in translations:
                session.merge(
                    SyncedTranslation(
                        shop=shop,
                        resource_id=resource.resource_id,
                        key=record.key,
                        locale=record.locale,
                        resource_type=resource.resource_type,
                        value=record.value,
                        digest=record.digest,
                        outdated=record.outdated,
                        synced_at=db_now,
                    ),
                )
            session.commit()

    def prune(self, shop: str, resource_type: str, keep: set[tuple[str, str]]) -> int:
        """Delete ``resource_type`` rows whose ``(resource_id, group_id)`` is not in ``keep``.

        Translations are dropped for resources left with no rows at all.
        """

        with Session(self.engine) as session:
            rows = session.exec(
                select(SyncedResource.resource_id, SyncedResource.group_id).where(
                    SyncedResource.shop == shop,
                    SyncedResource.resource_type == resource_type,
                ),
            ).all()
            stale = [
                (resource_id, group_id)
                for resource_id, group_id in rows
                if (resource_id, group_id) not in keep
            ]
            for resource_id, group_id in stale:
                session.exec(
                    sa_delete(SyncedResource).where(
                        col(SyncedResource.shop) == shop,
                        col(SyncedResource.resource_id) == resource_id,
                        col(SyncedResource.group_id) == group_id,
                    ),
                )
            kept_ids = {resource_id for resource_id, _ in keep}
            orphaned = {resource_id for resource_id, _ in stale} - kept_ids
            if orphaned:
                session.exec(
                    sa_delete(SyncedTranslation).where(
                        col(SyncedTranslation.shop) == shop,
                        col(SyncedTranslation.resource_id).in_(sorted(orphaned)),
                    ),
                )
            session.commit()
            return len(stale)

    def count_resources(self, shop: str, resource_type: str | None = None) -> int:
        with Session(self.engine) as session:
            statement = select(SyncedResource).where(SyncedResource.shop == shop)
            if resource_type is not None:
                statement = statement.where(SyncedResource.resource_type == resource_type)
            return len(session.exec(statement).all())

    def list_translations(self, shop: str, resource_id: str) -> list[SyncedTranslation]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(SyncedTranslation)
                    .where(
                        SyncedTranslation.shop == shop,
                        SyncedTranslation.resource_id == resource_id,
                    )
                    .order_by(col(SyncedTranslation.key), col(SyncedTranslation.locale)),
                ).all(),
            )
