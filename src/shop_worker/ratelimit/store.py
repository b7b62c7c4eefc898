"""Per-shop provider budgets kept next to the task queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from shop_worker.ratelimit.limiter import ProviderRateLimit
from shop_worker.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from shop_worker.storage.sqlmodel_models import ShopRateLimit


@dataclass(slots=True, frozen=True)
class ShopRateLimitView:
    shop: str
    provider: str
    limit: ProviderRateLimit
    updated_at: datetime


class SqlRateLimitStore:
    """Shop-level overrides of the process-wide provider budgets.

    ``lookup`` matches ``RateLimitLookup`` and is meant to be handed to
    ``ProviderRateLimiter``; it returns ``None`` when the shop has no override
    so the limiter falls back to its defaults.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def lookup(self, shop: str, provider: str) -> ProviderRateLimit | None:
        with Session(self.engine) as session:
            row = session.get(ShopRateLimit, (shop, provider))
            if row is None:
                return None
            return ProviderRateLimit(
                max_requests_per_minute=row.max_requests_per_minute,
                max_tokens_per_minute=row.max_tokens_per_minute,
            )

    def set_limit(
        self,
        shop: str,
        provider: str,
        limit: ProviderRateLimit,
        *,
        now: datetime | None = None,
    ) -> None:
        db_now = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            row = session.get(ShopRateLimit, (shop, provider))
            if row is None:
                row = ShopRateLimit(
                    shop=shop,
                    provider=provider,
                    max_requests_per_minute=limit.max_requests_per_minute,
                    max_tokens_per_minute=limit.max_tokens_per_minute,
                    updated_at=db_now,
                )
            else:
                row.max_requests_per_minute = limit.max_requests_per_minute
                row.max_tokens_per_minute = limit.max_tokens_per_minute
                row.updated_at = db_now
            session.add(row)
            session.commit()

    def delete_limit(self, shop: str, provider: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ShopRateLimit).where(
                    col(ShopRateLimit.shop) == shop,
                    col(ShopRateLimit.provider) == provider,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def list_limits(self, *, shop: str | None = None) -> list[ShopRateLimitView]:
        with Session(self.engine) as session:
            statement = select(ShopRateLimit).order_by(
                col(ShopRateLimit.shop).asc(),
                col(ShopRateLimit.provider).asc(),
            )
            if shop is not None:
                statement = statement.where(ShopRateLimit.shop == shop)
            rows = session.exec(statement).all()
            return [
                ShopRateLimitView(
                    shop=row.shop,
                    provider=row.provider,
                    limit=ProviderRateLimit(
                        max_requests_per_minute=row.max_requests_per_minute,
                        max_tokens_per_minute=row.max_tokens_per_minute,
                    ),
                    updated_at=to_utc_aware_datetime(row.updated_at),
                )
                for row in rows
            ]
