"""Runtime configuration for the shop task worker."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from shop_worker.ai.providers import (
    DEFAULT_CHARS_PER_TOKEN,
    DEFAULT_COMPLETION_ALLOWANCE,
    SUPPORTED_PROVIDERS,
)
from shop_worker.ratelimit.limiter import ProviderRateLimit
from shop_worker.sync.orchestrator import SYNC_PHASES
from shop_worker.sync.pagination import MAX_PAGE_SIZE

ENV_PREFIX = "SHOP_WORKER_"


@dataclass(slots=True)
class WorkerSettings:
    """Queue processor and recovery settings."""

    worker_id: str = "shop-worker"
    poll_interval_seconds: float = 2.0
    stuck_task_timeout_seconds: int = 600
    progress_min_step: int = 5
    progress_min_interval_seconds: float = 2.0
    task_ttl_days: int = 3
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class GatewaySettings:
    """Catalog GraphQL endpoint and its request shaping."""

    shop_domain: str = ""
    access_token: str = ""
    api_version: str = "2025-01"
    max_requests_per_second: int = 10
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    request_spacing_seconds: float = 0.02
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class AiSettings:
    """Provider credentials, rate-limit overrides and token estimation."""

    api_keys: dict[str, str] = field(default_factory=dict)
    rate_limits: dict[str, ProviderRateLimit] = field(default_factory=dict)
    chars_per_token: float = DEFAULT_CHARS_PER_TOKEN
    completion_allowance: int = DEFAULT_COMPLETION_ALLOWANCE
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0


@dataclass(slots=True)
class SyncSettings:
    page_size: int = MAX_PAGE_SIZE
    phases: tuple[str, ...] = SYNC_PHASES


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".shop_worker.db")
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    ai: AiSettings = field(default_factory=AiSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``SHOP_WORKER_*`` environment variables."""

        settings = cls(
            db_path=db_path or Path(os.getenv("SHOP_WORKER_DB_PATH", ".shop_worker.db")),
            worker=WorkerSettings(
                worker_id=os.getenv("SHOP_WORKER_WORKER_ID", "").strip() or _default_worker_id(),
                poll_interval_seconds=_env_float("SHOP_WORKER_POLL_INTERVAL_SECONDS", 2.0),
                stuck_task_timeout_seconds=_env_int("SHOP_WORKER_STUCK_TASK_TIMEOUT_SECONDS", 600),
                progress_min_step=_env_int("SHOP_WORKER_PROGRESS_MIN_STEP", 5),
                progress_min_interval_seconds=_env_float(
                    "SHOP_WORKER_PROGRESS_MIN_INTERVAL_SECONDS",
                    2.0,
                ),
                task_ttl_days=_env_int("SHOP_WORKER_TASK_TTL_DAYS", 3),
                sqlite_busy_timeout_ms=_env_int("SHOP_WORKER_SQLITE_BUSY_TIMEOUT_MS", 5000),
            ),
            gateway=GatewaySettings(
                shop_domain=os.getenv("SHOP_WORKER_SHOP_DOMAIN", "").strip(),
                access_token=os.getenv("SHOP_WORKER_ACCESS_TOKEN", "").strip(),
                api_version=os.getenv("SHOP_WORKER_API_VERSION", "2025-01").strip(),
                max_requests_per_second=_env_int(
                    "SHOP_WORKER_GATEWAY_MAX_REQUESTS_PER_SECOND",
                    10,
                ),
                max_retries=_env_int("SHOP_WORKER_GATEWAY_MAX_RETRIES", 3),
                retry_delay_seconds=_env_float("SHOP_WORKER_GATEWAY_RETRY_DELAY_SECONDS", 1.0),
                request_spacing_seconds=_env_float(
                    "SHOP_WORKER_GATEWAY_REQUEST_SPACING_SECONDS",
                    0.02,
                ),
                timeout_seconds=_env_float("SHOP_WORKER_GATEWAY_TIMEOUT_SECONDS", 30.0),
            ),
            ai=AiSettings(
                api_keys=_collect_api_keys(),
                rate_limits=_collect_rate_limit_overrides(),
                chars_per_token=_env_float(
                    "SHOP_WORKER_TOKEN_CHARS_PER_TOKEN",
                    DEFAULT_CHARS_PER_TOKEN,
                ),
                completion_allowance=_env_int(
                    "SHOP_WORKER_TOKEN_COMPLETION_ALLOWANCE",
                    DEFAULT_COMPLETION_ALLOWANCE,
                ),
                max_retries=_env_int("SHOP_WORKER_AI_MAX_RETRIES", 3),
                retry_base_delay_seconds=_env_float(
                    "SHOP_WORKER_AI_RETRY_BASE_DELAY_SECONDS",
                    1.0,
                ),
            ),
            sync=SyncSettings(
                page_size=min(
                    _env_int("SHOP_WORKER_SYNC_PAGE_SIZE", MAX_PAGE_SIZE),
                    MAX_PAGE_SIZE,
                ),
                phases=_collect_sync_phases(),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.worker.poll_interval_seconds < 0:
            raise ValueError("SHOP_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.stuck_task_timeout_seconds <= 0:
            raise ValueError("SHOP_WORKER_STUCK_TASK_TIMEOUT_SECONDS must be > 0.")
        if not 1 <= self.worker.progress_min_step <= 100:  # noqa: PLR2004
            raise ValueError("SHOP_WORKER_PROGRESS_MIN_STEP must be between 1 and 100.")
        if self.worker.task_ttl_days <= 0:
            raise ValueError("SHOP_WORKER_TASK_TTL_DAYS must be > 0.")
        if self.gateway.max_requests_per_second <= 0:
            raise ValueError("SHOP_WORKER_GATEWAY_MAX_REQUESTS_PER_SECOND must be > 0.")
        if self.gateway.max_retries < 0:
            raise ValueError("SHOP_WORKER_GATEWAY_MAX_RETRIES must be >= 0.")
        if self.ai.max_retries < 0:
            raise ValueError("SHOP_WORKER_AI_MAX_RETRIES must be >= 0.")
        if self.ai.retry_base_delay_seconds < 0:
            raise ValueError("SHOP_WORKER_AI_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.ai.chars_per_token <= 0:
            raise ValueError("SHOP_WORKER_TOKEN_CHARS_PER_TOKEN must be > 0.")
        if self.sync.page_size <= 0:
            raise ValueError("SHOP_WORKER_SYNC_PAGE_SIZE must be > 0.")

    def validate_for_gateway(self, shop_domain: str | None = None) -> None:
        """Raise configuration error if the catalog API cannot be reached."""

        if not (shop_domain or self.gateway.shop_domain):
            raise ValueError("SHOP_WORKER_SHOP_DOMAIN is required for catalog API calls.")
        if not self.gateway.access_token:
            raise ValueError("SHOP_WORKER_ACCESS_TOKEN is required for catalog API calls.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _collect_api_keys() -> dict[str, str]:
    keys: dict[str, str] = {}
    for provider in SUPPORTED_PROVIDERS:
        value = os.getenv(f"{ENV_PREFIX}{provider.upper()}_API_KEY", "").strip()
        if value:
            keys[provider] = value
    return keys


def _collect_rate_limit_overrides() -> dict[str, ProviderRateLimit]:
    overrides: dict[str, ProviderRateLimit] = {}
    for provider in SUPPORTED_PROVIDERS:
        name = f"{ENV_PREFIX}RATE_LIMIT_{provider.upper()}"
        raw = os.getenv(name, "").strip()
        if not raw:
            continue
        try:
            overrides[provider] = ProviderRateLimit.parse(raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid {name}: {raw!r}. Expected format '<requests>/<tokens>'.",
            ) from error
    return overrides


def _collect_sync_phases() -> tuple[str, ...]:
    raw = os.getenv("SHOP_WORKER_SYNC_PHASES", "").strip()
    if not raw:
        return SYNC_PHASES
    phases = tuple(part.strip() for part in raw.split(",") if part.strip())
    unknown = [phase for phase in phases if phase not in SYNC_PHASES]
    if unknown:
        raise ValueError(
            f"Invalid SHOP_WORKER_SYNC_PHASES entries: {', '.join(unknown)}. "
            f"Known phases: {', '.join(SYNC_PHASES)}.",
        )
    return phases


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
