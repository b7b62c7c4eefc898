from __future__ import annotations

from pathlib import Path

import allure
import pytest

from shop_worker.config import GatewaySettings, Settings
from shop_worker.ratelimit import ProviderRateLimit
from shop_worker.sync.orchestrator import SYNC_PHASES

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]


def test_defaults_without_environment(monkeypatch) -> None:
    monkeypatch.delenv("SHOP_WORKER_DB_PATH", raising=False)
    monkeypatch.delenv("SHOP_WORKER_SYNC_PHASES", raising=False)
    monkeypatch.delenv("SHOP_WORKER_OPENAI_API_KEY", raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".shop_worker.db")
    assert settings.worker.stuck_task_timeout_seconds == 600
    assert settings.worker.task_ttl_days == 3
    assert settings.gateway.max_requests_per_second == 10
    assert settings.gateway.max_retries == 3
    assert settings.sync.phases == SYNC_PHASES
    assert settings.sync.page_size == 250


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SHOP_WORKER_WORKER_ID", "worker-7")
    monkeypatch.setenv("SHOP_WORKER_STUCK_TASK_TIMEOUT_SECONDS", "120")
    monkeypatch.setenv("SHOP_WORKER_OPENAI_API_KEY", " sk-openai ")
    monkeypatch.setenv("SHOP_WORKER_RATE_LIMIT_CLAUDE", "10/80000")
    monkeypatch.setenv("SHOP_WORKER_SYNC_PHASES", "products, themes")
    monkeypatch.setenv("SHOP_WORKER_SYNC_PAGE_SIZE", "500")

    settings = Settings.from_env(db_path=tmp_path / "worker.db")

    assert settings.db_path == tmp_path / "worker.db"
    assert settings.worker.worker_id == "worker-7"
    assert settings.worker.stuck_task_timeout_seconds == 120
    assert settings.ai.api_keys == {"openai": "sk-openai"}
    assert settings.ai.rate_limits == {"claude": ProviderRateLimit(10, 80_000)}
    assert settings.sync.phases == ("products", "themes")
    assert settings.sync.page_size == 250


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("SHOP_WORKER_POLL_INTERVAL_SECONDS", "soon", "Invalid number for SHOP_WORKER_POLL"),
        ("SHOP_WORKER_TASK_TTL_DAYS", "0", "SHOP_WORKER_TASK_TTL_DAYS must be > 0"),
        ("SHOP_WORKER_RATE_LIMIT_GROK", "fast", "Invalid SHOP_WORKER_RATE_LIMIT_GROK"),
        ("SHOP_WORKER_SYNC_PHASES", "products,orders", "Invalid SHOP_WORKER_SYNC_PHASES"),
        ("SHOP_WORKER_GATEWAY_MAX_RETRIES", "-1", "MAX_RETRIES must be >= 0"),
    ],
)
def test_invalid_environment_values_name_the_variable(monkeypatch, name, value, message) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_gateway_requires_shop_and_token() -> None:
    settings = Settings(gateway=GatewaySettings(access_token="shpat_x"))

    with pytest.raises(ValueError, match="SHOP_WORKER_SHOP_DOMAIN"):
        settings.validate_for_gateway()
    settings.validate_for_gateway("demo.myshopify.com")

    no_token = Settings(gateway=GatewaySettings(shop_domain="demo.myshopify.com"))
    with pytest.raises(ValueError, match="SHOP_WORKER_ACCESS_TOKEN"):
        no_token.validate_for_gateway()
