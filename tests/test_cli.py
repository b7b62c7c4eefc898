from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import allure
from click.testing import CliRunner

from shop_worker.gateway import ApiGateway, GraphqlResponse
from shop_worker.main import shop_worker

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("CLI Operations"),
]


def _enqueue(runner: CliRunner, db_path: Path, *extra: str) -> str:
    result = runner.invoke(
        shop_worker,
        [
            "tasks",
            "enqueue",
            "--db-path",
            str(db_path),
            "--shop",
            "demo.myshopify.com",
            *extra,
        ],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"task_id=([0-9a-f-]+)", result.output)
    assert match is not None, result.output
    return match.group(1)


def test_enqueue_run_worker_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    task_id = _enqueue(
        runner,
        db_path,
        "--type",
        "aiGeneration",
        "--resource-type",
        "PRODUCT",
        "--resource-id",
        "gid://shopify/Product/1",
        "--field",
        "body_html",
        "--provider",
        "echo",
        "--prompt",
        "Describe a blue shirt",
    )

    duplicate = runner.invoke(
        shop_worker,
        [
            "tasks",
            "enqueue",
            "--db-path",
            str(db_path),
            "--shop",
            "demo.myshopify.com",
            "--type",
            "aiGeneration",
            "--resource-type",
            "PRODUCT",
            "--resource-id",
            "gid://shopify/Product/1",
            "--field",
            "body_html",
        ],
    )
    assert duplicate.exit_code == 0
    assert f"Task rejected: An active task already exists for this target: {task_id}" in (
        duplicate.output
    )

    worker = runner.invoke(
        shop_worker,
        ["worker", "run", "--db-path", str(db_path), "--once", "--echo-provider", "echo"],
    )
    assert worker.exit_code == 0, worker.output
    assert "Recovery: recovered=0 failed=0" in worker.output
    assert "processed=1 completed=1 failed=0 cancelled=0" in worker.output

    inspect = runner.invoke(
        shop_worker,
        ["tasks", "inspect", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert inspect.exit_code == 0
    assert "Status: completed" in inspect.output
    assert "Progress: 100%" in inspect.output
    assert "claimed queued -> running" in inspect.output

    listing = runner.invoke(
        shop_worker,
        ["tasks", "list", "--db-path", str(db_path), "--status", "completed"],
    )
    assert listing.exit_code == 0
    assert "Tasks: 1" in listing.output
    assert "target=gid://shopify/Product/1#body_html" in listing.output


def test_pending_task_release_and_cancel(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    task_id = _enqueue(runner, db_path, "--type", "sync", "--pending")

    released = runner.invoke(
        shop_worker,
        ["tasks", "release", "--db-path", str(db_path), "--task-id", task_id],
    )
    again = runner.invoke(
        shop_worker,
        ["tasks", "release", "--db-path", str(db_path), "--task-id", task_id],
    )
    cancelled = runner.invoke(
        shop_worker,
        ["tasks", "cancel", "--db-path", str(db_path), "--task-id", task_id],
    )
    missing = runner.invoke(
        shop_worker,
        ["tasks", "cancel", "--db-path", str(db_path), "--task-id", "nope"],
    )

    assert f"Task released: {task_id}" in released.output
    assert f"Task is not pending: {task_id}" in again.output
    assert f"Task cancelled: {task_id}" in cancelled.output
    assert "Task not found: nope" in missing.output


def test_recover_and_cleanup_on_empty_store(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    recover = runner.invoke(shop_worker, ["recover", "--db-path", str(db_path)])
    cleanup = runner.invoke(shop_worker, ["tasks", "cleanup", "--db-path", str(db_path)])

    assert recover.exit_code == 0
    assert "Recovery: recovered=0 failed=0" in recover.output
    assert cleanup.exit_code == 0
    assert "Expired tasks deleted: 0" in cleanup.output


def test_sync_streams_server_sent_events(tmp_path: Path, monkeypatch, shop_api) -> None:
    shop_api.connections["products"] = [{"id": "gid://shopify/Product/1", "title": "Shirt"}]

    class FakeApiExecutor:
        def execute(self, query: str, variables: dict[str, Any] | None = None) -> GraphqlResponse:
            return GraphqlResponse(data=shop_api.graphql(query, variables))

    monkeypatch.setattr(
        "shop_worker.tasks.controllers.build_gateway",
        lambda settings, shop_domain=None: ApiGateway(
            executor=FakeApiExecutor(),
            request_spacing_seconds=0.0,
        ),
    )

    result = CliRunner().invoke(
        shop_worker,
        [
            "sync",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--shop",
            "demo.myshopify.com",
            "--phase",
            "products",
        ],
    )

    assert result.exit_code == 0, result.output
    frames = [frame for frame in result.output.split("\n\n") if frame]
    assert all(frame.startswith("data: ") for frame in frames)
    events = [json.loads(frame.removeprefix("data: ")) for frame in frames]
    assert events[0] == {"type": "progress", "phase": "products", "message": "Syncing products..."}
    assert events[-1] == {
        "type": "complete",
        "message": "Sync complete",
        "stats": {"products": 1},
        "errors": [],
    }


def test_version_option() -> None:
    result = CliRunner().invoke(shop_worker, ["--version"])

    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_shop_rate_limit_commands(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    base = ["--db-path", str(db_path), "--shop", "demo.myshopify.com", "--provider", "OpenAI"]

    set_result = runner.invoke(shop_worker, ["limits", "set", *base, "--limit", "10/20000"])
    listing = runner.invoke(shop_worker, ["limits", "list", "--db-path", str(db_path)])
    cleared = runner.invoke(shop_worker, ["limits", "clear", *base])
    cleared_again = runner.invoke(shop_worker, ["limits", "clear", *base])
    invalid = runner.invoke(shop_worker, ["limits", "set", *base, "--limit", "lots"])

    assert set_result.exit_code == 0, set_result.output
    assert "Rate limit set: shop=demo.myshopify.com provider=openai" in set_result.output
    assert "Rate limits: 1" in listing.output
    assert "requests/min=10 tokens/min=20000" in listing.output
    assert "Rate limit cleared: shop=demo.myshopify.com provider=openai" in cleared.output
    assert "No rate limit for shop=demo.myshopify.com provider=openai" in cleared_again.output
    assert invalid.exit_code != 0
