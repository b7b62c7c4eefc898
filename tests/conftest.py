"""Shared test fixtures."""

from __future__ import annotations

import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from shop_worker.tasks.repository import TaskRepository

_OPERATION_RE = re.compile(r"query\s+(\w+)")
_CONNECTION_ROOTS = {
    "getProducts": "products",
    "getCollections": "collections",
    "getArticles": "articles",
    "getPages": "pages",
}


class FakeShopApi:
    """In-memory catalog GraphQL API dispatching on the operation name.

    Connections page by integer offsets so ``endCursor`` always advances.
    """

    def __init__(self, *, locales: tuple[str, ...] = ("en", "fr"), primary: str = "en") -> None:
        self.locales = locales
        self.primary = primary
        self.connections: dict[str, list[dict[str, Any]]] = {}
        self.theme_resources: dict[str, list[dict[str, Any]]] = {}
        self.translations: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.policies: list[dict[str, Any]] = []
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        match = _OPERATION_RE.search(query)
        assert match is not None
        operation = match.group(1)
        variables = dict(variables or {})
        self.calls.append((operation, variables))
        if operation in self.failures:
            raise self.failures[operation]

        if operation == "getShopLocales":
            return {
                "shopLocales": [
                    {
                        "locale": locale,
                        "name": locale.upper(),
                        "primary": locale == self.primary,
                        "published": True,
                    }
                    for locale in self.locales
                ],
            }
        if operation == "getShopPolicies":
            return {"shop": {"shopPolicies": self.policies}}
        if operation == "getTranslations":
            key = (variables["resourceId"], variables["locale"])
            return {
                "translatableResource": {
                    "translatableContent": [],
                    "translations": self.translations.get(key, []),
                },
            }
        if operation == "getThemeTranslatableResources":
            nodes = self.theme_resources.get(variables["resourceType"], [])
            return {"translatableResources": _page(nodes, variables)}
        root = _CONNECTION_ROOTS[operation]
        return {root: _page(self.connections.get(root, []), variables)}

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)


def _page(nodes: list[dict[str, Any]], variables: dict[str, Any]) -> dict[str, Any]:
    start = int(variables.get("after") or 0)
    chunk = nodes[start : start + int(variables["first"])]
    end = start + len(chunk)
    return {
        "pageInfo": {"hasNextPage": end < len(nodes), "endCursor": str(end) if chunk else None},
        "edges": [{"node": node} for node in chunk],
    }


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "tasks.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def shop_api() -> FakeShopApi:
    return FakeShopApi()
