from __future__ import annotations

from typing import Any

import allure
import pytest

from shop_worker.sync.pagination import PaginationError, paginate_connection
from shop_worker.sync.queries import PRODUCTS_QUERY

pytestmark = [
    allure.epic("Catalog Sync"),
    allure.feature("Cursor Pagination"),
]


def _products(count: int) -> list[dict[str, Any]]:
    return [
        {"id": f"gid://shopify/Product/{index}", "title": f"P{index}"} for index in range(count)
    ]


def test_fetches_every_page_with_maximum_page_size(shop_api) -> None:
    shop_api.connections["products"] = _products(750)
    pages: list[tuple[int, int]] = []

    nodes = paginate_connection(
        shop_api,
        PRODUCTS_QUERY,
        path=("products",),
        on_page=lambda page, total: pages.append((page, total)),
    )

    assert len(nodes) == 750
    assert len({node["id"] for node in nodes}) == 750
    assert shop_api.count("getProducts") == 3
    assert [variables["first"] for _, variables in shop_api.calls] == [250, 250, 250]
    assert [variables["after"] for _, variables in shop_api.calls] == [None, "250", "500"]
    assert pages == [(1, 250), (2, 500), (3, 750)]


def test_page_size_is_capped_and_max_items_stops_early(shop_api) -> None:
    shop_api.connections["products"] = _products(600)

    nodes = paginate_connection(
        shop_api,
        PRODUCTS_QUERY,
        path=("products",),
        page_size=1000,
        max_items=300,
    )

    assert len(nodes) == 300
    assert [variables["first"] for _, variables in shop_api.calls] == [250, 50]


def test_plain_nodes_lists_are_supported() -> None:
    class NodesApi:
        def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
            return {
                "products": {
                    "pageInfo": {"hasNextPage": False, "endCursor": None},
                    "nodes": [{"id": "1"}, {"id": "2"}],
                },
            }

    assert paginate_connection(NodesApi(), PRODUCTS_QUERY, path=("products",)) == [
        {"id": "1"},
        {"id": "2"},
    ]


def test_cursor_that_does_not_advance_is_an_error() -> None:
    class StuckApi:
        def __init__(self) -> None:
            self.calls = 0

        def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
            self.calls += 1
            return {
                "products": {
                    "pageInfo": {"hasNextPage": True, "endCursor": "same"},
                    "edges": [{"node": {"id": str(self.calls)}}],
                },
            }

    api = StuckApi()
    with pytest.raises(PaginationError, match="did not advance"):
        paginate_connection(api, PRODUCTS_QUERY, path=("products",))
    assert api.calls == 2
