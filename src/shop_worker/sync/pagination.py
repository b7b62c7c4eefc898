"""Cursor pagination over GraphQL connections."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 250


class PaginationError(RuntimeError):
    """The connection reported more pages but the cursor did not advance."""


class GraphqlClient(Protocol):
    def graphql(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]: ...


def paginate_connection(  # noqa: PLR0913
    client: GraphqlClient,
    query: str,
    *,
    path: Sequence[str],
    variables: dict[str, Any] | None = None,
    page_size: int = MAX_PAGE_SIZE,
    max_items: int | None = None,
    on_page: Callable[[int, int], None] | None = None,
) -> list[dict[str, Any]]:
    """Fetch every node of the connection found at ``path`` in the response data.

    The query must accept ``$first`` and ``$after``. Pages are requested until
    ``pageInfo.hasNextPage`` is false or ``max_items`` nodes were collected.
    ``on_page`` receives ``(page_number, nodes_so_far)``.
    """

    first = max(1, min(page_size, MAX_PAGE_SIZE))
    nodes: list[dict[str, Any]] = []
    cursor: str | None = None
    page_number = 0
    while True:
        if max_items is not None:
            remaining = max_items - len(nodes)
            if remaining <= 0:
                break
            first = min(first, remaining)
        page_number += 1
        data = client.graphql(query, {**(variables or {}), "first": first, "after": cursor})
        connection = _dig(data, path)
        nodes.extend(_connection_nodes(connection))
        if on_page is not None:
            on_page(page_number, len(nodes))

        page_info = connection.get("pageInfo") or {}
        if not page_info.get("hasNextPage"):
            break
        next_cursor = page_info.get("endCursor")
        if not next_cursor or next_cursor == cursor:
            raise PaginationError(
                f"Cursor did not advance on page {page_number} of {'.'.join(path)}",
            )
        logger.debug("Fetching page %d of %s", page_number + 1, ".".join(path))
        cursor = next_cursor

    if max_items is not None:
        return nodes[:max_items]
    return nodes


def _dig(data: dict[str, Any], path: Sequence[str]) -> dict[str, Any]:
    current: Any = data
    for key in path:
        current = current.get(key) if isinstance(current, dict) else None
    return current if isinstance(current, dict) else {}


def _connection_nodes(connection: dict[str, Any]) -> list[dict[str, Any]]:
    if "nodes" in connection:
        return [node for node in connection.get("nodes") or [] if isinstance(node, dict)]
    nodes = []
    for edge in connection.get("edges") or []:
        node = edge.get("node") if isinstance(edge, dict) else None
        if isinstance(node, dict):
            nodes.append(node)
    return nodes
