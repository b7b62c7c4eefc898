"""HTTP transport for the catalog GraphQL endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from shop_worker.gateway.errors import GatewayTransportError, GraphqlHttpError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_API_VERSION = "2025-01"
DEFAULT_USER_AGENT = "ShopWorker/0.1"


@dataclass(slots=True)
class GraphqlResponse:
    """Decoded GraphQL response body."""

    data: dict[str, Any] | None
    errors: list[dict[str, Any]] = field(default_factory=list)
    extensions: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: object) -> GraphqlResponse:
        if not isinstance(payload, dict):
            return cls(data=None, errors=[{"message": "Malformed GraphQL response"}])
        data = payload.get("data")
        errors = payload.get("errors") or []
        extensions = payload.get("extensions") or {}
        return cls(
            data=data if isinstance(data, dict) else None,
            errors=[item for item in errors if isinstance(item, dict)],
            extensions=extensions if isinstance(extensions, dict) else {},
        )


class GraphqlExecutor(Protocol):
    """Performs one GraphQL request; raises ``GraphqlHttpError`` or ``GatewayTransportError``."""

    def execute(self, query: str, variables: dict[str, Any] | None = None) -> GraphqlResponse: ...


class HttpGraphqlExecutor:
    """httpx client bound to one shop's Admin GraphQL endpoint."""

    def __init__(
        self,
        *,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "User-Agent": DEFAULT_USER_AGENT,
                "Content-Type": "application/json",
                "X-Shopify-Access-Token": access_token,
            },
            transport=transport,
        )

    def execute(self, query: str, variables: dict[str, Any] | None = None) -> GraphqlResponse:
        try:
            response = self._client.post(
                self.endpoint,
                json={"query": query, "variables": variables or {}},
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s", self.endpoint)
            raise GatewayTransportError(f"timeout: {error}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s: %s", self.endpoint, error)
            raise GatewayTransportError(str(error)) from error

        if not response.is_success:
            raise GraphqlHttpError(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as error:
            raise GatewayTransportError(f"Invalid JSON from {self.endpoint}") from error
        return GraphqlResponse.from_payload(payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpGraphqlExecutor:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
