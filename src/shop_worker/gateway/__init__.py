"""Rate-shaped access to the catalog GraphQL API."""

from shop_worker.gateway.client import GraphqlExecutor, GraphqlResponse, HttpGraphqlExecutor
from shop_worker.gateway.errors import (
    GatewayError,
    GatewayQueueClearedError,
    GatewayThrottledError,
    GatewayTransportError,
    GraphqlHttpError,
    GraphqlQueryError,
)
from shop_worker.gateway.gateway import ApiGateway, GatewayQueueStatus

__all__ = [
    "ApiGateway",
    "GatewayError",
    "GatewayQueueClearedError",
    "GatewayQueueStatus",
    "GatewayThrottledError",
    "GatewayTransportError",
    "GraphqlExecutor",
    "GraphqlHttpError",
    "GraphqlQueryError",
    "GraphqlResponse",
    "HttpGraphqlExecutor",
]
