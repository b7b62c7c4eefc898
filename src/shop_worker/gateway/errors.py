"""Error types and throttle classification for the catalog GraphQL API."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_THROTTLE_CODES: tuple[str, ...] = ("THROTTLED",)
_THROTTLE_MESSAGE_PATTERNS: tuple[str, ...] = (
    "throttled",
    "rate limit",
)
TOO_MANY_REQUESTS = 429


class GatewayError(RuntimeError):
    """Base class for gateway failures surfaced to callers."""


class GatewayThrottledError(GatewayError):
    """The API kept throttling the request after every retry."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class GraphqlQueryError(GatewayError):
    """The API answered with non-throttle GraphQL errors (validation, auth, ...)."""

    def __init__(self, errors: Sequence[Mapping[str, Any]]) -> None:
        self.errors = list(errors)
        messages = [str(item.get("message", "")).strip() for item in self.errors]
        summary = "; ".join(message for message in messages if message) or "GraphQL error"
        super().__init__(summary)


class GraphqlHttpError(GatewayError):
    """Non-2xx HTTP response from the GraphQL endpoint."""

    def __init__(self, status_code: int, body: str = "") -> None:
        detail = body.strip()[:200]
        message = f"HTTP {status_code}" + (f": {detail}" if detail else "")
        super().__init__(message)
        self.status_code = status_code


class GatewayTransportError(GatewayError):
    """Network-level failure before any response was received."""


class GatewayQueueClearedError(GatewayError):
    """The request was dropped because the gateway queue was cleared."""


def is_throttle_error(error: Mapping[str, Any]) -> bool:
    extensions = error.get("extensions")
    if isinstance(extensions, Mapping):
        code = str(extensions.get("code", "")).upper()
        if code in _THROTTLE_CODES:
            return True
    message = str(error.get("message", "")).lower()
    return any(pattern in message for pattern in _THROTTLE_MESSAGE_PATTERNS)


def is_throttled_response(errors: Sequence[Mapping[str, Any]] | None) -> bool:
    """True when any GraphQL error in the response signals throttling."""

    if not errors:
        return False
    return any(is_throttle_error(error) for error in errors)


def is_throttled_exception(error: BaseException) -> bool:
    return isinstance(error, GraphqlHttpError) and error.status_code == TOO_MANY_REQUESTS
