"""Serialized, self-throttling funnel for all catalog GraphQL calls."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from shop_worker.gateway.client import GraphqlExecutor, GraphqlResponse
from shop_worker.gateway.errors import (
    GatewayError,
    GatewayQueueClearedError,
    GatewayThrottledError,
    GraphqlHttpError,
    GraphqlQueryError,
    is_throttled_exception,
    is_throttled_response,
)

logger = logging.getLogger(__name__)

MAX_REQUESTS_PER_SECOND = 10
RATE_WINDOW_SECONDS = 1.0
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0
REQUEST_SPACING_SECONDS = 0.02


@dataclass(slots=True)
class GatewayRequest:
    query: str
    variables: dict[str, Any] | None
    future: Future[dict[str, Any]] = field(default_factory=Future)
    retry_count: int = 0


@dataclass(slots=True, frozen=True)
class GatewayQueueStatus:
    queued: int
    is_processing: bool
    request_count: int


class ApiGateway:
    """FIFO queue drained by one thread at a bounded request rate.

    Throttled requests are retried with linear backoff and re-inserted at the
    front of the queue. Every other failure goes straight back to the caller.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        executor: GraphqlExecutor,
        max_requests_per_second: int = MAX_REQUESTS_PER_SECOND,
        window_seconds: float = RATE_WINDOW_SECONDS,
        max_retries: int = MAX_RETRIES,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
        request_spacing_seconds: float = REQUEST_SPACING_SECONDS,
        autostart: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_requests_per_second < 1:
            raise ValueError("max_requests_per_second must be >= 1")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.executor = executor
        self.max_requests_per_second = max_requests_per_second
        self.window_seconds = window_seconds
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.request_spacing_seconds = request_spacing_seconds
        self.autostart = autostart
        self.clock = clock
        self.sleep = sleep
        self._queue: deque[GatewayRequest] = deque()
        self._lock = threading.Lock()
        self._processing = False
        self._request_count = 0
        self._window_started_at = clock()

    def graphql(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Run a query through the queue and block for its ``data``."""

        return self.submit(query, variables).result(timeout=timeout)

    def submit(self, query: str, variables: dict[str, Any] | None = None) -> Future[dict[str, Any]]:
        """Enqueue a query; the returned future resolves to the response ``data``."""

        request = GatewayRequest(query=query, variables=variables)
        start_thread = False
        with self._lock:
            self._queue.append(request)
            if self.autostart and not self._processing:
                self._processing = True
                start_thread = True
        if start_thread:
            threading.Thread(
                target=self._drain_loop,
                name="shop-worker-gateway",
                daemon=True,
            ).start()
        return request.future

    def drain(self) -> None:
        """Process the queue in the calling thread until it is empty."""

        with self._lock:
            if self._processing:
                raise RuntimeError("Gateway queue is already being drained")
            self._processing = True
        self._drain_loop()

    def queue_status(self) -> GatewayQueueStatus:
        with self._lock:
            return GatewayQueueStatus(
                queued=len(self._queue),
                is_processing=self._processing,
                request_count=self._request_count,
            )

    def clear_queue(self) -> int:
        """Drop every queued request, failing its future. Returns the number dropped."""

        with self._lock:
            dropped = list(self._queue)
            self._queue.clear()
        for request in dropped:
            request.future.set_exception(GatewayQueueClearedError("Gateway queue was cleared"))
        if dropped:
            logger.info("Cleared %d queued gateway requests", len(dropped))
        return len(dropped)

    def _drain_loop(self) -> None:
        while True:
            wait_seconds = 0.0
            request: GatewayRequest | None = None
            with self._lock:
                if not self._queue:
                    self._processing = False
                    return
                now = self.clock()
                if now - self._window_started_at >= self.window_seconds:
                    self._request_count = 0
                    self._window_started_at = now
                if self._request_count >= self.max_requests_per_second:
                    wait_seconds = max(
                        0.0,
                        self.window_seconds - (now - self._window_started_at),
                    )
                else:
                    request = self._queue.popleft()
                    self._request_count += 1

            if request is None:
                self.sleep(wait_seconds)
                with self._lock:
                    self._request_count = 0
                    self._window_started_at = self.clock()
                continue

            self._process(request)
            with self._lock:
                has_more = bool(self._queue)
            if has_more and self.request_spacing_seconds > 0:
                self.sleep(self.request_spacing_seconds)

    def _process(self, request: GatewayRequest) -> None:
        if request.future.done():
            return
        try:
            response = self.executor.execute(request.query, request.variables)
        except GraphqlHttpError as error:
            if is_throttled_exception(error):
                self._handle_throttled(request, reason=str(error))
            else:
                request.future.set_exception(error)
            return
        except GatewayError as error:
            request.future.set_exception(error)
            return
        except Exception as error:  # noqa: BLE001
            logger.warning("Unexpected GraphQL executor failure: %s", error)
            request.future.set_exception(error)
            return
        self._resolve(request, response)

    def _resolve(self, request: GatewayRequest, response: GraphqlResponse) -> None:
        if response.errors:
            if is_throttled_response(response.errors):
                self._handle_throttled(request, reason="THROTTLED")
                return
            request.future.set_exception(GraphqlQueryError(response.errors))
            return
        request.future.set_result(response.data or {})

    def _handle_throttled(self, request: GatewayRequest, *, reason: str) -> None:
        if request.retry_count >= self.max_retries:
            attempts = request.retry_count + 1
            logger.warning("GraphQL request throttled %d times, giving up", attempts)
            request.future.set_exception(
                GatewayThrottledError(
                    f"Request throttled after {attempts} attempts",
                    attempts=attempts,
                ),
            )
            return

        delay = self.retry_delay_seconds * (request.retry_count + 1)
        request.retry_count += 1
        logger.warning(
            "GraphQL request throttled (%s), retry %d/%d in %.1fs",
            reason,
            request.retry_count,
            self.max_retries,
            delay,
        )
        self.sleep(delay)
        with self._lock:
            self._queue.appendleft(request)
            self._request_count = 0
            self._window_started_at = self.clock()
