"""Process wiring: recovery first, then the queue processor."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from shop_worker.ai.providers import ProviderRegistry
from shop_worker.config import Settings
from shop_worker.gateway.client import HttpGraphqlExecutor
from shop_worker.gateway.gateway import ApiGateway
from shop_worker.ratelimit.limiter import (
    DEFAULT_PROVIDER_LIMITS,
    ProviderRateLimiter,
    RateLimitLookup,
)
from shop_worker.ratelimit.store import SqlRateLimitStore
from shop_worker.sync.sink import ContentSink, SqlContentSink
from shop_worker.tasks.handlers import (
    AiGenerationHandler,
    SyncHandler,
    TranslationHandler,
    build_handlers,
)
from shop_worker.tasks.models import RecoveryResult
from shop_worker.tasks.processor import ProcessorRunSummary, QueueProcessor
from shop_worker.tasks.recovery import TaskRecoveryService
from shop_worker.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerStartResult:
    recovery: RecoveryResult | None
    summary: ProcessorRunSummary


class Closeable(Protocol):
    def close(self) -> None: ...


class WorkerRuntime:
    """Owns one recovery service and one processor for the life of the process.

    ``resources`` are the clients and engines built for the processor; ``close``
    releases them. The task repository stays with its caller.
    """

    def __init__(
        self,
        *,
        recovery: TaskRecoveryService,
        processor: QueueProcessor,
        resources: Sequence[Closeable] = (),
    ) -> None:
        self.recovery = recovery
        self.processor = processor
        self.resources = list(resources)
        self._recovered = False

    def start(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerStartResult:
        """Recover once, then process the queue until idle, capped or stopped."""

        recovery_result = None
        if not self._recovered:
            recovery_result = self.recovery.recover_pending_tasks()
            self._recovered = True
        summary = self.processor.run_loop(max_tasks=max_tasks, max_idle_polls=max_idle_polls)
        return WorkerStartResult(recovery=recovery_result, summary=summary)

    def stop(self) -> None:
        self.processor.request_stop()

    def close(self) -> None:
        while self.resources:
            self.resources.pop().close()


class GatewayPool:
    """One gateway per shop, created on first use."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._gateways: dict[str, ApiGateway] = {}

    def __call__(self, shop: str) -> ApiGateway:
        gateway = self._gateways.get(shop)
        if gateway is None:
            gateway = build_gateway(self.settings, shop_domain=shop)
            self._gateways[shop] = gateway
        return gateway

    def close(self) -> None:
        for gateway in self._gateways.values():
            gateway.clear_queue()
            if isinstance(gateway.executor, HttpGraphqlExecutor):
                gateway.executor.close()
        self._gateways.clear()


def build_gateway(settings: Settings, *, shop_domain: str | None = None) -> ApiGateway:
    settings.validate_for_gateway(shop_domain)
    gateway_settings = settings.gateway
    executor = HttpGraphqlExecutor(
        shop_domain=shop_domain or gateway_settings.shop_domain,
        access_token=gateway_settings.access_token,
        api_version=gateway_settings.api_version,
        timeout_seconds=gateway_settings.timeout_seconds,
    )
    return ApiGateway(
        executor=executor,
        max_requests_per_second=gateway_settings.max_requests_per_second,
        max_retries=gateway_settings.max_retries,
        retry_delay_seconds=gateway_settings.retry_delay_seconds,
        request_spacing_seconds=gateway_settings.request_spacing_seconds,
    )


def build_limiter(
    settings: Settings,
    *,
    lookup: RateLimitLookup | None = None,
) -> ProviderRateLimiter:
    """Shop overrides from ``lookup`` first, then env overrides, then built-in budgets."""

    return ProviderRateLimiter(
        lookup=lookup,
        defaults={**DEFAULT_PROVIDER_LIMITS, **settings.ai.rate_limits},
    )


def build_runtime(  # noqa: PLR0913
    settings: Settings,
    *,
    repository: TaskRepository,
    providers: ProviderRegistry | None = None,
    sink: ContentSink | None = None,
    gateways: GatewayPool | None = None,
    rate_limits: SqlRateLimitStore | None = None,
) -> WorkerRuntime:
    """Assemble recovery, handlers and processor from settings.

    Whatever is built here instead of being passed in is owned by the returned
    runtime and released by ``WorkerRuntime.close``.
    """

    owned: list[Closeable] = []
    if providers is None:
        providers = ProviderRegistry.from_api_keys(settings.ai.api_keys)
        owned.append(providers)
    if rate_limits is None:
        rate_limits = SqlRateLimitStore(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
        )
        owned.append(rate_limits)
    if sink is None:
        sink = SqlContentSink(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
        )
        owned.append(sink)
    if gateways is None:
        gateways = GatewayPool(settings)
        owned.append(gateways)

    limiter = build_limiter(settings, lookup=rate_limits.lookup)
    handler_kwargs = {
        "providers": providers,
        "limiter": limiter,
        "chars_per_token": settings.ai.chars_per_token,
        "completion_allowance": settings.ai.completion_allowance,
        "max_retries": settings.ai.max_retries,
        "retry_base_delay_seconds": settings.ai.retry_base_delay_seconds,
    }
    handlers = build_handlers(
        ai_generation=AiGenerationHandler(**handler_kwargs),
        translation=TranslationHandler(**handler_kwargs),
        sync=SyncHandler(
            client_factory=gateways,
            sink=sink,
            phases=settings.sync.phases,
            page_size=settings.sync.page_size,
        ),
    )
    processor = QueueProcessor(
        repository=repository,
        handlers=handlers,
        worker_id=settings.worker.worker_id,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        progress_min_step=settings.worker.progress_min_step,
        progress_min_interval_seconds=settings.worker.progress_min_interval_seconds,
    )
    recovery = TaskRecoveryService(
        repository=repository,
        stuck_timeout=timedelta(seconds=settings.worker.stuck_task_timeout_seconds),
    )
    logger.debug(
        "Worker %s configured with providers: %s",
        settings.worker.worker_id,
        providers.names(),
    )
    return WorkerRuntime(recovery=recovery, processor=processor, resources=owned)
