"""Task handlers for AI generation, translation and catalog sync."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence

from shop_worker.ai.providers import (
    DEFAULT_CHARS_PER_TOKEN,
    DEFAULT_COMPLETION_ALLOWANCE,
    AiProviderError,
    ProviderRegistry,
    estimate_tokens,
    is_rate_limit_error,
)
from shop_worker.ratelimit.limiter import ProviderRateLimiter
from shop_worker.sync.events import SyncEventType
from shop_worker.sync.orchestrator import SYNC_PHASES, SyncCancelledError, SyncOrchestrator
from shop_worker.sync.pagination import MAX_PAGE_SIZE, GraphqlClient
from shop_worker.sync.sink import ContentSink
from shop_worker.tasks.models import TaskCancelledError, TaskType, TaskView
from shop_worker.tasks.processor import TaskContext, TaskHandler

logger = logging.getLogger(__name__)

DEFAULT_AI_MAX_RETRIES = 3
DEFAULT_AI_RETRY_BASE_DELAY_SECONDS = 1.0


class AiGenerationHandler:
    """Rate-limited completion of the task prompt with the task's provider.

    A provider answer of "rate limited" (HTTP 429, rate or quota message) is
    retried up to ``max_retries`` times after ``retry_base_delay_seconds * 2**n``
    seconds; every retry is counted on the task. Other provider errors fail the
    task straight away.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        providers: ProviderRegistry,
        limiter: ProviderRateLimiter,
        chars_per_token: float = DEFAULT_CHARS_PER_TOKEN,
        completion_allowance: int = DEFAULT_COMPLETION_ALLOWANCE,
        max_retries: int = DEFAULT_AI_MAX_RETRIES,
        retry_base_delay_seconds: float = DEFAULT_AI_RETRY_BASE_DELAY_SECONDS,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.providers = providers
        self.limiter = limiter
        self.chars_per_token = chars_per_token
        self.completion_allowance = completion_allowance
        self.max_retries = max_retries
        self.retry_base_delay_seconds = retry_base_delay_seconds

    def __call__(self, task: TaskView, context: TaskContext) -> str:
        if not task.provider:
            raise ValueError("Task has no AI provider")
        prompt = self.build_prompt(task)
        provider = self.providers.get(task.provider)
        estimated = task.estimated_tokens or estimate_tokens(
            prompt,
            chars_per_token=self.chars_per_token,
            completion_allowance=self.completion_allowance,
        )

        attempt = 0
        while True:
            context.report_progress(10, f"Waiting for {task.provider} rate limit", force=True)
            permit = self.limiter.acquire(
                task.shop,
                task.provider,
                estimated,
                should_stop=context.should_stop,
            )
            if permit is None:
                raise TaskCancelledError(f"Task {task.task_id} was cancelled while rate limited")

            context.raise_if_cancelled()
            context.report_progress(30, f"Calling {task.provider}", force=True)
            try:
                completion = provider.complete(prompt, max_tokens=self.completion_allowance)
            except AiProviderError as error:
                self.limiter.release(permit, estimated)
                if attempt >= self.max_retries or not is_rate_limit_error(error):
                    raise
                attempt += 1
                delay = self.retry_base_delay_seconds * 2**attempt
                logger.warning(
                    "Task %s rate limited by %s, retry %d/%d in %.1fs: %s",
                    task.task_id,
                    task.provider,
                    attempt,
                    self.max_retries,
                    delay,
                    error,
                )
                context.record_retry(str(error))
                self._wait_before_retry(delay, context)
                continue
            break

        self.limiter.release(permit, completion.total_tokens or estimated)
        logger.debug(
            "Task %s used %d tokens (estimated %d)",
            task.task_id,
            completion.total_tokens,
            estimated,
        )
        context.raise_if_cancelled()
        context.report_progress(90, "Generated")
        return completion.text

    def _wait_before_retry(self, delay: float, context: TaskContext) -> None:
        remaining = delay
        while remaining > 0:
            if context.should_stop():
                raise TaskCancelledError(f"Task {context.task_id} was cancelled before retry")
            step = min(1.0, remaining)
            self.limiter.sleep(step)
            remaining -= step

    def build_prompt(self, task: TaskView) -> str:
        if not task.prompt or not task.prompt.strip():
            raise ValueError("Task has no prompt")
        return task.prompt.strip()


class TranslationHandler(AiGenerationHandler):
    """Translates the task prompt (the source field text) into ``target_locale``."""

    def build_prompt(self, task: TaskView) -> str:
        source = super().build_prompt(task)
        if not task.target_locale:
            raise ValueError("Translation task has no target locale")
        field = task.field_type or "text"
        subject = f" of {task.resource_title}" if task.resource_title else ""
        return (
            f"Translate the following {field}{subject} into locale {task.target_locale}. "
            "Keep HTML tags and placeholders unchanged. Return only the translation.\n\n"
            f"{source}"
        )


class SyncHandler:
    """Runs a full sync for the task's shop and maps phase progress onto the task."""

    def __init__(
        self,
        *,
        client_factory: Callable[[str], GraphqlClient],
        sink: ContentSink,
        phases: Sequence[str] = SYNC_PHASES,
        page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self.client_factory = client_factory
        self.sink = sink
        self.phases = tuple(phases)
        self.page_size = page_size

    def __call__(self, task: TaskView, context: TaskContext) -> str:
        orchestrator = SyncOrchestrator(
            shop=task.shop,
            client=self.client_factory(task.shop),
            sink=self.sink,
            phases=self.phases,
            page_size=self.page_size,
            should_stop=context.should_stop,
        )
        try:
            for event in orchestrator.run():
                if event.type is SyncEventType.ERROR:
                    raise RuntimeError(event.message or "Sync failed")
                if event.type is SyncEventType.COMPLETE:
                    return json.dumps(
                        {"stats": event.stats or {}, "errors": event.errors or []},
                        ensure_ascii=False,
                        sort_keys=True,
                    )
                context.report_progress(
                    self._overall_percent(event.phase, event.current, event.total),
                    event.message,
                )
        except SyncCancelledError as error:
            raise TaskCancelledError(str(error)) from error
        raise RuntimeError("Sync ended without a completion event")

    def _overall_percent(self, phase: str | None, current: int | None, total: int | None) -> int:
        if phase not in self.phases:
            return 0
        share = 100 / len(self.phases)
        percent = self.phases.index(phase) * share
        if current is not None and total:
            percent += share * min(current, total) / total
        return min(99, int(percent))


def build_handlers(
    *,
    ai_generation: AiGenerationHandler,
    translation: TranslationHandler,
    sync: SyncHandler,
) -> dict[str, TaskHandler]:
    return {
        TaskType.AI_GENERATION.value: ai_generation,
        TaskType.TRANSLATION.value: translation,
        TaskType.SYNC.value: sync,
    }
