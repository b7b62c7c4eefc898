"""Per-tenant, per-provider request and token budgets for outbound AI calls."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class RateLimitBudgetError(ValueError):
    """A single request's token estimate can never fit the configured window."""


@dataclass(slots=True, frozen=True)
class ProviderRateLimit:
    """Budget of one provider for one tenant over a 60-second window."""

    max_requests_per_minute: int
    max_tokens_per_minute: int

    def __post_init__(self) -> None:
        if self.max_requests_per_minute < 1:
            raise ValueError("max_requests_per_minute must be >= 1")
        if self.max_tokens_per_minute < 1:
            raise ValueError("max_tokens_per_minute must be >= 1")

    @classmethod
    def parse(cls, raw: str) -> ProviderRateLimit:
        """Parse ``"<requests>/<tokens>"``, e.g. ``"60/100000"``."""

        requests_part, sep, tokens_part = raw.strip().partition("/")
        if not sep:
            raise ValueError(f"Rate limit must look like '<requests>/<tokens>', got {raw!r}")
        return cls(
            max_requests_per_minute=int(requests_part.strip().replace("_", "")),
            max_tokens_per_minute=int(tokens_part.strip().replace("_", "")),
        )


DEFAULT_PROVIDER_LIMITS: Mapping[str, ProviderRateLimit] = {
    "huggingface": ProviderRateLimit(100, 1_000_000),
    "gemini": ProviderRateLimit(15, 1_000_000),
    "claude": ProviderRateLimit(5, 40_000),
    "openai": ProviderRateLimit(500, 200_000),
    "grok": ProviderRateLimit(60, 100_000),
    "deepseek": ProviderRateLimit(60, 100_000),
}

RateLimitLookup = Callable[[str, str], ProviderRateLimit | None]


@dataclass(slots=True, frozen=True)
class RatePermit:
    """Grant returned by the limiter; hand it back to ``release``."""

    tenant: str
    provider: str
    estimated_tokens: int
    window_started_at: float | None
    metered: bool = True


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    """Outcome of a non-blocking acquire: a permit, or how long to wait."""

    permit: RatePermit | None
    wait_seconds: float = 0.0

    @property
    def granted(self) -> bool:
        return self.permit is not None


@dataclass(slots=True)
class RateLimitWindow:
    started_at: float
    requests_used: int = 0
    tokens_used: int = 0


@dataclass(slots=True, frozen=True)
class RateLimitUsage:
    """Snapshot of one window for inspection."""

    requests_used: int
    tokens_used: int
    max_requests_per_minute: int
    max_tokens_per_minute: int
    seconds_until_reset: float


class ProviderRateLimiter:
    """Fixed 60-second window counters, one per ``(tenant, provider)``.

    Limits are resolved on every call: first the tenant lookup, then the
    process defaults. A provider with no limit anywhere, or a lookup that
    raises, is let through unmetered with a warning.
    """

    def __init__(
        self,
        *,
        lookup: RateLimitLookup | None = None,
        defaults: Mapping[str, ProviderRateLimit] = DEFAULT_PROVIDER_LIMITS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        window_seconds: float = WINDOW_SECONDS,
    ) -> None:
        self.lookup = lookup
        self.defaults = dict(defaults)
        self.clock = clock
        self.sleep = sleep
        self.window_seconds = window_seconds
        self._windows: dict[tuple[str, str], RateLimitWindow] = {}
        self._lock = threading.Lock()

    def resolve_limit(self, tenant: str, provider: str) -> ProviderRateLimit | None:
        """Effective limit, or ``None`` when the provider should run unmetered."""

        if self.lookup is not None:
            try:
                configured = self.lookup(tenant, provider)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Rate limit lookup failed for %s/%s, running unmetered: %s",
                    tenant,
                    provider,
                    error,
                )
                return None
            if configured is not None:
                return configured
        limit = self.defaults.get(provider)
        if limit is None:
            logger.warning(
                "No rate limit configured for provider %s (tenant %s), running unmetered",
                provider,
                tenant,
            )
        return limit

    def try_acquire(self, tenant: str, provider: str, estimated_tokens: int) -> RateLimitDecision:
        """Grant a permit if the current window has room, otherwise report the wait."""

        estimated_tokens = max(0, int(estimated_tokens))
        limit = self.resolve_limit(tenant, provider)
        if limit is None:
            return RateLimitDecision(
                permit=RatePermit(
                    tenant=tenant,
                    provider=provider,
                    estimated_tokens=estimated_tokens,
                    window_started_at=None,
                    metered=False,
                ),
            )
        if estimated_tokens > limit.max_tokens_per_minute:
            raise RateLimitBudgetError(
                f"Estimated {estimated_tokens} tokens exceed the {provider} budget of "
                f"{limit.max_tokens_per_minute} tokens per minute",
            )

        with self._lock:
            now = self.clock()
            window = self._current_window(tenant, provider, now)
            over_requests = window.requests_used + 1 > limit.max_requests_per_minute
            over_tokens = window.tokens_used + estimated_tokens > limit.max_tokens_per_minute
            if over_requests or over_tokens:
                wait = max(0.0, window.started_at + self.window_seconds - now)
                return RateLimitDecision(permit=None, wait_seconds=wait)
            window.requests_used += 1
            window.tokens_used += estimated_tokens
            return RateLimitDecision(
                permit=RatePermit(
                    tenant=tenant,
                    provider=provider,
                    estimated_tokens=estimated_tokens,
                    window_started_at=window.started_at,
                ),
            )

    def acquire(
        self,
        tenant: str,
        provider: str,
        estimated_tokens: int,
        *,
        should_stop: Callable[[], bool] | None = None,
        max_sleep_seconds: float = 1.0,
    ) -> RatePermit | None:
        """Block until a permit is granted.

        Returns ``None`` if ``should_stop`` turns true while waiting.
        """

        waited = False
        while True:
            decision = self.try_acquire(tenant, provider, estimated_tokens)
            if decision.permit is not None:
                return decision.permit
            if not waited:
                logger.info(
                    "Rate limit reached for %s/%s, waiting %.1fs for window reset",
                    tenant,
                    provider,
                    decision.wait_seconds,
                )
                waited = True
            if should_stop is not None and should_stop():
                return None
            self.sleep(max(0.01, min(max_sleep_seconds, decision.wait_seconds)))

    def release(self, permit: RatePermit, actual_tokens: int) -> None:
        """Replace the permit's token estimate with the real count.

        Ignored for unmetered permits and for permits from an expired window.
        """

        if not permit.metered or permit.window_started_at is None:
            return
        with self._lock:
            window = self._windows.get((permit.tenant, permit.provider))
            if window is None or window.started_at != permit.window_started_at:
                return
            delta = max(0, int(actual_tokens)) - permit.estimated_tokens
            window.tokens_used = max(0, window.tokens_used + delta)

    def usage(self, tenant: str, provider: str) -> RateLimitUsage | None:
        limit = self.resolve_limit(tenant, provider)
        if limit is None:
            return None
        with self._lock:
            now = self.clock()
            window = self._current_window(tenant, provider, now)
            return RateLimitUsage(
                requests_used=window.requests_used,
                tokens_used=window.tokens_used,
                max_requests_per_minute=limit.max_requests_per_minute,
                max_tokens_per_minute=limit.max_tokens_per_minute,
                seconds_until_reset=max(0.0, window.started_at + self.window_seconds - now),
            )

    def _current_window(self, tenant: str, provider: str, now: float) -> RateLimitWindow:
        key = (tenant, provider)
        window = self._windows.get(key)
        if window is None or now - window.started_at >= self.window_seconds:
            window = RateLimitWindow(started_at=now)
            self._windows[key] = window
        return window
