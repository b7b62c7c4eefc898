"""Outbound AI provider budgets."""

from shop_worker.ratelimit.limiter import (
    DEFAULT_PROVIDER_LIMITS,
    ProviderRateLimit,
    ProviderRateLimiter,
    RateLimitBudgetError,
    RateLimitDecision,
    RatePermit,
)
from shop_worker.ratelimit.store import ShopRateLimitView, SqlRateLimitStore

__all__ = [
    "DEFAULT_PROVIDER_LIMITS",
    "ProviderRateLimit",
    "ProviderRateLimiter",
    "RateLimitBudgetError",
    "RateLimitDecision",
    "RatePermit",
    "ShopRateLimitView",
    "SqlRateLimitStore",
]
