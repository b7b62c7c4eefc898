"""AI provider clients used by generation and translation tasks."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS: tuple[str, ...] = (
    "huggingface",
    "gemini",
    "claude",
    "openai",
    "grok",
    "deepseek",
)

OPENAI_COMPATIBLE_ENDPOINTS: Mapping[str, tuple[str, str]] = {
    "openai": ("https://api.openai.com/v1", "gpt-4o-mini"),
    "grok": ("https://api.x.ai/v1", "grok-2-latest"),
    "deepseek": ("https://api.deepseek.com/v1", "deepseek-chat"),
}

DEFAULT_CHARS_PER_TOKEN = 4.0
DEFAULT_COMPLETION_ALLOWANCE = 1024


class AiProviderError(RuntimeError):
    """Provider call failed; ``status_code`` is set for HTTP failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


RATE_LIMIT_MESSAGE_PATTERNS = ("rate limit", "quota", "429")


def is_rate_limit_error(error: BaseException) -> bool:
    """Provider said slow down: HTTP 429 or a rate/quota message."""

    if isinstance(error, AiProviderError) and error.status_code == 429:  # noqa: PLR2004
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RATE_LIMIT_MESSAGE_PATTERNS)


@dataclass(slots=True)
class AiCompletion:
    """Text returned by a provider plus the token usage it reported."""

    text: str
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class AiProvider(Protocol):
    name: str

    def complete(self, prompt: str, *, max_tokens: int) -> AiCompletion:
        """Return a completion for ``prompt``."""


def estimate_tokens(
    prompt: str,
    *,
    chars_per_token: float = DEFAULT_CHARS_PER_TOKEN,
    completion_allowance: int = DEFAULT_COMPLETION_ALLOWANCE,
) -> int:
    """Pessimistic pre-flight token estimate: prompt size plus a completion allowance.

    Real usage is reported back to the limiter once the call returns.
    """

    if chars_per_token <= 0:
        raise ValueError("chars_per_token must be > 0")
    return math.ceil(len(prompt) / chars_per_token) + max(0, completion_allowance)


class EchoProvider:
    """Deterministic local provider for tests and dry runs."""

    def __init__(self, name: str = "echo", *, prefix: str = "") -> None:
        self.name = name
        self.prefix = prefix
        self.calls: list[str] = []

    def complete(self, prompt: str, *, max_tokens: int) -> AiCompletion:
        self.calls.append(prompt)
        text = f"{self.prefix}{prompt.strip()}"
        words = text.split()
        return AiCompletion(
            text=text,
            prompt_tokens=max(1, len(prompt.split())),
            completion_tokens=min(max_tokens, max(1, len(words))),
        )


class OpenAiCompatibleProvider:
    """Chat-completions client for OpenAI and API-compatible vendors."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        api_key: str,
        base_url: str,
        model: str,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError(f"API key is required for provider {name}")
        self.name = name
        self.model = model
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    @classmethod
    def for_provider(
        cls,
        name: str,
        *,
        api_key: str,
        model: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> OpenAiCompatibleProvider:
        if name not in OPENAI_COMPATIBLE_ENDPOINTS:
            raise ValueError(f"Provider {name} has no OpenAI-compatible endpoint")
        base_url, default_model = OPENAI_COMPATIBLE_ENDPOINTS[name]
        return cls(
            name=name,
            api_key=api_key,
            base_url=base_url,
            model=model or default_model,
            transport=transport,
        )

    def complete(self, prompt: str, *, max_tokens: int) -> AiCompletion:
        try:
            response = self._client.post(
                "/chat/completions",
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "max_tokens": max_tokens,
                },
            )
        except httpx.HTTPError as error:
            logger.warning("%s request failed: %s", self.name, error)
            raise AiProviderError(f"{self.name} request failed: {error}") from error

        if not response.is_success:
            raise AiProviderError(
                f"{self.name} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        payload = response.json()
        choices = payload.get("choices") or []
        if not choices:
            raise AiProviderError(f"{self.name} returned no choices")
        text = (choices[0].get("message") or {}).get("content") or ""
        usage = payload.get("usage") or {}
        return AiCompletion(
            text=text.strip(),
            prompt_tokens=int(usage.get("prompt_tokens", 0)),
            completion_tokens=int(usage.get("completion_tokens", 0)),
        )

    def close(self) -> None:
        self._client.close()


class ProviderRegistry:
    """Maps provider names to configured clients."""

    def __init__(self, providers: Mapping[str, AiProvider] | None = None) -> None:
        self._providers: dict[str, AiProvider] = dict(providers or {})

    def register(self, provider: AiProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> AiProvider:
        provider = self._providers.get(name)
        if provider is None:
            available = ", ".join(sorted(self._providers)) or "none"
            raise AiProviderError(f"Provider {name} is not configured (available: {available})")
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)

    def close(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if callable(close):
                close()

    @classmethod
    def from_api_keys(cls, api_keys: Mapping[str, str]) -> ProviderRegistry:
        registry = cls()
        for name, api_key in api_keys.items():
            if name in OPENAI_COMPATIBLE_ENDPOINTS and api_key:
                registry.register(OpenAiCompatibleProvider.for_provider(name, api_key=api_key))
            else:
                logger.debug("Skipping provider %s: no HTTP client for it", name)
        return registry
