from __future__ import annotations

import json

import allure
import httpx
import pytest

from shop_worker.ai.providers import (
    AiProviderError,
    EchoProvider,
    OpenAiCompatibleProvider,
    ProviderRegistry,
    estimate_tokens,
)
from shop_worker.gateway.errors import GatewayTransportError
from shop_worker.sync.translations import (
    ResourceTranslationFetcher,
    TranslationCache,
    TranslationRecord,
    fetch_shop_locales,
    filter_for_keys,
)

pytestmark = [
    allure.epic("Catalog Sync"),
    allure.feature("Translations & AI Providers"),
]


def test_shop_locales_mark_primary(shop_api) -> None:
    locales = fetch_shop_locales(shop_api)

    assert [(locale.locale, locale.primary) for locale in locales] == [("en", True), ("fr", False)]


def test_cache_key_ignores_locale_order_and_duplicates(shop_api) -> None:
    shop_api.translations[("gid://shopify/Product/1", "fr")] = [
        {"key": "title", "value": "Chemise", "locale": "fr", "outdated": False},
    ]
    cache = TranslationCache(ResourceTranslationFetcher(shop_api))

    first = cache.get("gid://shopify/Product/1", ["fr", "de"])
    second = cache.get("gid://shopify/Product/1", ["de", "fr", "fr"])

    assert first is second
    assert (cache.misses, cache.hits) == (1, 1)
    assert shop_api.count("getTranslations") == 2
    assert first == [TranslationRecord(key="title", locale="fr", value="Chemise")]


def test_cache_skips_requests_without_target_locales(shop_api) -> None:
    cache = TranslationCache(ResourceTranslationFetcher(shop_api))

    assert cache.get("gid://shopify/Product/1", []) == []
    assert shop_api.count("getTranslations") == 0


def test_failed_locale_is_skipped(shop_api) -> None:
    class FlakyApi:
        def graphql(self, query, variables=None):
            if variables["locale"] == "de":
                raise GatewayTransportError("reset")
            return shop_api.graphql(query, variables)

    shop_api.translations[("r1", "fr")] = [{"key": "title", "value": "Titre", "locale": "fr"}]
    fetcher = ResourceTranslationFetcher(FlakyApi())

    records = fetcher.fetch("r1", ["de", "fr"])

    assert [record.locale for record in records] == ["fr"]
    assert fetcher.resources_fetched == 1


def test_filter_for_keys_keeps_first_record_per_key_and_locale() -> None:
    records = [
        TranslationRecord(key="a", locale="fr", value="1"),
        TranslationRecord(key="a", locale="fr", value="duplicate"),
        TranslationRecord(key="a", locale="de", value="2"),
        TranslationRecord(key="b", locale="fr", value="3"),
    ]

    assert [record.value for record in filter_for_keys(records, {"a"})] == ["1", "2"]


def test_estimate_tokens_is_prompt_size_plus_allowance() -> None:
    assert estimate_tokens("x" * 10, chars_per_token=4, completion_allowance=100) == 103
    with pytest.raises(ValueError):
        estimate_tokens("x", chars_per_token=0)


def test_openai_compatible_provider_reports_usage() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": " Chemise bleue "}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            },
        )

    provider = OpenAiCompatibleProvider.for_provider(
        "deepseek",
        api_key="sk-test",
        transport=httpx.MockTransport(handler),
    )
    completion = provider.complete("Translate: Blue shirt", max_tokens=64)
    provider.close()

    assert completion.text == "Chemise bleue"
    assert completion.total_tokens == 15
    assert str(requests[0].url) == "https://api.deepseek.com/v1/chat/completions"
    assert requests[0].headers["Authorization"] == "Bearer sk-test"
    body = json.loads(requests[0].content)
    assert body["model"] == "deepseek-chat"
    assert body["max_tokens"] == 64


def test_openai_compatible_provider_raises_on_http_error() -> None:
    provider = OpenAiCompatibleProvider.for_provider(
        "openai",
        api_key="sk-test",
        transport=httpx.MockTransport(lambda request: httpx.Response(429, json={})),
    )

    with pytest.raises(AiProviderError) as excinfo:
        provider.complete("hello", max_tokens=8)
    assert excinfo.value.status_code == 429
    provider.close()


def test_registry_builds_http_providers_from_keys() -> None:
    registry = ProviderRegistry.from_api_keys({"openai": "sk-1", "claude": "sk-2"})
    registry.register(EchoProvider("gemini"))

    assert registry.names() == ["gemini", "openai"]
    with pytest.raises(AiProviderError, match="claude is not configured"):
        registry.get("claude")
