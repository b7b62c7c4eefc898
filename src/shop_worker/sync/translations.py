"""Shop locales and per-resource translation fetching with a per-run cache."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from shop_worker.gateway.errors import GatewayError
from shop_worker.sync.pagination import GraphqlClient
from shop_worker.sync.queries import RESOURCE_TRANSLATIONS_QUERY, SHOP_LOCALES_QUERY

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ShopLocale:
    locale: str
    name: str | None
    primary: bool
    published: bool


@dataclass(slots=True, frozen=True)
class TranslationRecord:
    key: str
    locale: str
    value: str | None
    digest: str | None = None
    outdated: bool = False


def fetch_shop_locales(client: GraphqlClient) -> list[ShopLocale]:
    data = client.graphql(SHOP_LOCALES_QUERY)
    return [
        ShopLocale(
            locale=str(item["locale"]),
            name=item.get("name"),
            primary=bool(item.get("primary")),
            published=bool(item.get("published")),
        )
        for item in data.get("shopLocales") or []
        if isinstance(item, dict) and item.get("locale")
    ]


class ResourceTranslationFetcher:
    """Fetches one resource's translations, one request per locale.

    A locale whose request fails is logged and skipped.
    """

    def __init__(self, client: GraphqlClient) -> None:
        self.client = client
        self.resources_fetched = 0

    def fetch(self, resource_id: str, locales: Sequence[str]) -> list[TranslationRecord]:
        self.resources_fetched += 1
        records: list[TranslationRecord] = []
        for locale in locales:
            try:
                data = self.client.graphql(
                    RESOURCE_TRANSLATIONS_QUERY,
                    {"resourceId": resource_id, "locale": locale},
                )
            except GatewayError as error:
                logger.warning(
                    "Translation fetch failed for %s (%s): %s",
                    resource_id,
                    locale,
                    error,
                )
                continue
            resource = data.get("translatableResource") or {}
            digests = {
                item.get("key"): item.get("digest")
                for item in resource.get("translatableContent") or []
                if isinstance(item, dict)
            }
            for item in resource.get("translations") or []:
                if not isinstance(item, dict) or not item.get("key"):
                    continue
                key = str(item["key"])
                records.append(
                    TranslationRecord(
                        key=key,
                        locale=str(item.get("locale") or locale),
                        value=item.get("value"),
                        digest=digests.get(key),
                        outdated=bool(item.get("outdated")),
                    ),
                )
        return records


class TranslationCache:
    """Memoizes translations per ``(resource_id, sorted locales)`` for one sync run."""

    def __init__(self, fetcher: ResourceTranslationFetcher) -> None:
        self.fetcher = fetcher
        self._entries: dict[tuple[str, tuple[str, ...]], list[TranslationRecord]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, resource_id: str, locales: Iterable[str]) -> list[TranslationRecord]:
        locale_key = tuple(sorted(set(locales)))
        cache_key = (resource_id, locale_key)
        cached = self._entries.get(cache_key)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        records = self.fetcher.fetch(resource_id, locale_key) if locale_key else []
        self._entries[cache_key] = records
        return records

    def clear(self) -> None:
        self._entries.clear()


def filter_for_keys(
    records: Iterable[TranslationRecord],
    keys: set[str],
) -> list[TranslationRecord]:
    """Keep records whose key is in ``keys``, first one per ``(key, locale)``."""

    seen: set[tuple[str, str]] = set()
    selected: list[TranslationRecord] = []
    for record in records:
        if record.key not in keys:
            continue
        marker = (record.key, record.locale)
        if marker in seen:
            continue
        seen.add(marker)
        selected.append(record)
    return selected
