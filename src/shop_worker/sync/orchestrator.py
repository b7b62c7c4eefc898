"""Phased bulk synchronization of shop content into the local store."""

from __future__ import annotations

import logging
from collections.abc import Callable, Generator, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from shop_worker.sync.events import SyncEvent
from shop_worker.sync.pagination import MAX_PAGE_SIZE, GraphqlClient, paginate_connection
from shop_worker.sync.queries import (
    ARTICLES_QUERY,
    COLLECTIONS_QUERY,
    PAGES_QUERY,
    POLICIES_QUERY,
    PRODUCTS_QUERY,
    THEME_RESOURCES_QUERY,
)
from shop_worker.sync.sink import ContentSink, ResourceWrite
from shop_worker.sync.theme_groups import THEME_RESOURCE_TYPES, group_theme_content
from shop_worker.sync.translations import (
    ResourceTranslationFetcher,
    TranslationCache,
    fetch_shop_locales,
    filter_for_keys,
)

logger = logging.getLogger(__name__)

SYNC_PHASES: tuple[str, ...] = (
    "products",
    "collections",
    "articles",
    "pages",
    "policies",
    "themes",
)
THEME_RESOURCE_TYPE = "theme"

PhaseRun = Generator[SyncEvent, None, int]


class SyncCancelledError(RuntimeError):
    """The run was asked to stop between two resources."""


@dataclass(slots=True, frozen=True)
class ResourcePhase:
    name: str
    label: str
    resource_type: str
    query: str
    path: tuple[str, ...]
    paginated: bool = True


RESOURCE_PHASES: Mapping[str, ResourcePhase] = {
    "products": ResourcePhase("products", "Products", "product", PRODUCTS_QUERY, ("products",)),
    "collections": ResourcePhase(
        "collections",
        "Collections",
        "collection",
        COLLECTIONS_QUERY,
        ("collections",),
    ),
    "articles": ResourcePhase("articles", "Articles", "article", ARTICLES_QUERY, ("articles",)),
    "pages": ResourcePhase("pages", "Pages", "page", PAGES_QUERY, ("pages",)),
    "policies": ResourcePhase(
        "policies",
        "Policies",
        "policy",
        POLICIES_QUERY,
        ("shop", "shopPolicies"),
        paginated=False,
    ),
}
PHASE_LABELS: Mapping[str, str] = {
    **{name: phase.label for name, phase in RESOURCE_PHASES.items()},
    "themes": "Themes",
}


class SyncOrchestrator:
    """Runs the sync phases in order and yields progress events.

    A failing phase is reported with a progress event and recorded in the
    final ``complete`` event; the remaining phases still run. Only a failure
    before the first phase (loading shop locales) ends the run with an
    ``error`` event.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        shop: str,
        client: GraphqlClient,
        sink: ContentSink,
        phases: Sequence[str] = SYNC_PHASES,
        page_size: int = MAX_PAGE_SIZE,
        max_items: Mapping[str, int] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        unknown = [phase for phase in phases if phase not in PHASE_LABELS]
        if unknown:
            raise ValueError(f"Unknown sync phases: {', '.join(unknown)}")
        self.shop = shop
        self.client = client
        self.sink = sink
        self.phases = tuple(phases)
        self.page_size = min(page_size, MAX_PAGE_SIZE)
        self.max_items = dict(max_items or {})
        self.should_stop = should_stop
        self.translation_cache = TranslationCache(ResourceTranslationFetcher(client))

    def run(self) -> Iterator[SyncEvent]:
        try:
            locales = fetch_shop_locales(self.client)
        except Exception as error:  # noqa: BLE001
            logger.warning("Sync for %s could not load shop locales: %s", self.shop, error)
            yield SyncEvent.error(f"Failed to load shop locales: {error}")
            return
        target_locales = [locale.locale for locale in locales if not locale.primary]
        self.translation_cache.clear()

        stats = dict.fromkeys(self.phases, 0)
        errors: list[dict[str, str]] = []
        for phase in self.phases:
            self._check_stop()
            label = PHASE_LABELS[phase]
            yield SyncEvent.progress(phase, f"Syncing {label.lower()}...")
            try:
                if phase == "themes":
                    count = yield from self._sync_themes(target_locales)
                else:
                    count = yield from self._sync_resources(RESOURCE_PHASES[phase], target_locales)
            except SyncCancelledError:
                raise
            except Exception as error:  # noqa: BLE001
                message = str(error) or error.__class__.__name__
                logger.warning("%s sync failed for %s: %s", label, self.shop, message)
                errors.append({"phase": phase, "message": message})
                yield SyncEvent.progress(phase, f"{label} sync failed: {message}")
                continue
            stats[phase] = count
            yield SyncEvent.progress(
                phase,
                f"Synced {count} {label.lower()}",
                current=count,
                total=count,
            )

        logger.info(
            "Sync for %s finished: %s (translation fetches=%d, cache hits=%d)",
            self.shop,
            stats,
            self.translation_cache.misses,
            self.translation_cache.hits,
        )
        yield SyncEvent.complete(stats, errors)

    def _sync_resources(self, phase: ResourcePhase, locales: list[str]) -> PhaseRun:
        limit = self.max_items.get(phase.name)
        if phase.paginated:
            nodes = paginate_connection(
                self.client,
                phase.query,
                path=phase.path,
                page_size=self.page_size,
                max_items=limit,
            )
        else:
            nodes = _list_at(self.client.graphql(phase.query), phase.path)
            if limit is not None:
                nodes = nodes[:limit]

        keep: set[tuple[str, str]] = set()
        total = len(nodes)
        for index, node in enumerate(nodes, start=1):
            self._check_stop()
            resource_id = str(node["id"])
            translations = self.translation_cache.get(resource_id, locales)
            self.sink.save(
                self.shop,
                ResourceWrite(
                    resource_id=resource_id,
                    resource_type=phase.resource_type,
                    title=node.get("title"),
                    payload=node,
                ),
                translations,
            )
            keep.add((resource_id, ""))
            yield SyncEvent.progress(
                phase.name,
                f"{phase.label}: {index}/{total}",
                current=index,
                total=total,
            )

        pruned = self.sink.prune(self.shop, phase.resource_type, keep)
        if pruned:
            logger.info("Pruned %d %s rows no longer present upstream", pruned, phase.resource_type)
        return total

    def _sync_themes(self, locales: list[str]) -> PhaseRun:
        limit = self.max_items.get("themes")
        keep: set[tuple[str, str]] = set()
        groups_synced = 0
        for type_index, (resource_type, label) in enumerate(THEME_RESOURCE_TYPES, start=1):
            self._check_stop()
            yield SyncEvent.progress(
                "themes",
                f"Loading {label}...",
                current=type_index - 1,
                total=len(THEME_RESOURCE_TYPES),
            )
            resources = paginate_connection(
                self.client,
                THEME_RESOURCES_QUERY,
                path=("translatableResources",),
                variables={"resourceType": resource_type},
                page_size=self.page_size,
                max_items=limit,
            )
            total = len(resources)
            for index, resource in enumerate(resources, start=1):
                self._check_stop()
                items = [
                    item
                    for item in resource.get("translatableContent") or []
                    if isinstance(item, dict)
                ]
                if not items:
                    continue
                resource_id = str(resource["resourceId"])
                translations = self.translation_cache.get(resource_id, locales)
                for group in group_theme_content(items).values():
                    self.sink.save(
                        self.shop,
                        ResourceWrite(
                            resource_id=resource_id,
                            resource_type=THEME_RESOURCE_TYPE,
                            title=group.name,
                            payload={"resourceType": resource_type, "items": group.items},
                            group_id=group.group_id,
                            group_name=group.name,
                        ),
                        filter_for_keys(translations, group.keys),
                    )
                    keep.add((resource_id, group.group_id))
                    groups_synced += 1
                yield SyncEvent.progress(
                    "themes",
                    f"{label}: {index}/{total}",
                    current=index,
                    total=total,
                )

        pruned = self.sink.prune(self.shop, THEME_RESOURCE_TYPE, keep)
        if pruned:
            logger.info("Pruned %d theme groups no longer present upstream", pruned)
        return groups_synced

    def _check_stop(self) -> None:
        if self.should_stop is not None and self.should_stop():
            raise SyncCancelledError(f"Sync for {self.shop} was cancelled")


def _list_at(data: dict[str, Any], path: Sequence[str]) -> list[dict[str, Any]]:
    current: Any = data
    for key in path:
        current = current.get(key) if isinstance(current, dict) else None
    if not isinstance(current, list):
        return []
    return [item for item in current if isinstance(item, dict)]
