"""Split theme translatable content into editor-facing groups by key pattern."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

THEME_RESOURCE_TYPES: tuple[tuple[str, str], ...] = (
    ("ONLINE_STORE_THEME", "Theme Content"),
    ("ONLINE_STORE_THEME_JSON_TEMPLATE", "JSON Templates"),
    ("ONLINE_STORE_THEME_LOCALE_CONTENT", "Locale Content"),
    ("ONLINE_STORE_THEME_SECTION_GROUP", "Section Groups"),
    ("ONLINE_STORE_THEME_SETTINGS_CATEGORY", "Settings Categories"),
)


@dataclass(slots=True, frozen=True)
class KeyPattern:
    pattern: re.Pattern[str]
    name: str
    group_id: str
    per_page: bool = False


KEY_PATTERNS: tuple[KeyPattern, ...] = (
    KeyPattern(re.compile(r"^section\.article\."), "Article", "article"),
    KeyPattern(re.compile(r"^section\.collection\."), "Collection", "collection"),
    KeyPattern(re.compile(r"^section\.index\."), "Index Page", "index"),
    KeyPattern(re.compile(r"^section\.password\."), "Password Page", "password"),
    KeyPattern(re.compile(r"^section\.product\."), "Product", "product"),
    KeyPattern(re.compile(r"^section\.page\.([^.]+)\."), "Pages", "pages", per_page=True),
    KeyPattern(re.compile(r"^collections\.json\."), "Collections Template", "collections_template"),
    KeyPattern(re.compile(r"^group\.json\."), "Theme Groups", "groups"),
    KeyPattern(re.compile(r"^bar\."), "Announcement Bars", "bars"),
    KeyPattern(re.compile(r"^Settings Categories:"), "Settings", "settings"),
)


@dataclass(slots=True)
class ContentGroup:
    group_id: str
    name: str
    items: list[dict[str, Any]] = field(default_factory=list)

    @property
    def keys(self) -> set[str]:
        return {str(item.get("key")) for item in self.items}


def group_theme_content(items: list[dict[str, Any]]) -> dict[str, ContentGroup]:
    """Group translatable items of one theme resource; insertion order follows first match."""

    groups: dict[str, ContentGroup] = {}
    unmatched: list[dict[str, Any]] = []
    for item in items:
        key = str(item.get("key", ""))
        for config in KEY_PATTERNS:
            match = config.pattern.match(key)
            if match is None:
                continue
            group_id, name = config.group_id, config.name
            if config.per_page and match.group(1):
                page = match.group(1)
                group_id, name = f"page_{page}", f"Page: {page[:1].upper()}{page[1:]}"
            group = groups.setdefault(group_id, ContentGroup(group_id=group_id, name=name))
            group.items.append(item)
            break
        else:
            unmatched.append(item)

    for item in unmatched:
        prefix = misc_prefix(str(item.get("key", "")))
        group_id = f"misc_{prefix}"
        group = groups.setdefault(
            group_id,
            ContentGroup(group_id=group_id, name=_title_from_prefix(prefix)),
        )
        group.items.append(item)
    return groups


def misc_prefix(key: str) -> str:
    if key.startswith("section."):
        parts = key.split(".")
        if len(parts) >= 2 and parts[1]:  # noqa: PLR2004
            return f"section_{parts[1]}"
        return "other"
    if "." in key:
        return key.split(".")[0] or "other"
    return re.split(r"[:\s]", key)[0] or "other"


def _title_from_prefix(prefix: str) -> str:
    words = prefix.removeprefix("section_").replace("_", " ").split(" ")
    return " ".join(word[:1].upper() + word[1:] for word in words)
