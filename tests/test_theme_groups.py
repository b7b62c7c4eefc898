from __future__ import annotations

import allure

from shop_worker.sync.theme_groups import group_theme_content, misc_prefix

pytestmark = [
    allure.epic("Catalog Sync"),
    allure.feature("Theme Content Grouping"),
]


def _items(*keys: str) -> list[dict[str, str]]:
    return [{"key": key, "value": key} for key in keys]


def test_known_prefixes_map_to_named_groups() -> None:
    groups = group_theme_content(
        _items(
            "section.article.title",
            "section.collection.empty",
            "section.index.heading",
            "section.password.message",
            "section.product.price",
            "collections.json.title",
            "group.json.footer",
            "bar.announcement",
            "Settings Categories: Colors",
        ),
    )

    assert {group_id: group.name for group_id, group in groups.items()} == {
        "article": "Article",
        "collection": "Collection",
        "index": "Index Page",
        "password": "Password Page",
        "product": "Product",
        "collections_template": "Collections Template",
        "groups": "Theme Groups",
        "bars": "Announcement Bars",
        "settings": "Settings",
    }


def test_each_page_section_gets_its_own_group() -> None:
    groups = group_theme_content(
        _items("section.page.about.title", "section.page.about.body", "section.page.faq.title"),
    )

    assert list(groups) == ["page_about", "page_faq"]
    assert groups["page_about"].name == "Page: About"
    assert groups["page_about"].keys == {"section.page.about.title", "section.page.about.body"}


def test_unmatched_keys_fall_into_misc_groups_by_prefix() -> None:
    groups = group_theme_content(
        _items("footer.copyright", "footer.social", "section.main_menu.label", "checkout"),
    )

    assert {group_id: group.name for group_id, group in groups.items()} == {
        "misc_footer": "Footer",
        "misc_section_main_menu": "Main Menu",
        "misc_checkout": "Checkout",
    }
    assert len(groups["misc_footer"].items) == 2


def test_misc_prefix_edge_cases() -> None:
    assert misc_prefix("section.") == "other"
    assert misc_prefix(".hidden") == "other"
    assert misc_prefix("General: Colors") == "General"
    assert misc_prefix("") == "other"
