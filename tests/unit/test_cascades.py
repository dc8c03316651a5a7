"""Unit tests for data-driven selector cascades."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from trackharvest.cascades import (
    DEFAULT_CATALOG,
    SelectorStrategy,
    first_match,
    load_catalog,
)


class FakeElement:
    """Element stub answering selectors from fixed maps."""

    def __init__(
        self,
        *,
        text: str | None = None,
        attributes: dict[str, str] | None = None,
        selector_map: dict[str, FakeElement] | None = None,
        selector_all_map: dict[str, list[FakeElement]] | None = None,
        broken_selectors: set[str] | None = None,
    ) -> None:
        self._text = text
        self._attributes = attributes or {}
        self._selector_map = selector_map or {}
        self._selector_all_map = selector_all_map or {}
        self._broken = broken_selectors or set()

    async def query_selector(self, selector: str) -> FakeElement | None:
        if selector in self._broken:
            raise RuntimeError("element is detached")
        return self._selector_map.get(selector)

    async def query_selector_all(self, selector: str) -> list[FakeElement]:
        return self._selector_all_map.get(selector, [])

    async def text_content(self) -> str | None:
        return self._text

    async def get_attribute(self, name: str) -> str | None:
        return self._attributes.get(name)


def test_bare_string_is_text_strategy() -> None:
    strategy = SelectorStrategy.model_validate("h1")

    assert strategy.selector == "h1"
    assert strategy.attribute == "text"
    assert not strategy.many


def test_empty_selector_is_rejected() -> None:
    with pytest.raises(ValidationError):
        SelectorStrategy.model_validate({"selector": ""})


@pytest.mark.asyncio
async def test_resolve_reads_text_or_attribute() -> None:
    root = FakeElement(
        selector_map={
            "h1": FakeElement(text="  Title  "),
            "img": FakeElement(attributes={"src": "https://img/a.jpg"}),
        }
    )

    assert await SelectorStrategy(selector="h1").resolve(root) == "Title"
    assert (
        await SelectorStrategy(selector="img", attribute="src").resolve(root)
        == "https://img/a.jpg"
    )
    assert await SelectorStrategy(selector="missing").resolve(root) is None


@pytest.mark.asyncio
async def test_pattern_filters_values() -> None:
    root = FakeElement(selector_map={"button": FakeElement(text="Share")})

    strategy = SelectorStrategy(selector="button", pattern=r"\d.*follow")

    assert await strategy.resolve(root) is None


@pytest.mark.asyncio
async def test_many_collects_distinct_values_in_order() -> None:
    root = FakeElement(
        selector_all_map={
            "a": [
                FakeElement(text="Artist"),
                FakeElement(text=""),
                FakeElement(text="Guest"),
                FakeElement(text="Artist"),
            ]
        }
    )

    assert await SelectorStrategy(selector="a", many=True).resolve(root) == ["Artist", "Guest"]


@pytest.mark.asyncio
async def test_first_match_skips_failing_and_empty_strategies() -> None:
    root = FakeElement(
        selector_map={
            ".empty": FakeElement(text="   "),
            ".fallback": FakeElement(text="Found"),
        },
        broken_selectors={".broken"},
    )
    strategies = [
        SelectorStrategy(selector=".broken"),
        SelectorStrategy(selector=".missing"),
        SelectorStrategy(selector=".empty"),
        SelectorStrategy(selector=".fallback"),
    ]

    assert await first_match(root, strategies, field="name") == "Found"


@pytest.mark.asyncio
async def test_first_match_returns_none_when_nothing_matches() -> None:
    assert await first_match(FakeElement(), [SelectorStrategy(selector="h1")], field="name") is None


def test_default_catalog_prefers_test_ids() -> None:
    assert DEFAULT_CATALOG.list_container[0] == '[data-testid="playlist-tracklist"]'
    assert DEFAULT_CATALOG.row[0] == '[role="row"]'
    assert set(DEFAULT_CATALOG.row_fields) == {"title", "artists", "album", "url"}
    assert set(DEFAULT_CATALOG.metadata) == {"name", "curator", "followers", "image"}


def test_script_arg_contains_only_row_cascades() -> None:
    arg = DEFAULT_CATALOG.to_script_arg()

    assert arg["containers"] == DEFAULT_CATALOG.list_container
    assert arg["rows"] == DEFAULT_CATALOG.row
    assert arg["fields"]["artists"][0]["many"] is True
    assert arg["fields"]["url"][0]["attribute"] == "href"
    assert "metadata" not in arg


def test_load_catalog_without_path_returns_defaults() -> None:
    assert load_catalog() is DEFAULT_CATALOG


def test_override_file_prepends_strategies(tmp_path: Path) -> None:
    override = tmp_path / "selectors.yaml"
    override.write_text(
        "list_container:\n"
        "  - '#new-list'\n"
        "metadata:\n"
        "  name:\n"
        "    - '.new-title'\n",
        encoding="utf-8",
    )

    catalog = load_catalog(override)

    assert catalog.list_container[0] == "#new-list"
    assert catalog.list_container[1:] == DEFAULT_CATALOG.list_container
    assert catalog.metadata["name"][0].selector == ".new-title"
    assert len(catalog.metadata["name"]) == len(DEFAULT_CATALOG.metadata["name"]) + 1
    assert catalog.row == DEFAULT_CATALOG.row


def test_override_file_can_replace_strategies(tmp_path: Path) -> None:
    override = tmp_path / "selectors.yaml"
    override.write_text(
        "replace: true\n"
        "row_fields:\n"
        "  title:\n"
        "    - selector: '.title'\n"
        "      attribute: 'aria-label'\n",
        encoding="utf-8",
    )

    catalog = load_catalog(override)

    assert [s.selector for s in catalog.row_fields["title"]] == [".title"]
    assert catalog.row_fields["title"][0].attribute == "aria-label"
    assert catalog.row_fields["album"] == DEFAULT_CATALOG.row_fields["album"]


def test_override_with_unknown_field_is_rejected(tmp_path: Path) -> None:
    override = tmp_path / "selectors.yaml"
    override.write_text("row_fields:\n  genre:\n    - '.genre'\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_catalog(override)


def test_default_catalog_describes_credits_click_path() -> None:
    assert DEFAULT_CATALOG.credits_menu[0] == 'button[aria-label*="More options"]'
    assert any("View credits" in s for s in DEFAULT_CATALOG.credits_menu_item)
    assert DEFAULT_CATALOG.credits_dialog[0] == '[role="dialog"]'
    assert DEFAULT_CATALOG.track_page["streams"][0].selector == '[data-testid="playcount"]'


def test_override_file_prepends_credits_path(tmp_path: Path) -> None:
    override = tmp_path / "selectors.yaml"
    override.write_text(
        "credits_menu:\n"
        "  - '.kebab'\n"
        "track_page:\n"
        "  streams:\n"
        "    - '.plays'\n",
        encoding="utf-8",
    )

    catalog = load_catalog(override)

    assert catalog.credits_menu == [".kebab", *DEFAULT_CATALOG.credits_menu]
    assert catalog.credits_dialog == DEFAULT_CATALOG.credits_dialog
    assert catalog.track_page["streams"][0].selector == ".plays"
