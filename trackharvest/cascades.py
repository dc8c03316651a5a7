"""Data-driven selector cascades for markup that changes without notice.

Each field is an ordered list of :class:`SelectorStrategy` entries, tried
until one yields a non-empty value. New markup patterns are added to the
catalog (in code or a YAML file), never to the traversal code.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator

from trackharvest.config import read_yaml_mapping
from trackharvest.logging_utils import log_event

logger = logging.getLogger(__name__)

RowField = Literal["title", "artists", "album", "url"]
MetadataField = Literal["name", "curator", "followers", "image"]
TrackPageField = Literal["streams"]
FieldValue = str | list[str] | None


class QueryRoot(Protocol):
    """Anything exposing Playwright's ``query_selector`` API (page or element)."""

    async def query_selector(self, selector: str) -> Any: ...

    async def query_selector_all(self, selector: str) -> list[Any]: ...


class SelectorStrategy(BaseModel):
    """One way of reading a field: a selector, what to read, and an optional filter."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    selector: str = Field(min_length=1)
    attribute: str = "text"
    many: bool = False
    pattern: str | None = None

    @model_validator(mode="before")
    @classmethod
    def from_shorthand(cls, data: Any) -> Any:
        """Accept a bare selector string as a text strategy."""
        if isinstance(data, str):
            return {"selector": data}
        return data

    def accepts(self, value: str) -> bool:
        if self.pattern is None:
            return True
        return re.search(self.pattern, value, re.IGNORECASE) is not None

    def to_script_arg(self) -> dict[str, Any]:
        """Serialize for the in-page harvesting script."""
        return self.model_dump()

    async def resolve(self, root: QueryRoot) -> FieldValue:
        """Read this strategy's value from ``root`` or return ``None``."""
        if self.many:
            values: list[str] = []
            for element in await root.query_selector_all(self.selector):
                value = await _read(element, self.attribute)
                if value and self.accepts(value) and value not in values:
                    values.append(value)
            return values or None

        element = await root.query_selector(self.selector)
        if element is None:
            return None
        value = await _read(element, self.attribute)
        if not value or not self.accepts(value):
            return None
        return value


async def _read(element: Any, attribute: str) -> str | None:
    if attribute == "text":
        raw = await element.text_content()
    else:
        raw = await element.get_attribute(attribute)
    if raw is None:
        return None
    return raw.strip() or None


async def first_match(
    root: QueryRoot,
    strategies: list[SelectorStrategy],
    *,
    field: str,
) -> FieldValue:
    """Try strategies in order and return the first non-empty value.

    A strategy that raises (detached node, invalid selector for the current
    engine) is logged and skipped.
    """
    for index, strategy in enumerate(strategies):
        try:
            value = await strategy.resolve(root)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.DEBUG,
                "selectors.strategy_failed",
                field=field,
                strategy_index=index,
                selector=strategy.selector,
                error=str(exc),
            )
            continue
        if value:
            return value
    return None


class SelectorCatalog(BaseModel):
    """All cascades used by the DOM harvester, the metadata extractor and the enricher.

    The three ``credits_*`` lists describe the click path to the credits
    dialog of a track page: the overflow menu button, its credits entry and
    the dialog that opens.
    """

    model_config = ConfigDict(extra="forbid")

    list_container: list[str] = Field(min_length=1)
    row: list[str] = Field(min_length=1)
    row_fields: dict[RowField, list[SelectorStrategy]]
    metadata: dict[MetadataField, list[SelectorStrategy]]
    track_page: dict[TrackPageField, list[SelectorStrategy]] = Field(default_factory=dict)
    credits_menu: list[str] = Field(default_factory=list)
    credits_menu_item: list[str] = Field(default_factory=list)
    credits_dialog: list[str] = Field(default_factory=list)

    def to_script_arg(self) -> dict[str, Any]:
        """Serialize the list/row part for the in-page harvesting script."""
        return {
            "containers": list(self.list_container),
            "rows": list(self.row),
            "fields": {
                name: [strategy.to_script_arg() for strategy in strategies]
                for name, strategies in self.row_fields.items()
            },
        }

    def merged_with(self, override: dict[str, Any], *, replace: bool = False) -> SelectorCatalog:
        """Return a catalog where ``override`` entries are tried before the defaults."""
        data = self.model_dump()
        for key in ("list_container", "row", "credits_menu", "credits_menu_item", "credits_dialog"):
            if key in override:
                data[key] = list(override[key]) if replace else [*override[key], *data[key]]
        for key in ("row_fields", "metadata", "track_page"):
            for name, strategies in (override.get(key) or {}).items():
                current = data[key].get(name, [])
                data[key][name] = list(strategies) if replace else [*strategies, *current]
        return SelectorCatalog.model_validate(data)


DEFAULT_CATALOG = SelectorCatalog.model_validate(
    {
        "list_container": [
            '[data-testid="playlist-tracklist"]',
            '[role="grid"]',
            "[data-virtualized-list]",
            ".main-trackList-trackList",
        ],
        "row": ['[role="row"]', '[data-testid="tracklist-row"]'],
        "row_fields": {
            "title": [
                '[data-testid="internal-track-link"] div[dir="auto"]',
                '[data-testid="tracklist-row"] a[href*="/track/"]',
                'a[href*="/track/"]',
                '[dir="auto"]',
            ],
            "artists": [
                {"selector": '[data-testid="track-artist"] a', "many": True},
                {"selector": 'a[href*="/artist/"]', "many": True},
                {"selector": 'span[data-encore-id="text"] a', "many": True},
            ],
            "album": [
                '[data-testid="track-album"] a',
                'a[href*="/album/"]',
            ],
            "url": [
                {"selector": '[data-testid="internal-track-link"]', "attribute": "href"},
                {"selector": 'a[href*="/track/"]', "attribute": "href"},
            ],
        },
        "metadata": {
            "name": [
                '[data-testid="playlist-page"] h1[data-encore-id="type"]',
                'main h1[data-encore-id="type"]',
                'h1[data-encore-id="type"]',
                "main h1",
            ],
            "curator": [
                '[data-testid="entityHeaderSubtitle"] a',
                '[data-testid="entityHeaderSubtitle"] span',
                'div[data-testid="entity-subtitle"]',
                '[data-testid="creator-link"]',
            ],
            "followers": [
                {"selector": 'button[data-testid="followers-count"]', "pattern": r"\d.*follow"},
                {
                    "selector": '[data-testid="entity-subtitle-more-button"]',
                    "pattern": r"\d.*follow",
                },
                {"selector": '[data-testid="playlist-followers"]', "pattern": r"\d.*follow"},
                {
                    "selector": '[aria-label*="follower"]',
                    "attribute": "aria-label",
                    "pattern": r"\d.*follow",
                },
            ],
            "image": [
                {"selector": '[data-testid="playlist-image"] img', "attribute": "src"},
                {"selector": '[data-testid="entity-image"] img', "attribute": "src"},
                {"selector": 'img[alt*="playlist"]', "attribute": "src"},
                {"selector": "main img", "attribute": "src"},
            ],
        },
        "track_page": {
            "streams": [
                '[data-testid="playcount"]',
                {
                    "selector": '[aria-label*="streams" i]',
                    "attribute": "aria-label",
                    "pattern": r"\d.*streams?",
                },
            ],
        },
        "credits_menu": [
            'button[aria-label*="More options"]',
            'button[data-testid="more-button"]',
        ],
        "credits_menu_item": [
            '[role="menuitem"]:has-text("View credits")',
            'button:has-text("View credits")',
            '[role="menuitem"]:has-text("Credits")',
        ],
        "credits_dialog": ['[role="dialog"]', ".credits__modal"],
    }
)


def load_catalog(path: Path | None = None) -> SelectorCatalog:
    """Return the default catalog, extended by a YAML override file if given.

    The file mirrors the catalog keys. Entries are prepended to the defaults
    unless the file sets ``replace: true``.
    """
    if path is None:
        return DEFAULT_CATALOG
    data = read_yaml_mapping(path)
    replace = bool(data.pop("replace", False))
    catalog = DEFAULT_CATALOG.merged_with(data, replace=replace)
    log_event(
        logger,
        logging.INFO,
        "selectors.catalog_loaded",
        path=str(path),
        replace=replace,
    )
    return catalog
