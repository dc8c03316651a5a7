"""Playlist-level metadata read from the rendered page."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable

from playwright.async_api import Page

from trackharvest.cascades import SelectorCatalog, first_match
from trackharvest.logging_utils import log_event, preview
from trackharvest.schemas import PlaylistMetadata

logger = logging.getLogger(__name__)

_COUNT_PATTERN = re.compile(r"(\d[\d,.]*)\s*([KMB])?", re.IGNORECASE)
_FOLLOWERS_PATTERN = re.compile(r"\d[\d,.]*\s*[KMB]?\s*followers?", re.IGNORECASE)
_FOLLOWER_WORD = re.compile(r"followers?", re.IGNORECASE)
_TITLE_NAME_PATTERN = re.compile(r"^([^|]+)")
_SCALES = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}


def parse_count(text: str | None) -> int | None:
    """Parse ``"1,234"``, ``"12.3K"`` or ``"1M"`` into an integer."""
    if not text:
        return None
    match = _COUNT_PATTERN.search(text)
    if match is None:
        return None
    number, suffix = match.groups()
    scale = _SCALES.get((suffix or "").upper(), 1)
    if scale == 1:
        digits = number.replace(",", "").replace(".", "")
        return int(digits) if digits else None
    try:
        value = float(number.replace(",", ""))
    except ValueError:
        return None
    return round(value * scale)


def parse_follower_count(text: str | None) -> int | None:
    """``"12.3K followers"`` -> 12300; anything unparseable -> ``None``.

    When the text mentions followers, only the number directly in front of
    that word counts (``"Top 50 - 12.3K followers"`` -> 12300).
    """
    if not text:
        return None
    if _FOLLOWER_WORD.search(text) is None:
        return parse_count(text)
    match = _FOLLOWERS_PATTERN.search(text)
    return parse_count(match.group(0)) if match else None


class MetadataExtractor:
    """Fill playlist metadata fields the network capture did not provide."""

    def __init__(self, catalog: SelectorCatalog) -> None:
        self.catalog = catalog

    async def extract(
        self,
        page: Page,
        known: PlaylistMetadata | None = None,
    ) -> PlaylistMetadata:
        """Return ``known`` with missing fields read from the DOM.

        Each field is independent: a field whose cascade fails is logged and
        left ``None``.
        """
        known = known or PlaylistMetadata()
        found: dict[str, object] = {}
        if known.name is None:
            found["name"] = await self._guard("name", self._name(page))
        if known.curator is None:
            found["curator"] = await self._guard("curator", self._text(page, "curator"))
        if known.followers is None:
            found["followers"] = await self._guard("followers", self._followers(page))
        if known.image_url is None:
            found["image_url"] = await self._guard("image", self._text(page, "image"))

        result = known.fill_missing(PlaylistMetadata.model_validate(found))
        log_event(
            logger,
            logging.INFO,
            "metadata.extracted",
            playlist_name=preview(result.name, 60),
            has_curator=result.curator is not None,
            followers=result.followers,
            has_image=result.image_url is not None,
        )
        return result

    async def _guard[T](self, field: str, pending: Awaitable[T]) -> T | None:
        try:
            return await pending
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.WARNING,
                "metadata.field_failed",
                field=field,
                error=str(exc),
            )
            return None

    async def _text(self, page: Page, field: str) -> str | None:
        value = await first_match(page, self.catalog.metadata.get(field, []), field=field)
        if isinstance(value, list):
            value = value[0] if value else None
        return value

    async def _name(self, page: Page) -> str | None:
        name = await self._text(page, "name")
        if name:
            return name
        match = _TITLE_NAME_PATTERN.match(await page.title())
        if match is None:
            return None
        return match.group(1).strip() or None

    async def _followers(self, page: Page) -> int | None:
        text = await self._text(page, "followers")
        count = parse_follower_count(text)
        if count is not None:
            return count
        body = await page.inner_text("body")
        match = _FOLLOWERS_PATTERN.search(body)
        return parse_follower_count(match.group(0)) if match else None
