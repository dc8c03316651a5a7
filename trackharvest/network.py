"""Playlist capture from the web player's own JSON traffic.

Two response shapes are recognized:

* flat pages: ``items[]`` (also under ``tracks`` or ``content``) with the
  page offset in the request URL's ``offset``/``fromRow`` parameter;
* graph responses: ``data.playlistV2.content.items[]`` carrying a
  ``totalCount`` for the whole playlist plus playlist-level metadata.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlsplit

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response
from pydantic import ValidationError

from trackharvest.capture import CaptureContext, IngestChannel
from trackharvest.config import CaptureSettings
from trackharvest.logging_utils import log_event, preview
from trackharvest.schemas import CapturedTrack, PlaylistMetadata

logger = logging.getLogger(__name__)

TRACK_URL_TEMPLATE = "https://open.spotify.com/track/{track_id}"
_OFFSET_PARAMS = ("offset", "fromRow")


@dataclass(frozen=True, slots=True)
class ResponsePayload:
    """A decoded JSON body together with the URL that produced it."""

    url: str
    body: Any


def extract_offset(url: str) -> int:
    """Return the pagination offset encoded in ``url`` (0 when absent)."""
    query = parse_qs(urlsplit(url).query)
    for name in _OFFSET_PARAMS:
        values = query.get(name)
        if not values:
            continue
        try:
            return max(int(values[0]), 0)
        except ValueError:
            return 0
    return 0


def track_id_from_uri(uri: str | None) -> str:
    """``spotify:track:abc`` -> ``abc``."""
    if not uri:
        return ""
    return uri.rsplit(":", 1)[-1]


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _sequence(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def track_from_flat_item(item: Mapping[str, Any]) -> CapturedTrack | None:
    """Map one entry of a flat ``items[]`` page to a track."""
    track = _mapping(item.get("track")) or item
    name = track.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    track_id = str(track.get("id") or "")
    external_url = _mapping(track.get("external_urls")).get("spotify")
    if not external_url and track_id:
        external_url = TRACK_URL_TEMPLATE.format(track_id=track_id)
    fields: dict[str, Any] = {
        "track_id": track_id,
        "isrc": _mapping(track.get("external_ids")).get("isrc"),
        "name": name,
        "artists": [
            artist["name"]
            for artist in _sequence(track.get("artists"))
            if isinstance(artist, Mapping) and artist.get("name")
        ],
        "album": _mapping(track.get("album")).get("name"),
        "popularity": track.get("popularity") or None,
        "duration_ms": track.get("duration_ms") or None,
        "external_url": external_url or "",
    }
    if item.get("added_at"):
        fields["added_at"] = item["added_at"]
    return CapturedTrack.model_validate(fields)


def track_from_graph_item(item: Mapping[str, Any]) -> CapturedTrack | None:
    """Map one ``content.items[]`` entry of a graph response to a track."""
    data = _mapping(_mapping(item.get("itemV2")).get("data"))
    if not data or data.get("__typename", "Track") != "Track":
        return None
    name = data.get("name")
    track_id = track_id_from_uri(data.get("uri"))
    if not isinstance(name, str) or not name.strip() or not track_id:
        return None
    isrc = (
        _mapping(data.get("trackUnion")).get("isrc")
        or _mapping(data.get("externalIds")).get("isrc")
        or data.get("isrc")
    )
    fields: dict[str, Any] = {
        "track_id": track_id,
        "isrc": isrc,
        "name": name,
        "artists": [
            profile["name"]
            for profile in (
                _mapping(artist.get("profile"))
                for artist in _sequence(_mapping(data.get("artists")).get("items"))
                if isinstance(artist, Mapping)
            )
            if profile.get("name")
        ],
        "album": _mapping(data.get("albumOfTrack")).get("name"),
        "duration_ms": _mapping(data.get("trackDuration")).get("totalMilliseconds"),
        "external_url": TRACK_URL_TEMPLATE.format(track_id=track_id),
    }
    added_at = _mapping(item.get("addedAt")).get("isoString")
    if added_at:
        fields["added_at"] = added_at
    return CapturedTrack.model_validate(fields)


def metadata_from_graph(playlist: Mapping[str, Any]) -> PlaylistMetadata:
    """Read playlist-level fields from a ``playlistV2`` object."""
    followers = playlist.get("followers")
    if isinstance(followers, Mapping):
        followers = followers.get("totalCount")
    images = playlist.get("images")
    image_url = None
    if isinstance(images, Mapping):
        first = _mapping(next(iter(_sequence(images.get("items"))), None))
        image_url = _mapping(next(iter(_sequence(first.get("sources"))), None)).get("url")
    elif isinstance(images, list) and images:
        image_url = _mapping(images[0]).get("url")
    owner = _mapping(_mapping(playlist.get("ownerV2")).get("data"))
    owner = owner or _mapping(playlist.get("owner"))
    total = _mapping(playlist.get("content")).get("totalCount")
    return PlaylistMetadata(
        name=playlist.get("name") or None,
        curator=owner.get("name") or None,
        followers=followers if isinstance(followers, int) and followers >= 0 else None,
        image_url=image_url or None,
        total_track_count=total if isinstance(total, int) and total >= 0 else None,
    )


def _flat_items(body: Mapping[str, Any]) -> list[Any] | None:
    for container in (body, _mapping(body.get("tracks")), _mapping(body.get("content"))):
        items = container.get("items")
        if isinstance(items, list):
            return items
    return None


def _append_tracks(
    context: CaptureContext,
    raw_items: list[Any],
    mapper: Any,
) -> int:
    added = 0
    for raw in raw_items:
        if not isinstance(raw, Mapping):
            continue
        try:
            track = mapper(raw)
        except ValidationError as exc:
            log_event(
                logger,
                logging.DEBUG,
                "network.item_skipped",
                error=str(exc.errors(include_url=False)[0]["msg"]),
            )
            continue
        if track is not None and context.add(track):
            added += 1
    return added


def ingest_payload(context: CaptureContext, payload: ResponsePayload) -> int:
    """Apply one captured response to ``context``; return the number of new tracks."""
    body = payload.body
    if not isinstance(body, Mapping):
        return 0

    playlist = _mapping(_mapping(body.get("data")).get("playlistV2"))
    if playlist:
        content = _mapping(playlist.get("content"))
        total = content.get("totalCount")
        if isinstance(total, int):
            context.record_total(total)
        context.record_metadata(metadata_from_graph(playlist))
        added = _append_tracks(context, _sequence(content.get("items")), track_from_graph_item)
        log_event(
            logger,
            logging.INFO,
            "network.graph_captured",
            added=added,
            total_captured=len(context.items),
            total_count=context.total_count,
        )
        return added

    items = _flat_items(body)
    if not items:
        return 0
    offset = extract_offset(payload.url)
    if not context.claim_offset(offset):
        log_event(logger, logging.DEBUG, "network.offset_repeated", offset=offset)
        return 0
    added = _append_tracks(context, items, track_from_flat_item)
    log_event(
        logger,
        logging.INFO,
        "network.page_captured",
        offset=offset,
        count=len(items),
        added=added,
        total_captured=len(context.items),
    )
    return added


class NetworkSubscription:
    """An attached response listener and the channel feeding its capture context."""

    def __init__(self, page: Page, handler: Any, channel: IngestChannel[ResponsePayload]) -> None:
        self._page = page
        self._handler = handler
        self._attached = True
        self.channel = channel

    async def settle(self) -> None:
        await self.channel.settle()

    async def close(self, *, drain: bool = True) -> None:
        if self._attached:
            self._attached = False
            self._page.remove_listener("response", self._handler)
        await self.channel.close(drain=drain)


class NetworkCaptureExtractor:
    """Subscribe to page responses and fold recognized payloads into a context."""

    def __init__(self, settings: CaptureSettings) -> None:
        self.settings = settings

    def accepts(self, url: str, content_type: str) -> bool:
        """Host and content-type filter applied before a body is read."""
        if not any(host in url for host in self.settings.capture_hosts):
            return False
        return "application/json" in content_type.lower()

    def attach(self, page: Page, context: CaptureContext) -> NetworkSubscription:
        """Start listening; must be called before navigation."""
        channel: IngestChannel[ResponsePayload] = IngestChannel(
            lambda payload: ingest_payload(context, payload),
            maxsize=self.settings.queue_size,
            name="network",
        )
        channel.start()

        async def on_response(response: Response) -> None:
            url = response.url
            if not self.accepts(url, response.headers.get("content-type", "")):
                return
            try:
                body = await response.json()
            except Exception as exc:  # noqa: BLE001
                log_event(
                    logger,
                    logging.DEBUG,
                    "network.body_unreadable",
                    url=preview(url),
                    error=str(exc),
                )
                return
            await channel.publish(ResponsePayload(url=url, body=body))

        page.on("response", on_response)
        log_event(logger, logging.DEBUG, "network.attached")
        return NetworkSubscription(page, on_response, channel)

    async def drive(
        self,
        page: Page,
        context: CaptureContext,
        subscription: NetworkSubscription,
    ) -> None:
        """Scroll to make the web player request further pages.

        A browser error while scrolling (the page navigated away, the
        execution context was destroyed) ends the scroll; rows captured so
        far are kept.
        """
        try:
            await self._scroll(page, context, subscription)
        except PlaywrightError as exc:
            log_event(
                logger,
                logging.WARNING,
                "network.interrupted",
                error=exc.message,
                total_captured=len(context.items),
            )
        await subscription.settle()

    async def _scroll(
        self,
        page: Page,
        context: CaptureContext,
        subscription: NetworkSubscription,
    ) -> None:
        settings = self.settings
        await page.wait_for_timeout(settings.initial_settle_ms)
        await subscription.settle()
        log_event(
            logger,
            logging.INFO,
            "network.initial_capture",
            total_captured=len(context.items),
            total_count=context.total_count,
        )
        for step in range(settings.network_scroll_steps):
            if context.is_complete:
                log_event(logger, logging.INFO, "network.complete", steps=step)
                break
            await page.mouse.wheel(0, settings.network_scroll_delta)
            await page.wait_for_timeout(settings.network_scroll_interval_ms)
            await subscription.settle()
        await page.wait_for_timeout(settings.late_response_ms)
