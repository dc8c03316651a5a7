"""Scrape and enrichment orchestration behind the HTTP and CLI facades."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from playwright.async_api import Page

from trackharvest import SERVICE_NAME
from trackharvest.browser import BrowserSession, navigate
from trackharvest.capture import CaptureContext
from trackharvest.cascades import SelectorCatalog, load_catalog
from trackharvest.config import Settings
from trackharvest.consent import dismiss_consent
from trackharvest.dom import DomVirtualizationHarvester
from trackharvest.enricher import BatchCreditsEnricher, PageSource
from trackharvest.errors import HarvestError, InvalidRequestError, NavigationError
from trackharvest.logging_utils import log_event, preview
from trackharvest.metadata import MetadataExtractor
from trackharvest.network import NetworkCaptureExtractor, NetworkSubscription
from trackharvest.schemas import (
    CaptureMethod,
    CookieRecord,
    EnrichTracksRequest,
    EnrichTracksResponse,
    HarvestMethod,
    HealthResponse,
    ScrapePlaylistRequest,
    ScrapePlaylistResponse,
    ScrapeSession,
)
from trackharvest.session_store import SessionStore

logger = logging.getLogger(__name__)

type BrowserFactory = Callable[[ScrapeSession, Sequence[CookieRecord]], PageSource]


class ScrapeState(StrEnum):
    NOT_STARTED = "not_started"
    LAUNCHING = "launching"
    NAVIGATING = "navigating"
    CONSENT_CHECK = "consent_check"
    HARVESTING = "harvesting"
    STABILIZING = "stabilizing"
    CLOSED = "closed"
    FAILED = "failed"


_TRANSITIONS: dict[ScrapeState, frozenset[ScrapeState]] = {
    ScrapeState.NOT_STARTED: frozenset({ScrapeState.LAUNCHING}),
    ScrapeState.LAUNCHING: frozenset({ScrapeState.NAVIGATING, ScrapeState.FAILED}),
    ScrapeState.NAVIGATING: frozenset({ScrapeState.CONSENT_CHECK, ScrapeState.FAILED}),
    ScrapeState.CONSENT_CHECK: frozenset({ScrapeState.HARVESTING}),
    ScrapeState.HARVESTING: frozenset({ScrapeState.STABILIZING}),
    ScrapeState.STABILIZING: frozenset({ScrapeState.CLOSED}),
    ScrapeState.CLOSED: frozenset(),
    ScrapeState.FAILED: frozenset(),
}


@dataclass(slots=True)
class ScrapeRun:
    """State history of one scrape call."""

    playlist_url: str = ""
    state: ScrapeState = ScrapeState.NOT_STARTED
    history: list[ScrapeState] = field(default_factory=lambda: [ScrapeState.NOT_STARTED])

    def advance(self, target: ScrapeState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid scrape transition {self.state} -> {target}")
        self.state = target
        self.history.append(target)
        log_event(logger, logging.DEBUG, "scrape.state", state=str(target))


class ScraperService:
    """Run playlist scrapes and credits enrichment with per-call browser state."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_store: SessionStore | None = None,
        browser_factory: BrowserFactory | None = None,
        catalog: SelectorCatalog | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.session_store = session_store or SessionStore(self.settings.cookies_path)
        self._browser_factory = browser_factory or self._default_browser
        self.catalog = catalog or load_catalog(self.settings.capture.selectors_file)
        self.network = NetworkCaptureExtractor(self.settings.capture)
        self.dom = DomVirtualizationHarvester(self.settings.capture, self.catalog)
        self.metadata = MetadataExtractor(self.catalog)
        self.enricher = BatchCreditsEnricher(
            self.settings.enrich,
            browser_settings=self.settings.browser,
            session_factory=lambda: self._browser_factory(self.session_store.load(), ()),
            catalog=self.catalog,
            consent_selectors=self.settings.capture.consent_selectors,
        )

    def _default_browser(
        self,
        session: ScrapeSession,
        extra_cookies: Sequence[CookieRecord],
    ) -> PageSource:
        return BrowserSession(self.settings.browser, session=session, extra_cookies=extra_cookies)

    def health(self) -> HealthResponse:
        return HealthResponse(service=SERVICE_NAME)

    async def enrich_tracks(self, request: EnrichTracksRequest) -> EnrichTracksResponse:
        results, summary = await self.enricher.enrich(request.tracks)
        return EnrichTracksResponse(results=results, summary=summary)

    async def scrape_playlist(
        self,
        request: ScrapePlaylistRequest,
        *,
        run: ScrapeRun | None = None,
    ) -> ScrapePlaylistResponse:
        """Capture one playlist.

        Launch and top-level navigation failures are raised after cleanup;
        everything later degrades to a partial result.
        """
        url = (request.playlist_url or "").strip()
        if not url:
            raise InvalidRequestError("playlistUrl is required")
        run = run or ScrapeRun()
        run.playlist_url = url
        started = time.perf_counter()
        log_event(
            logger,
            logging.INFO,
            "scrape.started",
            url=preview(url),
            harvest_method=request.method,
            request_cookies=len(request.cookies or []),
        )

        context = CaptureContext(playlist_url=url)
        browser = self._browser_factory(self.session_store.load(), request.cookies or [])
        subscription: NetworkSubscription | None = None
        try:
            try:
                run.advance(ScrapeState.LAUNCHING)
                page = await browser.open()
                if request.method in ("network", "auto"):
                    subscription = self.network.attach(page, context)

                run.advance(ScrapeState.NAVIGATING)
                await self._navigate(page, url)
            except HarvestError as exc:
                failed_in = run.state
                run.advance(ScrapeState.FAILED)
                log_event(
                    logger,
                    logging.ERROR,
                    "scrape.failed",
                    state=str(failed_in),
                    error=str(exc),
                )
                raise

            run.advance(ScrapeState.CONSENT_CHECK)
            capture = self.settings.capture
            await dismiss_consent(
                page,
                capture.consent_selectors,
                timeout_ms=capture.consent_timeout_ms,
                settle_ms=capture.consent_settle_ms,
            )

            run.advance(ScrapeState.HARVESTING)
            method, subscription = await self._harvest(page, context, request.method, subscription)

            run.advance(ScrapeState.STABILIZING)
            if subscription is not None:
                await subscription.close()
                subscription = None
            metadata = await self.metadata.extract(page, context.metadata)
        finally:
            if subscription is not None:
                await subscription.close(drain=False)
            await browser.close()
        run.advance(ScrapeState.CLOSED)

        response = ScrapePlaylistResponse(
            tracks=list(context.items),
            total_captured=len(context.items),
            total_tracks=context.total_count or metadata.total_track_count,
            playlist_name=metadata.name,
            curator=metadata.curator,
            followers=metadata.followers,
            image_url=metadata.image_url,
            method=method,
        )
        log_event(
            logger,
            logging.INFO,
            "scrape.completed",
            capture_method=method,
            total_captured=response.total_captured,
            total_tracks=response.total_tracks,
            duplicates_dropped=context.duplicates_dropped,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return response

    async def _navigate(self, page: Page, url: str) -> None:
        await navigate(
            page,
            url,
            timeout_ms=self.settings.browser.navigation_timeout_ms,
            wait_until=self.settings.browser.wait_until,
        )

    async def _harvest(
        self,
        page: Page,
        context: CaptureContext,
        method: HarvestMethod,
        subscription: NetworkSubscription | None,
    ) -> tuple[CaptureMethod, NetworkSubscription | None]:
        """Run the requested harvest policy and report which method produced the rows."""
        if method == "dom":
            await self.dom.harvest(page, context, dismiss_banner=False)
            return "dom-harvest", subscription

        if subscription is None:
            raise RuntimeError(f"{method} harvest needs a response listener attached first")
        await self.network.drive(page, context, subscription)
        if method == "network" or context.items:
            return "network-capture", subscription

        log_event(logger, logging.INFO, "scrape.fallback_to_dom", url=preview(context.playlist_url))
        await subscription.close()
        try:
            await self._navigate(page, context.playlist_url)
        except NavigationError as exc:
            log_event(logger, logging.WARNING, "scrape.fallback_failed", error=str(exc))
            return "network-capture", None
        await self.dom.harvest(page, context, dismiss_banner=True)
        return "dom-harvest", None
