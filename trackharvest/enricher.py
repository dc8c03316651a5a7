"""Bounded credits enrichment over a batch of known track pages."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from trackharvest.browser import BrowserSession, navigate
from trackharvest.cascades import DEFAULT_CATALOG, SelectorCatalog, first_match
from trackharvest.config import BrowserSettings, CaptureSettings, EnrichSettings
from trackharvest.consent import dismiss_consent
from trackharvest.credits import (
    has_credits_section,
    parse_credits,
    parse_stream_count,
    stream_count_from_text,
)
from trackharvest.errors import ExtractionError, InvalidRequestError, TrackTimeoutError
from trackharvest.logging_utils import log_event, preview
from trackharvest.schemas import (
    BatchEnrichmentOutcome,
    CreditsResult,
    EnrichmentSummary,
    TrackRef,
)

logger = logging.getLogger(__name__)


class PageSource(Protocol):
    """The part of :class:`BrowserSession` the enricher relies on."""

    async def open(self) -> Page: ...

    async def new_page(self) -> Page: ...

    async def close(self) -> None: ...


type SessionFactory = Callable[[], PageSource]


class BatchCreditsEnricher:
    """Visit track pages with one browser and return one outcome per input item.

    Items are processed on ``concurrency`` pages (one by default, reused
    serially). Every item races its own timeout; a failing or hanging item
    becomes a failed outcome and the batch carries on.
    """

    def __init__(
        self,
        settings: EnrichSettings,
        *,
        browser_settings: BrowserSettings | None = None,
        session_factory: SessionFactory | None = None,
        catalog: SelectorCatalog | None = None,
        consent_selectors: Sequence[str] | None = None,
    ) -> None:
        self.settings = settings
        self.browser_settings = browser_settings or BrowserSettings()
        self.catalog = catalog or DEFAULT_CATALOG
        if consent_selectors is None:
            consent_selectors = CaptureSettings().consent_selectors
        self.consent_selectors = list(consent_selectors)
        self._session_factory = session_factory or self._default_session

    def _default_session(self) -> PageSource:
        return BrowserSession(self.browser_settings)

    def validate_batch(self, items: Sequence[TrackRef]) -> None:
        """Reject a batch before any browser work starts."""
        limit = self.settings.max_batch_size
        if len(items) > limit:
            raise InvalidRequestError(f"Batch size exceeds maximum of {limit} tracks")

    async def enrich(
        self,
        items: Sequence[TrackRef],
    ) -> tuple[list[BatchEnrichmentOutcome], EnrichmentSummary]:
        """Return ordered outcomes plus the batch summary."""
        self.validate_batch(items)
        started = time.perf_counter()
        log_event(
            logger,
            logging.INFO,
            "enrich.started",
            total=len(items),
            concurrency=self.settings.concurrency,
        )

        outcomes: list[BatchEnrichmentOutcome | None] = [None] * len(items)
        if items:
            session = self._session_factory()
            try:
                first_page = await session.open()
                workers = min(self.settings.concurrency, len(items))
                pages = [first_page]
                for _ in range(workers - 1):
                    pages.append(await session.new_page())

                queue: asyncio.Queue[int] = asyncio.Queue()
                for index in range(len(items)):
                    queue.put_nowait(index)
                await asyncio.gather(
                    *(self._worker(page, items, queue, outcomes) for page in pages)
                )
            finally:
                await session.close()

        results = [outcome for outcome in outcomes if outcome is not None]
        succeeded = sum(1 for outcome in results if outcome.success)
        summary = EnrichmentSummary(
            total=len(items),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        log_event(
            logger,
            logging.INFO,
            "enrich.completed",
            total=summary.total,
            succeeded=summary.succeeded,
            failed=summary.failed,
            duration_ms=summary.duration_ms,
        )
        return results, summary

    async def _worker(
        self,
        page: Page,
        items: Sequence[TrackRef],
        queue: asyncio.Queue[int],
        outcomes: list[BatchEnrichmentOutcome | None],
    ) -> None:
        first_visit = True
        while True:
            try:
                index = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcomes[index] = await self._enrich_one(page, items[index], index, first_visit)
            first_visit = False

    async def _enrich_one(
        self,
        page: Page,
        item: TrackRef,
        index: int,
        first_visit: bool,
    ) -> BatchEnrichmentOutcome:
        pending = self.extract_credits(page, item, dismiss_banner=first_visit)
        try:
            credits = await self._with_timeout(item, pending)
        except TrackTimeoutError as exc:
            return self._failed(item, index, str(exc))
        except Exception as exc:  # noqa: BLE001
            return self._failed(item, index, str(exc) or type(exc).__name__)

        log_event(
            logger,
            logging.INFO,
            "enrich.track_succeeded",
            track_id=item.track_id,
            position=index + 1,
            credit_count=credits.credit_count,
            streams=credits.streams,
        )
        return BatchEnrichmentOutcome(track_id=item.track_id, success=True, credits=credits)

    async def _with_timeout(
        self,
        item: TrackRef,
        pending: Awaitable[CreditsResult],
    ) -> CreditsResult:
        try:
            return await asyncio.wait_for(pending, self.settings.track_timeout_seconds)
        except TimeoutError as exc:
            raise TrackTimeoutError(item.track_id) from exc

    def _failed(self, item: TrackRef, index: int, error: str) -> BatchEnrichmentOutcome:
        log_event(
            logger,
            logging.WARNING,
            "enrich.track_failed",
            track_id=item.track_id,
            position=index + 1,
            error=error,
        )
        return BatchEnrichmentOutcome(track_id=item.track_id, success=False, error=error)

    async def extract_credits(
        self,
        page: Page,
        item: TrackRef,
        *,
        dismiss_banner: bool = False,
    ) -> CreditsResult:
        """Load one track page and parse its credits.

        The play count is read from the page itself. When the page shows no
        credits heading, the credits dialog is opened through the overflow
        menu and its text is parsed instead; a missing menu or dialog leaves
        the page text as the only source.
        """
        settings = self.settings
        await navigate(
            page,
            item.url,
            timeout_ms=settings.navigation_timeout_ms,
            wait_until="domcontentloaded",
        )
        if dismiss_banner:
            await dismiss_consent(
                page,
                [", ".join(self.consent_selectors)],
                timeout_ms=settings.consent_timeout_ms,
                settle_ms=settings.consent_settle_ms,
            )
        if settings.settle_ms:
            await page.wait_for_timeout(settings.settle_ms)
        text = await page.inner_text("body")
        if not text.strip():
            raise ExtractionError(f"track page {item.track_id} rendered no text")
        streams = await self._stream_count(page, text)

        source = "page"
        if not has_credits_section(text):
            dialog_text = await self._open_credits_dialog(page, item)
            if dialog_text:
                text, source = dialog_text, "dialog"
        log_event(
            logger,
            logging.DEBUG,
            "enrich.page_text",
            track_id=item.track_id,
            url=preview(item.url),
            source=source,
            text_length=len(text),
        )
        credits = parse_credits(item.track_id, text)
        return credits.model_copy(update={"streams": streams})

    async def _stream_count(self, page: Page, text: str) -> int | None:
        strategies = self.catalog.track_page.get("streams", [])
        value = await first_match(page, strategies, field="streams")
        if isinstance(value, list):
            value = value[0] if value else None
        count = parse_stream_count(value)
        return count if count is not None else stream_count_from_text(text)

    async def _open_credits_dialog(self, page: Page, item: TrackRef) -> str | None:
        """Click through the overflow menu and return the credits dialog text."""
        catalog = self.catalog
        track_id = item.track_id
        if not (catalog.credits_menu and catalog.credits_menu_item and catalog.credits_dialog):
            return None
        try:
            if not await _click_first(page, catalog.credits_menu):
                log_event(logger, logging.DEBUG, "enrich.credits_menu_missing", track_id=track_id)
                return None
            if self.settings.menu_settle_ms:
                await page.wait_for_timeout(self.settings.menu_settle_ms)
            if not await _click_first(page, catalog.credits_menu_item):
                log_event(logger, logging.DEBUG, "enrich.credits_item_missing", track_id=track_id)
                return None
            dialog = await page.wait_for_selector(
                ", ".join(catalog.credits_dialog),
                timeout=self.settings.dialog_timeout_ms,
            )
            text = await dialog.inner_text() if dialog is not None else ""
        except PlaywrightError as exc:
            log_event(
                logger,
                logging.WARNING,
                "enrich.credits_dialog_failed",
                track_id=track_id,
                error=exc.message,
            )
            return None
        log_event(logger, logging.INFO, "enrich.credits_dialog_opened", track_id=track_id)
        return text or None


async def _click_first(page: Page, selectors: Sequence[str]) -> bool:
    for selector in selectors:
        element = await page.query_selector(selector)
        if element is not None:
            await element.click()
            return True
    return False
