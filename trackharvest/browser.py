"""Headless Chromium lifecycle for a single scrape or enrichment call."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from contextlib import suppress
from types import TracebackType

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from trackharvest.config import BrowserSettings, WaitUntil
from trackharvest.errors import LaunchError, LoginRequiredError, NavigationError
from trackharvest.logging_utils import log_event, preview
from trackharvest.schemas import CookieRecord, ScrapeSession

logger = logging.getLogger(__name__)

_LOGIN_WALL_MARKERS = ("/login", "/authorize")


class BrowserSession:
    """Own one browser process, one context and its pages.

    Use as ``async with BrowserSession(settings) as page:``; the browser is
    released on every exit path, including exceptions raised while opening.
    """

    def __init__(
        self,
        settings: BrowserSettings,
        *,
        session: ScrapeSession | None = None,
        extra_cookies: Sequence[CookieRecord] | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or ScrapeSession()
        self.extra_cookies = list(extra_cookies or [])

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._pages: list[Page] = []
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._context is not None and not self._closed

    async def open(self) -> Page:
        """Launch Chromium, install cookies and return the first page."""
        if self._closed:
            raise LaunchError("browser session was already closed")
        if self._context is not None:
            return self._pages[0] if self._pages else await self.new_page()

        log_event(
            logger,
            logging.INFO,
            "browser.launching",
            headless=self.settings.headless,
            cookie_count=len(self.session.cookies) + len(self.extra_cookies),
        )
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.settings.headless,
                args=list(self.settings.launch_args),
                executable_path=self.settings.executable_path,
            )
            self._context = await self._browser.new_context(
                user_agent=self.settings.user_agent,
                viewport={
                    "width": self.settings.viewport_width,
                    "height": self.settings.viewport_height,
                },
                locale=self.settings.locale,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "browser.launch_failed",
                error=str(exc),
                exc_info=exc,
            )
            await self.close()
            raise LaunchError(f"failed to launch browser: {exc}") from exc

        await self._install_cookies()
        try:
            page = await self.new_page()
        except Exception as exc:  # noqa: BLE001
            await self.close()
            raise LaunchError(f"failed to create page: {exc}") from exc
        log_event(logger, logging.INFO, "browser.launched")
        return page

    async def new_page(self) -> Page:
        """Create an additional page sharing this session's cookies."""
        if self._context is None:
            raise LaunchError("browser session is not open")
        page = await self._context.new_page()
        page.set_default_timeout(self.settings.page_timeout_ms)
        self._pages.append(page)
        return page

    async def close(self) -> None:
        """Release pages, context, browser and driver; safe to call twice."""
        if self._closed:
            return
        self._closed = True

        pages, self._pages = self._pages, []
        context, self._context = self._context, None
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None

        for page in pages:
            with suppress(Exception):
                await page.close()
        if context is not None:
            with suppress(Exception):
                await context.close()
        if browser is not None:
            with suppress(Exception):
                await browser.close()
        if playwright is not None:
            with suppress(Exception):
                await playwright.stop()
        log_event(logger, logging.INFO, "browser.closed", released_pages=len(pages))

    async def __aenter__(self) -> Page:
        return await self.open()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()

    async def _install_cookies(self) -> None:
        records = (*self.session.cookies, *self.extra_cookies)
        cookies = [record.to_playwright() for record in records]
        if not cookies or self._context is None:
            return
        try:
            await self._context.add_cookies(cookies)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.WARNING,
                "browser.cookies_rejected",
                cookie_count=len(cookies),
                error=str(exc),
            )
            return
        log_event(logger, logging.INFO, "browser.cookies_installed", cookie_count=len(cookies))


async def navigate(
    page: Page,
    url: str,
    *,
    timeout_ms: int,
    wait_until: WaitUntil = "networkidle",
) -> None:
    """Load ``url`` or raise :class:`NavigationError`."""
    log_event(logger, logging.INFO, "browser.navigating", url=preview(url))
    try:
        await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
    except PlaywrightTimeoutError as exc:
        raise NavigationError(
            f"navigation to {url} timed out after {timeout_ms}ms", url=url
        ) from exc
    except PlaywrightError as exc:
        raise NavigationError(f"navigation to {url} failed: {exc.message}", url=url) from exc

    final_url = page.url
    if any(marker in final_url for marker in _LOGIN_WALL_MARKERS):
        raise LoginRequiredError(
            "login required: the page redirected to an authentication wall",
            url=final_url,
        )
    log_event(logger, logging.INFO, "browser.navigated", url=preview(final_url))
