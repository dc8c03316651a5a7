"""Cookie-consent banner dismissal."""

from __future__ import annotations

import logging

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from trackharvest.logging_utils import log_event

logger = logging.getLogger(__name__)


async def dismiss_consent(
    page: Page,
    selectors: list[str],
    *,
    timeout_ms: int,
    settle_ms: int = 0,
) -> str | None:
    """Click the first consent button that appears and return its selector.

    Each candidate gets a short wait of its own. No match across the whole
    list means the banner was already dismissed or never shown, which is
    not an error.
    """
    for selector in selectors:
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms, state="visible")
            await page.click(selector)
        except PlaywrightError:
            continue
        log_event(logger, logging.INFO, "consent.dismissed", selector=selector)
        if settle_ms:
            await page.wait_for_timeout(settle_ms)
        return selector

    log_event(logger, logging.INFO, "consent.absent", candidates=len(selectors))
    return None
