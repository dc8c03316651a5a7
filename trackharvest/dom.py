"""Row harvesting from the rendered, virtualized track list.

The list only mounts the rows near the viewport and recycles row elements
while scrolling, so rows cannot be identified by node. An injected
MutationObserver rescans every mounted row on each mutation and reports the
extracted fields through an exposed binding; Python deduplicates by content.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin
from uuid import uuid4

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from trackharvest.capture import CaptureContext, IngestChannel
from trackharvest.cascades import SelectorCatalog
from trackharvest.config import CaptureSettings
from trackharvest.consent import dismiss_consent
from trackharvest.logging_utils import log_event
from trackharvest.schemas import CapturedTrack, content_key

logger = logging.getLogger(__name__)

BASE_URL = "https://open.spotify.com"
_TRACK_ID_PATTERN = re.compile(r"/track/([A-Za-z0-9]+)")

_OBSERVER_SCRIPT = """
(config) => {
  const state = window.__trackharvest || (window.__trackharvest = {});
  if (state.observer) {
    state.observer.disconnect();
  }
  let container = null;
  let containerSelector = null;
  for (const selector of config.containers) {
    const found = document.querySelector(selector);
    if (found) {
      container = found;
      containerSelector = selector;
      break;
    }
  }
  if (!container) {
    return null;
  }
  const read = (el, attribute) => {
    const raw = attribute === "text" ? el.textContent : el.getAttribute(attribute);
    return raw ? raw.trim() : null;
  };
  const accepts = (strategy, value) =>
    !strategy.pattern || new RegExp(strategy.pattern, "i").test(value);
  const resolve = (row, strategy) => {
    if (strategy.many) {
      const values = [];
      for (const el of row.querySelectorAll(strategy.selector)) {
        const value = read(el, strategy.attribute);
        if (value && accepts(strategy, value) && !values.includes(value)) {
          values.push(value);
        }
      }
      return values.length ? values : null;
    }
    const el = row.querySelector(strategy.selector);
    if (!el) {
      return null;
    }
    const value = read(el, strategy.attribute);
    return value && accepts(strategy, value) ? value : null;
  };
  const cascade = (row, strategies) => {
    for (const strategy of strategies) {
      try {
        const value = resolve(row, strategy);
        if (value) {
          return value;
        }
      } catch (err) {
        // next strategy
      }
    }
    return null;
  };
  const reported = new Set();
  const scan = () => {
    for (const rowSelector of config.rows) {
      const rows = container.querySelectorAll(rowSelector);
      if (!rows.length) {
        continue;
      }
      rows.forEach((row) => {
        const fields = {};
        for (const [name, strategies] of Object.entries(config.fields)) {
          fields[name] = cascade(row, strategies);
        }
        if (!fields.title) {
          return;
        }
        const signature = JSON.stringify(fields);
        if (reported.has(signature)) {
          return;
        }
        reported.add(signature);
        window[config.binding](fields);
      });
      return;
    }
  };
  scan();
  state.observer = new MutationObserver(scan);
  state.observer.observe(container, { childList: true, subtree: true });
  return containerSelector;
}
"""

_DISCONNECT_SCRIPT = """
() => {
  const state = window.__trackharvest;
  if (state && state.observer) {
    state.observer.disconnect();
    state.observer = null;
  }
}
"""


@dataclass(slots=True)
class DomHarvestReport:
    """What one harvest pass did, for logging and tests."""

    container_selector: str | None = None
    iterations: int = 0
    stagnated: bool = False
    interrupted: bool = False
    rows_received: int = 0


def _as_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def track_from_row(row: Mapping[str, Any], *, base_url: str = BASE_URL) -> CapturedTrack | None:
    """Normalize the raw fields reported for one rendered row."""
    title = _as_text(row.get("title"))
    if title is None:
        return None
    raw_artists = row.get("artists")
    if isinstance(raw_artists, str):
        raw_artists = [raw_artists]
    artists = [name for name in (_as_text(a) for a in raw_artists or []) if name]
    href = _as_text(row.get("url"))
    external_url = urljoin(base_url, href) if href else ""
    match = _TRACK_ID_PATTERN.search(external_url)
    return CapturedTrack(
        track_id=match.group(1) if match else "",
        name=title,
        artists=artists,
        album=_as_text(row.get("album")),
        external_url=external_url,
    )


def ingest_row(context: CaptureContext, row: Mapping[str, Any]) -> bool:
    """Add one reported row to ``context`` using its content key."""
    track = track_from_row(row)
    if track is None:
        return False
    return context.add(track, key=content_key(track.name, track.artists, track.album))


class DomVirtualizationHarvester:
    """Scroll a virtualized list until it stops yielding new rows."""

    def __init__(self, settings: CaptureSettings, catalog: SelectorCatalog) -> None:
        self.settings = settings
        self.catalog = catalog

    async def harvest(
        self,
        page: Page,
        context: CaptureContext,
        *,
        dismiss_banner: bool = True,
    ) -> DomHarvestReport:
        """Collect rows into ``context``; a missing list yields zero rows."""
        settings = self.settings
        report = DomHarvestReport()
        if dismiss_banner:
            await dismiss_consent(
                page,
                settings.consent_selectors,
                timeout_ms=settings.consent_timeout_ms,
                settle_ms=settings.consent_settle_ms,
            )
        await self._wait_for_content(page)

        def on_row(row: Mapping[str, Any]) -> None:
            report.rows_received += 1
            ingest_row(context, row)

        channel: IngestChannel[Mapping[str, Any]] = IngestChannel(
            on_row,
            maxsize=settings.queue_size,
            name="dom",
        )
        binding = f"__trackharvestPushRow_{uuid4().hex[:12]}"

        async def push_row(source: Any, row: Any) -> None:
            if isinstance(row, Mapping):
                await channel.publish(row)

        async with channel:
            try:
                await page.expose_binding(binding, push_row)
                script_arg = {**self.catalog.to_script_arg(), "binding": binding}
                report.container_selector = await page.evaluate(_OBSERVER_SCRIPT, script_arg)
            except PlaywrightError as exc:
                self._interrupted(report, context, "observer", exc)
                return report
            if report.container_selector is None:
                log_event(logger, logging.WARNING, "dom.container_missing")
                return report
            log_event(
                logger,
                logging.INFO,
                "dom.observer_installed",
                container=report.container_selector,
            )
            try:
                await self._focus_container(page, report.container_selector)
                await self._scroll(page, context, channel, report)
            except PlaywrightError as exc:
                self._interrupted(report, context, "scroll", exc)
            finally:
                with suppress(PlaywrightError):
                    await page.evaluate(_DISCONNECT_SCRIPT)

        log_event(
            logger,
            logging.INFO,
            "dom.completed",
            iterations=report.iterations,
            stagnated=report.stagnated,
            interrupted=report.interrupted,
            rows_received=report.rows_received,
            total_captured=len(context.items),
        )
        return report

    def _interrupted(
        self,
        report: DomHarvestReport,
        context: CaptureContext,
        phase: str,
        exc: PlaywrightError,
    ) -> None:
        """Stop harvesting and keep what was captured so far."""
        report.interrupted = True
        log_event(
            logger,
            logging.WARNING,
            "dom.interrupted",
            phase=phase,
            error=exc.message,
            total_captured=len(context.items),
        )

    async def _wait_for_content(self, page: Page) -> None:
        selector = ", ".join(self.catalog.list_container)
        try:
            await page.wait_for_selector(selector, timeout=self.settings.content_timeout_ms)
        except PlaywrightError:
            log_event(logger, logging.WARNING, "dom.content_wait_timeout")

    async def _focus_container(self, page: Page, selector: str) -> None:
        """Park the mouse over the list so wheel events scroll it."""
        try:
            element = await page.query_selector(selector)
            box = await element.bounding_box() if element is not None else None
        except PlaywrightError:
            box = None
        if box:
            x = box["x"] + box["width"] / 2
            y = box["y"] + min(box["height"], 600) / 2
            await page.mouse.move(x, y)

    async def _scroll(
        self,
        page: Page,
        context: CaptureContext,
        channel: IngestChannel[Mapping[str, Any]],
        report: DomHarvestReport,
    ) -> None:
        settings = self.settings
        await channel.settle()
        last_count = len(context.items)
        stagnant = 0
        for iteration in range(settings.max_scroll_iterations):
            report.iterations = iteration + 1
            await page.mouse.wheel(0, settings.scroll_delta)
            await page.wait_for_timeout(settings.scroll_interval_ms)
            await channel.settle()

            current = len(context.items)
            if current == last_count:
                stagnant += 1
            else:
                stagnant = 0
                last_count = current
                if iteration % 10 == 0:
                    log_event(logger, logging.INFO, "dom.progress", total_captured=current)

            if stagnant > settings.stagnation_threshold:
                report.stagnated = True
                log_event(logger, logging.INFO, "dom.stagnated", iterations=report.iterations)
                break
