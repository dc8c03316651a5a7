"""JSON cookie file used to authenticate the headless browser."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from trackharvest.logging_utils import log_event
from trackharvest.schemas import CookieRecord, ScrapeSession

logger = logging.getLogger(__name__)


class SessionStore:
    """Load the cookie set written by the external login capture tool.

    A missing file is normal (anonymous browsing). A corrupt file is logged
    and treated as empty: missing auth degrades capture quality but never
    aborts an operation.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> ScrapeSession:
        """Return the stored cookies, or an empty session."""
        if not self.path.exists():
            log_event(logger, logging.INFO, "session_store.missing", path=str(self.path))
            return ScrapeSession()

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            log_event(
                logger,
                logging.WARNING,
                "session_store.corrupt",
                path=str(self.path),
                error=str(exc),
            )
            return ScrapeSession()

        if not isinstance(raw, list):
            log_event(
                logger,
                logging.WARNING,
                "session_store.corrupt",
                path=str(self.path),
                error=f"expected a JSON array, got {type(raw).__name__}",
            )
            return ScrapeSession()

        cookies = tuple(self._parse_records(raw))
        log_event(
            logger,
            logging.INFO,
            "session_store.loaded",
            path=str(self.path),
            cookie_count=len(cookies),
            skipped=len(raw) - len(cookies),
        )
        return ScrapeSession(cookies=cookies)

    def save(self, cookies: Iterable[CookieRecord]) -> int:
        """Write cookies as a JSON array and return how many were written."""
        payload = [
            cookie.model_dump(mode="json", by_alias=True, exclude_none=True)
            for cookie in cookies
        ]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        log_event(
            logger,
            logging.INFO,
            "session_store.saved",
            path=str(self.path),
            cookie_count=len(payload),
        )
        return len(payload)

    def _parse_records(self, raw: list[object]) -> Iterable[CookieRecord]:
        for index, record in enumerate(raw):
            try:
                yield CookieRecord.model_validate(record)
            except ValidationError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "session_store.record_skipped",
                    index=index,
                    error=str(exc.errors(include_url=False)[0]["msg"]),
                )
