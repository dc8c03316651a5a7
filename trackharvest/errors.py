"""Error taxonomy for scrape and enrichment operations.

Only :class:`LaunchError` and :class:`NavigationError` abort a scrape call.
Row, field and track level failures are caught where they happen and turned
into partial results.
"""

from __future__ import annotations


class HarvestError(Exception):
    """Base class for all trackharvest errors."""


class LaunchError(HarvestError):
    """The headless browser could not be started."""


class NavigationError(HarvestError):
    """Top-level page load failed or timed out."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class LoginRequiredError(NavigationError):
    """Navigation ended on a login or authorization wall."""


class ExtractionError(HarvestError):
    """A row or field could not be extracted."""


class TrackTimeoutError(HarvestError, TimeoutError):
    """Credits extraction for one track exceeded its time limit."""

    def __init__(self, track_id: str) -> None:
        super().__init__("Track timeout")
        self.track_id = track_id


class InvalidRequestError(HarvestError):
    """A request was rejected before any browser work started."""
