"""Integration tests for scrape orchestration and its state machine."""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from trackharvest.capture import CaptureContext
from trackharvest.config import CaptureSettings, Settings
from trackharvest.dom import ingest_row
from trackharvest.errors import (
    InvalidRequestError,
    LaunchError,
    LoginRequiredError,
    NavigationError,
)
from trackharvest.schemas import (
    CookieRecord,
    EnrichTracksRequest,
    ScrapePlaylistRequest,
    ScrapeSession,
    TrackRef,
)
from trackharvest.service import ScraperService, ScrapeRun, ScrapeState

PLAYLIST_URL = "https://open.spotify.com/playlist/37i9dQZF1DXcBWIGoYBM5M"
GRAPH_URL = "https://api-partner.spotify.com/pathfinder/v1/query?operationName=fetchPlaylist"


class FakeResponse:
    def __init__(self, url: str, body: Any, content_type: str = "application/json") -> None:
        self.url = url
        self.headers = {"content-type": content_type}
        self._body = body

    async def json(self) -> Any:
        return self._body


class FakeMouse:
    def __init__(self, page: FakePlaylistPage) -> None:
        self._page = page
        self.wheels = 0

    async def move(self, x: float, y: float) -> None:
        return None

    async def wheel(self, delta_x: int, delta_y: int) -> None:
        self.wheels += 1
        if self._page.wheel_error is not None:
            raise self._page.wheel_error
        if self._page.scroll_responses:
            await self._page.emit(self._page.scroll_responses.pop(0))


class FakePlaylistPage:
    """Playlist page that replays scripted JSON responses to listeners."""

    def __init__(
        self,
        *,
        load_responses: list[FakeResponse] | None = None,
        scroll_responses: list[FakeResponse] | None = None,
        redirect_to: str | None = None,
        goto_error: Exception | None = None,
        body_text: str = "",
        evaluate_error: Exception | None = None,
        wheel_error: Exception | None = None,
    ) -> None:
        self.load_responses = load_responses or []
        self.scroll_responses = scroll_responses or []
        self.redirect_to = redirect_to
        self.goto_error = goto_error
        self.body_text = body_text
        self.evaluate_error = evaluate_error
        self.wheel_error = wheel_error
        self.bindings: list[str] = []
        self.url = "about:blank"
        self.mouse = FakeMouse(self)
        self.listeners: list[Any] = []
        self.goto_calls: list[str] = []

    def on(self, event: str, handler: Any) -> None:
        assert event == "response"
        self.listeners.append(handler)

    def remove_listener(self, event: str, handler: Any) -> None:
        self.listeners.remove(handler)

    async def emit(self, response: FakeResponse) -> None:
        for handler in list(self.listeners):
            await handler(response)

    async def goto(self, url: str, *, wait_until: str, timeout: int) -> None:
        self.goto_calls.append(url)
        if self.goto_error is not None:
            raise self.goto_error
        self.url = self.redirect_to or url
        for response in self.load_responses:
            await self.emit(response)

    async def wait_for_selector(
        self, selector: str, *, timeout: int, state: str = "visible"
    ) -> None:
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")

    async def expose_binding(self, name: str, callback: Any) -> None:
        self.bindings.append(name)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if self.evaluate_error is not None:
            raise self.evaluate_error
        return None

    async def wait_for_timeout(self, timeout: int) -> None:
        return None

    async def query_selector(self, selector: str) -> None:
        return None

    async def query_selector_all(self, selector: str) -> list[Any]:
        return []

    async def title(self) -> str:
        return "Today's Top Hits | Spotify Playlist"

    async def inner_text(self, selector: str) -> str:
        return self.body_text


class FakeBrowser:
    def __init__(self, page: FakePlaylistPage, *, fail_open: bool = False) -> None:
        self.page = page
        self.fail_open = fail_open
        self.closed = False

    async def open(self) -> FakePlaylistPage:
        if self.fail_open:
            raise LaunchError("failed to launch browser: no chromium")
        return self.page

    async def new_page(self) -> FakePlaylistPage:
        return self.page

    async def close(self) -> None:
        self.closed = True


class FakeDomHarvester:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = rows
        self.calls: list[bool] = []

    async def harvest(self, page: Any, context: CaptureContext, *, dismiss_banner: bool = True):
        self.calls.append(dismiss_banner)
        for row in self.rows:
            ingest_row(context, row)


class BrowserFactory:
    def __init__(self, browser: FakeBrowser) -> None:
        self.browser = browser
        self.calls: list[tuple[ScrapeSession, list[CookieRecord]]] = []

    def __call__(self, session: ScrapeSession, extra: Sequence[CookieRecord]) -> FakeBrowser:
        self.calls.append((session, list(extra)))
        return self.browser


def _graph_response(track_ids: list[str], *, total: int) -> FakeResponse:
    items = [
        {
            "itemV2": {
                "data": {
                    "__typename": "Track",
                    "uri": f"spotify:track:{track_id}",
                    "name": f"Song {track_id}",
                    "artists": {"items": [{"profile": {"name": "Artist"}}]},
                    "albumOfTrack": {"name": "Album"},
                }
            }
        }
        for track_id in track_ids
    ]
    return FakeResponse(
        GRAPH_URL,
        {
            "data": {
                "playlistV2": {
                    "name": "Today's Top Hits",
                    "ownerV2": {"data": {"name": "Spotify"}},
                    "followers": 34_000_000,
                    "content": {"totalCount": total, "items": items},
                }
            }
        },
    )


def _flat_response(offset: int, track_ids: list[str]) -> FakeResponse:
    return FakeResponse(
        f"https://spclient.wg.spotify.com/playlist/v2/tracks?offset={offset}",
        {"items": [{"track": {"id": tid, "name": f"Song {tid}"}} for tid in track_ids]},
    )


def _settings(tmp_path: Path) -> Settings:
    cookies_path = tmp_path / "spotify-cookies.json"
    cookies_path.write_text(
        json.dumps([{"name": "sp_dc", "value": "stored", "domain": ".spotify.com"}]),
        encoding="utf-8",
    )
    return Settings(
        cookies_path=cookies_path,
        capture=CaptureSettings(
            consent_timeout_ms=1,
            consent_settle_ms=0,
            content_timeout_ms=1,
            initial_settle_ms=0,
            network_scroll_steps=5,
            network_scroll_interval_ms=0,
            late_response_ms=0,
        ),
    )


def _service(tmp_path: Path, page: FakePlaylistPage, **browser_options: Any):
    browser = FakeBrowser(page, **browser_options)
    factory = BrowserFactory(browser)
    service = ScraperService(_settings(tmp_path), browser_factory=factory)
    return service, browser, factory


@pytest.mark.asyncio
async def test_network_capture_walks_every_state(tmp_path: Path) -> None:
    page = FakePlaylistPage(
        load_responses=[_graph_response(["a", "b"], total=4)],
        scroll_responses=[_graph_response(["b", "c", "d"], total=4)],
        body_text="Today's Top Hits\n34M followers",
    )
    service, browser, factory = _service(tmp_path, page)
    request_cookie = CookieRecord(name="sp_key", value="request", domain=".spotify.com")
    run = ScrapeRun()

    result = await service.scrape_playlist(
        ScrapePlaylistRequest(playlist_url=PLAYLIST_URL, cookies=[request_cookie]),
        run=run,
    )

    assert run.history == [
        ScrapeState.NOT_STARTED,
        ScrapeState.LAUNCHING,
        ScrapeState.NAVIGATING,
        ScrapeState.CONSENT_CHECK,
        ScrapeState.HARVESTING,
        ScrapeState.STABILIZING,
        ScrapeState.CLOSED,
    ]
    assert result.method == "network-capture"
    assert [track.track_id for track in result.tracks] == ["a", "b", "c", "d"]
    assert result.total_captured == 4
    assert result.total_tracks == 4
    assert result.playlist_name == "Today's Top Hits"
    assert result.curator == "Spotify"
    assert result.followers == 34_000_000
    assert page.mouse.wheels == 1
    assert page.listeners == []
    assert browser.closed
    stored_session, extra = factory.calls[0]
    assert [cookie.name for cookie in stored_session.cookies] == ["sp_dc"]
    assert [cookie.name for cookie in extra] == ["sp_key"]


@pytest.mark.asyncio
async def test_flat_pages_are_captured_by_offset(tmp_path: Path) -> None:
    page = FakePlaylistPage(
        load_responses=[_flat_response(0, ["a", "b"])],
        scroll_responses=[_flat_response(0, ["x"]), _flat_response(2, ["c"])],
    )
    service, _, _ = _service(tmp_path, page)

    result = await service.scrape_playlist(ScrapePlaylistRequest(playlist_url=PLAYLIST_URL))

    assert [track.track_id for track in result.tracks] == ["a", "b", "c"]
    assert result.total_tracks is None
    assert result.playlist_name == "Today's Top Hits"
    assert page.mouse.wheels == 5


@pytest.mark.asyncio
async def test_navigation_failure_fails_run_and_closes_browser(tmp_path: Path) -> None:
    page = FakePlaylistPage(goto_error=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
    service, browser, _ = _service(tmp_path, page)
    run = ScrapeRun()

    with pytest.raises(NavigationError):
        await service.scrape_playlist(ScrapePlaylistRequest(playlist_url=PLAYLIST_URL), run=run)

    assert run.history[-2:] == [ScrapeState.NAVIGATING, ScrapeState.FAILED]
    assert browser.closed
    assert page.listeners == []


@pytest.mark.asyncio
async def test_launch_failure_fails_run(tmp_path: Path) -> None:
    service, browser, _ = _service(tmp_path, FakePlaylistPage(), fail_open=True)
    run = ScrapeRun()

    with pytest.raises(LaunchError):
        await service.scrape_playlist(ScrapePlaylistRequest(playlist_url=PLAYLIST_URL), run=run)

    assert run.history == [ScrapeState.NOT_STARTED, ScrapeState.LAUNCHING, ScrapeState.FAILED]
    assert browser.closed


@pytest.mark.asyncio
async def test_login_wall_is_raised(tmp_path: Path) -> None:
    page = FakePlaylistPage(redirect_to="https://accounts.spotify.com/en/login")
    service, browser, _ = _service(tmp_path, page)

    with pytest.raises(LoginRequiredError):
        await service.scrape_playlist(ScrapePlaylistRequest(playlist_url=PLAYLIST_URL))

    assert browser.closed


@pytest.mark.asyncio
async def test_auto_falls_back_to_dom_when_network_is_empty(tmp_path: Path) -> None:
    page = FakePlaylistPage()
    service, browser, _ = _service(tmp_path, page)
    dom = FakeDomHarvester([{"title": "Row Song", "artists": ["A"], "url": "/track/r1"}])
    service.dom = dom  # type: ignore[assignment]

    result = await service.scrape_playlist(
        ScrapePlaylistRequest(playlist_url=PLAYLIST_URL, method="auto")
    )

    assert result.method == "dom-harvest"
    assert [track.track_id for track in result.tracks] == ["r1"]
    assert page.goto_calls == [PLAYLIST_URL, PLAYLIST_URL]
    assert dom.calls == [True]
    assert page.listeners == []
    assert browser.closed


@pytest.mark.asyncio
async def test_auto_keeps_network_result_when_it_captured_rows(tmp_path: Path) -> None:
    page = FakePlaylistPage(load_responses=[_graph_response(["a"], total=1)])
    service, _, _ = _service(tmp_path, page)
    dom = FakeDomHarvester([])
    service.dom = dom  # type: ignore[assignment]

    result = await service.scrape_playlist(
        ScrapePlaylistRequest(playlist_url=PLAYLIST_URL, method="auto")
    )

    assert result.method == "network-capture"
    assert dom.calls == []
    assert page.goto_calls == [PLAYLIST_URL]


@pytest.mark.asyncio
async def test_network_method_does_not_fall_back(tmp_path: Path) -> None:
    page = FakePlaylistPage()
    service, _, _ = _service(tmp_path, page)
    dom = FakeDomHarvester([{"title": "Row Song"}])
    service.dom = dom  # type: ignore[assignment]

    result = await service.scrape_playlist(ScrapePlaylistRequest(playlist_url=PLAYLIST_URL))

    assert result.method == "network-capture"
    assert result.tracks == []
    assert dom.calls == []


@pytest.mark.asyncio
async def test_dom_method_skips_network_listener(tmp_path: Path) -> None:
    page = FakePlaylistPage(load_responses=[_graph_response(["a"], total=1)])
    service, _, _ = _service(tmp_path, page)
    dom = FakeDomHarvester([{"title": "Row Song", "artists": ["A"]}])
    service.dom = dom  # type: ignore[assignment]

    result = await service.scrape_playlist(
        ScrapePlaylistRequest(playlist_url=PLAYLIST_URL, method="dom")
    )

    assert result.method == "dom-harvest"
    assert [track.name for track in result.tracks] == ["Row Song"]
    assert dom.calls == [False]
    assert result.total_tracks is None


@pytest.mark.asyncio
async def test_missing_playlist_url_is_rejected_before_launch(tmp_path: Path) -> None:
    service, _, factory = _service(tmp_path, FakePlaylistPage())

    with pytest.raises(InvalidRequestError):
        await service.scrape_playlist(ScrapePlaylistRequest(playlist_url="  "))

    assert factory.calls == []


@pytest.mark.asyncio
async def test_enrich_tracks_uses_stored_cookies(tmp_path: Path) -> None:
    page = FakePlaylistPage(body_text="Credits\nWritten by\nJane Doe\n")
    service, browser, factory = _service(tmp_path, page)
    service.settings.enrich.settle_ms = 0

    response = await service.enrich_tracks(
        EnrichTracksRequest(
            tracks=[TrackRef(track_id="t1", url="https://open.spotify.com/track/t1")]
        )
    )

    assert response.summary.succeeded == 1
    assert response.results[0].credits is not None
    assert response.results[0].credits.songwriters == ["Jane Doe"]
    assert [cookie.name for cookie in factory.calls[0][0].cookies] == ["sp_dc"]
    assert factory.calls[0][1] == []
    assert browser.closed


def test_health_reports_service_name(tmp_path: Path) -> None:
    service, _, _ = _service(tmp_path, FakePlaylistPage())

    assert service.health().to_wire() == {"status": "ok", "service": "spotify-playlist-scraper"}


@pytest.mark.asyncio
async def test_destroyed_context_during_dom_harvest_still_closes(tmp_path: Path) -> None:
    page = FakePlaylistPage(
        evaluate_error=PlaywrightError(
            "Execution context was destroyed, most likely because of a navigation"
        ),
    )
    service, browser, _ = _service(tmp_path, page)
    run = ScrapeRun()

    result = await service.scrape_playlist(
        ScrapePlaylistRequest(playlist_url=PLAYLIST_URL, method="dom"),
        run=run,
    )

    assert result.method == "dom-harvest"
    assert result.tracks == []
    assert len(page.bindings) == 1
    assert run.history[-2:] == [ScrapeState.STABILIZING, ScrapeState.CLOSED]
    assert browser.closed


@pytest.mark.asyncio
async def test_scroll_error_keeps_captured_network_rows(tmp_path: Path) -> None:
    page = FakePlaylistPage(
        load_responses=[_graph_response(["a", "b"], total=4)],
        wheel_error=PlaywrightError("Target page, context or browser has been closed"),
    )
    service, browser, _ = _service(tmp_path, page)
    run = ScrapeRun()

    result = await service.scrape_playlist(
        ScrapePlaylistRequest(playlist_url=PLAYLIST_URL), run=run
    )

    assert result.method == "network-capture"
    assert [track.track_id for track in result.tracks] == ["a", "b"]
    assert result.total_tracks == 4
    assert page.mouse.wheels == 1
    assert run.history[-1] == ScrapeState.CLOSED
    assert page.listeners == []
    assert browser.closed


@pytest.mark.asyncio
async def test_network_harvest_without_listener_is_a_programming_error(tmp_path: Path) -> None:
    service, _, _ = _service(tmp_path, FakePlaylistPage())

    with pytest.raises(RuntimeError, match="response listener"):
        await service._harvest(FakePlaylistPage(), CaptureContext(), "network", None)
