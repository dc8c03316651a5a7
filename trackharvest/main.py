"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from trackharvest import __version__
from trackharvest.config import Settings, load_settings
from trackharvest.errors import InvalidRequestError, LoginRequiredError
from trackharvest.logging_utils import (
    REQUEST_ID_HEADER,
    build_request_id,
    configure_logging,
    log_event,
    reset_request_id,
    set_request_id,
)
from trackharvest.schemas import (
    EnrichTracksRequest,
    FailureResponse,
    ScrapePlaylistRequest,
    WireModel,
)
from trackharvest.service import ScraperService

logger = logging.getLogger(__name__)


def _status_code_for_error(exc: Exception) -> int:
    """Map domain errors to HTTP status codes."""
    if isinstance(exc, InvalidRequestError):
        return 400
    if isinstance(exc, LoginRequiredError):
        return 403
    return 500


def _failure(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        content=FailureResponse(error=message).to_wire(),
        status_code=status_code,
    )


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


async def _run_operation(
    operation: str,
    call: Callable[[], Awaitable[WireModel]],
) -> JSONResponse:
    """Await a service call and turn its outcome into a JSON response."""
    try:
        result = await call()
    except Exception as exc:  # noqa: BLE001
        status_code = _status_code_for_error(exc)
        log_event(
            logger,
            logging.WARNING if status_code < 500 else logging.ERROR,
            f"{operation}.rejected" if status_code < 500 else f"{operation}.error",
            status_code=status_code,
            error=str(exc),
            exc_info=exc if status_code >= 500 else None,
        )
        return _failure(str(exc) or "Scraping failed", status_code)
    return JSONResponse(content=result.to_wire())


def create_app(
    *,
    service: ScraperService | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    effective_settings = settings or (service.settings if service else load_settings())
    scraper = service or ScraperService(effective_settings)
    logging.getLogger("trackharvest").setLevel(effective_settings.server.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(effective_settings.server.log_level.upper())
        app.state.service = scraper
        app.state.settings = effective_settings
        log_event(
            logger,
            logging.INFO,
            "app.started",
            version=__version__,
            cookies_path=str(effective_settings.cookies_path),
        )
        yield

    app = FastAPI(
        title="trackharvest",
        summary="Reconstruct playlists and track credits from a headless browser session.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = scraper
    app.state.settings = effective_settings

    @app.middleware("http")
    async def request_logging_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = build_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = set_request_id(request_id)
        request.state.request_id = request_id
        started_at = perf_counter()
        log_event(
            logger,
            logging.INFO,
            "request.started",
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            elapsed_ms = int((perf_counter() - started_at) * 1000)
            log_event(
                logger,
                logging.ERROR,
                "request.failed",
                method=request.method,
                path=request.url.path,
                response_time_ms=elapsed_ms,
                error=str(exc),
                exc_info=exc,
            )
            raise
        else:
            elapsed_ms = int((perf_counter() - started_at) * 1000)
            response.headers[REQUEST_ID_HEADER] = request_id
            log_event(
                logger,
                logging.INFO,
                "request.completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
            )
            return response
        finally:
            reset_request_id(token)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        message = _validation_message(exc)
        log_event(logger, logging.WARNING, "request.invalid_body", error=message)
        return _failure(message, 400)

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Liveness probe."""
        service_state: ScraperService = request.app.state.service
        return JSONResponse(content=service_state.health().to_wire())

    @app.post("/scrape-playlist")
    async def scrape_playlist(request: Request, payload: ScrapePlaylistRequest) -> JSONResponse:
        """Capture a playlist's tracks and metadata."""
        service_state: ScraperService = request.app.state.service
        return await _run_operation("scrape", lambda: service_state.scrape_playlist(payload))

    @app.post("/enrich-tracks")
    async def enrich_tracks(request: Request, payload: EnrichTracksRequest) -> JSONResponse:
        """Extract credits for a bounded batch of track pages."""
        service_state: ScraperService = request.app.state.service
        return await _run_operation("enrich", lambda: service_state.enrich_tracks(payload))

    return app


app = create_app()
