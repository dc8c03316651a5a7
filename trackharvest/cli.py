"""Command line interface for serving, one-off scrapes and cookie management."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError

from trackharvest import __version__
from trackharvest.config import Settings, load_settings
from trackharvest.errors import HarvestError
from trackharvest.logging_utils import configure_logging
from trackharvest.schemas import (
    CookieRecord,
    EnrichTracksRequest,
    ScrapePlaylistRequest,
)
from trackharvest.service import ScraperService
from trackharvest.session_store import SessionStore

app = typer.Typer(
    no_args_is_help=True,
    help="trackharvest playlist capture and credits enrichment CLI.",
    add_completion=False,
)
cookies_app = typer.Typer(no_args_is_help=True, help="Inspect and import the stored cookie file.")
app.add_typer(cookies_app, name="cookies")

_HARVEST_METHODS = ("network", "dom", "auto")

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    exists=True,
    dir_okay=False,
    resolve_path=True,
    help="YAML settings file (defaults to TRACKHARVEST_CONFIG).",
)


def _load(config: Path | None) -> Settings:
    try:
        settings = load_settings(config)
    except (OSError, ValueError) as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    configure_logging(settings.server.log_level.upper())
    return settings


def _build_service(settings: Settings) -> ScraperService:
    return ScraperService(settings)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        typer.echo(f"Could not read {path}: {exc}", err=True)
        raise typer.Exit(code=2) from exc


@app.command("version")
def version() -> None:
    """Print the installed version."""
    typer.echo(__version__)


@app.command("serve")
def serve(
    config: Path | None = CONFIG_OPTION,
    host: str | None = typer.Option(None, "--host", help="Bind address (default from settings)."),
    port: int | None = typer.Option(None, "--port", min=1, max=65535, help="Bind port."),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from trackharvest.main import create_app

    settings = _load(config)
    uvicorn.run(
        create_app(settings=settings),
        host=host or settings.server.host,
        port=port or settings.server.port,
        log_level=settings.server.log_level.lower(),
    )


@app.command("scrape")
def scrape(
    playlist_url: str = typer.Argument(..., help="Playlist page URL."),
    method: str = typer.Option(
        "network",
        "--method",
        "-m",
        help="Harvest policy: network, dom or auto (network, then dom when empty).",
    ),
    config: Path | None = CONFIG_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Capture one playlist and print its tracks."""
    if method not in _HARVEST_METHODS:
        raise typer.BadParameter(
            f"must be one of {', '.join(_HARVEST_METHODS)}",
            param_hint="--method",
        )
    service = _build_service(_load(config))
    request = ScrapePlaylistRequest(playlist_url=playlist_url, method=method)
    try:
        result = asyncio.run(service.scrape_playlist(request))
    except HarvestError as exc:
        typer.echo(f"Scrape failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    if json_output:
        typer.echo(json.dumps(result.to_wire(), indent=2))
        return

    total = result.total_tracks if result.total_tracks is not None else "?"
    typer.echo(f"{result.playlist_name or playlist_url} ({result.method})")
    if result.curator:
        typer.echo(f"  curator: {result.curator}")
    if result.followers is not None:
        typer.echo(f"  followers: {result.followers}")
    typer.echo(f"  captured {result.total_captured} of {total} tracks")
    for position, track in enumerate(result.tracks, start=1):
        artists = ", ".join(track.artists) or "-"
        typer.echo(f"{position:>4}. {track.name} - {artists}")


@app.command("enrich")
def enrich(
    tracks_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="JSON array of {trackId, spotifyUrl} objects, or {\"tracks\": [...]}.",
    ),
    config: Path | None = CONFIG_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Extract credits for a batch of track pages."""
    raw = _read_json(tracks_file)
    payload = {"tracks": raw} if isinstance(raw, list) else raw
    try:
        request = EnrichTracksRequest.model_validate(payload)
    except ValidationError as exc:
        typer.echo(f"Invalid tracks file: {exc.errors(include_url=False)[0]['msg']}", err=True)
        raise typer.Exit(code=2) from exc

    service = _build_service(_load(config))
    try:
        result = asyncio.run(service.enrich_tracks(request))
    except HarvestError as exc:
        typer.echo(f"Enrichment failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    if json_output:
        typer.echo(json.dumps(result.to_wire(), indent=2))
        return

    for outcome in result.results:
        if outcome.success and outcome.credits is not None:
            credits = outcome.credits
            line = (
                f"{outcome.track_id}: writers={len(credits.songwriters)} "
                f"producers={len(credits.producers)} publishers={len(credits.publishers)} "
                f"labels={len(credits.labels)}"
            )
            if credits.streams is not None:
                line += f" streams={credits.streams}"
            typer.echo(line)
        else:
            typer.echo(f"{outcome.track_id}: failed ({outcome.error})")
    summary = result.summary
    typer.echo(
        f"{summary.succeeded}/{summary.total} succeeded, {summary.failed} failed "
        f"in {summary.duration_ms}ms"
    )


@cookies_app.command("show")
def cookies_show(
    config: Path | None = CONFIG_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List the cookies that will be installed into the browser."""
    settings = _load(config)
    session = SessionStore(settings.cookies_path).load()
    if json_output:
        payload = [
            {"name": cookie.name, "domain": cookie.domain or cookie.url, "expires": cookie.expires}
            for cookie in session.cookies
        ]
        typer.echo(json.dumps(payload, indent=2))
        return
    if session.is_empty:
        typer.echo(f"No cookies stored in {settings.cookies_path}.")
        return
    typer.echo(f"{len(session.cookies)} cookies in {settings.cookies_path}:")
    for cookie in session.cookies:
        typer.echo(f"  {cookie.name} ({cookie.domain or cookie.url})")


@cookies_app.command("import")
def cookies_import(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Exported cookie JSON."),
    config: Path | None = CONFIG_OPTION,
) -> None:
    """Validate an exported cookie file and store it as the active cookie set."""
    raw = _read_json(source)
    if not isinstance(raw, list):
        typer.echo("Cookie file must contain a JSON array.", err=True)
        raise typer.Exit(code=2)

    records: list[CookieRecord] = []
    skipped = 0
    for entry in raw:
        try:
            records.append(CookieRecord.model_validate(entry))
        except ValidationError:
            skipped += 1
    if not records:
        typer.echo("No valid cookies found.", err=True)
        raise typer.Exit(code=1)

    settings = _load(config)
    written = SessionStore(settings.cookies_path).save(records)
    typer.echo(f"Imported {written} cookies into {settings.cookies_path} ({skipped} skipped).")


def main() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
