"""Settings models and loading from YAML files and the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field

WaitUntil = Literal["load", "domcontentloaded", "networkidle", "commit"]

CONFIG_ENV = "TRACKHARVEST_CONFIG"
_DEFAULT_UA = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
_DEFAULT_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]
_DEFAULT_CONSENT_SELECTORS = [
    "#onetrust-accept-btn-handler",
    'button[id*="onetrust-accept"]',
    'button[aria-label*="Accept"]',
    'button[aria-label*="accept"]',
    '[data-testid="accept-all-cookies"]',
    'button[id*="accept"]',
    'button[id*="agree"]',
]

# (environment variable, settings path, converter)
_ENV_OVERRIDES: tuple[tuple[str, tuple[str, ...], Any], ...] = (
    ("TRACKHARVEST_COOKIES_PATH", ("cookies_path",), str),
    ("TRACKHARVEST_HEADLESS", ("browser", "headless"), "bool"),
    ("TRACKHARVEST_NAV_TIMEOUT_MS", ("browser", "navigation_timeout_ms"), int),
    ("TRACKHARVEST_SELECTORS_FILE", ("capture", "selectors_file"), str),
    ("TRACKHARVEST_MAX_BATCH_SIZE", ("enrich", "max_batch_size"), int),
    ("TRACKHARVEST_TRACK_TIMEOUT", ("enrich", "track_timeout_seconds"), float),
    ("TRACKHARVEST_ENRICH_CONCURRENCY", ("enrich", "concurrency"), int),
    ("TRACKHARVEST_LOG_LEVEL", ("server", "log_level"), str),
    ("PORT", ("server", "port"), int),
)


class BrowserSettings(BaseModel):
    """Chromium launch and page defaults."""

    model_config = ConfigDict(extra="forbid")

    headless: bool = True
    user_agent: str = _DEFAULT_UA
    viewport_width: int = Field(default=1440, gt=0)
    viewport_height: int = Field(default=900, gt=0)
    locale: str = "en-US"
    launch_args: list[str] = Field(default_factory=lambda: list(_DEFAULT_LAUNCH_ARGS))
    executable_path: str | None = None
    navigation_timeout_ms: int = Field(default=45_000, gt=0)
    page_timeout_ms: int = Field(default=15_000, gt=0)
    wait_until: WaitUntil = "networkidle"


class CaptureSettings(BaseModel):
    """Timing and bounds for playlist capture."""

    model_config = ConfigDict(extra="forbid")

    capture_hosts: list[str] = Field(default_factory=lambda: ["spotify.com", "spclient"])
    consent_selectors: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_CONSENT_SELECTORS)
    )
    consent_timeout_ms: int = Field(default=3_000, ge=0)
    consent_settle_ms: int = Field(default=2_000, ge=0)
    content_timeout_ms: int = Field(default=10_000, ge=0)
    initial_settle_ms: int = Field(default=3_000, ge=0)
    network_scroll_steps: int = Field(default=20, ge=0)
    network_scroll_delta: int = Field(default=800, gt=0)
    network_scroll_interval_ms: int = Field(default=700, ge=0)
    late_response_ms: int = Field(default=2_000, ge=0)
    max_scroll_iterations: int = Field(default=400, ge=0)
    scroll_delta: int = Field(default=650, gt=0)
    scroll_interval_ms: int = Field(default=450, ge=0)
    stagnation_threshold: int = Field(default=12, ge=0)
    queue_size: int = Field(default=256, gt=0)
    selectors_file: Path | None = None


class EnrichSettings(BaseModel):
    """Bounds for the credits enrichment batch."""

    model_config = ConfigDict(extra="forbid")

    max_batch_size: int = Field(default=12, gt=0)
    track_timeout_seconds: float = Field(default=12.0, gt=0)
    navigation_timeout_ms: int = Field(default=10_000, gt=0)
    settle_ms: int = Field(default=1_500, ge=0)
    concurrency: int = Field(default=1, ge=1)
    consent_timeout_ms: int = Field(default=1_500, ge=0)
    consent_settle_ms: int = Field(default=1_000, ge=0)
    menu_settle_ms: int = Field(default=1_000, ge=0)
    dialog_timeout_ms: int = Field(default=5_000, ge=0)


class ServerSettings(BaseModel):
    """HTTP server options used by ``trackharvest serve``."""

    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    port: int = Field(default=5000, gt=0, lt=65536)
    log_level: str = "INFO"


class Settings(BaseModel):
    """Top-level settings for the scraper service."""

    model_config = ConfigDict(extra="forbid")

    cookies_path: Path = Path("spotify-cookies.json")
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    enrich: EnrichSettings = Field(default_factory=EnrichSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> None:
    for env_name, path, converter in _ENV_OVERRIDES:
        raw = environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        value = _parse_bool(raw) if converter == "bool" else converter(raw.strip())
        target = data
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value


def read_yaml_mapping(path: Path) -> dict[str, Any]:
    """Read a YAML file that must contain a mapping at the top level."""
    loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{path} must contain a YAML mapping")
    return loaded


def load_settings(
    path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build settings from an optional YAML file plus environment overrides."""
    env = os.environ if environ is None else environ
    if path is None and env.get(CONFIG_ENV):
        path = Path(env[CONFIG_ENV])
    data: dict[str, Any] = read_yaml_mapping(path) if path is not None else {}
    _apply_env_overrides(data, env)
    return Settings.model_validate(data)
