"""Pydantic models for captured records and the HTTP request/response schema."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

HarvestMethod = Literal["network", "dom", "auto"]
CaptureMethod = Literal["network-capture", "dom-harvest"]
SameSite = Literal["Strict", "Lax", "None"]

_SAME_SITE_ALIASES: dict[str, SameSite] = {
    "strict": "Strict",
    "lax": "Lax",
    "none": "None",
    "no_restriction": "None",
}


class WireModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using wire aliases."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def content_key(name: str, artists: list[str], album: str | None) -> str:
    """Return the ``name::artists::album`` key used when no id is available."""
    return f"{name}::{','.join(artists)}::{album or ''}"


class CapturedTrack(WireModel):
    """One playlist entry reconstructed from network or DOM capture."""

    track_id: str = ""
    isrc: str | None = None
    name: str = Field(min_length=1)
    artists: list[str] = Field(default_factory=list)
    album: str | None = None
    added_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    popularity: int | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    external_url: str = ""

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("track name must not be blank")
        return stripped

    @computed_field(alias="spotifyUrl")  # type: ignore[prop-decorator]
    @property
    def spotify_url(self) -> str:
        return self.external_url

    @property
    def dedup_key(self) -> str:
        """Explicit track id, or the content key when the id is unknown."""
        if self.track_id:
            return self.track_id
        return content_key(self.name, self.artists, self.album)


class PlaylistMetadata(WireModel):
    """Playlist-level fields; partial metadata is valid output."""

    name: str | None = None
    curator: str | None = None
    followers: int | None = Field(default=None, ge=0)
    image_url: str | None = None
    total_track_count: int | None = Field(default=None, ge=0)

    def fill_missing(self, other: PlaylistMetadata) -> PlaylistMetadata:
        """Return a copy where empty fields are taken from ``other``."""
        merged = self.model_dump()
        for key, value in other.model_dump().items():
            if merged.get(key) in (None, "") and value not in (None, ""):
                merged[key] = value
        return PlaylistMetadata(**merged)

    @property
    def is_complete(self) -> bool:
        return all(
            value is not None
            for value in (self.name, self.curator, self.followers, self.image_url)
        )


class CreditsResult(WireModel):
    """Credit attribution scraped from one track page."""

    track_id: str
    songwriters: list[str] = Field(default_factory=list)
    composers: list[str] = Field(default_factory=list)
    producers: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    publishers: list[str] = Field(default_factory=list)
    streams: int | None = Field(default=None, ge=0)

    @property
    def credit_count(self) -> int:
        return sum(
            len(values)
            for values in (
                self.songwriters,
                self.composers,
                self.producers,
                self.labels,
                self.publishers,
            )
        )


class BatchEnrichmentOutcome(WireModel):
    """Result for exactly one input item of an enrichment batch."""

    track_id: str
    success: bool
    credits: CreditsResult | None = None
    error: str | None = None


class EnrichmentSummary(WireModel):
    """Aggregate counters computed after a batch completes."""

    total: int = Field(ge=0)
    succeeded: int = Field(ge=0)
    failed: int = Field(ge=0)
    duration_ms: int = Field(ge=0)


class TrackRef(WireModel):
    """A known track page to enrich."""

    track_id: str = Field(min_length=1)
    url: str = Field(alias="spotifyUrl", min_length=1)


class CookieRecord(WireModel):
    """Browser cookie as exported by the external login capture tool."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    name: str = Field(min_length=1)
    value: str
    domain: str | None = None
    path: str | None = None
    url: str | None = None
    expires: float | None = None
    http_only: bool | None = None
    secure: bool | None = None
    same_site: str | None = None

    @model_validator(mode="after")
    def require_scope(self) -> CookieRecord:
        """A cookie needs either a domain or a url to be installable."""
        if not self.domain and not self.url:
            raise ValueError(f"cookie '{self.name}' has neither domain nor url")
        return self

    def to_playwright(self) -> dict[str, Any]:
        """Convert to the shape accepted by ``BrowserContext.add_cookies``."""
        cookie: dict[str, Any] = {"name": self.name, "value": self.value}
        if self.domain:
            cookie["domain"] = self.domain
            cookie["path"] = self.path or "/"
        else:
            cookie["url"] = self.url
        if self.expires is not None and self.expires > 0:
            cookie["expires"] = self.expires
        if self.http_only is not None:
            cookie["httpOnly"] = self.http_only
        if self.secure is not None:
            cookie["secure"] = self.secure
        same_site = _SAME_SITE_ALIASES.get((self.same_site or "").lower())
        if same_site is not None:
            cookie["sameSite"] = same_site
        return cookie


class ScrapeSession(BaseModel):
    """Cookie set loaded once per browser launch; never mutated here."""

    model_config = ConfigDict(frozen=True)

    cookies: tuple[CookieRecord, ...] = ()
    loaded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_empty(self) -> bool:
        return not self.cookies


class ScrapePlaylistRequest(WireModel):
    """Body of ``POST /scrape-playlist``."""

    playlist_url: str | None = None
    cookies: list[CookieRecord] | None = None
    method: HarvestMethod = "network"


class ScrapePlaylistResponse(WireModel):
    """Successful playlist scrape payload."""

    success: bool = True
    tracks: list[CapturedTrack] = Field(default_factory=list)
    total_captured: int = Field(default=0, ge=0)
    total_tracks: int | None = None
    playlist_name: str | None = None
    curator: str | None = None
    followers: int | None = None
    image_url: str | None = None
    method: CaptureMethod


class EnrichTracksRequest(WireModel):
    """Body of ``POST /enrich-tracks``."""

    tracks: list[TrackRef]


class EnrichTracksResponse(WireModel):
    """Per-item outcomes plus the batch summary."""

    success: bool = True
    results: list[BatchEnrichmentOutcome] = Field(default_factory=list)
    summary: EnrichmentSummary


class FailureResponse(WireModel):
    """Error payload returned with non-2xx status codes."""

    success: bool = False
    error: str


class HealthResponse(WireModel):
    """Liveness probe payload."""

    status: Literal["ok"] = "ok"
    service: str
