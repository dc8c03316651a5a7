"""Unit tests for playlist metadata extraction."""

from __future__ import annotations

import pytest

from trackharvest.cascades import DEFAULT_CATALOG
from trackharvest.metadata import MetadataExtractor, parse_count, parse_follower_count
from trackharvest.schemas import PlaylistMetadata


class FakeElement:
    def __init__(self, *, text: str | None = None, attributes: dict[str, str] | None = None):
        self._text = text
        self._attributes = attributes or {}

    async def text_content(self) -> str | None:
        return self._text

    async def get_attribute(self, name: str) -> str | None:
        return self._attributes.get(name)


class FakePage:
    """Page stub exposing the query, title and body-text calls metadata uses."""

    def __init__(
        self,
        *,
        selector_map: dict[str, FakeElement] | None = None,
        title: str = "",
        body: str = "",
        fail_body: bool = False,
    ) -> None:
        self.selector_map = selector_map or {}
        self._title = title
        self._body = body
        self._fail_body = fail_body
        self.queried: list[str] = []

    async def query_selector(self, selector: str) -> FakeElement | None:
        self.queried.append(selector)
        return self.selector_map.get(selector)

    async def query_selector_all(self, selector: str) -> list[FakeElement]:
        element = self.selector_map.get(selector)
        return [element] if element else []

    async def title(self) -> str:
        return self._title

    async def inner_text(self, selector: str) -> str:
        assert selector == "body"
        if self._fail_body:
            raise RuntimeError("Target page, context or browser has been closed")
        return self._body


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("12.3K followers", 12_300),
        ("1M followers", 1_000_000),
        ("950 followers", 950),
        ("1,234,567 followers", 1_234_567),
        ("2.5B Followers", 2_500_000_000),
        ("1 follower", 1),
        ("Top 50 • 12.3K followers", 12_300),
        ("Playlist #2 · 3,400 followers", 3_400),
        ("4,021", 4_021),
        ("followers", None),
        ("lots of followers", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_follower_count(text: str | None, expected: int | None) -> None:
    assert parse_follower_count(text) == expected


def test_parse_count_handles_thousand_separators_without_suffix() -> None:
    assert parse_count("4,021") == 4_021
    assert parse_count("4.021") == 4_021
    assert parse_count("12k") == 12_000


@pytest.mark.asyncio
async def test_extract_reads_every_field_from_cascades() -> None:
    page = FakePage(
        selector_map={
            'main h1[data-encore-id="type"]': FakeElement(text="Chill Mix"),
            '[data-testid="entityHeaderSubtitle"] a': FakeElement(text="Curator"),
            'button[data-testid="followers-count"]': FakeElement(text="12.3K followers"),
            '[data-testid="playlist-image"] img': FakeElement(
                attributes={"src": "https://img/cover.jpg"}
            ),
        }
    )

    metadata = await MetadataExtractor(DEFAULT_CATALOG).extract(page)

    assert metadata == PlaylistMetadata(
        name="Chill Mix",
        curator="Curator",
        followers=12_300,
        image_url="https://img/cover.jpg",
    )


@pytest.mark.asyncio
async def test_extract_falls_back_to_page_text_and_title() -> None:
    page = FakePage(
        title="Road Trip | Spotify Playlist",
        body="Road Trip\nSome Curator • 4,512 followers • 50 songs",
    )

    metadata = await MetadataExtractor(DEFAULT_CATALOG).extract(page)

    assert metadata.name == "Road Trip"
    assert metadata.followers == 4_512
    assert metadata.curator is None
    assert metadata.image_url is None


@pytest.mark.asyncio
async def test_known_metadata_takes_precedence() -> None:
    page = FakePage(
        selector_map={
            "main h1": FakeElement(text="DOM Name"),
            'img[alt*="playlist"]': FakeElement(attributes={"src": "https://img/dom.jpg"}),
        },
    )
    known = PlaylistMetadata(name="Graph Name", curator="Owner", followers=5)

    metadata = await MetadataExtractor(DEFAULT_CATALOG).extract(page, known)

    assert metadata.name == "Graph Name"
    assert metadata.curator == "Owner"
    assert metadata.followers == 5
    assert metadata.image_url == "https://img/dom.jpg"
    assert "main h1" not in page.queried


@pytest.mark.asyncio
async def test_failing_field_is_left_empty() -> None:
    page = FakePage(
        selector_map={"main h1": FakeElement(text="Name")},
        fail_body=True,
    )

    metadata = await MetadataExtractor(DEFAULT_CATALOG).extract(page)

    assert metadata.name == "Name"
    assert metadata.followers is None
