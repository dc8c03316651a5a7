"""Credits parsing from the free text of a track page."""

from __future__ import annotations

import re

from trackharvest.metadata import parse_count
from trackharvest.schemas import CreditsResult

_SECTION_HEADINGS = frozenset({"credits", "song credits"})
_SEPARATORS = re.compile(r"[&/|;\n]")
_GLUED = re.compile(r"(?<=[a-z])(?=[A-Z])")
_SURNAME_PREFIX = re.compile(r"(?:^|[\s,])(?:Mc|Mac|De|Di|La|Le|Van|Von)$")
_STREAMS = re.compile(r"(\d[\d,.]*\s*[KMB]?)\s*(?:streams?|plays?)\b", re.IGNORECASE)
_DURATION_STREAMS = re.compile(
    r"\b\d{1,2}:\d{2}\D*?(\d[\d,.]*(?:\s*[KMB](?![A-Za-z]))?)", re.IGNORECASE
)

# (result field, line pattern, split glued names)
_ROLES: tuple[tuple[str, re.Pattern[str], bool], ...] = (
    (
        "songwriters",
        re.compile(r"^(?:written by|songwriters?|writers?)\b\s*:?\s*(.*)$", re.IGNORECASE),
        True,
    ),
    (
        "composers",
        re.compile(r"^(?:composed by|composers?)\b\s*:?\s*(.*)$", re.IGNORECASE),
        True,
    ),
    (
        "producers",
        re.compile(r"^(?:produced by|producers?)\b\s*:?\s*(.*)$", re.IGNORECASE),
        True,
    ),
    (
        "publishers",
        re.compile(r"^(?:published by|publishers?)\b\s*:?\s*(.*)$", re.IGNORECASE),
        False,
    ),
    (
        "labels",
        re.compile(r"^(?:source\s*:|labels?\b\s*:?)\s*(.*)$", re.IGNORECASE),
        False,
    ),
)


def split_glued_names(text: str) -> str:
    """Insert a comma where two names were rendered without a separator.

    ``"Christopher BoysMcKinley"`` becomes ``"Christopher Boys, McKinley"``;
    surname prefixes such as ``Mc`` or ``Van`` are left joined.
    """
    pieces: list[str] = []
    start = 0
    for match in _GLUED.finditer(text):
        position = match.start()
        if _SURNAME_PREFIX.search(text[start:position]):
            continue
        pieces.append(text[start:position])
        start = position
    pieces.append(text[start:])
    return ", ".join(pieces)


def normalize_credit_names(raw: str | None, *, split_glued: bool = True) -> list[str]:
    """Split a raw credit value into distinct names.

    Separators are ``, & / | ;`` and newlines. Names are deduplicated
    case-insensitively, keeping the first spelling seen.
    """
    if not raw or not raw.strip():
        return []
    text = _SEPARATORS.sub(",", raw)
    if split_glued:
        text = split_glued_names(text)

    names: list[str] = []
    seen: set[str] = set()
    for part in text.split(","):
        name = " ".join(part.split())
        if len(name) < 2 or name.casefold() in seen:
            continue
        seen.add(name.casefold())
        names.append(name)
    return names


def _match_role(line: str) -> tuple[str, str, bool] | None:
    for field, pattern, split_glued in _ROLES:
        match = pattern.match(line)
        if match is not None:
            return field, match.group(1).strip(), split_glued
    return None


def _is_value_line(line: str) -> bool:
    if ":" in line or " by" in line.lower():
        return False
    return _match_role(line) is None


def credits_lines(text: str) -> list[str]:
    """Non-empty lines of the credits section, or of the whole text without one."""
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]
    for index, line in enumerate(lines):
        if line.casefold() in _SECTION_HEADINGS:
            return lines[index + 1 :]
    return lines


def parse_credits(track_id: str, text: str) -> CreditsResult:
    """Collect role lists from page text.

    A role's value may follow its label on the same line
    (``"Producer: Max Martin"``) or on the next line.
    """
    found: dict[str, list[str]] = {field: [] for field, _, _ in _ROLES}
    lines = credits_lines(text)
    index = 0
    while index < len(lines):
        role = _match_role(lines[index])
        index += 1
        if role is None:
            continue
        field, value, split_glued = role
        if not value and index < len(lines) and _is_value_line(lines[index]):
            value = lines[index]
            index += 1
        if not value:
            continue
        if field == "labels":
            names = [" ".join(value.split())]
        else:
            names = normalize_credit_names(value, split_glued=split_glued)
        known = {name.casefold() for name in found[field]}
        found[field].extend(name for name in names if name.casefold() not in known)
    return CreditsResult(track_id=track_id, **found)


def has_credits_section(text: str) -> bool:
    """Whether the rendered text already contains a credits heading."""
    return any(line.strip().casefold() in _SECTION_HEADINGS for line in text.splitlines())


def parse_stream_count(text: str | None) -> int | None:
    """``"1,234,567 streams"`` or ``"12.3M"`` -> integer; ``None`` when absent."""
    if not text:
        return None
    match = _STREAMS.search(text)
    return parse_count(match.group(1) if match else text)


def stream_count_from_text(text: str) -> int | None:
    """Read the play count printed next to the duration (``"3:15 • 13,343"``)."""
    for line in text.splitlines():
        match = _DURATION_STREAMS.search(line)
        if match is not None:
            return parse_count(match.group(1))
    return None
