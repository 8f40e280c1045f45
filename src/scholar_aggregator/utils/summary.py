"""
Publication summary parsing.

Scholar results carry a free-text summary of the form
``"A Author, B Author - Venue, 2021 - publisher.com"``. These helpers pull the
year, author list and venue out of it. They never raise: anything that does
not match yields ``None`` or an empty list.
"""

import re
from typing import List, Optional

YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")
_SEGMENT_SPLIT = re.compile(r"\s+-\s+")
_TRAILING_YEAR = re.compile(r"[,\s]*\b(?:19|20)\d{2}\b\s*$")
_ELLIPSIS = "…"


def _segments(summary: Optional[str]) -> List[str]:
    if not isinstance(summary, str):
        return []
    return [part.strip() for part in _SEGMENT_SPLIT.split(summary.strip()) if part.strip()]


def extract_year(summary: Optional[str]) -> Optional[int]:
    """
    Publication year from the summary, or None.

    The last ``" - "`` segment holding a 19xx/20xx number wins, and within it
    the last such number, so page ranges like ``2045-2052`` ahead of the
    year are skipped.
    """
    for segment in reversed(_segments(summary)):
        matches = YEAR_PATTERN.findall(segment)
        if matches:
            return int(matches[-1])
    return None


def extract_authors(summary: Optional[str]) -> List[str]:
    """Author names from the leading segment of the summary."""
    parts = _segments(summary)
    if not parts:
        return []

    head = parts[0]
    # A lone segment with digits is a venue/year, not an author list
    if len(parts) == 1 and re.search(r"\d", head):
        return []

    names = []
    for name in head.split(","):
        name = name.strip().strip(_ELLIPSIS).strip()
        if name and name != "..." and not YEAR_PATTERN.fullmatch(name):
            names.append(name)
    return names


def extract_venue(summary: Optional[str]) -> Optional[str]:
    """Venue from the second summary segment with any trailing year removed."""
    parts = _segments(summary)
    if len(parts) < 2:
        return None
    venue = _TRAILING_YEAR.sub("", parts[1]).strip(" ,")
    return venue or None


def build_summary(
    authors: Optional[List[str]] = None,
    venue: Optional[str] = None,
    year: Optional[int] = None,
) -> str:
    """Compose an ``"authors - venue - year"`` summary from its parts."""
    parts = []
    if authors:
        parts.append(", ".join(authors))
    if venue:
        parts.append(venue)
    if year:
        parts.append(str(year))
    return " - ".join(parts)
