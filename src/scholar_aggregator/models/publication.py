"""Publication and author dataclasses.

PublicationRecord is the unit the whole engine passes around: the provider
client produces it, the merge step deduplicates it by its citation key, and
the cache stores it in its ``to_dict`` form.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from scholar_aggregator.utils.summary import extract_authors, extract_year

_CLUSTER_PATTERN = re.compile(r"[?&]cluster=(\d+)")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: Optional[str]) -> str:
    """Lower-case, collapse whitespace and strip everything but [a-z0-9]."""
    if not isinstance(title, str):
        return ""
    collapsed = _WHITESPACE.sub(" ", title.lower()).strip()
    return _NON_ALNUM.sub("", collapsed)


def parse_cluster_id(link: Optional[str]) -> Optional[str]:
    """``cluster:<id>`` if the link carries a ``cluster=`` query parameter."""
    if not isinstance(link, str):
        return None
    match = _CLUSTER_PATTERN.search(link)
    return f"cluster:{match.group(1)}" if match else None


def _as_int(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class Resource:
    """A supplementary link attached to a result (PDF, HTML full text)."""

    link: str
    title: Optional[str] = None
    file_format: Optional[str] = None

    def to_dict(self) -> dict:
        return {"title": self.title, "link": self.link, "file_format": self.file_format}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        return cls(
            link=data.get("link") or "",
            title=data.get("title"),
            file_format=data.get("file_format"),
        )


@dataclass
class PublicationRecord:
    """One bibliographic item as returned by the provider."""

    title: str
    link: Optional[str] = None
    snippet: Optional[str] = None
    summary: Optional[str] = None  # "authors - venue - year"
    citation_count: int = 0
    cited_by_link: Optional[str] = None
    resources: List[Resource] = field(default_factory=list)
    matched_authors: List[str] = field(default_factory=list)
    result_id: Optional[str] = None

    @property
    def year(self) -> Optional[int]:
        return extract_year(self.summary)

    @property
    def authors(self) -> List[str]:
        return extract_authors(self.summary)

    @property
    def citation_key(self) -> str:
        """
        Identity used for deduplication, derived only from this record's fields.

        Priority: provider result id, link cluster id, normalized title plus
        year, link without fragment. Empty string when nothing usable exists.
        """
        if self.result_id:
            return self.result_id

        cluster = parse_cluster_id(self.link)
        if cluster:
            return cluster

        norm_title = normalize_title(self.title)
        if norm_title:
            year = self.year
            return f"{norm_title}:{year if year is not None else ''}"

        return (self.link or "").split("#")[0]

    def copy(self) -> "PublicationRecord":
        """Copy with independent resource and author lists."""
        return replace(
            self,
            resources=[replace(r) for r in self.resources],
            matched_authors=list(self.matched_authors),
        )

    def to_dict(self) -> dict:
        """Convert to a JSON-compatible dictionary (includes derived fields)."""
        return {
            "title": self.title,
            "link": self.link,
            "snippet": self.snippet,
            "summary": self.summary,
            "year": self.year,
            "citation_count": self.citation_count,
            "cited_by_link": self.cited_by_link,
            "resources": [r.to_dict() for r in self.resources],
            "matched_authors": list(self.matched_authors),
            "result_id": self.result_id,
            "citation_key": self.citation_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PublicationRecord":
        """Inverse of ``to_dict``. Derived fields are recomputed, not read."""
        return cls(
            title=data.get("title") or "",
            link=data.get("link") or None,
            snippet=data.get("snippet") or None,
            summary=data.get("summary") or None,
            citation_count=_as_int(data.get("citation_count")),
            cited_by_link=data.get("cited_by_link") or None,
            resources=[
                Resource.from_dict(r) for r in data.get("resources") or []
                if isinstance(r, dict)
            ],
            matched_authors=list(data.get("matched_authors") or []),
            result_id=data.get("result_id") or None,
        )

    @classmethod
    def from_organic_result(
        cls, item: Dict[str, Any], matched_author: Optional[str] = None
    ) -> "PublicationRecord":
        """Build from a Google Scholar ``organic_results`` item."""
        cited_by = ((item.get("inline_links") or {}).get("cited_by") or {})
        publication_info = item.get("publication_info") or {}
        return cls(
            title=item.get("title") or "",
            link=item.get("link") or None,
            snippet=item.get("snippet") or None,
            summary=publication_info.get("summary") or None,
            citation_count=_as_int(cited_by.get("total")),
            cited_by_link=cited_by.get("link") or None,
            resources=[
                Resource.from_dict(r) for r in item.get("resources") or []
                if isinstance(r, dict) and r.get("link")
            ],
            matched_authors=[matched_author] if matched_author else [],
            result_id=item.get("result_id") or None,
        )

    def __str__(self) -> str:
        return f"{self.title} ({self.year or 'n.d.'}) - {self.citation_count} citations"


def slugify(name: str) -> str:
    """URL-safe slug: lower-case words joined by hyphens."""
    return "-".join(re.findall(r"[a-z0-9]+", name.lower()))


@dataclass(frozen=True)
class AuthorProfile:
    """One roster entry."""

    canonical: str
    slug: str = ""
    author_id: Optional[str] = None
    variants: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.slug:
            object.__setattr__(self, "slug", slugify(self.canonical))
        object.__setattr__(self, "variants", tuple(self.variants))

    @property
    def search_variants(self) -> Tuple[str, ...]:
        """Name variants for keyword fallback, never empty."""
        return self.variants or (self.canonical,)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorProfile":
        canonical = data.get("canonical") or data.get("name")
        if not canonical:
            raise ValueError(f"Author entry has no canonical name: {data!r}")
        return cls(
            canonical=canonical,
            slug=data.get("slug") or "",
            author_id=data.get("author_id") or data.get("authorId") or None,
            variants=tuple(data.get("variants") or ()),
        )
