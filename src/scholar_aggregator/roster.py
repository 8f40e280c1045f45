"""
Author Directory

The fixed roster of faculty whose publications are aggregated. The roster
can be overridden by an ``authors:`` list in configs/config.yaml; each entry
takes ``canonical``, optional ``slug``, optional ``author_id`` and optional
``variants``.
"""

import logging
from typing import Iterator, List, Optional, Sequence

from scholar_aggregator.models import AuthorProfile

logger = logging.getLogger(__name__)

DEFAULT_AUTHORS = [
    {"canonical": "Matthew Riscinti", "variants": ["Matthew Riscinti", "M. Riscinti", "M Riscinti"]},
    {"canonical": "Amanda Toney", "author_id": "0ng0NC8AAAAJ", "variants": ["Amanda Toney", "A. Toney", "A Toney"]},
    {"canonical": "Nhu-Nguyen Le", "author_id": "McxOucoAAAAJ", "variants": ["Nhu-Nguyen Le", "N. Le", "N Le", "Nhu Nguyen Le"]},
    {"canonical": "Fred Milgrim", "author_id": "_95Go9AAAAAJ", "variants": ["Fred Milgrim", "F. Milgrim", "F Milgrim", "Fred N. Milgrim"]},
    {"canonical": "Molly Thiessen", "author_id": "J8hM6OAAAAAJ", "variants": ["Molly Thiessen", "M. Thiessen", "M Thiessen"]},
    {"canonical": "Gabriel Siegel", "author_id": "XKnXMIkAAAAJ", "variants": ["Gabriel Siegel", "G. Siegel", "G Siegel", "Gabe Siegel"]},
    {"canonical": "Peter Alsharif", "author_id": "DGtqTA0AAAAJ", "variants": ["Peter Alsharif", "P. Alsharif", "P Alsharif"]},
    {"canonical": "Nithin Ravi", "variants": ["Nithin Ravi", "N. Ravi", "N Ravi"]},
    {"canonical": "Juliana Wilson", "variants": ["Juliana Wilson", "J. Wilson", "J Wilson"]},
    {"canonical": "Samuel Lam", "variants": ["Samuel Lam", "S. Lam", "S Lam", "Samuel H.F.L. Lam", "Samuel H. F. L. Lam"]},
    {"canonical": "Joe Brown", "variants": ["Joe Brown", "J. Brown", "J Brown", "Joseph Brown"]},
    {"canonical": "Philippe Ayres", "author_id": "IJP4K9QAAAAJ", "variants": ["Philippe Ayres", "P. Ayres", "P Ayres"]},
    {"canonical": "Michael Heffler", "author_id": "nqM3RiUAAAAJ", "variants": ["Michael Heffler", "M. Heffler", "M Heffler"]},
    {"canonical": "Priya Prasher", "author_id": "pXMunFoAAAAJ", "variants": ["Priya Prasher", "P. Prasher", "P Prasher"]},
]


class AuthorDirectory:
    """
    Ordered, read-only collection of AuthorProfiles.

    Usage:
        directory = AuthorDirectory.from_config(load_config())
        author = directory.get_by_slug("philippe-ayres")
    """

    def __init__(self, authors: Sequence[AuthorProfile]):
        self._authors: List[AuthorProfile] = list(authors)

    @classmethod
    def from_entries(cls, entries: Sequence[dict]) -> "AuthorDirectory":
        return cls([AuthorProfile.from_dict(e) for e in entries])

    @classmethod
    def default(cls) -> "AuthorDirectory":
        return cls.from_entries(DEFAULT_AUTHORS)

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "AuthorDirectory":
        """Roster from the ``authors:`` config section, else the built-in one."""
        entries = (config or {}).get("authors")
        if not entries:
            return cls.default()
        directory = cls.from_entries(entries)
        logger.info(f"Loaded {len(directory)} authors from config")
        return directory

    def get_by_slug(self, slug: str) -> Optional[AuthorProfile]:
        for author in self._authors:
            if author.slug == slug:
                return author
        return None

    def all(self) -> List[AuthorProfile]:
        return list(self._authors)

    def __iter__(self) -> Iterator[AuthorProfile]:
        return iter(self._authors)

    def __len__(self) -> int:
        return len(self._authors)

    def __getitem__(self, index):
        return self._authors[index]
