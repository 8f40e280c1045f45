"""
Author Resolver

Maps roster authors to Google Scholar author ids. Resolution falls through:
roster id -> process-scoped discovery table -> cached discovery -> live
profile search. Not finding an id is a normal outcome; the caller then falls
back to a keyword search on the author's name variants.
"""

import logging
import re
import threading
from typing import Awaitable, Callable, Dict, Iterable, Optional, TypeVar

from scholar_aggregator.errors import ProviderError
from scholar_aggregator.models import AuthorProfile
from scholar_aggregator.tools.rate_limit import RequestQueue
from scholar_aggregator.tools.scholar_client import ScholarClient
from scholar_aggregator.utils.cache import KeyValueStore, make_cache_key
from scholar_aggregator.utils.observability import log_prefix

logger = logging.getLogger(__name__)

T = TypeVar("T")

DISCOVERY_SCOPE = "authorDiscovery"

_DEGREE_SUFFIX = re.compile(
    r"-(md|do|mph|phd|ms|mhs|mba|dnp|rn|np|mpp|mha|dds|dmd|faem|facc|facs|frcp|frca)(-.+)?$",
    re.IGNORECASE,
)
_DEGREE_WORD = re.compile(
    r"\b(md|do|mph|phd|ms|mhs|mba|dnp|rn|np|mpp|mha|dds|dmd)\b", re.IGNORECASE
)


def discovery_cache_key(name: str) -> str:
    return make_cache_key(f"profiles:{name}", 0, 1, DISCOVERY_SCOPE)


def canonical_name_for_slug(slug: str, authors: Iterable[AuthorProfile]) -> str:
    """
    Canonical author name for a faculty route id.

    Degree suffixes (``-md``, ``-md-mph``, ...) are stripped and the result
    matched against roster slugs; otherwise the slug is humanized.
    """
    base_slug = _DEGREE_SUFFIX.sub("", slug)
    for author in authors:
        if author.slug == base_slug:
            return author.canonical

    humanized = _DEGREE_WORD.sub("", slug.replace("-", " "))
    return re.sub(r"\s+", " ", humanized).strip()


class DiscoveryTable:
    """
    Author ids discovered during this process's lifetime.

    Created once at service start and handed to the resolver; lookups are
    case-insensitive on the author name.
    """

    def __init__(self):
        self._ids: Dict[str, str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _normalize(name: str) -> str:
        return name.lower().strip()

    def get(self, name: str) -> Optional[str]:
        with self._lock:
            return self._ids.get(self._normalize(name))

    def set(self, name: str, author_id: str) -> None:
        with self._lock:
            self._ids[self._normalize(name)] = author_id

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._ids)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


class AuthorResolver:
    """
    Resolve AuthorProfiles to provider author ids.

    Example:
        resolver = AuthorResolver(client, store, DiscoveryTable())
        author_id = await resolver.resolve(profile)  # None -> keyword fallback
    """

    def __init__(
        self,
        client: ScholarClient,
        store: KeyValueStore,
        table: Optional[DiscoveryTable] = None,
        queue: Optional[RequestQueue] = None,
    ):
        self._client = client
        self._store = store
        self.table = table if table is not None else DiscoveryTable()
        self._queue = queue

    async def _call(self, factory: Callable[[], Awaitable[T]]) -> T:
        if self._queue is not None:
            return await self._queue.run(factory)
        return await factory()

    async def resolve(self, profile: AuthorProfile, offline: bool = False) -> Optional[str]:
        """
        Find the provider id for an author.

        Args:
            profile: Roster entry
            offline: Never make a live discovery call

        Returns:
            Author id or None
        """
        if profile.author_id:
            return profile.author_id

        known = self.table.get(profile.canonical)
        if known:
            logger.debug(f"Discovery table hit for {profile.canonical}: {known}")
            return known

        discovered = await self.discover(profile.canonical, offline=offline)
        if discovered:
            self.table.set(profile.canonical, discovered)
        return discovered

    async def discover(self, name: str, offline: bool = False) -> Optional[str]:
        """
        Look an author up by name, reading and writing the discovery cache.

        Provider failures are logged and reported as no match. ConfigMissing
        is not caught.

        Returns:
            First candidate's author id, or None
        """
        key = discovery_cache_key(name)
        cached = self._store.get(key)
        if isinstance(cached, dict) and "author_id" in cached:
            return cached.get("author_id") or None

        if offline:
            return None

        try:
            profiles = await self._call(lambda: self._client.search_profiles(name))
        except ProviderError as e:
            logger.warning(f"{log_prefix()}Author id discovery failed for {name}: {e}")
            return None

        best = profiles[0] if profiles else None
        author_id = best.get("author_id") if best else None

        self._store.put(key, {
            "author_id": author_id,
            "candidates": [
                {"author_id": p.get("author_id"), "name": p.get("name")}
                for p in profiles
            ],
        })

        if author_id:
            logger.info(f"{log_prefix()}Discovered author id for {name}: {author_id}")
        else:
            logger.info(f"{log_prefix()}No Scholar profile found for {name}")
        return author_id
