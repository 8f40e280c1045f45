"""
Pytest configuration and fixtures for Scholar Aggregator tests.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from scholar_aggregator.models import AuthorProfile
from scholar_aggregator.roster import AuthorDirectory
from scholar_aggregator.utils.cache import MemoryCacheStore
from scholar_aggregator.utils.config import AggregatorSettings


# ============================================
# Clock
# ============================================

class FakeClock:
    """Manually advanced time source for cache TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    """In-memory cache with an injectable clock."""
    return MemoryCacheStore(clock=clock)


# ============================================
# Fake provider client
# ============================================

class FakeScholarClient:
    """
    Stand-in for ScholarClient serving canned SerpAPI documents.

    Args:
        profiles: author name -> profile candidates
        articles: author id -> full article listing (paged on request)
        organic: substring of the query -> organic results
        errors: author id, author name or query substring -> exception to raise
        delay: seconds each call takes, to make overlap observable
    """

    def __init__(
        self,
        profiles: Optional[Dict[str, List[dict]]] = None,
        articles: Optional[Dict[str, List[dict]]] = None,
        organic: Optional[Dict[str, List[dict]]] = None,
        errors: Optional[Dict[str, Exception]] = None,
        delay: float = 0.0,
    ):
        self.profiles = profiles or {}
        self.articles = articles or {}
        self.organic = organic or {}
        self.errors = errors or {}
        self.delay = delay
        self.calls: List[tuple] = []
        self.in_flight = 0
        self.peak = 0
        self.closed = False
        self.api_key = "test-key"

    @property
    def has_credentials(self) -> bool:
        return True

    async def _enter(self, call: tuple, error_key: str):
        self.calls.append(call)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        for key, exc in self.errors.items():
            if key == error_key or key in error_key:
                raise exc

    async def search_profiles(self, name: str) -> List[dict]:
        await self._enter(("profiles", name), name)
        return list(self.profiles.get(name, []))

    async def fetch_author_articles(self, author_id, start=0, num=100, sort="pubdate") -> dict:
        await self._enter(("author", author_id, start, num), author_id)
        listing = self.articles.get(author_id, [])
        page = listing[start:start + num]
        data = {"articles": page}
        if start + num < len(listing):
            data["serpapi_pagination"] = {
                "next": f"https://serpapi.com/search?start={start + num}",
                "next_offset": start + num,
            }
        return data

    async def search(self, query, start=0, num=20, sort_by_date=True) -> dict:
        await self._enter(("search", query, start, num), query)
        for key, items in self.organic.items():
            if key in query:
                page = items[start:start + num]
                return {
                    "organic_results": page,
                    "search_information": {"total_results": len(items)},
                }
        return {}

    def live_calls(self, kind: Optional[str] = None) -> List[tuple]:
        return [c for c in self.calls if kind is None or c[0] == kind]

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_client():
    return FakeScholarClient()


# ============================================
# Roster and settings
# ============================================

@pytest.fixture
def roster():
    """Four authors: two with ids, one discoverable, one keyword-only."""
    return AuthorDirectory([
        AuthorProfile("Amanda Toney", author_id="id_toney", variants=("Amanda Toney", "A. Toney")),
        AuthorProfile("Fred Milgrim", author_id="id_milgrim", variants=("Fred Milgrim",)),
        AuthorProfile("Nithin Ravi", variants=("Nithin Ravi", "N. Ravi")),
        AuthorProfile("Juliana Wilson", variants=("Juliana Wilson",)),
    ])


@pytest.fixture
def settings():
    """No throttling so tests run instantly."""
    return AggregatorSettings(
        cache_backend="memory",
        throttle_delay=0.0,
        per_author_limit=20,
        max_authors=3,
    )


# ============================================
# Markers
# ============================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (hits real APIs)"
    )
    config.addinivalue_line(
        "markers", "unit: mark test as fast unit test"
    )
