"""
Scholar Search Client

Thin async wrapper around SerpAPI's Google Scholar engines:
- google_scholar_profiles (author discovery by name)
- google_scholar_author (per-author article listing, paginated)
- google_scholar (free-text keyword search)

Every failure is mapped onto the engine's error types: 429 becomes
ProviderRateLimited, anything else that is not a usable JSON document becomes
ProviderUnavailable, and a missing API key is ConfigMissing.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from scholar_aggregator.errors import ConfigMissing, ProviderRateLimited, ProviderUnavailable
from scholar_aggregator.models.publication import PublicationRecord, _as_int
from scholar_aggregator.tools.rate_limit import RateLimiter
from scholar_aggregator.utils.summary import build_summary, extract_year

logger = logging.getLogger(__name__)

# SerpAPI caps
AUTHOR_PAGE_MAX = 100
KEYWORD_PAGE_MAX = 20


def _parse_retry_after(value: Optional[str], default: int = 60) -> int:
    if not value:
        return default
    try:
        return max(int(float(value)), 1)
    except ValueError:
        return default


def article_to_record(
    article: Dict[str, Any], matched_author: Optional[str] = None
) -> PublicationRecord:
    """
    Normalize a ``google_scholar_author`` article into a PublicationRecord.

    The author list, venue and year are recombined into an
    ``"authors - venue - year"`` summary so author-listing results and
    keyword results share one shape.
    """
    raw_authors = article.get("authors")
    if isinstance(raw_authors, list):
        authors = [
            a.get("name", "") if isinstance(a, dict) else str(a) for a in raw_authors
        ]
        authors = [a for a in authors if a]
    elif isinstance(raw_authors, str) and raw_authors.strip():
        authors = [a.strip() for a in raw_authors.split(",") if a.strip()]
    else:
        authors = []

    year = None
    if article.get("year"):
        year = extract_year(str(article["year"]))

    venue = article.get("publication") or None
    if venue and year is not None:
        # "Journal 12 (3), 2020" already names the year
        venue = venue.rsplit(f", {year}", 1)[0].strip() or None

    cited_by = article.get("cited_by") or {}
    return PublicationRecord(
        title=article.get("title") or "",
        link=article.get("link") or None,
        snippet=article.get("snippet") or None,
        summary=build_summary(authors, venue, year) or None,
        citation_count=_as_int(cited_by.get("value")),
        cited_by_link=cited_by.get("link") or None,
        matched_authors=[matched_author] if matched_author else [],
    )


class ScholarClient:
    """
    SerpAPI Google Scholar client.

    Example:
        client = ScholarClient(api_key="...")
        profiles = await client.search_profiles("Philippe Ayres")
        page = await client.fetch_author_articles("IJP4K9QAAAAJ", num=100)
        await client.close()
    """

    SEARCH_URL = "https://serpapi.com/search.json"
    USER_AGENT = "ScholarAggregator/1.0 (Research Portal)"

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        discovery_timeout: float = 20.0,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """
        Args:
            api_key: SerpAPI key; calls raise ConfigMissing without one
            timeout: Timeout for article and keyword searches in seconds
            discovery_timeout: Timeout for profile discovery in seconds
            rate_limiter: Optional shared quota limiter
        """
        self.api_key = api_key
        self.timeout = timeout
        self.discovery_timeout = discovery_timeout
        self._rate_limiter = rate_limiter or RateLimiter()
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": self.USER_AGENT},
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _search(self, params: Dict[str, Any], timeout: Optional[float] = None) -> dict:
        """Issue one search request and return the decoded JSON document."""
        if not self.api_key:
            raise ConfigMissing()

        await self._rate_limiter.wait_if_needed()
        client = await self._get_client()
        engine = params.get("engine")

        try:
            response = await client.get(
                self.SEARCH_URL,
                params={**params, "api_key": self.api_key},
                timeout=timeout or self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"{engine} request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"{engine} request failed: {e}") from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(f"{engine} rate limited, retry after {retry_after}s")
            raise ProviderRateLimited(retry_after=retry_after)

        if response.status_code >= 400:
            raise ProviderUnavailable(
                f"{engine} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailable(f"{engine} returned malformed JSON") from e

        if not isinstance(data, dict):
            raise ProviderUnavailable(f"{engine} returned an unexpected document")

        error = data.get("error")
        if error:
            # An empty result set is reported as an error by SerpAPI
            if "hasn't returned any results" in str(error):
                return {}
            raise ProviderUnavailable(f"{engine} error: {error}")

        return data

    async def search_profiles(self, name: str) -> List[dict]:
        """
        Search author profiles by name.

        Returns:
            Candidate profiles (dicts with ``author_id`` and ``name``), best first
        """
        data = await self._search(
            {"engine": "google_scholar_profiles", "mauthors": name},
            timeout=self.discovery_timeout,
        )
        profiles = data.get("profiles")
        return [p for p in profiles if isinstance(p, dict)] if isinstance(profiles, list) else []

    async def fetch_author_articles(
        self,
        author_id: str,
        start: int = 0,
        num: int = AUTHOR_PAGE_MAX,
        sort: str = "pubdate",
    ) -> dict:
        """
        Fetch one page of an author's article listing.

        Returns:
            Raw document with ``articles`` and ``serpapi_pagination``
        """
        params = {
            "engine": "google_scholar_author",
            "author_id": author_id,
            "sort": sort,
            "num": str(min(num, AUTHOR_PAGE_MAX)),
        }
        if start > 0:
            params["start"] = str(start)
        return await self._search(params)

    async def search(
        self,
        query: str,
        start: int = 0,
        num: int = KEYWORD_PAGE_MAX,
        sort_by_date: bool = True,
    ) -> dict:
        """
        Keyword search.

        Returns:
            Raw document with ``organic_results`` and ``search_information``
        """
        params = {
            "engine": "google_scholar",
            "q": query,
            "start": str(start),
            "num": str(min(num, KEYWORD_PAGE_MAX)),
        }
        if sort_by_date:
            params["scisbd"] = "1"
        return await self._search(params)
