"""
Fetch Orchestrator

Pulls raw publication records for a list of roster authors:
- by author id: pages through the author's article listing
- by keyword: one bounded search OR-ing the author's quoted name variants

Authors are processed in batches no larger than the concurrency bound, with a
fixed pause between batches that hit the provider. One author's failure is
recorded in its diagnostic and never stops the others; only rate limiting
and a missing credential propagate.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from scholar_aggregator.errors import ConfigMissing, ProviderRateLimited
from scholar_aggregator.models import AuthorProfile, PublicationRecord
from scholar_aggregator.tools.author_resolver import AuthorResolver
from scholar_aggregator.tools.rate_limit import RequestQueue
from scholar_aggregator.tools.scholar_client import (
    AUTHOR_PAGE_MAX,
    KEYWORD_PAGE_MAX,
    ScholarClient,
    article_to_record,
)
from scholar_aggregator.utils.cache import KeyValueStore, make_cache_key
from scholar_aggregator.utils.observability import log_prefix

logger = logging.getLogger(__name__)

OFFLINE_MISS_NOTE = "offlineOnly cache miss"
NO_PROFILE_NOTE = "no profile id"


@dataclass
class AuthorDiagnostic:
    """Outcome of one author's fetch, reported in response metadata."""

    author: str
    results: int = 0
    from_cache: bool = False
    author_id: Optional[str] = None
    query: Optional[str] = None
    note: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        data = {
            "author": self.author,
            "results": self.results,
            "fromCache": self.from_cache,
            "authorId": self.author_id,
            "query": self.query,
            "note": self.note,
            "error": self.error,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorDiagnostic":
        return cls(
            author=data.get("author", ""),
            results=int(data.get("results") or 0),
            from_cache=bool(data.get("fromCache")),
            author_id=data.get("authorId"),
            query=data.get("query"),
            note=data.get("note"),
            error=data.get("error"),
        )


@dataclass
class CollectionResult:
    """Raw records (roster order) and one diagnostic per author."""

    records: List[PublicationRecord] = field(default_factory=list)
    diagnostics: List[AuthorDiagnostic] = field(default_factory=list)

    @property
    def failed_authors(self) -> List[str]:
        return [d.author for d in self.diagnostics if d.failed]


def build_author_query(base_query: str, variants: Sequence[str]) -> str:
    """``(<base>) ("Name One" OR "Name Two")``"""
    author_filter = " OR ".join(f'"{name}"' for name in variants)
    return f"({base_query}) ({author_filter})"


class FetchOrchestrator:
    """
    Drive resolution and fetching for many authors under rate limits.

    Example:
        orchestrator = FetchOrchestrator(client, resolver, store)
        result = await orchestrator.collect(authors, "cardiac vexus", per_author_limit=20)
        print(len(result.records), result.failed_authors)
    """

    def __init__(
        self,
        client: ScholarClient,
        resolver: AuthorResolver,
        store: KeyValueStore,
        queue: Optional[RequestQueue] = None,
        throttle_delay: float = 1.0,
        max_pages: int = 10,
    ):
        """
        Args:
            client: Provider client
            resolver: Author id resolver
            store: Cache for per-author results
            queue: Concurrency bound shared with the resolver (default: 2 slots)
            throttle_delay: Seconds to pause between author batches
            max_pages: Hard ceiling on pages per author listing
        """
        self._client = client
        self._resolver = resolver
        self._store = store
        self.queue = queue or RequestQueue(concurrency=2)
        self.throttle_delay = throttle_delay
        self.max_pages = max_pages

    async def fetch_by_id(
        self,
        author_id: str,
        limit: Optional[int] = None,
        matched_author: Optional[str] = None,
        sort: str = "pubdate",
    ) -> List[PublicationRecord]:
        """
        Page through an author's article listing.

        Stops when ``limit`` items are collected, the provider reports no
        further page, or ``max_pages`` pages were fetched.

        Args:
            author_id: Provider author id
            limit: Maximum records (None = as many as max_pages allows)
            matched_author: Roster name recorded on each record
            sort: Provider sort order

        Returns:
            Up to ``limit`` records in provider order
        """
        page_size = min(limit, AUTHOR_PAGE_MAX) if limit else AUTHOR_PAGE_MAX
        articles: List[dict] = []
        start = 0
        pages = 0

        while True:
            data = await self.queue.run(functools.partial(
                self._client.fetch_author_articles,
                author_id, start=start, num=page_size, sort=sort,
            ))
            page = data.get("articles")
            page = [a for a in page if isinstance(a, dict)] if isinstance(page, list) else []
            articles.extend(page)
            pages += 1

            pagination = data.get("serpapi_pagination") or {}
            reached_limit = bool(limit) and len(articles) >= limit
            has_next = bool(pagination.get("next")) and len(page) == page_size

            if reached_limit or not has_next or pages >= self.max_pages:
                break

            next_offset = pagination.get("next_offset")
            current_start = pagination.get("current_start_index")
            if isinstance(next_offset, int) and not isinstance(next_offset, bool):
                start = next_offset
            elif isinstance(current_start, int) and not isinstance(current_start, bool):
                start = current_start + page_size
            else:
                start += page_size

        if limit:
            articles = articles[:limit]

        logger.info(
            f"{log_prefix()}Fetched {len(articles)} articles for author {author_id} "
            f"in {pages} page(s)"
        )
        return [article_to_record(a, matched_author) for a in articles]

    async def fetch_by_keyword(
        self,
        base_query: str,
        variants: Sequence[str],
        limit: int = KEYWORD_PAGE_MAX,
        matched_author: Optional[str] = None,
    ) -> List[PublicationRecord]:
        """
        Single keyword search for the base query restricted to name variants.

        Returns:
            At most ``limit`` records (provider caps a page at 20)
        """
        query = build_author_query(base_query, variants)
        data = await self.queue.run(functools.partial(
            self._client.search, query, start=0, num=limit,
        ))
        items = data.get("organic_results")
        items = [i for i in items if isinstance(i, dict)] if isinstance(items, list) else []
        return [
            PublicationRecord.from_organic_result(item, matched_author)
            for item in items[:limit]
        ]

    async def collect(
        self,
        authors: Sequence[AuthorProfile],
        base_query: str,
        per_author_limit: int,
        authors_only: bool = False,
        offline_only: bool = False,
    ) -> CollectionResult:
        """
        Resolve and fetch every author, accumulating records in roster order.

        Args:
            authors: Roster entries to process
            base_query: Topical query used by keyword fallback
            per_author_limit: Maximum records per author
            authors_only: Skip authors without a provider id instead of
                falling back to keyword search
            offline_only: Serve per-author results from cache only

        Returns:
            CollectionResult with records and per-author diagnostics

        Raises:
            ProviderRateLimited: The provider throttled a call
            ConfigMissing: A live call was needed and no API key is set
        """
        result = CollectionResult()
        batch_size = self.queue.concurrency

        for offset in range(0, len(authors), batch_size):
            batch = authors[offset:offset + batch_size]
            outcomes = await asyncio.gather(
                *(
                    self._collect_author(a, base_query, per_author_limit, authors_only, offline_only)
                    for a in batch
                ),
                return_exceptions=True,
            )

            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome

            made_live_call = False
            for records, diagnostic, live in outcomes:
                result.records.extend(records)
                result.diagnostics.append(diagnostic)
                made_live_call = made_live_call or live

            more_remaining = offset + batch_size < len(authors)
            if made_live_call and more_remaining and self.throttle_delay > 0:
                await asyncio.sleep(self.throttle_delay)

        return result

    async def _collect_author(
        self,
        author: AuthorProfile,
        base_query: str,
        limit: int,
        authors_only: bool,
        offline_only: bool,
    ) -> Tuple[List[PublicationRecord], AuthorDiagnostic, bool]:
        """Records, diagnostic and whether a live provider fetch happened."""
        diagnostic = AuthorDiagnostic(author=author.canonical)
        live = False

        try:
            author_id = await self._resolver.resolve(author, offline=offline_only)

            if author_id:
                diagnostic.author_id = author_id
                cache_key = make_cache_key(
                    f"author:{author_id}", 0, limit, f"author-id-{author_id}"
                )
                fetch = functools.partial(
                    self.fetch_by_id, author_id, limit=limit, matched_author=author.canonical
                )
            elif authors_only:
                diagnostic.note = NO_PROFILE_NOTE
                return [], diagnostic, False
            else:
                diagnostic.query = build_author_query(base_query, author.search_variants)
                cache_key = make_cache_key(
                    diagnostic.query, 0, limit, f"author-{author.slug}"
                )
                fetch = functools.partial(
                    self.fetch_by_keyword,
                    base_query, author.search_variants,
                    limit=limit, matched_author=author.canonical,
                )

            cached = self._store.get(cache_key)
            if isinstance(cached, dict) and isinstance(cached.get("records"), list):
                records = [
                    PublicationRecord.from_dict(r) for r in cached["records"]
                    if isinstance(r, dict)
                ]
                diagnostic.from_cache = True
            elif offline_only:
                diagnostic.note = OFFLINE_MISS_NOTE
                return [], diagnostic, False
            else:
                live = True
                records = await fetch()
                self._store.put(cache_key, {
                    "author": author.canonical,
                    "authorId": author_id,
                    "query": diagnostic.query,
                    "records": [r.to_dict() for r in records],
                })
                logger.info(
                    f"{log_prefix()}Fetched and cached {len(records)} records for "
                    f"{author.canonical}"
                )

            diagnostic.results = len(records)
            return records, diagnostic, live

        except (ProviderRateLimited, ConfigMissing):
            raise
        except Exception as e:
            logger.error(f"{log_prefix()}Fetch failed for {author.canonical}: {e}")
            diagnostic.error = str(e) or e.__class__.__name__
            return [], diagnostic, live
