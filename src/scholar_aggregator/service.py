"""
Aggregation Service

Entry point used by the web layer. For each request it builds a cache key
from the query and behavior flags, serves the full deduplicated result set
from cache when possible, and otherwise resolves, fetches and merges every
selected roster author before caching the full set. Pagination is applied on
the way out, so one cached set serves every page.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from scholar_aggregator.errors import (
    ConfigMissing,
    InvalidRequest,
    ProviderError,
    ProviderRateLimited,
)
from scholar_aggregator.models import AuthorProfile, PublicationRecord
from scholar_aggregator.roster import AuthorDirectory
from scholar_aggregator.tools.author_resolver import (
    AuthorResolver,
    DiscoveryTable,
    canonical_name_for_slug,
)
from scholar_aggregator.tools.fetch_orchestrator import AuthorDiagnostic, FetchOrchestrator
from scholar_aggregator.tools.merge import compute_metrics, merge
from scholar_aggregator.tools.rate_limit import RateLimiter, RequestQueue
from scholar_aggregator.tools.scholar_client import KEYWORD_PAGE_MAX, ScholarClient
from scholar_aggregator.utils.cache import KeyValueStore, create_store, make_cache_key
from scholar_aggregator.utils.config import AggregatorSettings, get_api_key, load_config
from scholar_aggregator.utils.observability import Stopwatch, log_prefix, new_request_id, timed

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 500
MAX_PAGE_SIZE = 50
MIN_PER_AUTHOR_LIMIT = 3
MAX_PER_AUTHOR_LIMIT = 100
MAX_METRICS_PAGES = 5

AGGREGATE_SCOPE = "research-all-aggregated"
METRICS_SCOPE = "metrics-v1"
CAPPED_AUTHOR = "rate-limit-guard"


@dataclass
class BehaviorFlags:
    """
    Request toggles that change how results are gathered.

    Attributes:
        authors_only: Only fetch authors with a resolvable profile id; no
            keyword fallback (default False)
        include_all_authors: Process the whole roster, ignoring max_authors
        offline_only: Never call the provider; per-author cache misses are
            reported and skipped
        per_author_limit: Records fetched per author (None: configured default)
        max_authors: Roster entries processed (None: configured default)
        force_refresh: Bypass the aggregated-result cache on read
        skip_cache_write: Do not store the freshly computed result set
        return_all: Return the whole set instead of one page
    """

    authors_only: bool = False
    include_all_authors: bool = False
    offline_only: bool = False
    per_author_limit: Optional[int] = None
    max_authors: Optional[int] = None
    force_refresh: bool = False
    skip_cache_write: bool = False
    return_all: bool = False


@dataclass
class AggregationRequest:
    """One incoming aggregation call."""

    base_query: str = ""
    start: int = 0
    num: int = 20
    flags: BehaviorFlags = field(default_factory=BehaviorFlags)


@dataclass
class _Plan:
    """A validated request with every default resolved."""

    base_query: str
    start: int
    num: Optional[int]
    per_author_limit: int
    max_authors: int
    flags: BehaviorFlags

    @property
    def scope(self) -> str:
        f = self.flags
        return (
            f"{AGGREGATE_SCOPE}"
            f"|authorsOnly={str(f.authors_only).lower()}"
            f"|includeAll={str(f.include_all_authors).lower()}"
            f"|offlineOnly={str(f.offline_only).lower()}"
            f"|perAuthor={self.per_author_limit}"
            f"|maxAuthors={self.max_authors}"
        )


@dataclass
class CacheStatus:
    from_cache: bool = False
    stale: bool = False
    age_days: Optional[float] = None


@dataclass
class AggregationResult:
    """Page of merged results plus whole-set metrics and diagnostics."""

    results: List[dict]
    total: int
    metrics: Dict[str, int]
    diagnostics: List[AuthorDiagnostic]
    base_query: str
    start: int
    num: Optional[int]
    authors_considered: int = 0
    from_cache: bool = False
    stale: bool = False
    cache_age_days: Optional[float] = None
    request_id: str = ""
    response_time_ms: int = 0

    @property
    def records(self) -> List[PublicationRecord]:
        return [PublicationRecord.from_dict(r) for r in self.results]

    def to_response(self) -> dict:
        """Render the JSON document served to the presentation layer."""
        metadata = {
            "requestId": self.request_id,
            "fromCache": self.from_cache,
            "stale": self.stale,
            "responseTimeMs": self.response_time_ms,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "start": self.start,
            "num": self.num,
            "authorsProcessed": [d.to_dict() for d in self.diagnostics],
            "totalCollectedBeforePaging": self.total,
        }
        if self.cache_age_days is not None:
            metadata["cacheAgeDays"] = round(self.cache_age_days, 2)

        return {
            "results": self.results,
            "search_information": {
                "total_results": self.total,
                "query_displayed": self.base_query,
                "authors_considered": self.authors_considered,
            },
            "aggregated_metrics": self.metrics,
            "metadata": metadata,
        }


def _coerce_int(value: Any, name: str) -> int:
    """Integer request parameter; numeric strings are accepted."""
    if isinstance(value, bool):
        raise InvalidRequest(f"Invalid {name} parameter")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise InvalidRequest(f"Invalid {name} parameter") from None
    raise InvalidRequest(f"Invalid {name} parameter")


class AggregationService:
    """
    Aggregate publications across the author roster.

    Example:
        service = AggregationService.from_config()
        result = await service.aggregate(AggregationRequest("cardiac vexus", start=0, num=20))
        payload = result.to_response()
        await service.close()
    """

    def __init__(
        self,
        client: ScholarClient,
        store: KeyValueStore,
        directory: AuthorDirectory,
        settings: Optional[AggregatorSettings] = None,
        discovery_table: Optional[DiscoveryTable] = None,
    ):
        """
        Args:
            client: Provider client
            store: Cache shared by every component
            directory: Author roster
            settings: Tunables (defaults if omitted)
            discovery_table: Process-scoped discovered ids; created here if omitted
        """
        self.settings = settings or AggregatorSettings()
        self.client = client
        self.store = store
        self.directory = directory
        self.queue = RequestQueue(concurrency=self.settings.concurrency)
        self.resolver = AuthorResolver(
            client, store, table=discovery_table or DiscoveryTable(), queue=self.queue
        )
        self.orchestrator = FetchOrchestrator(
            client,
            self.resolver,
            store,
            queue=self.queue,
            throttle_delay=self.settings.throttle_delay,
            max_pages=self.settings.max_pages,
        )

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "AggregationService":
        """Wire up client, store and roster from configs/config.yaml and the environment."""
        config = load_config() if config is None else config
        settings = AggregatorSettings.from_config(config)

        api_key = get_api_key(config)
        if not api_key:
            logger.warning("No SerpAPI key configured; only cached results can be served")

        client = ScholarClient(
            api_key=api_key,
            rate_limiter=RateLimiter(
                max_calls=settings.rate_limit_calls,
                window_seconds=settings.rate_limit_window,
            ),
        )
        if settings.cache_backend == "sqlite":
            store_kwargs = {"path": f"{settings.cache_dir.rstrip('/')}/cache.sqlite"}
        elif settings.cache_backend == "file":
            store_kwargs = {"cache_dir": settings.cache_dir}
        else:
            store_kwargs = {}
        store = create_store(
            settings.cache_backend, ttl=settings.cache_ttl_seconds, **store_kwargs
        )
        return cls(client, store, AuthorDirectory.from_config(config), settings)

    async def close(self):
        await self.client.close()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _normalize_query(self, query: Any) -> str:
        if query is None:
            query = ""
        if not isinstance(query, str):
            raise InvalidRequest("Query must be a string")
        if len(query) > MAX_QUERY_LENGTH:
            raise InvalidRequest(
                f"Query is too long (must be less than {MAX_QUERY_LENGTH} characters)"
            )
        return query.strip() or self.settings.default_query

    def _plan(self, request: AggregationRequest) -> _Plan:
        flags = request.flags
        base_query = self._normalize_query(request.base_query)

        start = _coerce_int(request.start, "start")
        if start < 0:
            raise InvalidRequest("Invalid start parameter: must be >= 0")

        num: Optional[int] = None
        if not flags.return_all:
            num = _coerce_int(request.num, "num")
            if not 1 <= num <= MAX_PAGE_SIZE:
                raise InvalidRequest(f"Invalid num parameter: must be 1-{MAX_PAGE_SIZE}")

        if flags.per_author_limit is None:
            per_author = self.settings.per_author_limit
        else:
            per_author = _coerce_int(flags.per_author_limit, "perAuthorLimit")
            if not 1 <= per_author <= MAX_PER_AUTHOR_LIMIT:
                raise InvalidRequest(
                    f"Invalid perAuthorLimit parameter: must be 1-{MAX_PER_AUTHOR_LIMIT}"
                )
        per_author = max(MIN_PER_AUTHOR_LIMIT, min(per_author, MAX_PER_AUTHOR_LIMIT))

        roster_size = len(self.directory)
        if flags.include_all_authors:
            max_authors = roster_size
        else:
            if flags.max_authors is None:
                max_authors = self.settings.max_authors
            else:
                max_authors = _coerce_int(flags.max_authors, "maxAuthors")
                if max_authors < 1:
                    raise InvalidRequest("Invalid maxAuthors parameter: must be >= 1")
            max_authors = min(max_authors, roster_size)

        return _Plan(
            base_query=base_query,
            start=start,
            num=num,
            per_author_limit=per_author,
            max_authors=max_authors,
            flags=flags,
        )

    # ------------------------------------------------------------------
    # Cache-or-compute
    # ------------------------------------------------------------------

    async def _cached_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[dict]],
        is_usable: Callable[[Any], bool],
        force_refresh: bool = False,
        write: bool = True,
    ) -> Tuple[dict, CacheStatus]:
        """
        Serve ``key`` from cache, else compute and store it.

        When the provider rate limits the computation, the newest entry for
        the key is served even if expired. Without one the error propagates.
        """
        if not force_refresh:
            cached = self.store.get(key)
            if is_usable(cached):
                return cached, CacheStatus(from_cache=True)

        try:
            payload = await compute()
        except ProviderRateLimited as e:
            stale = self.store.get_stale(key)
            if stale is None or not is_usable(stale[0]):
                logger.error(f"{log_prefix()}Rate limited with no cached fallback")
                raise
            payload, age_seconds = stale
            logger.warning(
                f"{log_prefix()}Rate limited ({e}); serving stale cache "
                f"({age_seconds / 86400:.1f} days old)"
            )
            return payload, CacheStatus(from_cache=True, stale=True, age_days=age_seconds / 86400)

        if write:
            self.store.put(key, payload)
        return payload, CacheStatus()

    @staticmethod
    def _is_record_payload(payload: Any) -> bool:
        return isinstance(payload, dict) and isinstance(payload.get("records"), list)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def cache_key_for(self, request: AggregationRequest) -> str:
        """Aggregation cache key: query plus every flag that changes the record set."""
        plan = self._plan(request)
        return make_cache_key(plan.base_query, 0, 0, plan.scope)

    @timed(level=logging.INFO)
    async def aggregate(self, request: AggregationRequest) -> AggregationResult:
        """
        Aggregate, merge and paginate publications for the roster.

        Raises:
            InvalidRequest: Bad query or pagination (nothing is fetched)
            ConfigMissing: A live call was needed and no API key is configured
            ProviderRateLimited: Throttled with no cached result to fall back on
        """
        watch = Stopwatch()
        request_id = new_request_id("research-all")
        plan = self._plan(request)
        key = make_cache_key(plan.base_query, 0, 0, plan.scope)

        payload, status = await self._cached_compute(
            key,
            functools.partial(self._compute, plan),
            self._is_record_payload,
            force_refresh=plan.flags.force_refresh,
            write=not plan.flags.skip_cache_write,
        )

        records = payload["records"]
        page = records if plan.num is None else records[plan.start:plan.start + plan.num]
        metrics = compute_metrics([PublicationRecord.from_dict(r) for r in records])
        diagnostics = [AuthorDiagnostic.from_dict(d) for d in payload.get("authorsProcessed", [])]
        if status.from_cache:
            # Replayed from the stored aggregate, nothing was fetched now
            for diagnostic in diagnostics:
                diagnostic.from_cache = True

        result = AggregationResult(
            results=page,
            total=len(records),
            metrics=metrics,
            diagnostics=diagnostics,
            base_query=plan.base_query,
            start=plan.start,
            num=plan.num,
            authors_considered=payload.get("authorsConsidered", len(self.directory)),
            from_cache=status.from_cache,
            stale=status.stale,
            cache_age_days=status.age_days,
            request_id=request_id,
            response_time_ms=watch.elapsed_ms,
        )
        logger.info(
            f"{log_prefix()}Aggregation returned {len(page)} of {result.total} records "
            f"(fromCache={result.from_cache}, stale={result.stale})"
        )
        return result

    async def _compute(self, plan: _Plan) -> dict:
        authors = self.directory.all()
        if not authors:
            raise ConfigMissing("No authors configured")

        selected = authors[:plan.max_authors]
        logger.info(
            f"{log_prefix()}Aggregating {len(selected)}/{len(authors)} authors "
            f"for query: {plan.base_query}"
        )
        collection = await self.orchestrator.collect(
            selected,
            plan.base_query,
            plan.per_author_limit,
            authors_only=plan.flags.authors_only,
            offline_only=plan.flags.offline_only,
        )

        diagnostics = list(collection.diagnostics)
        if len(selected) < len(authors):
            diagnostics.append(AuthorDiagnostic(
                author=CAPPED_AUTHOR, from_cache=True, note="author processing capped"
            ))
        if collection.failed_authors:
            logger.warning(
                f"{log_prefix()}Partial results, failed authors: {collection.failed_authors}"
            )

        merged = merge(collection.records)
        return {
            "baseQuery": plan.base_query,
            "authorsConsidered": len(authors),
            "records": [r.to_dict() for r in merged],
            "authorsProcessed": [d.to_dict() for d in diagnostics],
        }

    # ------------------------------------------------------------------
    # Single author
    # ------------------------------------------------------------------

    async def author_research(
        self,
        slug: str,
        author_id: Optional[str] = None,
        limit: Optional[int] = None,
        force_refresh: bool = False,
    ) -> dict:
        """
        Publications of one faculty member, by route slug.

        The id comes from ``author_id`` if given, else the roster, else the
        discovery table or a live profile search on the slug's canonical name.

        Returns:
            Response document; ``metadata.noAuthorId`` is set when no profile exists
        """
        watch = Stopwatch()
        request_id = new_request_id(f"faculty-{slug}")

        if not isinstance(slug, str) or not slug.strip():
            raise InvalidRequest("Faculty ID must be a non-empty string")
        slug = slug.strip()
        if limit is not None:
            limit = _coerce_int(limit, "limit")
            if limit < 1:
                raise InvalidRequest("Invalid limit parameter: must be >= 1")

        canonical = canonical_name_for_slug(slug, self.directory)
        profile = next(
            (a for a in self.directory if a.canonical == canonical),
            AuthorProfile(canonical=canonical, slug=slug),
        )
        if author_id and author_id.strip():
            effective_id = author_id.strip()
        else:
            effective_id = await self.resolver.resolve(profile)

        metadata = {"requestId": request_id, "facultyId": slug}

        if not effective_id:
            logger.info(f"{log_prefix()}No Scholar profile for {slug}, returning empty results")
            return {
                "results": [],
                "search_information": {
                    "query_displayed": f"No Google Scholar profile available for {slug}",
                    "total_results": 0,
                },
                "metadata": {
                    **metadata,
                    "fromCache": False,
                    "noAuthorId": True,
                    "responseTimeMs": watch.elapsed_ms,
                },
            }

        key = make_cache_key(f"author:{effective_id}", 0, 0, slug)

        async def compute() -> dict:
            records = await self.orchestrator.fetch_by_id(
                effective_id, matched_author=profile.canonical
            )
            return {"authorId": effective_id, "records": [r.to_dict() for r in records]}

        payload, status = await self._cached_compute(
            key, compute, self._is_record_payload, force_refresh=force_refresh
        )
        records = payload["records"]
        return {
            "results": records[:limit] if limit else records,
            "search_information": {
                "query_displayed": f"author:{effective_id}",
                "total_results": len(records),
            },
            "metadata": {
                **metadata,
                "authorId": effective_id,
                "fromCache": status.from_cache,
                "stale": status.stale,
                "responseTimeMs": watch.elapsed_ms,
            },
        }

    # ------------------------------------------------------------------
    # Query metrics
    # ------------------------------------------------------------------

    async def query_metrics(
        self,
        query: Optional[str] = None,
        max_pages: int = MAX_METRICS_PAGES,
        num: int = KEYWORD_PAGE_MAX,
    ) -> dict:
        """
        Citation totals for a keyword query over its first few result pages.

        Pages are fetched sequentially (at most 5 of at most 20 results) and
        fetching stops at the first short page. A provider error after the
        first page ends the scan with partial totals.
        """
        watch = Stopwatch()
        request_id = new_request_id("research-metrics")
        search_query = self._normalize_query(query)
        pages = max(1, min(_coerce_int(max_pages, "maxPages"), MAX_METRICS_PAGES))
        per_page = max(1, min(_coerce_int(num, "num"), KEYWORD_PAGE_MAX))

        key = make_cache_key(search_query, 0, pages * per_page, METRICS_SCOPE)

        async def compute() -> dict:
            total_citations = 0
            processed = 0
            total_from_api = 0

            for page_index in range(pages):
                try:
                    data = await self.queue.run(functools.partial(
                        self.client.search, search_query,
                        start=page_index * per_page, num=per_page,
                    ))
                except ProviderError as e:
                    if page_index == 0:
                        raise
                    logger.warning(f"{log_prefix()}Stopping metrics scan at page {page_index}: {e}")
                    break

                if page_index == 0:
                    info = data.get("search_information") or {}
                    total_from_api = int(info.get("total_results") or 0)

                items = data.get("organic_results")
                items = [i for i in items if isinstance(i, dict)] if isinstance(items, list) else []
                processed += len(items)
                total_citations += sum(
                    PublicationRecord.from_organic_result(i).citation_count for i in items
                )

                if len(items) < per_page:
                    break
                if page_index < pages - 1 and self.settings.throttle_delay > 0:
                    await asyncio.sleep(self.settings.throttle_delay)

            average = int(total_citations / processed + 0.5) if processed else 0
            return {
                "totalPublications": total_from_api,
                "totalCitations": total_citations,
                "averageCitations": average,
                "processedResults": processed,
                "totalResultsFromAPI": total_from_api,
                "query": search_query,
            }

        payload, status = await self._cached_compute(
            key, compute, lambda p: isinstance(p, dict) and "totalCitations" in p
        )
        logger.info(
            f"{log_prefix()}Metrics for '{search_query}': {payload['totalCitations']} citations "
            f"over {payload['processedResults']} results"
        )
        return {
            **payload,
            "requestId": request_id,
            "fromCache": status.from_cache,
            "stale": status.stale,
            "responseTimeMs": watch.elapsed_ms,
        }

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cache_stats(self) -> dict:
        return {
            **self.store.stats(),
            "discoveredAuthors": len(self.resolver.table),
        }

    def sweep_cache(self) -> int:
        return self.store.sweep()

    def clear_cache(self) -> int:
        return self.store.clear()
