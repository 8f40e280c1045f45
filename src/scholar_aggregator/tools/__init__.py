"""Provider client, author resolution, fetching and merging."""

from .rate_limit import RateLimiter, RequestQueue
from .scholar_client import ScholarClient, article_to_record
from .author_resolver import AuthorResolver, DiscoveryTable, canonical_name_for_slug
from .fetch_orchestrator import (
    AuthorDiagnostic,
    CollectionResult,
    FetchOrchestrator,
    build_author_query,
)
from .merge import compute_metrics, merge, merge_records, sort_records

__all__ = [
    "RateLimiter",
    "RequestQueue",
    "ScholarClient",
    "article_to_record",
    "AuthorResolver",
    "DiscoveryTable",
    "canonical_name_for_slug",
    "AuthorDiagnostic",
    "CollectionResult",
    "FetchOrchestrator",
    "build_author_query",
    "compute_metrics",
    "merge",
    "merge_records",
    "sort_records",
]
