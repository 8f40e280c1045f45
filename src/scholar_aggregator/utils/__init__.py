"""Utility modules for the aggregation engine."""

from scholar_aggregator.utils.cache import (
    SCHEMA_VERSION,
    DEFAULT_TTL,
    CacheEntry,
    KeyValueStore,
    JsonFileCacheStore,
    SqliteCacheStore,
    MemoryCacheStore,
    make_cache_key,
    create_store,
)
from scholar_aggregator.utils.config import (
    AggregatorSettings,
    load_config,
    clear_config_cache,
    get_api_key,
)
from scholar_aggregator.utils.observability import Stopwatch, new_request_id, get_request_id, timed
from scholar_aggregator.utils.summary import (
    extract_year,
    extract_authors,
    extract_venue,
    build_summary,
)

__all__ = [
    "SCHEMA_VERSION",
    "DEFAULT_TTL",
    "CacheEntry",
    "KeyValueStore",
    "JsonFileCacheStore",
    "SqliteCacheStore",
    "MemoryCacheStore",
    "make_cache_key",
    "create_store",
    "AggregatorSettings",
    "load_config",
    "clear_config_cache",
    "get_api_key",
    "Stopwatch",
    "new_request_id",
    "get_request_id",
    "timed",
    "extract_year",
    "extract_authors",
    "extract_venue",
    "build_summary",
]
