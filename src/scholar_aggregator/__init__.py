"""Scholar Aggregator package.

Publications for a fixed faculty roster are gathered from Google Scholar
(via SerpAPI), deduplicated and cached. Symbols are loaded lazily via
``__getattr__`` so the cache and model modules can be imported without
pulling in the HTTP client.
"""

from importlib import import_module
from typing import Any

__all__ = [
    "AggregationService",
    "AggregationRequest",
    "AggregationResult",
    "BehaviorFlags",
    "AuthorDirectory",
    "PublicationRecord",
    "AuthorProfile",
    "ScholarClient",
    "create_store",
]

_EXPORT_MAP = {
    "AggregationService": ("scholar_aggregator.service", "AggregationService"),
    "AggregationRequest": ("scholar_aggregator.service", "AggregationRequest"),
    "AggregationResult": ("scholar_aggregator.service", "AggregationResult"),
    "BehaviorFlags": ("scholar_aggregator.service", "BehaviorFlags"),
    "AuthorDirectory": ("scholar_aggregator.roster", "AuthorDirectory"),
    "PublicationRecord": ("scholar_aggregator.models", "PublicationRecord"),
    "AuthorProfile": ("scholar_aggregator.models", "AuthorProfile"),
    "ScholarClient": ("scholar_aggregator.tools.scholar_client", "ScholarClient"),
    "create_store": ("scholar_aggregator.utils.cache", "create_store"),
}


def __getattr__(name: str) -> Any:
    """Lazy-load exported package symbols on first access."""
    if name not in _EXPORT_MAP:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module_name, attr_name = _EXPORT_MAP[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
