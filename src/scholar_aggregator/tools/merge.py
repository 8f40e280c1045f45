"""
Record merging.

The same publication is usually surfaced by several author queries (every
co-author on the roster finds it). Records are grouped by citation key, the
first one seen becomes the canonical copy, and later duplicates only fill in
what it lacks.
"""

import logging
from typing import Dict, List, Sequence

from scholar_aggregator.models import PublicationRecord

logger = logging.getLogger(__name__)


def sort_key(record: PublicationRecord):
    """Newest first (undated = 0), then most cited."""
    return (-(record.year or 0), -record.citation_count)


def sort_records(records: Sequence[PublicationRecord]) -> List[PublicationRecord]:
    """Stable sort by year desc, then citation count desc."""
    return sorted(records, key=sort_key)


def _absorb(base: PublicationRecord, duplicate: PublicationRecord) -> None:
    """Fold a duplicate into the canonical record in place."""
    # Provider counts drift slightly between queries; keep the highest
    if duplicate.citation_count > base.citation_count:
        base.citation_count = duplicate.citation_count
        if duplicate.cited_by_link:
            base.cited_by_link = duplicate.cited_by_link

    if not base.link and duplicate.link:
        base.link = duplicate.link

    if duplicate.resources:
        by_link = {r.link: r for r in base.resources}
        for resource in duplicate.resources:
            by_link[resource.link] = resource
        base.resources = list(by_link.values())

    for name in duplicate.matched_authors:
        if name not in base.matched_authors:
            base.matched_authors.append(name)


def merge_records(records: Sequence[PublicationRecord]) -> List[PublicationRecord]:
    """
    Deduplicate by citation key, without sorting.

    Records with an empty key are kept as-is, each on its own. Input records
    are never modified.

    Returns:
        Unique records in first-seen order
    """
    merged: List[PublicationRecord] = []
    by_key: Dict[str, PublicationRecord] = {}
    duplicates = 0

    for record in records:
        key = record.citation_key
        if not key:
            merged.append(record.copy())
            continue

        existing = by_key.get(key)
        if existing is None:
            base = record.copy()
            by_key[key] = base
            merged.append(base)
        else:
            _absorb(existing, record)
            duplicates += 1

    if duplicates:
        logger.debug(f"Merged {duplicates} duplicate records into {len(merged)}")
    return merged


def merge(records: Sequence[PublicationRecord]) -> List[PublicationRecord]:
    """Deduplicate and sort."""
    return sort_records(merge_records(records))


def compute_metrics(records: Sequence[PublicationRecord]) -> Dict[str, int]:
    """
    Totals over a full result set.

    ``averageCitations`` is rounded half up to an integer; 0 for an empty set.
    """
    total_citations = sum(r.citation_count for r in records)
    count = len(records)
    average = int(total_citations / count + 0.5) if count else 0
    return {
        "totalPublications": count,
        "totalCitations": total_citations,
        "averageCitations": average,
    }
