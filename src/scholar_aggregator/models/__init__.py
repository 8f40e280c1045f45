# Publication and author data models
from .publication import (
    AuthorProfile,
    PublicationRecord,
    Resource,
    normalize_title,
    parse_cluster_id,
    slugify,
)

__all__ = [
    "AuthorProfile",
    "PublicationRecord",
    "Resource",
    "normalize_title",
    "parse_cluster_id",
    "slugify",
]
