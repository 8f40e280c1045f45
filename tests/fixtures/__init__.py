"""Shared test fixtures and factory functions for aggregation tests."""

from tests.fixtures.data import (
    make_record,
    make_organic_result,
    make_article,
    make_articles,
)

__all__ = [
    "make_record",
    "make_organic_result",
    "make_article",
    "make_articles",
]
