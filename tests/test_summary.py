"""Tests for publication summary parsing."""

import pytest

from scholar_aggregator.utils.summary import (
    build_summary,
    extract_authors,
    extract_venue,
    extract_year,
)


class TestExtractYear:
    @pytest.mark.parametrize("summary,expected", [
        ("A Toney, P Ayres - Journal of Emergency Medicine, 2022 - Elsevier", 2022),
        ("M Thiessen - Ann Emerg Med, 1999", 1999),
        ("No year here", None),
        ("Volume 3021 issue 12", None),
        ("", None),
        (None, None),
    ])
    def test_extract_year(self, summary, expected):
        assert extract_year(summary) == expected

    def test_last_year_in_segment_wins(self):
        assert extract_year("X - Proceedings 2019, 2021") == 2021

    def test_page_range_before_year(self):
        summary = "A Smith, B Jones - Journal of Ultrasound in Medicine 34 (10), 2045-2052 - 2015"
        assert extract_year(summary) == 2015

    def test_page_range_in_venue_segment(self):
        summary = "A Smith - J Ultrasound Med 34 (10), 2045-2052, 2015 - Wiley"
        assert extract_year(summary) == 2015


class TestExtractAuthors:
    def test_comma_separated(self):
        summary = "A Toney, P Ayres, M Heffler - Journal of Emergency Medicine, 2022 - Elsevier"
        assert extract_authors(summary) == ["A Toney", "P Ayres", "M Heffler"]

    def test_truncated_list(self):
        assert extract_authors("A Toney, P Ayres… - J Ultrasound, 2020") == ["A Toney", "P Ayres"]

    def test_lone_venue_segment(self):
        assert extract_authors("Journal of Emergency Medicine, 2022") == []

    def test_no_match(self):
        assert extract_authors(None) == []
        assert extract_authors("   ") == []


class TestExtractVenue:
    def test_strips_trailing_year(self):
        assert extract_venue("A Toney - Journal of Emergency Medicine, 2022 - Elsevier") == \
            "Journal of Emergency Medicine"

    def test_no_venue(self):
        assert extract_venue("A Toney") is None


class TestBuildSummary:
    def test_round_trip_fields(self):
        summary = build_summary(["P Ayres", "M Heffler"], "The Ultrasound Journal", 2022)
        assert summary == "P Ayres, M Heffler - The Ultrasound Journal - 2022"
        assert extract_year(summary) == 2022
        assert extract_authors(summary) == ["P Ayres", "M Heffler"]

    def test_missing_parts(self):
        assert build_summary([], None, 2020) == "2020"
        assert build_summary() == ""
