"""Tests for the aggregation service: caching, pagination, flags and degradation."""

import json
from dataclasses import replace

import pytest

from scholar_aggregator.errors import (
    ConfigMissing,
    InvalidRequest,
    ProviderRateLimited,
    ProviderUnavailable,
)
from scholar_aggregator.models import AuthorProfile
from scholar_aggregator.roster import AuthorDirectory
from scholar_aggregator.service import (
    CAPPED_AUTHOR,
    AggregationRequest,
    AggregationService,
    BehaviorFlags,
)
from scholar_aggregator.tools.merge import merge
from scholar_aggregator.tools.scholar_client import article_to_record
from scholar_aggregator.utils.cache import MemoryCacheStore
from tests.conftest import FakeScholarClient
from tests.fixtures import make_article, make_articles, make_organic_result

DAY = 24 * 60 * 60


@pytest.fixture
def build_service(memory_store, settings, roster):
    """Factory: service over the shared memory store with optional overrides."""
    def build(client, directory=None, **overrides):
        return AggregationService(
            client,
            memory_store,
            directory if directory is not None else roster,
            replace(settings, **overrides),
        )
    return build


@pytest.fixture
def roster_client():
    """Provider data for the four-author roster fixture."""
    return FakeScholarClient(
        profiles={"Nithin Ravi": [{"author_id": "id_ravi", "name": "Nithin Ravi"}]},
        articles={
            "id_toney": make_articles(4, prefix="Toney", year=2021),
            "id_milgrim": make_articles(3, prefix="Milgrim", year=2019),
            "id_ravi": make_articles(2, prefix="Ravi", year=2020),
        },
    )


def _single(author_id="id_toney", name="Amanda Toney"):
    return AuthorDirectory([AuthorProfile(name, author_id=author_id)])


class TestAggregate:
    @pytest.mark.asyncio
    async def test_idempotent_within_ttl(self, build_service, roster_client):
        service = build_service(roster_client)
        request = AggregationRequest("cardiac vexus", start=0, num=20)

        first = await service.aggregate(request)
        live_calls = len(roster_client.calls)
        second = await service.aggregate(request)

        assert first.from_cache is False
        assert second.from_cache is True
        assert len(roster_client.calls) == live_calls
        assert json.dumps(first.results) == json.dumps(second.results)
        assert json.dumps(first.metrics) == json.dumps(second.metrics)

    @pytest.mark.asyncio
    async def test_cached_aggregate_reports_authors_from_cache(self, build_service, roster_client):
        service = build_service(roster_client)
        request = AggregationRequest("cardiac vexus")

        first = await service.aggregate(request)
        second = await service.aggregate(request)

        assert any(not d.from_cache for d in first.diagnostics)
        assert second.diagnostics
        assert all(d.from_cache for d in second.diagnostics)
        processed = second.to_response()["metadata"]["authorsProcessed"]
        assert all(entry["fromCache"] is True for entry in processed)

    @pytest.mark.asyncio
    async def test_query_case_shares_cache(self, build_service, roster_client):
        service = build_service(roster_client)

        await service.aggregate(AggregationRequest("Cardiac VEXUS"))
        second = await service.aggregate(AggregationRequest(" cardiac vexus "))

        assert second.from_cache is True

    @pytest.mark.asyncio
    async def test_sorted_newest_first(self, build_service, roster_client):
        service = build_service(roster_client)

        result = await service.aggregate(AggregationRequest("vexus", num=50))

        years = [r["year"] for r in result.results]
        assert years == sorted(years, reverse=True)
        assert result.total == 4 + 3 + 2

    @pytest.mark.asyncio
    async def test_pagination_slices_sorted_set(self, build_service):
        client = FakeScholarClient(articles={"id_toney": make_articles(55)})
        service = build_service(client, directory=_single())
        flags = BehaviorFlags(per_author_limit=100)

        page = await service.aggregate(AggregationRequest("vexus", start=20, num=20, flags=flags))
        everything = await service.aggregate(
            AggregationRequest("vexus", flags=replace(flags, return_all=True))
        )

        assert page.total == 55
        assert len(everything.results) == 55
        assert page.results == everything.results[20:40]
        assert [r["title"] for r in page.results] == [f"Article {i}" for i in range(20, 40)]
        assert everything.from_cache is True

    @pytest.mark.asyncio
    async def test_page_past_end(self, build_service):
        client = FakeScholarClient(articles={"id_toney": make_articles(5)})
        service = build_service(client, directory=_single())

        result = await service.aggregate(AggregationRequest("vexus", start=20, num=20))

        assert result.results == []
        assert result.total == 5
        assert result.metrics["totalPublications"] == 5

    @pytest.mark.asyncio
    async def test_metrics_cover_whole_set(self, build_service):
        client = FakeScholarClient(articles={"id_toney": make_articles(3)})
        service = build_service(client, directory=_single())

        result = await service.aggregate(AggregationRequest("vexus", num=1))

        assert len(result.results) == 1
        assert result.metrics == {
            "totalPublications": 3,
            "totalCitations": 3 + 2 + 1,
            "averageCitations": 2,
        }

    @pytest.mark.asyncio
    async def test_partial_failure(self, build_service):
        a_articles = make_articles(2, prefix="A")
        c_articles = make_articles(3, prefix="C")
        client = FakeScholarClient(
            articles={"a1": a_articles, "c1": c_articles},
            errors={"b1": ProviderUnavailable("HTTP 503", status_code=503)},
        )
        directory = AuthorDirectory([
            AuthorProfile("Author A", author_id="a1"),
            AuthorProfile("Author B", author_id="b1"),
            AuthorProfile("Author C", author_id="c1"),
        ])
        service = build_service(client, directory=directory)

        result = await service.aggregate(AggregationRequest(
            "vexus", flags=BehaviorFlags(include_all_authors=True, return_all=True)
        ))

        expected = merge(
            [article_to_record(a, "Author A") for a in a_articles]
            + [article_to_record(a, "Author C") for a in c_articles]
        )
        assert result.results == [r.to_dict() for r in expected]
        failed = [d for d in result.diagnostics if d.failed]
        assert [d.author for d in failed] == ["Author B"]

    @pytest.mark.asyncio
    async def test_cross_author_duplicates_merged(self, build_service):
        shared = make_article(title="Shared VExUS paper", cited_by={"value": 5})
        shared_more = make_article(title="Shared VExUS paper", cited_by={"value": 12})
        client = FakeScholarClient(articles={"a1": [shared], "b1": [shared_more]})
        directory = AuthorDirectory([
            AuthorProfile("Author A", author_id="a1"),
            AuthorProfile("Author B", author_id="b1"),
        ])
        service = build_service(client, directory=directory)

        result = await service.aggregate(AggregationRequest("vexus"))

        assert result.total == 1
        assert result.results[0]["citation_count"] == 12
        assert result.results[0]["matched_authors"] == ["Author A", "Author B"]

    @pytest.mark.asyncio
    async def test_max_authors_cap_diagnostic(self, build_service, roster_client):
        service = build_service(roster_client)

        result = await service.aggregate(AggregationRequest("vexus"))

        processed = [d.author for d in result.diagnostics]
        assert processed == ["Amanda Toney", "Fred Milgrim", "Nithin Ravi", CAPPED_AUTHOR]
        assert result.diagnostics[-1].note == "author processing capped"
        assert result.authors_considered == 4

    @pytest.mark.asyncio
    async def test_include_all_authors(self, build_service, roster_client):
        service = build_service(roster_client)

        result = await service.aggregate(
            AggregationRequest("vexus", flags=BehaviorFlags(include_all_authors=True))
        )

        processed = [d.author for d in result.diagnostics]
        assert CAPPED_AUTHOR not in processed
        assert "Juliana Wilson" in processed

    def test_flags_change_cache_key(self, build_service, roster_client):
        service = build_service(roster_client)

        keys = {
            service.cache_key_for(AggregationRequest("vexus", flags=flags))
            for flags in (
                BehaviorFlags(),
                BehaviorFlags(include_all_authors=True),
                BehaviorFlags(authors_only=True),
                BehaviorFlags(offline_only=True),
                BehaviorFlags(per_author_limit=50),
                BehaviorFlags(max_authors=2),
            )
        }
        assert len(keys) == 6

    def test_pagination_not_in_cache_key(self, build_service, roster_client):
        service = build_service(roster_client)
        assert service.cache_key_for(AggregationRequest("vexus", start=0, num=20)) == \
            service.cache_key_for(AggregationRequest("vexus", start=40, num=10))

    @pytest.mark.asyncio
    async def test_blank_query_uses_default(self, build_service, roster_client):
        service = build_service(roster_client)

        response = (await service.aggregate(AggregationRequest("   "))).to_response()

        assert response["search_information"]["query_displayed"] == \
            'emergency ultrasound OR "emergency ultrasonography"'

    @pytest.mark.asyncio
    async def test_offline_only_cold_cache(self, build_service, roster_client):
        service = build_service(roster_client)

        result = await service.aggregate(
            AggregationRequest("vexus", flags=BehaviorFlags(offline_only=True))
        )

        assert roster_client.calls == []
        assert result.results == []
        assert all(
            d.note == "offlineOnly cache miss"
            for d in result.diagnostics if d.author != CAPPED_AUTHOR
        )

    @pytest.mark.asyncio
    async def test_skip_cache_write(self, build_service, roster_client):
        service = build_service(roster_client)
        flags = BehaviorFlags(skip_cache_write=True)

        await service.aggregate(AggregationRequest("vexus", flags=flags))
        second = await service.aggregate(AggregationRequest("vexus", flags=flags))

        assert second.from_cache is False

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_read(self, build_service, roster_client):
        service = build_service(roster_client)

        await service.aggregate(AggregationRequest("vexus"))
        refreshed = await service.aggregate(
            AggregationRequest("vexus", flags=BehaviorFlags(force_refresh=True))
        )

        assert refreshed.from_cache is False


class TestDegradation:
    @pytest.mark.asyncio
    async def test_rate_limit_serves_stale(self, build_service, clock):
        client = FakeScholarClient(articles={"id_toney": make_articles(3)})
        service = build_service(client, directory=_single())
        request = AggregationRequest("vexus")

        fresh = await service.aggregate(request)
        clock.advance(8 * DAY)
        client.errors = {"id_toney": ProviderRateLimited(retry_after=30)}
        stale = await service.aggregate(request)

        assert stale.stale is True
        assert stale.from_cache is True
        assert stale.cache_age_days == pytest.approx(8.0)
        assert stale.results == fresh.results
        assert stale.to_response()["metadata"]["stale"] is True

    @pytest.mark.asyncio
    async def test_rate_limit_without_cache_raises(self, build_service):
        client = FakeScholarClient(errors={"id_toney": ProviderRateLimited(retry_after=30)})
        service = build_service(client, directory=_single())

        with pytest.raises(ProviderRateLimited) as exc_info:
            await service.aggregate(AggregationRequest("vexus"))

        assert exc_info.value.retry_after == 30

    @pytest.mark.asyncio
    async def test_config_missing_raises(self, build_service):
        client = FakeScholarClient(errors={"id_toney": ConfigMissing()})
        service = build_service(client, directory=_single())

        with pytest.raises(ConfigMissing) as exc_info:
            await service.aggregate(AggregationRequest("vexus"))

        assert exc_info.value.retry_after == 300

    @pytest.mark.asyncio
    async def test_empty_roster(self, build_service, fake_client):
        service = build_service(fake_client, directory=AuthorDirectory([]))

        with pytest.raises(ConfigMissing):
            await service.aggregate(AggregationRequest("vexus"))


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_kwargs", [
        {"start": -1},
        {"start": "abc"},
        {"start": "²"},
        {"num": "¹⁰"},
        {"num": ""},
        {"num": 0},
        {"num": 51},
        {"num": True},
        {"base_query": "x" * 501},
        {"base_query": 42},
        {"flags": BehaviorFlags(per_author_limit=0)},
        {"flags": BehaviorFlags(per_author_limit=101)},
        {"flags": BehaviorFlags(max_authors=0)},
    ])
    async def test_invalid_requests_make_no_calls(self, build_service, roster_client, request_kwargs):
        service = build_service(roster_client)

        with pytest.raises(InvalidRequest):
            await service.aggregate(AggregationRequest(**request_kwargs))

        assert roster_client.calls == []

    @pytest.mark.asyncio
    async def test_numeric_strings_accepted(self, build_service, roster_client):
        service = build_service(roster_client)

        result = await service.aggregate(AggregationRequest("vexus", start="0", num="5"))

        assert result.start == 0
        assert result.num == 5

    @pytest.mark.asyncio
    async def test_return_all_ignores_num(self, build_service, roster_client):
        service = build_service(roster_client)

        result = await service.aggregate(
            AggregationRequest("vexus", num=500, flags=BehaviorFlags(return_all=True))
        )

        assert result.num is None
        assert len(result.results) == result.total


class TestResponse:
    @pytest.mark.asyncio
    async def test_response_document(self, build_service, roster_client):
        service = build_service(roster_client)

        response = (await service.aggregate(AggregationRequest("vexus", num=5))).to_response()

        assert set(response) == {
            "results", "search_information", "aggregated_metrics", "metadata"
        }
        assert response["search_information"]["total_results"] == 9
        assert response["search_information"]["authors_considered"] == 4
        metadata = response["metadata"]
        assert metadata["fromCache"] is False
        assert metadata["requestId"].startswith("research-all-")
        assert metadata["start"] == 0
        assert metadata["num"] == 5
        assert metadata["authorsProcessed"][0]["author"] == "Amanda Toney"
        assert "cacheAgeDays" not in metadata
        json.dumps(response)


class TestAuthorResearch:
    @pytest.mark.asyncio
    async def test_roster_slug_with_degree(self, build_service, roster_client):
        service = build_service(roster_client)

        response = await service.author_research("amanda-toney-md")

        assert len(response["results"]) == 4
        assert response["metadata"]["authorId"] == "id_toney"
        assert response["metadata"]["fromCache"] is False
        assert response["search_information"]["query_displayed"] == "author:id_toney"

        again = await service.author_research("amanda-toney-md", limit=2)
        assert again["metadata"]["fromCache"] is True
        assert len(again["results"]) == 2
        assert again["search_information"]["total_results"] == 4

    @pytest.mark.asyncio
    async def test_discovered_author(self, build_service, roster_client):
        service = build_service(roster_client)

        response = await service.author_research("nithin-ravi")

        assert response["metadata"]["authorId"] == "id_ravi"
        assert len(response["results"]) == 2

    @pytest.mark.asyncio
    async def test_explicit_author_id(self, build_service, roster_client):
        service = build_service(roster_client)

        response = await service.author_research("somebody", author_id="id_milgrim")

        assert response["metadata"]["authorId"] == "id_milgrim"
        assert len(response["results"]) == 3
        assert roster_client.live_calls("profiles") == []

    @pytest.mark.asyncio
    async def test_no_profile(self, build_service, roster_client):
        service = build_service(roster_client)

        response = await service.author_research("juliana-wilson-md")

        assert response["results"] == []
        assert response["metadata"]["noAuthorId"] is True
        assert roster_client.live_calls("author") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("slug,limit", [("", None), ("  ", None), ("amanda-toney", 0)])
    async def test_invalid(self, build_service, roster_client, slug, limit):
        service = build_service(roster_client)
        with pytest.raises(InvalidRequest):
            await service.author_research(slug, limit=limit)


class FlakySearchClient(FakeScholarClient):
    """Keyword search fails on every page after the first."""

    async def search(self, query, start=0, num=20, sort_by_date=True):
        if start > 0:
            raise ProviderUnavailable("HTTP 500", status_code=500)
        return await super().search(query, start=start, num=num, sort_by_date=sort_by_date)


def _metric_results(count, citations=4):
    return [
        make_organic_result(
            result_id=f"m{i}",
            inline_links={"cited_by": {"total": citations}},
        )
        for i in range(count)
    ]


class TestQueryMetrics:
    @pytest.mark.asyncio
    async def test_stops_on_short_page(self, build_service):
        client = FakeScholarClient(organic={"lung ultrasound": _metric_results(45)})
        service = build_service(client)

        metrics = await service.query_metrics("lung ultrasound")

        assert [c[2] for c in client.live_calls("search")] == [0, 20, 40]
        assert metrics["processedResults"] == 45
        assert metrics["totalCitations"] == 45 * 4
        assert metrics["averageCitations"] == 4
        assert metrics["totalPublications"] == 45
        assert metrics["fromCache"] is False

    @pytest.mark.asyncio
    async def test_page_limits_capped(self, build_service):
        client = FakeScholarClient(organic={"lung ultrasound": _metric_results(500)})
        service = build_service(client)

        metrics = await service.query_metrics("lung ultrasound", max_pages=50, num=100)

        assert len(client.live_calls("search")) == 5
        assert all(c[3] == 20 for c in client.live_calls("search"))
        assert metrics["processedResults"] == 100

    @pytest.mark.asyncio
    async def test_cached(self, build_service):
        client = FakeScholarClient(organic={"lung ultrasound": _metric_results(5)})
        service = build_service(client)

        await service.query_metrics("lung ultrasound")
        second = await service.query_metrics("LUNG ULTRASOUND")

        assert second["fromCache"] is True
        assert len(client.live_calls("search")) == 1

    @pytest.mark.asyncio
    async def test_later_page_error_gives_partial(self, build_service):
        client = FlakySearchClient(organic={"lung ultrasound": _metric_results(60)})
        service = build_service(client)

        metrics = await service.query_metrics("lung ultrasound")

        assert metrics["processedResults"] == 20

    @pytest.mark.asyncio
    async def test_first_page_error_raises(self, build_service):
        client = FakeScholarClient(errors={"lung": ProviderUnavailable("HTTP 500")})
        service = build_service(client)

        with pytest.raises(ProviderUnavailable):
            await service.query_metrics("lung ultrasound")


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_stats_sweep_clear(self, build_service, roster_client, clock):
        service = build_service(roster_client)
        await service.aggregate(AggregationRequest("vexus"))

        stats = service.cache_stats()
        assert stats["valid_entries"] > 0
        assert stats["discoveredAuthors"] == 1

        clock.advance(8 * DAY)
        assert service.sweep_cache() == stats["total_entries"]
        assert service.cache_stats()["total_entries"] == 0

        await service.aggregate(AggregationRequest("vexus"))
        assert service.clear_cache() > 0

    @pytest.mark.asyncio
    async def test_close(self, build_service, fake_client):
        service = build_service(fake_client)
        await service.close()
        assert fake_client.closed is True


class TestFromConfig:
    def test_wires_components(self, monkeypatch):
        for name in ("SERPAPI_KEY", "GOOGLE_SCHOLAR_API_KEY", "SERPAPI_API_KEY"):
            monkeypatch.delenv(name, raising=False)

        service = AggregationService.from_config({
            "serpapi": {"api_key": "cfg-key"},
            "aggregator": {"cache_backend": "memory", "concurrency": 3, "max_authors": 5},
        })

        assert service.client.api_key == "cfg-key"
        assert isinstance(service.store, MemoryCacheStore)
        assert service.queue.concurrency == 3
        assert service.settings.max_authors == 5
        assert len(service.directory) == 14
