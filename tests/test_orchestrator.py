"""
Tests for the search orchestrator

External services (geocoding, place directory, language model) are mocked;
rate limiting, keywords, penalization, scoring, enrichment and caching run
for real.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock

from loca_api.core.config import Settings
from loca_api.core.orchestrator import build_orchestrator
from loca_api.core.rate_limiter import InMemoryCounterStore
from loca_api.core.state_machine import SearchStage
from loca_api.models.errors import (
    ApplicationError, ErrorCode, GeocodeNotFoundError, PipelineInternalError, RateLimitedError,
    SourceMetadataUnavailableError,
)
from loca_api.models.place_data import CandidatePage, SearchRequest


class TestSearchPipeline:

    @pytest.mark.asyncio
    async def test_end_to_end(self, harness, search_request):
        h = harness()

        entry = await h.orchestrator.execute(search_request, ip="1.2.3.4")

        assert [k.term for k in entry.keywords] == ["cafe", "coffee", "cozy", "laptop"]
        assert [m.place_id for m in entry.matches] == ["c1", "c2", "c3"]
        assert entry.penalized_ids == ["c3"]
        assert entry.shown_place_ids == ["c1", "c2", "c3"]
        assert entry.offset == 3
        assert entry.has_more_pages is False
        assert entry.matches[0].matched_keywords == ["cafe", "cozy", "laptop"]
        assert [m.reasoning for m in entry.matches] == ["because c1", "because c2", "because c3"]
        assert entry.matches[0].distance_to_center == pytest.approx(0.0)
        assert entry.center == h.geocode.center
        assert h.orchestrator.state.stage == SearchStage.DONE
        assert not h.orchestrator.in_flight

        search_kwargs = h.retriever.search_all.call_args
        assert search_kwargs.kwargs["exclude_ids"] == ["src-1"]
        assert search_kwargs.args[1] == h.geocode.bounds
        assert search_kwargs.args[2] == ["cafe", "coffee", "cozy", "laptop"]
        h.geocoder.resolve.assert_awaited_once_with("New York")

    @pytest.mark.asyncio
    async def test_sources_fetched_concurrently(self, harness):
        h = harness()
        request = SearchRequest(source_place_ids=["src-1", "src-2", "src-3"], destination="New York")

        await h.orchestrator.execute(request)

        fetched = [c.args[0] for c in h.fetcher.fetch_place.await_args_list]
        assert fetched == ["src-1", "src-2", "src-3"]
        assert h.retriever.search_all.call_args.kwargs["exclude_ids"] == ["src-1", "src-2", "src-3"]

    @pytest.mark.asyncio
    async def test_vibes_shape_keywords_and_history_query(self, harness):
        h = harness()
        request = SearchRequest(source_place_ids=["src-1"], destination="New York", vibes=["brunch"])

        entry = await h.orchestrator.execute(request)

        assert [k.term for k in entry.keywords] == ["cafe", "coffee", "brunch", "breakfast", "cozy", "laptop"]
        assert h.retriever.search_all.call_args.args[2] == ["cafe", "coffee", "brunch", "breakfast", "cozy", "laptop"]
        assert h.history.fetch_penalized_ids.call_args.kwargs["vibes"] == ["brunch"]

    @pytest.mark.asyncio
    async def test_repeat_request_served_from_cache(self, harness, search_request):
        h = harness()

        first = await h.orchestrator.execute(search_request, ip="1.2.3.4")
        second = await h.orchestrator.execute(search_request, ip="1.2.3.4")

        assert second.model_dump_json() == first.model_dump_json()
        assert h.orchestrator.state.metadata["cache_hit"] is True
        assert h.geocoder.resolve.await_count == 1
        assert h.fetcher.fetch_place.await_count == 1
        assert h.retriever.search_all.await_count == 1
        assert h.reasoner.reasons.await_count == 1
        assert (await h.store.get("ip-1.2.3.4")).count == 1

    @pytest.mark.asyncio
    async def test_penalization_failure_is_not_fatal(self, harness, search_request):
        h = harness()
        h.history.fetch_penalized_ids = AsyncMock(side_effect=RuntimeError("history down"))

        entry = await h.orchestrator.execute(search_request)

        assert entry.penalized_ids == []
        assert len(entry.matches) == 3

    @pytest.mark.asyncio
    async def test_no_candidates_is_empty_result(self, harness, search_request):
        h = harness(candidates=[])

        entry = await h.orchestrator.execute(search_request)

        assert entry.matches == []
        assert entry.has_more_pages is False
        h.reasoner.reasons.assert_not_called()


class TestSearchErrors:

    @pytest.mark.asyncio
    async def test_rate_limited_before_any_external_call(self, harness):
        h = harness(max_searches=1)
        await h.orchestrator.execute(SearchRequest(source_place_ids=["src-1"], destination="Paris"), ip="1.1.1.1")

        with pytest.raises(RateLimitedError) as exc_info:
            await h.orchestrator.execute(SearchRequest(source_place_ids=["src-1"], destination="Rome"), ip="1.1.1.1")

        assert exc_info.value.reset_at is not None
        assert exc_info.value.blocked_by == "ip"
        assert exc_info.value.http_status == 429
        assert h.geocoder.resolve.await_count == 1
        assert h.orchestrator.state.stage == SearchStage.ERROR
        assert h.orchestrator.state.failed_stage == SearchStage.RATE_LIMIT_CHECK

    @pytest.mark.asyncio
    async def test_geocode_error_releases_guard(self, harness, search_request):
        h = harness()
        h.geocoder.resolve = AsyncMock(side_effect=GeocodeNotFoundError("New York"))

        with pytest.raises(GeocodeNotFoundError):
            await h.orchestrator.execute(search_request)

        state = h.orchestrator.state
        assert state.stage == SearchStage.ERROR
        assert state.error_message.startswith('Could not find location for "New York"')
        assert not h.orchestrator.in_flight

        h.geocoder.resolve = AsyncMock(return_value=h.geocode)
        entry = await h.orchestrator.execute(search_request)
        assert entry is not None
        assert h.orchestrator.state.stage == SearchStage.DONE

    @pytest.mark.asyncio
    async def test_source_failure_aborts_search(self, harness, search_request):
        h = harness()
        h.fetcher.fetch_place = AsyncMock(side_effect=SourceMetadataUnavailableError("src-1", "HTTP 404"))

        with pytest.raises(SourceMetadataUnavailableError):
            await h.orchestrator.execute(search_request)

        h.retriever.search_all.assert_not_called()
        assert h.orchestrator.state.failed_stage == SearchStage.SOURCE_METADATA_FETCH

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped_with_stage(self, harness, search_request):
        h = harness()
        h.retriever.search_all = AsyncMock(side_effect=RuntimeError("socket closed"))

        with pytest.raises(PipelineInternalError) as exc_info:
            await h.orchestrator.execute(search_request)

        assert exc_info.value.message == "Search failed during candidate search: socket closed"
        assert h.orchestrator.state.error_message == exc_info.value.message
        assert not h.orchestrator.in_flight

    @pytest.mark.asyncio
    async def test_failed_search_is_not_cached(self, harness, search_request):
        h = harness()
        h.retriever.search_all = AsyncMock(side_effect=RuntimeError("boom"))
        with pytest.raises(PipelineInternalError):
            await h.orchestrator.execute(search_request)
        assert len(h.orchestrator.cache) == 0


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_second_call_ignored_while_running(self, harness, search_request):
        h = harness()
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_resolve(destination):
            started.set()
            await release.wait()
            return h.geocode

        h.geocoder.resolve = AsyncMock(side_effect=slow_resolve)

        first = asyncio.create_task(h.orchestrator.execute(search_request))
        await started.wait()
        assert h.orchestrator.in_flight

        assert await h.orchestrator.execute(search_request) is None
        assert await h.orchestrator.load_more(search_request) is None

        release.set()
        entry = await first
        assert entry is not None
        assert h.geocoder.resolve.await_count == 1
        assert not h.orchestrator.in_flight


class TestLoadMore:

    @pytest.mark.asyncio
    async def test_reveals_ranked_matches_then_next_directory_page(self, harness, make_candidate, search_request):
        h = harness(page_size=2, next_page_token="t2", history_ids=set())
        h.retriever.search = AsyncMock(return_value=CandidatePage(candidates=[make_candidate("c4")]))

        entry = await h.orchestrator.execute(search_request)
        assert entry.shown_place_ids == ["c1", "c2"]
        assert entry.has_more_pages is True
        assert entry.matches[2].reasoning is None

        entry = await h.orchestrator.load_more(search_request)
        assert entry.shown_place_ids == ["c1", "c2", "c3"]
        assert entry.matches[2].reasoning == "because c3"
        assert entry.has_more_pages is True
        h.retriever.search.assert_not_called()

        entry = await h.orchestrator.load_more(search_request)
        assert entry.shown_place_ids == ["c1", "c2", "c3", "c4"]
        assert entry.has_more_pages is False
        search_call = h.retriever.search.call_args
        assert set(search_call.args[3]) == {"src-1", "c1", "c2", "c3"}
        assert search_call.kwargs["page_token"] == "t2"

        # source place comes from the cached entry
        assert h.fetcher.fetch_place.await_count == 1

    @pytest.mark.asyncio
    async def test_history_applies_to_later_directory_pages(self, harness, make_candidate, search_request):
        h = harness(candidates=[make_candidate("a")], next_page_token="t2", page_size=1, history_ids={"n1"})
        h.retriever.search = AsyncMock(return_value=CandidatePage(
            candidates=[make_candidate("n1"), make_candidate("n2")]
        ))

        entry = await h.orchestrator.execute(search_request)
        assert entry.penalized_ids == []
        assert entry.history_ids == ["n1"]

        entry = await h.orchestrator.load_more(search_request)
        scores = {m.place_id: m.score for m in entry.matches}
        assert scores["n1"] < scores["n2"]
        assert entry.shown_place_ids == ["a", "n2"]
        assert entry.penalized_ids == ["n1"]
        assert h.history.fetch_penalized_ids.await_count == 1

    @pytest.mark.asyncio
    async def test_load_more_is_not_rate_limited(self, harness, search_request):
        h = harness(page_size=1, max_searches=1)
        await h.orchestrator.execute(search_request, ip="1.1.1.1")
        entry = await h.orchestrator.load_more(search_request)
        assert entry.offset == 2

    @pytest.mark.asyncio
    async def test_load_more_without_search(self, harness, search_request):
        h = harness()
        with pytest.raises(ApplicationError) as exc_info:
            await h.orchestrator.load_more(search_request)
        assert exc_info.value.code == ErrorCode.NOT_FOUND
        assert not h.orchestrator.in_flight


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_reset_and_clear_cache(self, harness, search_request):
        h = harness()
        await h.orchestrator.execute(search_request)

        h.orchestrator.reset()
        assert h.orchestrator.state.stage == SearchStage.IDLE
        assert len(h.orchestrator.cache) == 1

        h.orchestrator.clear_cache()
        await h.orchestrator.execute(search_request)
        assert h.geocoder.resolve.await_count == 2

    @pytest.mark.asyncio
    async def test_context_manager_closes_clients(self, harness):
        h = harness()
        async with h.orchestrator:
            pass
        h.fetcher.close.assert_awaited_once()
        h.history.close.assert_awaited_once()

    def test_build_from_settings(self):
        config = Settings(
            google_maps_api_key="maps-key",
            openai_api_key="sk-test",
            results_page_size=5,
            max_candidates=25,
            penalty_multiplier=0.25,
            interaction_history_url="",
        )
        orchestrator = build_orchestrator(config, counter_store=InMemoryCounterStore())

        assert orchestrator.page_size == 5
        assert orchestrator.max_candidates == 25
        assert orchestrator.weights.penalty_multiplier == 0.25
        assert orchestrator.penalization.history is None
        assert orchestrator.rate_limiter.max_searches == config.rate_limit_max_searches
