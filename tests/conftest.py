"""Shared fixtures for the search pipeline tests"""
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from loca_api.core.enrichment import EnrichmentPipeline
from loca_api.core.keywords import KeywordConsensusExtractor
from loca_api.core.orchestrator import SearchOrchestrator
from loca_api.core.penalization import PenalizationFilter
from loca_api.core.rate_limiter import InMemoryCounterStore, RateLimiter
from loca_api.models.place_data import (
    Bounds, CandidatePage, GeocodeResult, LatLng, PlaceCandidate, Review, SearchRequest, SourcePlace,
)


def _candidate(place_id: str, **fields) -> PlaceCandidate:
    data = {
        "display_name": f"Place {place_id}",
        "location": LatLng(lat=40.71, lng=-73.99),
        "types": ["cafe", "food"],
        "rating": 4.5,
        "user_rating_count": 200,
        "price_level": 2,
    }
    data.update(fields)
    return PlaceCandidate(id=place_id, **data)


def _source(place_id: str, reviews=(), **fields) -> SourcePlace:
    data = {
        "display_name": f"Source {place_id}",
        "location": LatLng(lat=52.52, lng=13.40),
        "types": ["cafe"],
        "rating": 4.6,
        "user_rating_count": 300,
        "price_level": 2,
    }
    data.update(fields)
    return SourcePlace(id=place_id, reviews=[Review(text=t) for t in reviews], **data)


@pytest.fixture
def make_candidate():
    """Factory for directory candidates with sensible defaults"""
    return _candidate


@pytest.fixture
def make_source():
    """Factory for source places; positional reviews are review texts"""
    return _source


@pytest.fixture
def search_request() -> SearchRequest:
    return SearchRequest(
        source_place_ids=["src-1"],
        source_names=["Bonanza Coffee"],
        destination="New York",
        free_text=None,
    )


def _harness(candidates=None, next_page_token=None, max_searches=10, page_size=10, history_ids=None):
    """Orchestrator with mocked external services and real internal stages"""
    center = LatLng(lat=40.71, lng=-73.99)
    geocode = GeocodeResult(center=center, bounds=Bounds.around(center, 0.1), formatted_address="New York, NY, USA")
    source = _source("src-1", reviews=[
        "A cozy spot for my laptop.",
        "So cozy, and the laptop crowd is friendly... but only once.",
    ])
    if candidates is None:
        candidates = [
            _candidate("c2"),
            _candidate("c1", laptop_friendly=True, editorial_summary="A cozy hideaway"),
            _candidate("c3"),
        ]

    fetcher = Mock()
    fetcher.fetch_place = AsyncMock(return_value=source)
    fetcher.close = AsyncMock()

    geocoder = Mock()
    geocoder.resolve = AsyncMock(return_value=geocode)

    retriever = Mock()
    retriever.search_all = AsyncMock(
        return_value=CandidatePage(candidates=candidates, next_page_token=next_page_token)
    )
    retriever.search = AsyncMock(return_value=CandidatePage(candidates=[]))

    history = Mock()
    history.fetch_penalized_ids = AsyncMock(return_value=set(history_ids if history_ids is not None else {"c3"}))
    history.close = AsyncMock()

    reasoner = Mock()
    reasoner.reasons = AsyncMock(
        side_effect=lambda src, matches, destination: [f"because {m.place_id}" for m in matches]
    )

    store = InMemoryCounterStore()
    orchestrator = SearchOrchestrator(
        fetcher=fetcher,
        geocoder=geocoder,
        retriever=retriever,
        rate_limiter=RateLimiter(store, max_searches=max_searches),
        keyword_extractor=KeywordConsensusExtractor(),
        penalization=PenalizationFilter(history),
        enrichment=EnrichmentPipeline(None, reasoner),
        page_size=page_size,
    )
    return SimpleNamespace(
        orchestrator=orchestrator, fetcher=fetcher, geocoder=geocoder, retriever=retriever,
        history=history, reasoner=reasoner, store=store, source=source, geocode=geocode,
    )


@pytest.fixture
def harness():
    """Factory for a wired orchestrator plus handles on its mocks"""
    return _harness
