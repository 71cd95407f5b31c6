"""
Tests for the HTTP surface

Routes run against a session registry whose orchestrators come from the
mocked harness, so no external service is contacted.
"""
import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, Mock

from loca_api.api import search as search_api
from loca_api.api.search import SessionRegistry, get_registry
from loca_api.core.config import Settings
from loca_api.core.rate_limiter import CounterStore, InMemoryCounterStore
from loca_api.main import app
from loca_api.models.errors import GeocodeNotFoundError


class BrokenStore(CounterStore):
    async def get(self, identity):
        raise OSError("disk unavailable")

    async def put(self, record):
        raise OSError("disk unavailable")


BODY = {
    "source_place_ids": ["src-1"],
    "source_names": ["Bonanza Coffee"],
    "destination": "New York",
    "establishment_type": "cafe",
}


@pytest.fixture
def api(harness):
    h = harness(page_size=2)
    sessions = SessionRegistry(factory=lambda: h.orchestrator, counter_store=InMemoryCounterStore())
    app.dependency_overrides[get_registry] = lambda: sessions
    client = TestClient(app)
    client.headers.update({"X-Session-Id": "session-1"})
    yield client, h, sessions
    app.dependency_overrides.clear()


class TestSearchEndpoint:

    def test_search_returns_first_page(self, api):
        client, h, _ = api
        response = client.post("/api/search", json=BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "session-1"
        assert data["cached"] is False
        assert [m["place"]["id"] for m in data["matches"]] == ["c1", "c2"]
        assert data["has_more"] is True
        assert data["total_shown"] == 2
        assert [k["term"] for k in data["keywords"]] == ["cafe", "coffee", "cozy", "laptop"]

    def test_repeat_search_is_cached(self, api):
        client, h, _ = api
        first = client.post("/api/search", json=BODY).json()
        second = client.post("/api/search", json=BODY).json()

        assert second["cached"] is True
        assert second["matches"] == first["matches"]
        assert h.geocoder.resolve.await_count == 1

    def test_load_more(self, api):
        client, _, _ = api
        client.post("/api/search", json=BODY)
        response = client.post("/api/search/more", json=BODY)

        assert response.status_code == 200
        assert [m["place"]["id"] for m in response.json()["matches"]] == ["c1", "c2", "c3"]
        assert response.json()["has_more"] is False

    def test_load_more_without_search_is_404(self, api):
        client, _, _ = api
        response = client.post("/api/search/more", json=BODY)
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    def test_geocode_not_found(self, api):
        client, h, _ = api
        h.geocoder.resolve = AsyncMock(side_effect=GeocodeNotFoundError("Atlantis"))

        response = client.post("/api/search", json={**BODY, "destination": "Atlantis"})

        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["code"] == "GEOCODE_NOT_FOUND"
        assert detail["message"] == 'Could not find location for "Atlantis". Please try another city or neighborhood.'
        assert detail["session_id"] == "session-1"

    def test_rate_limited(self, api):
        client, h, _ = api
        h.orchestrator.rate_limiter.max_searches = 1
        client.post("/api/search", json=BODY)

        response = client.post("/api/search", json={**BODY, "destination": "Boston"})

        assert response.status_code == 429
        detail = response.json()["detail"]
        assert detail["code"] == "RATE_LIMITED"
        assert detail["reset_at"] is not None

    def test_search_in_progress(self, api):
        client, h, _ = api
        h.orchestrator._in_flight = True

        response = client.post("/api/search", json=BODY)

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "SEARCH_IN_PROGRESS"

    def test_invalid_body(self, api):
        client, _, _ = api
        response = client.post("/api/search", json={**BODY, "source_place_ids": ["  "]})
        assert response.status_code == 422

        response = client.post("/api/search", json={**BODY, "establishment_type": "zoo"})
        assert response.status_code == 422

        response = client.post("/api/search", json={**BODY, "vibes": ["rooftop"]})
        assert response.status_code == 422


class TestSessionEndpoints:

    def test_status_and_cache_clear(self, api):
        client, h, _ = api
        assert client.get("/api/search/status").status_code == 404

        client.post("/api/search", json=BODY)
        status = client.get("/api/search/status").json()
        assert status["stage"] == "DONE"
        assert status["in_flight"] is False

        cleared = client.delete("/api/search/cache").json()
        assert cleared == {"session_id": "session-1", "cleared": True}
        client.post("/api/search", json=BODY)
        assert h.geocoder.resolve.await_count == 2

    def test_rate_limit_status(self, api):
        client, _, _ = api
        response = client.get("/api/rate-limit/status", headers={"X-User-Id": "user-42"})

        assert response.status_code == 200
        data = response.json()
        assert data["identities"]["user"]["identity"] == "user-42"
        assert data["identities"]["ip"]["search_count"] == 0
        assert data["blocked_by"] is None

    def test_health(self, api):
        client, _, _ = api
        assert client.get("/health").json() == {"status": "healthy"}


def _session_orchestrator(in_flight=False):
    orchestrator = Mock()
    orchestrator.in_flight = in_flight
    orchestrator.penalization.history.close = AsyncMock()
    return orchestrator


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestSessionRegistry:

    @pytest.mark.asyncio
    async def test_least_recently_used_session_dropped_at_capacity(self):
        built = []

        def factory():
            built.append(_session_orchestrator())
            return built[-1]

        config = Settings(max_sessions=2, session_idle_minutes=30)
        sessions = SessionRegistry(config=config, factory=factory, counter_store=InMemoryCounterStore())

        first = await sessions.get("s1")
        await sessions.get("s2")
        assert await sessions.get("s1") is first
        await sessions.get("s3")

        assert len(sessions) == 2
        assert sessions.peek("s2") is None
        assert sessions.peek("s1") is first
        built[1].penalization.history.close.assert_awaited_once()
        first.penalization.history.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_idle_sessions_expire(self):
        clock = FakeClock()
        config = Settings(max_sessions=100, session_idle_minutes=10)
        sessions = SessionRegistry(
            config=config, factory=_session_orchestrator, counter_store=InMemoryCounterStore(), clock=clock,
        )

        idle = await sessions.get("idle")
        clock.now = 5 * 60
        await sessions.get("active")
        clock.now = 11 * 60
        await sessions.get("active")

        assert sessions.peek("idle") is None
        assert sessions.peek("active") is not None
        idle.penalization.history.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_running_search_is_never_dropped(self):
        busy = _session_orchestrator(in_flight=True)
        queue = [busy, _session_orchestrator()]
        config = Settings(max_sessions=1, session_idle_minutes=30)
        sessions = SessionRegistry(config=config, factory=lambda: queue.pop(0), counter_store=InMemoryCounterStore())

        await sessions.get("busy")
        await sessions.get("other")

        assert sessions.peek("busy") is busy
        busy.penalization.history.close.assert_not_called()

    def test_rate_limit_status_with_store_down(self):
        sessions = SessionRegistry(factory=_session_orchestrator, counter_store=BrokenStore())
        app.dependency_overrides[get_registry] = lambda: sessions
        try:
            response = TestClient(app).get("/api/rate-limit/status")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 200
        assert response.json()["blocked_by"] == "store"


class TestLifespan:

    def test_shutdown_closes_search_sessions(self, monkeypatch):
        close = AsyncMock()
        monkeypatch.setattr(search_api.registry, "close", close)

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            close.assert_not_called()

        close.assert_awaited_once()
