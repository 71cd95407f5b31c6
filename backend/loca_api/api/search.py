"""Search API endpoints"""
from collections import OrderedDict
from datetime import timedelta
from typing import Callable, Dict, Optional
import logging
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from loca_api.core.config import Settings, settings
from loca_api.core.google_fetcher import GoogleFetcher
from loca_api.core.identity import RequestIdentity, get_identity
from loca_api.core.openai_client import OpenAIClient
from loca_api.core.orchestrator import SearchOrchestrator, build_orchestrator
from loca_api.core.rate_limiter import CounterStore, RateLimiter, SqliteCounterStore
from loca_api.models.errors import ApplicationError, SearchInProgressError
from loca_api.models.place_data import SearchRequest, SearchResultsCacheEntry
from loca_api.models.schemas import ErrorResponse, SearchBody, SearchResponse

router = APIRouter()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


class SessionRegistry:
    """
    One orchestrator per session id, sharing the network clients and the
    rate-limit counter store (in production, put the store on shared disk).

    Sessions are kept least recently used first. A session idle for longer
    than ``session_idle_minutes`` is dropped, and past ``max_sessions`` the
    least recently used ones go; a session with a search in flight is never
    dropped. Dropping a session closes the clients it owns.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        factory: Optional[Callable[[], SearchOrchestrator]] = None,
        counter_store: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or settings
        self._factory = factory
        self._store = counter_store
        self._clock = clock
        self._fetcher: Optional[GoogleFetcher] = None
        self._openai: Optional[OpenAIClient] = None
        self._sessions: "OrderedDict[str, SearchOrchestrator]" = OrderedDict()
        self._last_used: Dict[str, float] = {}

    @property
    def max_sessions(self) -> int:
        return max(1, self.config.max_sessions)

    @property
    def idle_seconds(self) -> float:
        return self.config.session_idle_minutes * 60

    @property
    def counter_store(self) -> CounterStore:
        if self._store is None:
            self._store = SqliteCounterStore(self.config.rate_limit_db_path)
        return self._store

    @property
    def rate_limiter(self) -> RateLimiter:
        return RateLimiter(
            self.counter_store,
            max_searches=self.config.rate_limit_max_searches,
            window=timedelta(hours=self.config.rate_limit_window_hours),
        )

    def _build(self) -> SearchOrchestrator:
        if self._factory is not None:
            return self._factory()
        if self._fetcher is None:
            self._fetcher = GoogleFetcher(api_key=self.config.google_maps_api_key)
        if self._openai is None:
            self._openai = OpenAIClient(api_key=self.config.openai_api_key)
        return build_orchestrator(
            self.config, counter_store=self.counter_store, fetcher=self._fetcher, openai_client=self._openai
        )

    async def get(self, session_id: str) -> SearchOrchestrator:
        """Session's orchestrator, created on first use; marks the session as used"""
        now = self._clock()
        orchestrator = self._sessions.get(session_id)
        if orchestrator is None:
            orchestrator = self._build()
            self._sessions[session_id] = orchestrator
            logger.info(f"Created search session {session_id} | active_sessions={len(self._sessions)}")
        self._sessions.move_to_end(session_id)
        self._last_used[session_id] = now
        await self._evict(now, keep=session_id)
        return orchestrator

    def peek(self, session_id: str) -> Optional[SearchOrchestrator]:
        return self._sessions.get(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    async def _evict(self, now: float, keep: str):
        expired = [
            sid for sid, orchestrator in self._sessions.items()
            if sid != keep and not orchestrator.in_flight and now - self._last_used[sid] >= self.idle_seconds
        ]
        for sid in expired:
            await self._drop(sid, "idle")

        # oldest first; sessions with a search running are skipped
        for sid in list(self._sessions):
            if len(self._sessions) <= self.max_sessions:
                break
            if sid != keep and not self._sessions[sid].in_flight:
                await self._drop(sid, "capacity")

    async def _drop(self, session_id: str, reason: str):
        orchestrator = self._sessions.pop(session_id)
        self._last_used.pop(session_id, None)
        if orchestrator.penalization.history is not None:
            await orchestrator.penalization.history.close()
        logger.info(f"Dropped search session {session_id} | reason={reason} | active_sessions={len(self._sessions)}")

    async def close(self):
        """Close shared clients; per-session orchestrators only hold references to them"""
        if self._fetcher is not None:
            await self._fetcher.close()
        if self._openai is not None:
            await self._openai.close()
        for orchestrator in self._sessions.values():
            if orchestrator.penalization.history is not None:
                await orchestrator.penalization.history.close()
        if isinstance(self._store, SqliteCounterStore):
            self._store.close()
        self._sessions.clear()
        self._last_used.clear()


registry = SessionRegistry()


def get_registry() -> SessionRegistry:
    return registry


# Converts API input into the validated domain request; bad input is a client error.
def _to_request(body: SearchBody) -> SearchRequest:
    try:
        return body.to_request()
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=[err["msg"] for err in e.errors()])


def _raise_http(error: ApplicationError, session_id: str):
    detail = error.model_dump()
    detail["session_id"] = session_id
    raise HTTPException(status_code=error.http_status, detail=detail)


# POST /api/search: runs the full pipeline (or answers from the session's cache).
# Returns 409 if this session already has a search running.
@router.post("/search", response_model=SearchResponse, responses=ERROR_RESPONSES)
async def search(
    body: SearchBody,
    identity: RequestIdentity = Depends(get_identity),
    sessions: SessionRegistry = Depends(get_registry),
) -> SearchResponse:
    logger.info(f"POST /api/search | session={identity.session_id} | destination={body.destination!r}")
    request = _to_request(body)
    orchestrator = await sessions.get(identity.session_id)
    try:
        entry: Optional[SearchResultsCacheEntry] = await orchestrator.execute(
            request, user_id=identity.user_id, ip=identity.ip, auth_token=identity.auth_token
        )
    except ApplicationError as e:
        _raise_http(e, identity.session_id)
    if entry is None:
        _raise_http(SearchInProgressError(), identity.session_id)
    cached = bool(orchestrator.state.metadata.get("cache_hit"))
    return SearchResponse.from_entry(identity.session_id, entry, cached=cached)


# POST /api/search/more: reveals the next page of a search already run in this session.
@router.post("/search/more", response_model=SearchResponse, responses=ERROR_RESPONSES)
async def search_more(
    body: SearchBody,
    identity: RequestIdentity = Depends(get_identity),
    sessions: SessionRegistry = Depends(get_registry),
) -> SearchResponse:
    logger.info(f"POST /api/search/more | session={identity.session_id}")
    request = _to_request(body)
    orchestrator = await sessions.get(identity.session_id)
    try:
        entry = await orchestrator.load_more(request)
    except ApplicationError as e:
        _raise_http(e, identity.session_id)
    if entry is None:
        _raise_http(SearchInProgressError(), identity.session_id)
    return SearchResponse.from_entry(identity.session_id, entry)


# DELETE /api/search/cache: forgets cached results so the next search runs fresh.
@router.delete("/search/cache")
async def clear_search_cache(
    identity: RequestIdentity = Depends(get_identity),
    sessions: SessionRegistry = Depends(get_registry),
) -> dict:
    orchestrator = sessions.peek(identity.session_id)
    if orchestrator is not None:
        orchestrator.clear_cache()
        orchestrator.reset()
    logger.info(f"Cleared search cache | session={identity.session_id}")
    return {"session_id": identity.session_id, "cleared": orchestrator is not None}


# GET /api/search/status: current stage and error of this session's last search.
@router.get("/search/status")
async def search_status(
    identity: RequestIdentity = Depends(get_identity),
    sessions: SessionRegistry = Depends(get_registry),
) -> dict:
    orchestrator = sessions.peek(identity.session_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail="Session not found")
    state = orchestrator.state
    return {
        "session_id": identity.session_id,
        "stage": state.stage.value,
        "in_flight": orchestrator.in_flight,
        "error": state.error_message,
        "latest_event": state.get_latest_event(),
    }
