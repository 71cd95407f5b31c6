"""Search orchestrator - runs the place matching pipeline end to end"""
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from loca_api.core.cache import ResultsCache, compute_fingerprint
from loca_api.core.candidate_retriever import CandidateRetriever
from loca_api.core.config import Settings, settings as default_settings
from loca_api.core.enrichment import BatchReasoner, EnrichmentPipeline, ImageVibeAnalyzer
from loca_api.core.geocoder import Geocoder
from loca_api.core.google_fetcher import GoogleFetcher
from loca_api.core.keywords import FreeTextKeywordService, KeywordConsensusExtractor
from loca_api.core.openai_client import OpenAIClient
from loca_api.core.penalization import InteractionHistoryClient, PenalizationFilter
from loca_api.core.rate_limiter import CounterStore, RateLimiter, SqliteCounterStore
from loca_api.core.scoring import DEFAULT_WEIGHTS, ScoreWeights, rank
from loca_api.core.state_machine import STAGE_LABELS, SearchStage, SearchState
from loca_api.models.errors import ApplicationError, ErrorCode, PipelineInternalError, RateLimitedError
from loca_api.models.place_data import PlaceMatch, SearchRequest, SearchResultsCacheEntry, SourcePlace

logger = logging.getLogger(__name__)


# Turns a stage failure into the single error surfaced to the caller.
# ApplicationErrors keep their code; anything else is wrapped with the stage name.
def _stage_error(stage: SearchStage, error: Exception) -> ApplicationError:
    if isinstance(error, ApplicationError):
        return error
    label = STAGE_LABELS.get(stage, stage.value.lower())
    return PipelineInternalError(label, str(error) or type(error).__name__)


class SearchOrchestrator:
    """
    Owns one session's search pipeline.

    At most one search runs at a time per orchestrator: a call made while
    another is in flight is ignored (returns None). The guard is released
    on every exit path, including errors.
    """

    def __init__(
        self,
        fetcher: GoogleFetcher,
        geocoder: Geocoder,
        retriever: CandidateRetriever,
        rate_limiter: RateLimiter,
        keyword_extractor: KeywordConsensusExtractor,
        penalization: PenalizationFilter,
        enrichment: EnrichmentPipeline,
        cache: Optional[ResultsCache] = None,
        page_size: int = 10,
        max_candidates: int = 40,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
    ):
        self.fetcher = fetcher
        self.geocoder = geocoder
        self.retriever = retriever
        self.rate_limiter = rate_limiter
        self.keyword_extractor = keyword_extractor
        self.penalization = penalization
        self.enrichment = enrichment
        self.cache = cache if cache is not None else ResultsCache()
        self.page_size = max(1, page_size)
        self.max_candidates = max(1, max_candidates)
        self.weights = weights
        self.state = SearchState()
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        """Close every owned network client"""
        await self.fetcher.close()
        if self.penalization.history is not None:
            await self.penalization.history.close()

    def reset(self):
        """Back to IDLE; the results cache is kept"""
        self.state.reset()

    def clear_cache(self):
        self.cache.clear()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(
        self,
        request: SearchRequest,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        auth_token: Optional[str] = None,
    ) -> Optional[SearchResultsCacheEntry]:
        """
        Run a search and return its first page of enriched matches.

        A cached fingerprint is answered from the cache without touching the
        rate limiter or any external service. Returns None when another
        search is already running on this orchestrator.
        """
        # Check and set before the first await so concurrent calls can't both pass
        if self._in_flight:
            logger.warning("[SEARCH] Search already in progress, ignoring request")
            return None
        self._in_flight = True
        try:
            self.state.reset()
            return await self._run(request, user_id, ip, auth_token)
        finally:
            self._in_flight = False

    async def load_more(self, request: SearchRequest) -> Optional[SearchResultsCacheEntry]:
        """
        Reveal the next page for a previously executed search.

        Serves already ranked matches first and only asks the directory for
        another page once those run out. Not rate limited.
        """
        if self._in_flight:
            logger.warning("[SEARCH] Search already in progress, ignoring load-more")
            return None
        self._in_flight = True
        try:
            self.state.reset()
            return await self._load_more(request)
        finally:
            self._in_flight = False

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(
        self,
        request: SearchRequest,
        user_id: Optional[str],
        ip: Optional[str],
        auth_token: Optional[str],
    ) -> SearchResultsCacheEntry:
        fingerprint = compute_fingerprint(request)
        cached = self.cache.get(fingerprint)
        if cached is not None:
            logger.info(f"[SEARCH] Cache hit | fingerprint={fingerprint[:20]} | shown={len(cached.shown_place_ids)}")
            self.state.metadata["cache_hit"] = True
            self.state.log_event(SearchStage.CACHED, "Served from cache")
            self.state.log_event(SearchStage.DONE)
            return cached

        logger.info(
            f"[SEARCH] Starting search | destination={request.destination!r} | "
            f"type={request.establishment_type.value} | sources={len(request.source_place_ids)}"
        )
        stage = SearchStage.RATE_LIMIT_CHECK
        try:
            self.state.log_event(stage)
            decision = await self.rate_limiter.check_request(user_id, ip)
            if not decision.allowed:
                message = "Search limit reached. Please try again later."
                if decision.blocked_by == "store":
                    message = "Could not verify your search quota. Please try again later."
                raise RateLimitedError(
                    message,
                    reset_at=decision.reset_at,
                    blocked_by=decision.blocked_by,
                )

            stage = SearchStage.GEOCODING
            self.state.log_event(stage, request.destination)
            geocode = await self.geocoder.resolve(request.destination)

            stage = SearchStage.SOURCE_METADATA_FETCH
            self.state.log_event(stage, f"{len(request.source_place_ids)} places")
            sources: List[SourcePlace] = list(await asyncio.gather(
                *[self.fetcher.fetch_place(pid) for pid in request.source_place_ids]
            ))

            stage = SearchStage.KEYWORD_EXTRACTION
            self.state.log_event(stage)
            keywords = await self.keyword_extractor.extract(
                sources, request.free_text, request.establishment_type, vibes=request.vibes,
            )
            terms = [k.term for k in keywords]

            stage = SearchStage.CANDIDATE_SEARCH
            self.state.log_event(stage, " ".join(terms))
            page = await self.retriever.search_all(
                request.establishment_type,
                geocode.bounds,
                terms,
                exclude_ids=request.source_place_ids,
                max_results=self.max_candidates,
            )

            stage = SearchStage.PENALIZATION
            self.state.log_event(stage)
            history = await self.penalization.load_history(
                request.destination, terms, request.source_place_ids,
                free_text=request.free_text, auth_token=auth_token, vibes=request.vibes,
            )
            penalized = PenalizationFilter.compute_penalized(page.candidates, history)
            penalized_ids = sorted(c.id for c in penalized)
            logger.info(f"[PENALIZE] {len(penalized_ids)} of {len(page.candidates)} candidates penalized")

            stage = SearchStage.SCORING
            self.state.log_event(stage, f"{len(page.candidates)} candidates")
            ranked = rank(
                page.candidates, sources[0], keywords, request.establishment_type,
                penalized_ids=frozenset(penalized_ids), center=geocode.center, weights=self.weights,
            )

            stage = SearchStage.ENRICHMENT
            self.state.log_event(stage)
            first_page = await self.enrichment.enrich(ranked[: self.page_size], sources[0], request.destination)

            stage = SearchStage.CACHED
            matches = first_page + ranked[self.page_size:]
            entry = SearchResultsCacheEntry(
                fingerprint=fingerprint,
                request=request,
                center=geocode.center,
                bounds=geocode.bounds,
                source=sources[0],
                keywords=keywords,
                history_ids=sorted(history),
                penalized_ids=penalized_ids,
                matches=matches,
                shown_place_ids=[m.place_id for m in first_page],
                offset=len(first_page),
                has_more_pages=len(matches) > len(first_page) or page.next_page_token is not None,
                next_page_token=page.next_page_token,
            )
            self.cache.set(entry)
            self.state.log_event(stage, fingerprint[:20])
            self.state.log_event(SearchStage.DONE, f"{len(first_page)} matches")
            logger.info(
                f"[SEARCH] Search complete | ranked={len(ranked)} | shown={len(first_page)} | "
                f"has_more={entry.has_more_pages}"
            )
            return entry
        except Exception as e:
            raise self._fail(stage, e) from e

    async def _load_more(self, request: SearchRequest) -> SearchResultsCacheEntry:
        fingerprint = compute_fingerprint(request)
        entry = self.cache.get(fingerprint)
        if entry is None:
            raise ApplicationError(
                code=ErrorCode.NOT_FOUND,
                message="No previous results for this search. Please run the search first.",
            )

        stage = SearchStage.CANDIDATE_SEARCH
        try:
            remaining = entry.matches[entry.offset:]
            if not remaining and entry.next_page_token:
                self.state.log_event(stage, "next page")
                remaining = await self._fetch_next_page(entry)

            stage = SearchStage.ENRICHMENT
            self.state.log_event(stage)
            page = remaining[: self.page_size]
            if page:
                source = await self._source_for(entry)
                page = await self.enrichment.enrich(page, source, entry.request.destination)

            stage = SearchStage.CACHED
            matches = entry.matches[: entry.offset] + page + remaining[len(page):]
            updated = entry.model_copy(update={
                "matches": matches,
                "shown_place_ids": entry.shown_place_ids + [m.place_id for m in page],
                "offset": entry.offset + len(page),
                "has_more_pages": len(matches) > entry.offset + len(page) or entry.next_page_token is not None,
            })
            self.cache.set(updated)
            self.state.log_event(stage, fingerprint[:20])
            self.state.log_event(SearchStage.DONE, f"{len(page)} more matches")
            logger.info(f"[SEARCH] Loaded more | added={len(page)} | shown={updated.offset}")
            return updated
        except Exception as e:
            raise self._fail(stage, e) from e

    # Pulls one more directory page, excluding sources and everything already ranked,
    # and ranks it with the keywords and interaction history of the first search.
    async def _fetch_next_page(self, entry: SearchResultsCacheEntry) -> List[PlaceMatch]:
        request = entry.request
        terms = [k.term for k in entry.keywords]
        exclude = list(request.source_place_ids) + [m.place_id for m in entry.matches]
        page = await self.retriever.search(
            request.establishment_type, entry.bounds, terms, exclude, page_token=entry.next_page_token,
        )
        entry.next_page_token = page.next_page_token
        penalized = {c.id for c in PenalizationFilter.compute_penalized(page.candidates, entry.history_ids)}
        if penalized:
            logger.info(f"[PENALIZE] {len(penalized)} of {len(page.candidates)} next-page candidates penalized")
            entry.penalized_ids = sorted(set(entry.penalized_ids) | penalized)
        source = await self._source_for(entry)
        return rank(
            page.candidates, source, entry.keywords, request.establishment_type,
            penalized_ids=frozenset(penalized), center=entry.center, weights=self.weights,
        )

    async def _source_for(self, entry: SearchResultsCacheEntry) -> SourcePlace:
        if entry.source is None:
            entry.source = await self.fetcher.fetch_place(entry.request.source_place_ids[0])
        return entry.source

    def _fail(self, stage: SearchStage, error: Exception) -> ApplicationError:
        app_error = _stage_error(stage, error)
        if isinstance(error, ApplicationError):
            logger.error(f"[SEARCH] Failed at {stage.value}: {error.code.value} - {error.message}")
        else:
            logger.error(f"[SEARCH] Unexpected failure at {stage.value}: {error!r}", exc_info=True)
        self.state.fail(app_error.message)
        return app_error


# Builds a fully wired orchestrator from settings; each API session gets its own.
def build_orchestrator(
    config: Optional[Settings] = None,
    counter_store: Optional[CounterStore] = None,
    fetcher: Optional[GoogleFetcher] = None,
    openai_client: Optional[OpenAIClient] = None,
) -> SearchOrchestrator:
    config = config or default_settings
    fetcher = fetcher or GoogleFetcher(api_key=config.google_maps_api_key)
    openai_client = openai_client or OpenAIClient(api_key=config.openai_api_key)
    store = counter_store or SqliteCounterStore(config.rate_limit_db_path)

    history = None
    if config.interaction_history_url:
        history = InteractionHistoryClient(config.interaction_history_url)

    return SearchOrchestrator(
        fetcher=fetcher,
        geocoder=Geocoder(fetcher),
        retriever=CandidateRetriever(fetcher, page_size=config.places_page_size),
        rate_limiter=RateLimiter(
            store,
            max_searches=config.rate_limit_max_searches,
            window=timedelta(hours=config.rate_limit_window_hours),
        ),
        keyword_extractor=KeywordConsensusExtractor(
            FreeTextKeywordService(openai_client, model=config.openai_reasoning_model)
        ),
        penalization=PenalizationFilter(history),
        enrichment=EnrichmentPipeline(
            ImageVibeAnalyzer(openai_client, fetcher),
            BatchReasoner(openai_client, model=config.openai_reasoning_model),
            image_timeout_s=config.image_analysis_timeout_s,
        ),
        cache=ResultsCache(max_entries=config.results_cache_max_entries),
        page_size=config.results_page_size,
        max_candidates=config.max_candidates,
        weights=ScoreWeights(penalty_multiplier=config.penalty_multiplier),
    )
