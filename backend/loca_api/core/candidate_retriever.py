"""Candidate search against the Places API v1 text search endpoint"""

import logging
from typing import Iterable, List, Optional, Set

import httpx

from loca_api.core.google_fetcher import PLACES_BASE, PLACE_FIELDS, GoogleFetcher, is_retryable_status, parse_place
from loca_api.models.errors import CandidateSearchError
from loca_api.models.establishment import EstablishmentType, establishment_type_to_google_type
from loca_api.models.place_data import Bounds, CandidatePage, PlaceCandidate

logger = logging.getLogger(__name__)

SEARCH_URL = f"{PLACES_BASE}/places:searchText"
SEARCH_FIELD_MASK = ",".join([f"places.{f}" for f in PLACE_FIELDS] + ["nextPageToken"])
MAX_PAGE_SIZE = 20  # Places v1 hard limit


def build_text_query(establishment_type: EstablishmentType, bias_keywords: Iterable[str]) -> str:
    """Keywords first, then the category, e.g. "cozy laptop coffee shop" """
    category = establishment_type_to_google_type(establishment_type).replace("_", " ")
    terms: List[str] = []
    for kw in bias_keywords:
        kw = kw.strip().lower()
        if kw and kw not in terms and kw != category:
            terms.append(kw)
    return " ".join(terms + [category])


class CandidateRetriever:
    """Finds establishments of a type inside the destination region"""

    def __init__(self, fetcher: GoogleFetcher, page_size: int = MAX_PAGE_SIZE):
        self.fetcher = fetcher
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))

    async def search(
        self,
        establishment_type: EstablishmentType,
        bounds: Bounds,
        bias_keywords: Iterable[str],
        exclude_ids: Iterable[str],
        page_token: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> CandidatePage:
        """
        Fetch one page of candidates.

        Candidates whose id is in exclude_ids are dropped, never returned.
        page_size overrides the configured size for this request only; the
        directory accepts a different size on every page of a query.
        Raises CandidateSearchError if the directory call fails.
        """
        self.fetcher.require_key()
        excluded: Set[str] = set(exclude_ids)
        body = {
            "textQuery": build_text_query(establishment_type, bias_keywords),
            "includedType": establishment_type_to_google_type(establishment_type),
            "strictTypeFiltering": True,
            "locationRestriction": {
                "rectangle": {
                    "low": {"latitude": bounds.low.lat, "longitude": bounds.low.lng},
                    "high": {"latitude": bounds.high.lat, "longitude": bounds.high.lng},
                }
            },
            "pageSize": max(1, min(page_size or self.page_size, self.page_size)),
        }
        if page_token:
            body["pageToken"] = page_token

        logger.info(
            f"[PLACES] Text search | query={body['textQuery']!r} | "
            f"type={body['includedType']} | page_token={'yes' if page_token else 'no'} | excluded={len(excluded)}"
        )
        try:
            response = await self.fetcher.request(
                "POST", SEARCH_URL, headers=self.fetcher.headers(SEARCH_FIELD_MASK), json=body
            )
            data = response.json()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            logger.error(f"[PLACES] Text search HTTP error: {code} - {e.response.text}")
            raise CandidateSearchError(
                f"Place search failed (HTTP {code})", retryable=is_retryable_status(code)
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"[PLACES] Text search transport error: {e}")
            raise CandidateSearchError(f"Place search failed: {type(e).__name__}") from e

        candidates: List[PlaceCandidate] = []
        dropped = 0
        for raw in data.get("places") or []:
            fields = parse_place(raw)
            place_id = fields.get("id")
            if not place_id or place_id in excluded:
                dropped += 1
                continue
            excluded.add(place_id)
            candidates.append(PlaceCandidate(**fields))

        logger.info(f"[PLACES] Text search returned {len(candidates)} candidates | dropped={dropped}")
        return CandidatePage(candidates=candidates, next_page_token=data.get("nextPageToken"))

    async def search_all(
        self,
        establishment_type: EstablishmentType,
        bounds: Bounds,
        bias_keywords: Iterable[str],
        exclude_ids: Iterable[str],
        max_results: int,
        page_token: Optional[str] = None,
    ) -> CandidatePage:
        """
        Follow page tokens until max_results candidates are collected or pages run out.

        The last request asks only for what is left of the budget, so every
        candidate the directory returned is kept and the returned token
        continues right after the last one.
        """
        bias_keywords = list(bias_keywords)
        excluded: Set[str] = set(exclude_ids)
        collected: List[PlaceCandidate] = []
        token = page_token
        while len(collected) < max_results:
            remaining = max_results - len(collected)
            page = await self.search(
                establishment_type, bounds, bias_keywords, excluded, token, page_size=remaining,
            )
            for candidate in page.candidates:
                excluded.add(candidate.id)
            collected.extend(page.candidates)
            token = page.next_page_token
            if not token:
                break
        if len(collected) > max_results:
            logger.warning(
                f"[PLACES] Directory returned more than requested | collected={len(collected)} | "
                f"budget={max_results}"
            )
        return CandidatePage(candidates=collected, next_page_token=token)
