"""API request/response schemas"""

from typing import List, Optional
from pydantic import BaseModel, Field

from loca_api.models.establishment import EstablishmentType
from loca_api.models.place_data import LatLng, MatchKeyword, PlaceMatch, SearchRequest, SearchResultsCacheEntry


class SearchBody(BaseModel):
    """POST /api/search and /api/search/more request"""
    source_place_ids: List[str] = Field(..., description="Place ids the user already likes")
    source_names: List[str] = Field(default_factory=list)
    destination: str = Field(..., description="Free-form city or neighborhood")
    free_text: Optional[str] = None
    establishment_type: EstablishmentType = EstablishmentType.CAFE
    vibes: List[str] = Field(default_factory=list, description="Enabled vibe toggles, e.g. laptop_friendly")

    def to_request(self) -> SearchRequest:
        return SearchRequest(**self.model_dump())


class SearchResponse(BaseModel):
    """Search results page"""
    session_id: str
    fingerprint: str
    cached: bool = False
    center: LatLng
    keywords: List[MatchKeyword] = Field(default_factory=list)
    matches: List[PlaceMatch] = Field(default_factory=list)
    total_shown: int = 0
    has_more: bool = False

    @classmethod
    def from_entry(cls, session_id: str, entry: SearchResultsCacheEntry, cached: bool = False) -> "SearchResponse":
        return cls(
            session_id=session_id,
            fingerprint=entry.fingerprint,
            cached=cached,
            center=entry.center,
            keywords=entry.keywords,
            matches=entry.shown_matches,
            total_shown=entry.offset,
            has_more=entry.has_more_pages,
        )


class ErrorResponse(BaseModel):
    """Error response"""
    error_id: str
    code: str
    message: str
    hint: Optional[str] = None
    retryable: bool = False
    reset_at: Optional[str] = None
    blocked_by: Optional[str] = None
