"""Normalized place and search data models"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from loca_api.models.establishment import EstablishmentType, get_profile


class LatLng(BaseModel):
    """Geographic coordinates"""
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class Bounds(BaseModel):
    """Rectangular region given by its south-west (low) and north-east (high) corners"""
    model_config = ConfigDict(frozen=True)

    low: LatLng
    high: LatLng

    @classmethod
    def around(cls, center: LatLng, half_width: float) -> "Bounds":
        """Square region of +/- half_width degrees centred on a point"""
        return cls(
            low=LatLng(lat=center.lat - half_width, lng=center.lng - half_width),
            high=LatLng(lat=center.lat + half_width, lng=center.lng + half_width),
        )

    def contains(self, point: LatLng) -> bool:
        return self.low.lat <= point.lat <= self.high.lat and self.low.lng <= point.lng <= self.high.lng


class Review(BaseModel):
    """Place review data"""
    model_config = ConfigDict(frozen=True)

    text: str = ""
    rating: Optional[float] = None
    relative_time: Optional[str] = None
    author: Optional[str] = None


class PhotoRef(BaseModel):
    """Photo reference from the place directory; uri is resolved lazily"""
    model_config = ConfigDict(frozen=True)

    name: str
    width_px: Optional[int] = None
    height_px: Optional[int] = None
    uri: Optional[str] = None


class PlaceCandidate(BaseModel):
    """A place as returned by the place directory (read-only)"""
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    formatted_address: Optional[str] = None
    location: Optional[LatLng] = None
    types: List[str] = Field(default_factory=list)
    primary_type: Optional[str] = None
    rating: Optional[float] = None
    user_rating_count: Optional[int] = None
    price_level: Optional[int] = None
    weekday_descriptions: List[str] = Field(default_factory=list)
    photos: List[PhotoRef] = Field(default_factory=list)
    editorial_summary: Optional[str] = None

    # Atmosphere & amenities
    outdoor_seating: Optional[bool] = None
    takeout: Optional[bool] = None
    delivery: Optional[bool] = None
    dine_in: Optional[bool] = None
    reservable: Optional[bool] = None
    good_for_groups: Optional[bool] = None
    good_for_children: Optional[bool] = None
    good_for_watching_sports: Optional[bool] = None
    live_music: Optional[bool] = None
    serves_coffee: Optional[bool] = None
    serves_breakfast: Optional[bool] = None
    serves_brunch: Optional[bool] = None
    serves_lunch: Optional[bool] = None
    serves_dinner: Optional[bool] = None
    serves_beer: Optional[bool] = None
    serves_wine: Optional[bool] = None
    serves_cocktails: Optional[bool] = None
    serves_dessert: Optional[bool] = None
    serves_vegetarian_food: Optional[bool] = None
    allows_dogs: Optional[bool] = None
    restroom: Optional[bool] = None
    menu_for_children: Optional[bool] = None
    wheelchair_accessible: Optional[bool] = None
    laptop_friendly: Optional[bool] = None

    def amenity(self, flag: str) -> bool:
        """True only when the amenity flag is explicitly set"""
        return getattr(self, flag, None) is True


class SourcePlace(PlaceCandidate):
    """A place the user already likes, with its reviews"""
    reviews: List[Review] = Field(default_factory=list)

    @property
    def review_text(self) -> str:
        return " ".join(r.text for r in self.reviews if r.text)


class KeywordSource(str, Enum):
    """Where a match keyword came from"""
    REVIEW_CONSENSUS = "review-consensus"
    FREE_TEXT = "free-text"
    VIBE_DEFAULT = "vibe-default"


class MatchKeyword(BaseModel):
    model_config = ConfigDict(frozen=True)

    term: str
    source: KeywordSource


class PlaceMatch(BaseModel):
    """A scored candidate, progressively enriched; copies are made instead of mutation"""
    model_config = ConfigDict(frozen=True)

    place: PlaceCandidate
    score: float
    matched_keywords: List[str] = Field(default_factory=list)
    distance_to_center: Optional[float] = None  # metres
    image_analysis: Optional[str] = None
    reasoning: Optional[str] = None
    establishment_type: Optional[EstablishmentType] = None

    @property
    def place_id(self) -> str:
        return self.place.id


class SearchRequest(BaseModel):
    """A submitted search; immutable"""
    model_config = ConfigDict(frozen=True)

    source_place_ids: List[str]
    source_names: List[str] = Field(default_factory=list)
    destination: str
    free_text: Optional[str] = None
    establishment_type: EstablishmentType = EstablishmentType.CAFE
    vibes: List[str] = Field(default_factory=list)  # enabled vibe toggles for the establishment type

    @field_validator("source_place_ids")
    @classmethod
    def validate_source_place_ids(cls, v: List[str]) -> List[str]:
        """Strip, drop blanks and duplicates while keeping first-seen order"""
        ids: List[str] = []
        for place_id in v:
            place_id = (place_id or "").strip()
            if place_id and place_id not in ids:
                ids.append(place_id)
        if not ids:
            raise ValueError("at least one source place id is required")
        return ids

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("destination must be a non-empty string")
        return v

    @field_validator("free_text")
    @classmethod
    def validate_free_text(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("vibes")
    @classmethod
    def validate_vibes(cls, v: List[str], info: ValidationInfo) -> List[str]:
        """Lowercase, dedupe and sort; every vibe must exist for the establishment type"""
        vibes = sorted({(vibe or "").strip().lower() for vibe in v} - {""})
        establishment_type = info.data.get("establishment_type")
        if establishment_type is not None:
            known = get_profile(establishment_type).vibes
            unknown = [vibe for vibe in vibes if vibe not in known]
            if unknown:
                raise ValueError(
                    f"unknown vibes for {establishment_type.value}: {unknown}; "
                    f"expected any of {sorted(known)}"
                )
        return vibes


class GeocodeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    center: LatLng
    bounds: Bounds
    formatted_address: Optional[str] = None
    place_id: Optional[str] = None
    types: List[str] = Field(default_factory=list)


class CandidatePage(BaseModel):
    candidates: List[PlaceCandidate] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class SearchResultsCacheEntry(BaseModel):
    """Everything needed to answer a repeat request or serve the next page"""
    fingerprint: str
    request: SearchRequest
    center: LatLng
    bounds: Bounds
    source: Optional[SourcePlace] = None  # first source place, reused when ranking later pages
    keywords: List[MatchKeyword] = Field(default_factory=list)
    history_ids: List[str] = Field(default_factory=list)  # every id from the interaction history, applied to later pages
    penalized_ids: List[str] = Field(default_factory=list)
    matches: List[PlaceMatch] = Field(default_factory=list)
    shown_place_ids: List[str] = Field(default_factory=list)
    offset: int = 0
    has_more_pages: bool = False
    next_page_token: Optional[str] = None

    @property
    def shown_matches(self) -> List[PlaceMatch]:
        return self.matches[: self.offset]


class RateLimitRecord(BaseModel):
    """Fixed-window counter for one identity"""
    identity: str
    window_start: datetime
    count: int = 0


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int
    window_hours: float
    blocked_by: Optional[str] = None  # "user" | "ip" | "store"
