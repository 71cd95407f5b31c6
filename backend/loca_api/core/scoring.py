"""Deterministic candidate scoring and ranking"""

import logging
import math
from dataclasses import dataclass
from typing import AbstractSet, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from loca_api.core.geocoder import haversine_m
from loca_api.core.keywords import count_mentions
from loca_api.models.establishment import EstablishmentType, get_profile
from loca_api.models.place_data import KeywordSource, LatLng, MatchKeyword, PlaceCandidate, PlaceMatch

logger = logging.getLogger(__name__)

# Amenity flag -> keywords it satisfies when set
AMENITY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "outdoor_seating": ("outdoor", "patio", "garden"),
    "live_music": ("live music",),
    "allows_dogs": ("dog friendly", "pet friendly"),
    "serves_vegetarian_food": ("vegetarian", "vegan"),
    "serves_breakfast": ("breakfast", "early morning"),
    "serves_brunch": ("brunch",),
    "serves_lunch": ("lunch", "business lunch"),
    "serves_dinner": ("dinner", "date night"),
    "serves_coffee": ("coffee", "espresso", "latte", "cappuccino", "cortado", "americano"),
    "serves_beer": ("beer", "craft beer", "ipa", "lager", "stout", "ale", "brewery", "tap list"),
    "serves_wine": ("wine", "wine bar", "wine list", "sommelier"),
    "serves_cocktails": ("cocktails", "craft cocktails", "mixology", "cocktail bar"),
    "good_for_groups": ("groups",),
    "good_for_children": ("family friendly", "kids"),
    "good_for_watching_sports": ("sports bar",),
    "reservable": ("reservations", "fine dining"),
    "takeout": ("takeout", "to go"),
    "laptop_friendly": ("laptop", "wifi", "workspace", "work", "study", "outlets", "co-working"),
}


@dataclass(frozen=True)
class ScoreWeights:
    keyword: float = 10.0
    base_keyword_factor: float = 0.3  # category terms match almost everything
    rating: float = 20.0
    popularity: float = 10.0
    price: float = 8.0
    penalty_multiplier: float = 0.5
    default_reference_rating: float = 4.0
    min_reference_count: int = 50


DEFAULT_WEIGHTS = ScoreWeights()


class ScoreResult(NamedTuple):
    score: float
    matched_keywords: List[str]


def _candidate_text(candidate: PlaceCandidate) -> str:
    parts = [candidate.display_name, candidate.editorial_summary or ""]
    parts.extend(t.replace("_", " ") for t in candidate.types)
    return " ".join(parts).lower()


def _amenity_terms(candidate: PlaceCandidate) -> AbstractSet[str]:
    terms = set()
    for flag, flag_terms in AMENITY_KEYWORDS.items():
        if candidate.amenity(flag):
            terms.update(flag_terms)
    return terms


def score(
    candidate: PlaceCandidate,
    source_place: PlaceCandidate,
    match_keywords: Sequence[MatchKeyword],
    establishment_type: EstablishmentType,
    penalized_ids: AbstractSet[str] = frozenset(),
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> ScoreResult:
    """
    Score one candidate against the source place.

    Pure function: keyword overlap with the candidate's text and amenity
    flags, type-weighted amenities, rating and rating count relative to
    the source, price-tier proximity, then the penalty multiplier.
    """
    profile = get_profile(establishment_type)
    text = _candidate_text(candidate)
    amenity_terms = _amenity_terms(candidate)

    total = 0.0
    matched: List[str] = []
    for keyword in match_keywords:
        term = keyword.term.lower()
        if term in matched:
            continue
        if term in amenity_terms or count_mentions(text, term) > 0:
            matched.append(term)
            is_base = keyword.source == KeywordSource.VIBE_DEFAULT and term in profile.base_terms
            factor = weights.base_keyword_factor if is_base else 1.0
            total += weights.keyword * factor

    for flag, weight in profile.amenity_weights.items():
        if candidate.amenity(flag):
            total += weight

    if candidate.rating is not None:
        reference = source_place.rating or weights.default_reference_rating
        total += weights.rating * min(candidate.rating / reference, 1.2)

    count = candidate.user_rating_count or 0
    reference_count = max(source_place.user_rating_count or 0, weights.min_reference_count)
    total += weights.popularity * min(math.log1p(count) / math.log1p(reference_count), 1.5)

    if candidate.price_level is not None and source_place.price_level is not None:
        total += weights.price * max(0.0, 1 - abs(candidate.price_level - source_place.price_level) / 4)
    else:
        total += weights.price * 0.5

    if candidate.id in penalized_ids:
        total *= weights.penalty_multiplier

    return ScoreResult(score=total, matched_keywords=matched)


def rank(
    candidates: Iterable[PlaceCandidate],
    source_place: PlaceCandidate,
    match_keywords: Sequence[MatchKeyword],
    establishment_type: EstablishmentType,
    penalized_ids: AbstractSet[str] = frozenset(),
    center: Optional[LatLng] = None,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> List[PlaceMatch]:
    """
    Score and sort candidates.

    One match per place id. Candidates with a non-finite or negative score
    are dropped. Order: score desc, rating count desc, id asc.
    """
    matches: List[PlaceMatch] = []
    seen = set()
    for candidate in candidates:
        if candidate.id in seen:
            continue
        seen.add(candidate.id)

        result = score(candidate, source_place, match_keywords, establishment_type, penalized_ids, weights)
        if not math.isfinite(result.score) or result.score < 0:
            logger.debug(f"[SCORE] Dropping {candidate.id}: invalid score {result.score}")
            continue

        distance = None
        if center is not None and candidate.location is not None:
            distance = haversine_m(center, candidate.location)

        matches.append(PlaceMatch(
            place=candidate,
            score=result.score,
            matched_keywords=result.matched_keywords,
            distance_to_center=distance,
            establishment_type=establishment_type,
        ))

    matches.sort(key=lambda m: (-m.score, -(m.place.user_rating_count or 0), m.place.id))
    return matches
