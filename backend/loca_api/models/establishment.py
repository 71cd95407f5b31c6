"""Establishment types and the per-type strategy table.

Every establishment type owns exactly one ``TypeProfile`` row holding the
Google category it maps to, the review vocabulary used for keyword
consensus, the vibe toggles a user can switch on, and the amenity weights
used by scoring. ``TYPE_PROFILES`` is
checked at import time: a type without a row fails the import instead of
falling back to a default at request time.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple


class EstablishmentType(str, Enum):
    """Kinds of places a user can search for"""
    CAFE = "cafe"
    RESTAURANT = "restaurant"
    MUSEUM = "museum"
    BAR = "bar"


# Atmosphere, amenity and service terms shared by every type
COMMON_TERMS: Tuple[str, ...] = (
    "cozy", "quiet", "spacious", "minimal", "modern", "rustic",
    "industrial", "warm", "bright", "intimate",
    "wifi", "outdoor", "patio", "garden", "view",
    "late night", "open late", "early morning",
    "friendly", "knowledgeable", "fresh", "quality", "excellent", "amazing",
)


@dataclass(frozen=True)
class TypeProfile:
    """Table row describing how one establishment type is searched and scored"""
    google_type: str
    label: str
    base_terms: Tuple[str, ...]
    vocabulary: Tuple[str, ...]
    amenity_weights: Dict[str, float] = field(default_factory=dict)
    vibes: Dict[str, Tuple[str, ...]] = field(default_factory=dict)  # toggle -> keywords it adds

    @property
    def review_terms(self) -> Tuple[str, ...]:
        """Common terms followed by type-specific terms, without duplicates"""
        seen = []
        for term in COMMON_TERMS + self.vocabulary:
            if term not in seen:
                seen.append(term)
        return tuple(seen)


TYPE_PROFILES: Dict[EstablishmentType, TypeProfile] = {
    EstablishmentType.CAFE: TypeProfile(
        google_type="coffee_shop",
        label="Café",
        base_terms=("cafe", "coffee"),
        vocabulary=(
            "espresso", "cappuccino", "latte", "cortado", "macchiato", "americano",
            "pour over", "filter", "drip", "cold brew", "nitro",
            "single origin", "specialty", "third wave", "artisan", "craft",
            "light roast", "dark roast", "medium roast",
            "laptop", "workspace", "study", "work", "outlets", "co-working",
            "pastries", "croissant", "avocado toast", "bagel", "muffin",
            "barista", "roaster", "roastery",
        ),
        amenity_weights={
            "serves_coffee": 12.0,
            "laptop_friendly": 10.0,
            "serves_breakfast": 4.0,
            "serves_brunch": 4.0,
            "outdoor_seating": 3.0,
            "takeout": 2.0,
            "serves_vegetarian_food": 2.0,
            "allows_dogs": 2.0,
        },
        vibes={
            "roastery": ("single origin", "roastery"),
            "light_roast": ("filter", "pour over"),
            "laptop_friendly": ("laptop", "wifi"),
            "night_owl": ("late", "night"),
            "cozy": ("cozy",),
            "minimalist": ("minimalist", "modern"),
            "allows_dogs": ("dog friendly", "pet friendly"),
            "serves_vegetarian": ("vegetarian", "vegan"),
            "brunch": ("brunch", "breakfast"),
        },
    ),
    EstablishmentType.RESTAURANT: TypeProfile(
        google_type="restaurant",
        label="Restaurant",
        base_terms=("restaurant",),
        vocabulary=(
            "italian", "french", "asian", "mediterranean", "mexican", "japanese",
            "indian", "thai", "chinese", "fusion", "contemporary",
            "fine dining", "casual", "bistro", "brasserie", "trattoria",
            "farm to table", "seasonal", "local ingredients",
            "breakfast", "brunch", "lunch", "dinner", "tasting menu",
            "michelin", "award winning", "chef", "signature dish",
            "wine list", "sommelier", "craft cocktails",
            "romantic", "date night", "family friendly", "business lunch",
        ),
        amenity_weights={
            "reservable": 8.0,
            "good_for_groups": 6.0,
            "dine_in": 5.0,
            "serves_dinner": 4.0,
            "serves_lunch": 3.0,
            "serves_wine": 3.0,
            "outdoor_seating": 3.0,
            "serves_vegetarian_food": 3.0,
            "good_for_children": 2.0,
        },
        vibes={
            "romantic": ("romantic", "date night"),
            "family_friendly": ("family friendly",),
            "outdoor": ("outdoor", "patio"),
            "fine_dining": ("fine dining", "tasting menu"),
            "serves_vegetarian": ("vegetarian", "vegan"),
            "brunch": ("brunch", "breakfast"),
            "late_night": ("late night", "open late"),
        },
    ),
    EstablishmentType.MUSEUM: TypeProfile(
        google_type="museum",
        label="Museum",
        base_terms=("museum",),
        vocabulary=(
            "art gallery", "contemporary art", "modern art", "classical",
            "sculpture", "painting", "photography", "installation",
            "exhibition", "collection", "permanent collection", "temporary",
            "interactive", "immersive", "hands-on", "guided tour",
            "history", "science", "natural history", "anthropology",
            "archaeology", "cultural", "heritage", "archives",
            "curator", "docent", "audio guide", "family friendly",
            "educational", "research", "restoration",
        ),
        amenity_weights={
            "good_for_children": 6.0,
            "good_for_groups": 4.0,
            "restroom": 3.0,
            "wheelchair_accessible": 3.0,
        },
        vibes={
            "contemporary": ("contemporary art", "modern art"),
            "history": ("history", "heritage"),
            "interactive": ("interactive", "hands-on"),
            "family_friendly": ("family friendly", "educational"),
            "quiet": ("quiet",),
        },
    ),
    EstablishmentType.BAR: TypeProfile(
        google_type="bar",
        label="Bar",
        base_terms=("bar",),
        vocabulary=(
            "cocktails", "craft beer", "wine bar", "whiskey", "gin",
            "bourbon", "mixology", "bartender", "craft cocktails",
            "ipa", "lager", "stout", "ale", "brewery", "tap list",
            "speakeasy", "dive bar", "pub", "lounge", "rooftop",
            "sports bar", "neighborhood bar", "cocktail bar",
            "live music", "dj", "trivia", "karaoke", "pool table",
            "happy hour", "late night", "dancing", "nightlife",
            "upscale", "casual", "divey", "trendy", "classic",
        ),
        amenity_weights={
            "serves_cocktails": 8.0,
            "serves_beer": 6.0,
            "serves_wine": 6.0,
            "live_music": 6.0,
            "good_for_groups": 4.0,
            "good_for_watching_sports": 3.0,
            "outdoor_seating": 3.0,
        },
        vibes={
            "cocktails": ("cocktails", "mixology"),
            "craft_beer": ("craft beer", "tap list"),
            "live_music": ("live music", "dj"),
            "rooftop": ("rooftop", "view"),
            "dive": ("dive bar", "divey"),
            "late_night": ("late night", "nightlife"),
        },
    ),
}


def _assert_exhaustive(table: Dict[EstablishmentType, TypeProfile]) -> None:
    """Fail loudly if an establishment type has no profile row"""
    missing = [t.value for t in EstablishmentType if t not in table]
    if missing:
        raise RuntimeError(f"TYPE_PROFILES is missing establishment types: {missing}")


_assert_exhaustive(TYPE_PROFILES)


def get_profile(establishment_type: EstablishmentType) -> TypeProfile:
    return TYPE_PROFILES[EstablishmentType(establishment_type)]


def vibe_keywords(establishment_type: EstablishmentType, vibes: Iterable[str]) -> List[str]:
    """Keywords added by the enabled vibe toggles, in table order, without duplicates"""
    enabled = set(vibes)
    keywords: List[str] = []
    for vibe, terms in get_profile(establishment_type).vibes.items():
        if vibe not in enabled:
            continue
        for term in terms:
            if term not in keywords:
                keywords.append(term)
    return keywords


def establishment_type_to_google_type(establishment_type: EstablishmentType) -> str:
    """Map an establishment type to the place directory's category"""
    return get_profile(establishment_type).google_type


# Checked in order; restaurant last because it is the most generic
_GOOGLE_TYPE_PRIORITY: List[Tuple[EstablishmentType, Tuple[str, ...]]] = [
    (EstablishmentType.CAFE, ("coffee_shop", "cafe", "bakery")),
    (EstablishmentType.BAR, ("bar", "night_club", "liquor_store")),
    (EstablishmentType.MUSEUM, ("museum", "art_gallery", "tourist_attraction")),
    (EstablishmentType.RESTAURANT, ("restaurant", "meal_takeaway", "meal_delivery", "food")),
]


def establishment_type_from_google_types(google_types: Optional[Iterable[str]]) -> Optional[EstablishmentType]:
    """Infer an establishment type from Google place types, or None if unsupported"""
    types = set(google_types or [])
    if not types:
        return None
    for establishment_type, candidates in _GOOGLE_TYPE_PRIORITY:
        if types.intersection(candidates):
            return establishment_type
    return None


def detect_establishment_type(places_types: Iterable[Iterable[str]]) -> EstablishmentType:
    """Most common establishment type across several places' Google types.

    Falls back to cafe when nothing is recognised. Ties resolve to the type
    seen first.
    """
    counts: Dict[EstablishmentType, int] = {}
    for types in places_types:
        detected = establishment_type_from_google_types(types)
        if detected:
            counts[detected] = counts.get(detected, 0) + 1
    if not counts:
        return EstablishmentType.CAFE
    return max(counts, key=lambda t: counts[t])
