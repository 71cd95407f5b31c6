"""Google Places API v1 client - HTTP-based implementation"""

from typing import Optional, Dict, Any
import httpx
import logging
import asyncio
from loca_api.core.config import settings
from loca_api.models.errors import ApplicationError, ErrorCode, SourceMetadataUnavailableError
from loca_api.models.place_data import LatLng, PhotoRef, Review, SourcePlace

logger = logging.getLogger(__name__)

PLACES_BASE = "https://places.googleapis.com/v1"
PHOTO_MAX_WIDTH = 800  # Enough for vibe analysis
RETRYABLE_STATUS = (429, 500, 502, 503, 504)

PRICE_LEVELS = {
    "PRICE_LEVEL_FREE": 0,
    "PRICE_LEVEL_INEXPENSIVE": 1,
    "PRICE_LEVEL_MODERATE": 2,
    "PRICE_LEVEL_EXPENSIVE": 3,
    "PRICE_LEVEL_VERY_EXPENSIVE": 4,
}

# Places v1 boolean field -> PlaceCandidate attribute
AMENITY_FIELDS = {
    "outdoorSeating": "outdoor_seating",
    "takeout": "takeout",
    "delivery": "delivery",
    "dineIn": "dine_in",
    "reservable": "reservable",
    "goodForGroups": "good_for_groups",
    "goodForChildren": "good_for_children",
    "goodForWatchingSports": "good_for_watching_sports",
    "liveMusic": "live_music",
    "servesCoffee": "serves_coffee",
    "servesBreakfast": "serves_breakfast",
    "servesBrunch": "serves_brunch",
    "servesLunch": "serves_lunch",
    "servesDinner": "serves_dinner",
    "servesBeer": "serves_beer",
    "servesWine": "serves_wine",
    "servesCocktails": "serves_cocktails",
    "servesDessert": "serves_dessert",
    "servesVegetarianFood": "serves_vegetarian_food",
    "allowsDogs": "allows_dogs",
    "restroom": "restroom",
    "menuForChildren": "menu_for_children",
}

# Fields shared by place details and text search
PLACE_FIELDS = [
    "id", "displayName", "types", "primaryType", "formattedAddress", "location",
    "rating", "userRatingCount", "priceLevel", "editorialSummary",
    "regularOpeningHours.weekdayDescriptions",
    "photos.name", "photos.widthPx", "photos.heightPx",
    "accessibilityOptions",
] + list(AMENITY_FIELDS)

LAPTOP_HINTS = ("laptop", "wifi", "wi-fi", "workspace", "co-working", "outlets", "study")


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS


def _infer_laptop_friendly(*texts: Optional[str]) -> Optional[bool]:
    """Places has no laptop flag; infer it from descriptive text when mentioned"""
    blob = " ".join(t for t in texts if t).lower()
    if any(hint in blob for hint in LAPTOP_HINTS):
        return True
    return None


def parse_place(place: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a Places v1 place object into PlaceCandidate fields"""
    display_name = place.get("displayName")
    if isinstance(display_name, dict):
        name = display_name.get("text") or ""
    elif isinstance(display_name, str):
        name = display_name
    else:
        name = ""

    # Places v1 "name" is the resource path, never use it as a display name
    if not name.strip():
        formatted_addr = place.get("formattedAddress") or ""
        name = formatted_addr.split(",")[0].strip() if formatted_addr else "Unknown"
        logger.warning(f"[PLACES] displayName missing for {place.get('id')}, using fallback: {name}")

    location = place.get("location") or {}
    price = place.get("priceLevel")
    if isinstance(price, str):
        price = PRICE_LEVELS.get(price)

    summary = (place.get("editorialSummary") or {}).get("text")

    out: Dict[str, Any] = {
        "id": place.get("id"),
        "display_name": name,
        "formatted_address": place.get("formattedAddress"),
        "location": (
            LatLng(lat=location["latitude"], lng=location["longitude"])
            if "latitude" in location and "longitude" in location else None
        ),
        "types": place.get("types") or [],
        "primary_type": place.get("primaryType"),
        "rating": place.get("rating"),
        "user_rating_count": place.get("userRatingCount"),
        "price_level": price,
        "weekday_descriptions": (place.get("regularOpeningHours") or {}).get("weekdayDescriptions") or [],
        "photos": [
            PhotoRef(name=p["name"], width_px=p.get("widthPx"), height_px=p.get("heightPx"))
            for p in (place.get("photos") or []) if p.get("name")
        ],
        "editorial_summary": summary,
        "wheelchair_accessible": (place.get("accessibilityOptions") or {}).get("wheelchairAccessibleEntrance"),
        "laptop_friendly": _infer_laptop_friendly(summary),
    }
    for api_field, attr in AMENITY_FIELDS.items():
        if api_field in place:
            out[attr] = place[api_field]
    return out


class GoogleFetcher:
    """
    Thin async client over Google Places API v1.

    Shared by the source-place lookup, the candidate retriever and the
    image-vibe step (photo URI resolution). Retries 429/5xx with linear
    backoff; every other status is terminal.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        retries: int = 3,
        backoff_s: float = 0.7,
    ):
        self.api_key = api_key if api_key is not None else settings.google_maps_api_key
        if not self.api_key:
            logger.warning("GOOGLE_MAPS_API_KEY not set in .env file")
        self._client = client
        self.retries = retries
        self.backoff_s = backoff_s

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=20.0)
        return self._client

    async def close(self):
        """Close HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    def require_key(self):
        if not self.api_key:
            raise ApplicationError(
                code=ErrorCode.CONFIGURATION_ERROR,
                message="Google Maps API key not configured. Please set GOOGLE_MAPS_API_KEY in .env file."
            )

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """HTTP request with retry logic for 429/5xx errors"""
        client = await self._get_client()
        for i in range(self.retries):
            response = await client.request(method, url, headers=headers, params=params or {}, json=json)
            if is_retryable_status(response.status_code) and i < self.retries - 1:
                logger.warning(f"[PLACES] {response.status_code} from {url}, retrying ({i + 1}/{self.retries})")
                await asyncio.sleep(self.backoff_s * (i + 1))
                continue
            response.raise_for_status()
            return response
        raise httpx.HTTPError("Max retries exceeded")

    def headers(self, field_mask: Optional[str] = None) -> Dict[str, str]:
        headers = {"X-Goog-Api-Key": self.api_key}
        if field_mask:
            headers["X-Goog-FieldMask"] = field_mask
        return headers

    async def fetch_place(self, place_id: str) -> SourcePlace:
        """
        Fetch a source place with its reviews.

        Raises SourceMetadataUnavailableError for any failure; a search
        cannot be scored without its source place.
        """
        self.require_key()
        field_mask = ",".join(PLACE_FIELDS + ["reviews.text", "reviews.rating", "reviews.relativePublishTimeDescription",
                                              "reviews.authorAttribution"])
        url = f"{PLACES_BASE}/places/{place_id}"
        try:
            logger.info(f"[PLACES] Fetching source place | place_id={place_id}")
            response = await self.request("GET", url, headers=self.headers(field_mask))
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"[PLACES] HTTP error: {e.response.status_code} - {e.response.text}")
            raise SourceMetadataUnavailableError(place_id, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"[PLACES] Transport error fetching {place_id}: {e}")
            raise SourceMetadataUnavailableError(place_id, str(e) or type(e).__name__) from e

        fields = parse_place(data)
        if not fields.get("id"):
            raise SourceMetadataUnavailableError(place_id, "response missing place id")

        reviews = []
        for rv in data.get("reviews") or []:
            text = rv.get("text")
            if isinstance(text, dict):
                text = text.get("text")
            reviews.append(Review(
                text=text or "",
                rating=rv.get("rating"),
                relative_time=rv.get("relativePublishTimeDescription"),
                author=(rv.get("authorAttribution") or {}).get("displayName"),
            ))
        if fields.get("laptop_friendly") is None:
            fields["laptop_friendly"] = _infer_laptop_friendly(" ".join(r.text for r in reviews))
        logger.info(f"[PLACES] Source place loaded | name={fields['display_name']!r} | reviews={len(reviews)}")
        return SourcePlace(**fields, reviews=reviews)

    async def resolve_photo_uri(self, photo_name: str, max_width: int = PHOTO_MAX_WIDTH) -> Optional[str]:
        """Resolve a short-lived photo URI using the photo media endpoint"""
        # Ask for JSON so we don't follow the 302
        params = {"maxWidthPx": max_width, "skipHttpRedirect": "true"}
        url = f"{PLACES_BASE}/{photo_name}/media"
        response = await self.request("GET", url, headers=self.headers(), params=params)
        return response.json().get("photoUri")
