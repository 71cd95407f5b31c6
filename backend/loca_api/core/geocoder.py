"""Destination geocoding via the Google Geocoding API"""

import logging
import math
from typing import Any, Dict, Optional

import httpx

from loca_api.core.google_fetcher import GoogleFetcher, is_retryable_status
from loca_api.models.errors import GeocodeNotFoundError, GeocodeServiceError
from loca_api.models.place_data import Bounds, GeocodeResult, LatLng

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
FALLBACK_HALF_WIDTH_DEG = 0.1  # ~11km
EARTH_RADIUS_M = 6_371_000.0


def haversine_m(a: LatLng, b: LatLng) -> float:
    """Great-circle distance in metres"""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(h))


def _parse_box(box: Optional[Dict[str, Any]]) -> Optional[Bounds]:
    if not box or "southwest" not in box or "northeast" not in box:
        return None
    sw, ne = box["southwest"], box["northeast"]
    return Bounds(low=LatLng(lat=sw["lat"], lng=sw["lng"]), high=LatLng(lat=ne["lat"], lng=ne["lng"]))


class Geocoder:
    """Resolves free-form destination text to a centre and a search region"""

    def __init__(self, fetcher: GoogleFetcher):
        self.fetcher = fetcher

    async def resolve(self, destination: str) -> GeocodeResult:
        """
        Geocode a destination.

        Raises GeocodeNotFoundError on ZERO_RESULTS and GeocodeServiceError
        for any other non-OK outcome. When the result carries neither a
        viewport nor bounds, a square of +/-0.1 degrees around the centre
        is used instead.
        """
        logger.info(f"[GEOCODE] Resolving destination | text={destination!r}")
        params = {"address": destination, "key": self.fetcher.api_key}
        try:
            response = await self.fetcher.request("GET", GEOCODE_URL, params=params)
            data = response.json()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            logger.error(f"[GEOCODE] HTTP error | status={code}")
            raise GeocodeServiceError(f"HTTP {code}", retryable=is_retryable_status(code)) from e
        except httpx.HTTPError as e:
            logger.error(f"[GEOCODE] Transport error: {e}")
            raise GeocodeServiceError(type(e).__name__) from e

        status = data.get("status", "UNKNOWN_ERROR")
        results = data.get("results") or []
        if status == "ZERO_RESULTS" or (status == "OK" and not results):
            logger.warning(f"[GEOCODE] No results | text={destination!r}")
            raise GeocodeNotFoundError(destination)
        if status != "OK":
            logger.error(f"[GEOCODE] Service error | status={status} | message={data.get('error_message')}")
            raise GeocodeServiceError(status, retryable=status in ("OVER_QUERY_LIMIT", "UNKNOWN_ERROR"))

        top = results[0]
        geometry = top.get("geometry") or {}
        location = geometry.get("location")
        if not location or "lat" not in location or "lng" not in location:
            raise GeocodeServiceError("INVALID_GEOMETRY", retryable=False)

        center = LatLng(lat=location["lat"], lng=location["lng"])
        bounds = _parse_box(geometry.get("viewport")) or _parse_box(geometry.get("bounds"))
        if bounds is None:
            bounds = Bounds.around(center, FALLBACK_HALF_WIDTH_DEG)
            logger.info(f"[GEOCODE] No viewport returned, using +/-{FALLBACK_HALF_WIDTH_DEG} deg fallback")

        logger.info(f"[GEOCODE] Resolved | center=({center.lat}, {center.lng}) | address={top.get('formatted_address')!r}")
        return GeocodeResult(
            center=center,
            bounds=bounds,
            formatted_address=top.get("formatted_address"),
            place_id=top.get("place_id"),
            types=top.get("types") or [],
        )
