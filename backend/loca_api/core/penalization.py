"""Penalization of places the user has already seen or disliked"""

import json
import logging
from typing import Iterable, List, Optional, Sequence, Set

import httpx

from loca_api.models.place_data import PlaceCandidate

logger = logging.getLogger(__name__)


class InteractionHistoryClient:
    """Client for the interaction-history service"""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch_penalized_ids(
        self,
        destination: str,
        keywords: Sequence[str],
        source_place_ids: Sequence[str],
        free_text: Optional[str] = None,
        auth_token: Optional[str] = None,
        vibes: Sequence[str] = (),
    ) -> Set[str]:
        """Place ids to penalize for this destination/keyword/vibe/source combination"""
        headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
        params = {
            "destination": destination,
            "keywords": json.dumps(list(keywords)),
            "vibes": json.dumps(list(vibes)),
            "freeText": free_text or "",
            "originPlaceIds": json.dumps(list(source_place_ids)),
        }
        client = await self._get_client()
        response = await client.get(f"{self.base_url}/place-interactions/filter", params=params, headers=headers)
        response.raise_for_status()
        data = response.json()
        ids = data.get("placeIdsToPenalize") or []
        return {i for i in ids if isinstance(i, str)}


class PenalizationFilter:
    """Selects candidates to deprioritize; never removes anything from the result set"""

    def __init__(self, history: Optional[InteractionHistoryClient] = None):
        self.history = history

    async def load_history(
        self,
        destination: str,
        keywords: Sequence[str],
        source_place_ids: Sequence[str],
        free_text: Optional[str] = None,
        auth_token: Optional[str] = None,
        vibes: Sequence[str] = (),
    ) -> Set[str]:
        """Fetch penalized ids; any failure yields an empty set"""
        if self.history is None:
            logger.debug("[PENALIZE] No interaction-history service configured")
            return set()
        try:
            ids = await self.history.fetch_penalized_ids(
                destination, keywords, source_place_ids,
                free_text=free_text, auth_token=auth_token, vibes=vibes,
            )
            logger.info(f"[PENALIZE] Loaded interaction history | penalized={len(ids)}")
            return ids
        except Exception as e:
            logger.warning(f"[PENALIZE] Failed to fetch interaction history, penalizing nothing: {e}")
            return set()

    @staticmethod
    def compute_penalized(
        candidates: Iterable[PlaceCandidate], interaction_history: Iterable[str]
    ) -> List[PlaceCandidate]:
        """Candidates that appear in the interaction history"""
        history = set(interaction_history)
        return [c for c in candidates if c.id in history]
