"""Results cache keyed by search fingerprint"""

from collections import OrderedDict
from typing import Any, Dict, Optional
import hashlib
import json
import logging

from loca_api.models.place_data import SearchRequest, SearchResultsCacheEntry

logger = logging.getLogger(__name__)


def _hash_payload(data: Dict[str, Any]) -> str:
    """SHA256 of a JSON payload with sorted keys"""
    payload_str = json.dumps(data, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(payload_str.encode()).hexdigest()


def compute_fingerprint(request: SearchRequest) -> str:
    """
    Deterministic key for a search.

    Source ids are sorted so request order never matters; destination and
    free text are compared case- and whitespace-insensitively; vibes are
    compared as a set.
    """
    payload = {
        "source_place_ids": sorted(request.source_place_ids),
        "destination": " ".join(request.destination.lower().split()),
        "free_text": " ".join((request.free_text or "").lower().split()),
        "establishment_type": request.establishment_type.value,
        "vibes": sorted(request.vibes),
    }
    return "search-" + _hash_payload(payload)


class ResultsCache:
    """
    In-process cache of search results.

    No TTL: entries live until cleared or pushed out by newer fingerprints
    once ``max_entries`` is exceeded (oldest first). Entries are copied on
    the way in and out so cached state can only change through ``set``.
    """

    def __init__(self, max_entries: int = 1):
        self.max_entries = max(1, max_entries)
        self._entries: "OrderedDict[str, SearchResultsCacheEntry]" = OrderedDict()

    def get(self, fingerprint: str) -> Optional[SearchResultsCacheEntry]:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        self._entries.move_to_end(fingerprint)
        return entry.model_copy(deep=True)

    def set(self, entry: SearchResultsCacheEntry) -> None:
        self._entries[entry.fingerprint] = entry.model_copy(deep=True)
        self._entries.move_to_end(entry.fingerprint)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"[CACHE] Evicted {evicted[:20]}")

    def invalidate(self, fingerprint: str) -> None:
        self._entries.pop(fingerprint, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._entries

    def __len__(self) -> int:
        return len(self._entries)
