"""Keyword consensus across source places plus free-text keywords"""

import logging
import re
from typing import Dict, List, Optional, Sequence

from loca_api.core.openai_client import OpenAIClient
from loca_api.models.establishment import EstablishmentType, get_profile, vibe_keywords
from loca_api.models.place_data import KeywordSource, MatchKeyword, SourcePlace

logger = logging.getLogger(__name__)

MIN_MENTIONS = 2  # single mentions are noise
MAX_CONSENSUS_TERMS = 3
MAX_FREE_TEXT_TERMS = 2
MAX_EXTRA_TERMS = 5  # consensus + free text, base terms excluded

FREE_TEXT_SYSTEM_PROMPT = """You turn a traveller's free-text wish into place-search keywords.
Input: the free text and the establishment type being searched.
Output: a JSON object {"keywords": [...]} with at most 2 short, lowercase descriptive
terms (1-2 words each) a place review or listing would actually contain.
Never return the establishment type itself, locations, or full sentences."""


def count_mentions(text: str, term: str) -> int:
    """Whole-word, case-insensitive occurrences of term in text"""
    return len(re.findall(rf"\b{re.escape(term.lower())}\b", text.lower()))


def extract_place_terms(review_text: str, establishment_type: EstablishmentType) -> List[str]:
    """Vocabulary terms mentioned at least twice in one place's reviews, in vocabulary order"""
    if not review_text:
        return []
    return [
        term for term in get_profile(establishment_type).review_terms
        if count_mentions(review_text, term) >= MIN_MENTIONS
    ]


def consensus_terms(per_place_terms: Sequence[Sequence[str]], limit: int = MAX_CONSENSUS_TERMS) -> List[str]:
    """
    Terms present in at least min(2, number of places) places.

    Ranked by how many places mention them; ties keep first-seen order.
    """
    place_count = len(per_place_terms)
    if place_count == 0:
        return []
    threshold = min(2, place_count)

    frequency: Dict[str, int] = {}
    for terms in per_place_terms:
        for term in dict.fromkeys(terms):
            frequency[term] = frequency.get(term, 0) + 1

    qualifying = [term for term, count in frequency.items() if count >= threshold]
    # sorted() is stable, so equal counts stay in first-seen order
    qualifying = sorted(qualifying, key=lambda t: -frequency[t])
    return qualifying[:limit]


class FreeTextKeywordService:
    """Asks the reasoning model for up to two keywords describing free text"""

    def __init__(self, client: OpenAIClient, model: Optional[str] = None):
        self.client = client
        self.model = model

    async def keywords(self, free_text: str, establishment_type: EstablishmentType) -> List[str]:
        result = await self.client.call_agent(
            system_prompt=FREE_TEXT_SYSTEM_PROMPT,
            user_message={"free_text": free_text, "establishment_type": establishment_type.value},
            model=self.model,
            temperature=0.2,
        )
        raw = result.get("keywords") if isinstance(result, dict) else None
        if not isinstance(raw, list):
            raise ValueError("free-text response missing 'keywords' list")
        cleaned: List[str] = []
        for kw in raw:
            if isinstance(kw, str) and kw.strip() and kw.strip().lower() not in cleaned:
                cleaned.append(kw.strip().lower())
        return cleaned[:MAX_FREE_TEXT_TERMS]


class KeywordConsensusExtractor:
    """Builds the match keyword list used to bias the search and explain scores"""

    def __init__(self, free_text_service: Optional[FreeTextKeywordService] = None):
        self.free_text_service = free_text_service

    async def extract(
        self,
        source_places: Sequence[SourcePlace],
        free_text: Optional[str],
        establishment_type: EstablishmentType,
        vibes: Sequence[str] = (),
    ) -> List[MatchKeyword]:
        """
        Base category terms and the keywords of enabled vibe toggles, then
        up to 3 consensus terms, then up to 2 free-text terms; at most 5
        terms beyond the base and vibe ones.

        Free-text failures are logged and skipped.
        """
        profile = get_profile(establishment_type)
        keywords = [MatchKeyword(term=t, source=KeywordSource.VIBE_DEFAULT) for t in profile.base_terms]
        for term in vibe_keywords(establishment_type, vibes):
            if term not in profile.base_terms:
                keywords.append(MatchKeyword(term=term, source=KeywordSource.VIBE_DEFAULT))
        seen = {k.term for k in keywords}
        if vibes:
            logger.info(f"[KEYWORDS] Vibe terms | vibes={list(vibes)} | terms={[k.term for k in keywords]}")

        per_place = [extract_place_terms(p.review_text, establishment_type) for p in source_places]
        logger.debug(f"[KEYWORDS] Per-place terms: {per_place}")
        consensus = consensus_terms(per_place)
        logger.info(f"[KEYWORDS] Consensus terms | places={len(source_places)} | terms={consensus}")

        free_terms: List[str] = []
        if free_text and self.free_text_service is not None:
            try:
                free_terms = await self.free_text_service.keywords(free_text, establishment_type)
                logger.info(f"[KEYWORDS] Free-text terms | terms={free_terms}")
            except Exception as e:
                logger.warning(f"[KEYWORDS] Free-text keyword extraction failed, continuing without: {e}")

        extras: List[MatchKeyword] = []
        for term, source in [(t, KeywordSource.REVIEW_CONSENSUS) for t in consensus] + \
                            [(t, KeywordSource.FREE_TEXT) for t in free_terms]:
            if term in seen:
                continue
            seen.add(term)
            extras.append(MatchKeyword(term=term, source=source))

        return keywords + extras[:MAX_EXTRA_TERMS]
