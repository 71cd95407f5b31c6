"""Image-vibe and batch reasoning enrichment for the page about to be shown"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, List, Optional, Sequence, TypeVar

from loca_api.core.google_fetcher import GoogleFetcher
from loca_api.core.openai_client import OpenAIClient
from loca_api.models.errors import EnrichmentDegradedError
from loca_api.models.place_data import PlaceCandidate, PlaceMatch

logger = logging.getLogger(__name__)

T = TypeVar("T")

IMAGE_TIMEOUT_S = 3.0
GENERIC_REASONING = "Shares the atmosphere and offerings of the places you already love."

IMAGE_VIBE_PROMPT = (
    "Describe the vibe of this place in one short phrase (max 12 words): "
    "atmosphere, decor, lighting, crowd. No names, no prices."
)

REASONING_SYSTEM_PROMPT = """You explain why each candidate place resembles a place the user already loves.
Input: the source place, the destination, and an ordered list of candidates with their
salient fields (rating, price, matched keywords, summary, amenities).
Output: a JSON object {"reasons": [...]} with exactly one sentence per candidate, in the
same order as the input. Each sentence is under 30 words, concrete, and mentions at least
one shared trait. Never skip or merge candidates."""


@dataclass(frozen=True)
class DeadlinePolicy:
    """Per-task deadline; a task that misses it or fails yields None"""
    timeout_s: float
    max_concurrency: Optional[int] = None


class DeadlineTaskGroup:
    """Fan-out/fan-in runner that never lets one task fail or stall the group"""

    def __init__(self, policy: DeadlinePolicy, label: str = "task"):
        self.policy = policy
        self.label = label
        self._semaphore = asyncio.Semaphore(policy.max_concurrency) if policy.max_concurrency else None

    async def _run_one(self, index: int, awaitable: Awaitable[T]) -> Optional[T]:
        try:
            if self._semaphore is None:
                return await asyncio.wait_for(awaitable, self.policy.timeout_s)
            async with self._semaphore:
                return await asyncio.wait_for(awaitable, self.policy.timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"[ENRICH] {self.label} #{index} exceeded {self.policy.timeout_s}s, ignoring")
        except Exception as e:
            logger.warning(f"[ENRICH] {self.label} #{index} failed, ignoring: {e}")
        return None

    async def run(self, awaitables: Sequence[Optional[Awaitable[T]]]) -> List[Optional[T]]:
        """Run every awaitable concurrently; None entries are skipped and yield None"""

        async def _none() -> None:
            return None

        return list(await asyncio.gather(*[
            self._run_one(i, a) if a is not None else _none()
            for i, a in enumerate(awaitables)
        ]))


class ImageVibeAnalyzer:
    """Short vibe description from a place's first photo"""

    def __init__(self, client: OpenAIClient, fetcher: GoogleFetcher):
        self.client = client
        self.fetcher = fetcher

    async def describe(self, place: PlaceCandidate) -> Optional[str]:
        photo = place.photos[0]
        uri = photo.uri or await self.fetcher.resolve_photo_uri(photo.name)
        if not uri:
            return None
        description = await self.client.describe_image(IMAGE_VIBE_PROMPT, uri)
        return description or None


def _candidate_summary(match: PlaceMatch) -> dict:
    place = match.place
    amenities = [flag for flag in (
        "outdoor_seating", "serves_coffee", "laptop_friendly", "reservable", "good_for_groups",
        "live_music", "serves_cocktails", "serves_wine", "serves_beer", "good_for_children",
    ) if place.amenity(flag)]
    return {
        "name": place.display_name,
        "rating": place.rating,
        "rating_count": place.user_rating_count,
        "price_level": place.price_level,
        "matched_keywords": match.matched_keywords,
        "summary": place.editorial_summary,
        "amenities": amenities,
    }


class BatchReasoner:
    """One reasoning call for a whole page of matches"""

    def __init__(self, client: OpenAIClient, model: Optional[str] = None):
        self.client = client
        self.model = model

    async def reasons(self, source: PlaceCandidate, matches: Sequence[PlaceMatch], destination: str) -> List[str]:
        """One sentence per match, same order; raises EnrichmentDegradedError on any mismatch"""
        payload = {
            "source": {
                "name": source.display_name,
                "rating": source.rating,
                "price_level": source.price_level,
                "summary": source.editorial_summary,
                "types": source.types[:5],
            },
            "destination": destination,
            "candidates": [_candidate_summary(m) for m in matches],
        }
        result = await self.client.call_agent(
            system_prompt=REASONING_SYSTEM_PROMPT,
            user_message=payload,
            model=self.model,
            temperature=0.5,
        )
        reasons = result.get("reasons") if isinstance(result, dict) else None
        if not isinstance(reasons, list) or len(reasons) != len(matches):
            got = len(reasons) if isinstance(reasons, list) else type(reasons).__name__
            raise EnrichmentDegradedError("reasoning", f"expected {len(matches)} reasons, got {got}")
        if not all(isinstance(r, str) and r.strip() for r in reasons):
            raise EnrichmentDegradedError("reasoning", "blank or non-text reason in response")
        return [r.strip() for r in reasons]


class EnrichmentPipeline:
    """
    Attaches image vibe and reasoning to a page of matches.

    Image analysis fans out per match under a per-call deadline; reasoning
    is a single call. Both run concurrently and neither can fail the page:
    missed images stay empty, a failed reasoning call gives every match the
    generic sentence.
    """

    def __init__(
        self,
        image_analyzer: Optional[ImageVibeAnalyzer],
        reasoner: Optional[BatchReasoner],
        image_timeout_s: float = IMAGE_TIMEOUT_S,
    ):
        self.image_analyzer = image_analyzer
        self.reasoner = reasoner
        self.image_group = DeadlineTaskGroup(DeadlinePolicy(timeout_s=image_timeout_s), label="image analysis")

    async def _analyze_images(self, matches: Sequence[PlaceMatch]) -> List[Optional[str]]:
        if self.image_analyzer is None:
            return [None] * len(matches)
        return await self.image_group.run([
            self.image_analyzer.describe(m.place) if m.place.photos else None
            for m in matches
        ])

    async def _reason(self, source: PlaceCandidate, matches: Sequence[PlaceMatch], destination: str) -> List[str]:
        if self.reasoner is None:
            return [GENERIC_REASONING] * len(matches)
        try:
            return await self.reasoner.reasons(source, matches, destination)
        except Exception as e:
            logger.warning(f"[ENRICH] Reasoning failed, using generic sentence for all {len(matches)} matches: {e}")
            return [GENERIC_REASONING] * len(matches)

    async def enrich(
        self, ranked_matches: Sequence[PlaceMatch], source: PlaceCandidate, destination: str
    ) -> List[PlaceMatch]:
        if not ranked_matches:
            return []
        vibes, reasons = await asyncio.gather(
            self._analyze_images(ranked_matches),
            self._reason(source, ranked_matches, destination),
        )
        enriched = [
            m.model_copy(update={"image_analysis": vibe, "reasoning": reason})
            for m, vibe, reason in zip(ranked_matches, vibes, reasons)
        ]
        logger.info(
            f"[ENRICH] Enriched {len(enriched)} matches | "
            f"with_image={sum(1 for v in vibes if v)} | "
            f"generic_reasoning={sum(1 for r in reasons if r == GENERIC_REASONING)}"
        )
        return enriched
