"""Search state machine"""

from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


class SearchStage(str, Enum):
    """Search stages

    IDLE → RATE_LIMIT_CHECK → GEOCODING → SOURCE_METADATA_FETCH → KEYWORD_EXTRACTION
         → CANDIDATE_SEARCH → PENALIZATION → SCORING → ENRICHMENT → CACHED → DONE
      ↘──────────────────────────────── ERROR ──────────────────────────────────↗
    """
    IDLE = "IDLE"
    RATE_LIMIT_CHECK = "RATE_LIMIT_CHECK"
    GEOCODING = "GEOCODING"
    SOURCE_METADATA_FETCH = "SOURCE_METADATA_FETCH"
    KEYWORD_EXTRACTION = "KEYWORD_EXTRACTION"
    CANDIDATE_SEARCH = "CANDIDATE_SEARCH"
    PENALIZATION = "PENALIZATION"
    SCORING = "SCORING"
    ENRICHMENT = "ENRICHMENT"
    CACHED = "CACHED"
    DONE = "DONE"
    ERROR = "ERROR"


STAGE_LABELS = {
    SearchStage.RATE_LIMIT_CHECK: "rate limit check",
    SearchStage.GEOCODING: "geocoding",
    SearchStage.SOURCE_METADATA_FETCH: "source place lookup",
    SearchStage.KEYWORD_EXTRACTION: "keyword extraction",
    SearchStage.CANDIDATE_SEARCH: "candidate search",
    SearchStage.PENALIZATION: "penalization",
    SearchStage.SCORING: "scoring",
    SearchStage.ENRICHMENT: "enrichment",
    SearchStage.CACHED: "caching",
}


class SearchState:
    """Tracks stage transitions and the single error message of one search"""

    def __init__(self):
        self.stage = SearchStage.IDLE
        self.started_at: Optional[datetime] = None
        self.error_message: Optional[str] = None
        self.failed_stage: Optional[SearchStage] = None
        self.metadata: Dict[str, Any] = {}
        self.event_log: List[Dict[str, str]] = []

    def log_event(self, stage: SearchStage, detail: str = ""):
        """Move to ``stage`` and record the transition"""
        if self.is_terminal():
            logger.debug(f"Ignoring transition to {stage.value} from terminal stage {self.stage.value}")
            return

        now = datetime.now(timezone.utc)
        if not self.started_at:
            self.started_at = now
        self.event_log.append({"ts": now.isoformat(), "stage": stage.value, "detail": detail})
        self.stage = stage
        logger.debug(f"[SEARCH] stage={stage.value} {detail}")

    def fail(self, message: str):
        """Enter ERROR, remembering which stage failed"""
        if self.is_terminal():
            return
        self.failed_stage = self.stage
        self.error_message = message
        self.log_event(SearchStage.ERROR, message)

    def get_latest_event(self):
        if not self.event_log:
            return None
        return self.event_log[-1]

    def is_terminal(self) -> bool:
        return self.stage in (SearchStage.DONE, SearchStage.ERROR)

    def reset(self):
        self.__init__()
