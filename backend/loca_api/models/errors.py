"""Error models for the search pipeline"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid


class ErrorCode(str, Enum):
    """Error codes surfaced to API clients"""
    RATE_LIMITED = "RATE_LIMITED"
    GEOCODE_NOT_FOUND = "GEOCODE_NOT_FOUND"
    GEOCODE_SERVICE_ERROR = "GEOCODE_SERVICE_ERROR"
    SOURCE_METADATA_UNAVAILABLE = "SOURCE_METADATA_UNAVAILABLE"
    CANDIDATE_SEARCH_FAILED = "CANDIDATE_SEARCH_FAILED"
    ENRICHMENT_DEGRADED = "ENRICHMENT_DEGRADED"
    PIPELINE_INTERNAL_ERROR = "PIPELINE_INTERNAL_ERROR"
    SEARCH_IN_PROGRESS = "SEARCH_IN_PROGRESS"
    NOT_FOUND = "NOT_FOUND"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class ApplicationError(Exception):
    """Base application error carrying a code and a user-facing message"""
    def __init__(self, code: ErrorCode, message: str, retryable: bool = False, hint: Optional[str] = None):
        self.error_id = str(uuid.uuid4())
        self.code = code
        self.message = message
        self.retryable = retryable
        self.hint = hint
        super().__init__(self.message)

    def model_dump(self):
        """Return dict representation for API responses"""
        return {
            "error_id": self.error_id,
            "code": self.code.value,
            "message": self.message,
            "hint": self.hint,
            "retryable": self.retryable,
        }

    @property
    def http_status(self) -> int:
        """Map error code to HTTP status"""
        mapping = {
            ErrorCode.RATE_LIMITED: 429,
            ErrorCode.GEOCODE_NOT_FOUND: 404,
            ErrorCode.GEOCODE_SERVICE_ERROR: 502,
            ErrorCode.SOURCE_METADATA_UNAVAILABLE: 502,
            ErrorCode.CANDIDATE_SEARCH_FAILED: 502,
            ErrorCode.SEARCH_IN_PROGRESS: 409,
            ErrorCode.NOT_FOUND: 404,
            ErrorCode.PIPELINE_INTERNAL_ERROR: 500,
            ErrorCode.CONFIGURATION_ERROR: 500,
        }
        return mapping.get(self.code, 500)


class RateLimitedError(ApplicationError):
    """Search quota exhausted (or quota could not be verified)"""
    def __init__(self, message: str, reset_at: Optional[datetime] = None, blocked_by: Optional[str] = None):
        super().__init__(ErrorCode.RATE_LIMITED, message, retryable=False)
        self.reset_at = reset_at
        self.blocked_by = blocked_by

    def model_dump(self):
        data = super().model_dump()
        data["reset_at"] = self.reset_at.isoformat() if self.reset_at else None
        data["blocked_by"] = self.blocked_by
        return data


class GeocodeNotFoundError(ApplicationError):
    """Destination text resolved to zero results"""
    def __init__(self, destination: str):
        super().__init__(
            ErrorCode.GEOCODE_NOT_FOUND,
            f'Could not find location for "{destination}". Please try another city or neighborhood.',
        )
        self.destination = destination


class GeocodeServiceError(ApplicationError):
    """Geocoding service answered with a non-OK status"""
    def __init__(self, status: str, retryable: bool = True):
        super().__init__(
            ErrorCode.GEOCODE_SERVICE_ERROR,
            f"Failed to geocode destination: {status}",
            retryable=retryable,
            hint="The location service is having trouble. Please try again.",
        )
        self.status = status


class SourceMetadataUnavailableError(ApplicationError):
    """A source place could not be loaded; scoring is impossible without it"""
    def __init__(self, place_id: str, reason: str):
        super().__init__(
            ErrorCode.SOURCE_METADATA_UNAVAILABLE,
            f"Failed to load source place ({place_id}): {reason}",
            retryable=True,
            hint="Please re-select your reference places and try again.",
        )
        self.place_id = place_id


class CandidateSearchError(ApplicationError):
    """Place directory search failed"""
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(ErrorCode.CANDIDATE_SEARCH_FAILED, message, retryable=retryable)


class EnrichmentDegradedError(ApplicationError):
    """Enrichment step failed; callers downgrade to defaults and never surface this"""
    def __init__(self, step: str, reason: str):
        super().__init__(ErrorCode.ENRICHMENT_DEGRADED, f"{step} degraded: {reason}", retryable=True)
        self.step = step


class PipelineInternalError(ApplicationError):
    """Catch-all for unexpected failures inside a pipeline stage"""
    def __init__(self, stage: str, reason: str):
        super().__init__(
            ErrorCode.PIPELINE_INTERNAL_ERROR,
            f"Search failed during {stage}: {reason}",
            retryable=True,
        )
        self.stage = stage


class SearchInProgressError(ApplicationError):
    """A search is already running for this session"""
    def __init__(self):
        super().__init__(
            ErrorCode.SEARCH_IN_PROGRESS,
            "A search is already in progress. Please wait for it to finish.",
            retryable=True,
        )
