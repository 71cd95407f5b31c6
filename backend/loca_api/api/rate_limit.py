"""Rate limit status endpoint"""
import logging

from fastapi import APIRouter, Depends

from loca_api.api.search import SessionRegistry, get_registry
from loca_api.core.identity import RequestIdentity, get_identity

router = APIRouter()
logger = logging.getLogger(__name__)


# GET /api/rate-limit/status: read-only view of the caller's user and IP windows.
# Never consumes a search.
@router.get("/rate-limit/status")
async def rate_limit_status(
    identity: RequestIdentity = Depends(get_identity),
    sessions: SessionRegistry = Depends(get_registry),
) -> dict:
    report = await sessions.rate_limiter.status(identity.user_id, identity.ip)
    logger.info(f"[RATE LIMIT] Status check | user={identity.user_id} | ip={identity.ip} | blocked_by={report['blocked_by']}")
    return report
