"""Caller identity extracted from request headers"""

from dataclasses import dataclass
from typing import Optional
import logging

from fastapi import Request, Security
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

# Header schemes; none of them are required
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)
session_id_header = APIKeyHeader(name="X-Session-Id", auto_error=False)
authorization_header = APIKeyHeader(name="Authorization", auto_error=False)

ANONYMOUS_SESSION = "anonymous"


@dataclass(frozen=True)
class RequestIdentity:
    session_id: str
    user_id: Optional[str]
    ip: Optional[str]
    auth_token: Optional[str]


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, else the socket peer"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_identity(
    request: Request,
    user_id: Optional[str] = Security(user_id_header),
    session_id: Optional[str] = Security(session_id_header),
    authorization: Optional[str] = Security(authorization_header),
) -> RequestIdentity:
    """
    Resolve who is calling.

    Signed-in callers send X-User-Id; everyone is also identified by IP.
    Calls without X-Session-Id share the anonymous session.
    """
    identity = RequestIdentity(
        session_id=(session_id or "").strip() or ANONYMOUS_SESSION,
        user_id=(user_id or "").strip() or None,
        ip=client_ip(request),
        auth_token=bearer_token(authorization),
    )
    logger.debug(f"Request identity | session={identity.session_id} | user={identity.user_id} | ip={identity.ip}")
    return identity
