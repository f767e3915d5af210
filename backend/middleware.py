"""Request guards for account and operator endpoints."""
from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def _bearer_claims(request: Request) -> Optional[dict]:
    header = request.headers.get("Authorization") or ""
    if not header.startswith(BEARER_PREFIX):
        return None
    return decode_access_token(header[len(BEARER_PREFIX):].strip())


async def require_auth(request: Request) -> dict:
    """Claims of the calling account; 401 without a valid token."""
    claims = _bearer_claims(request)
    if not claims or not claims.get("account_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return claims


async def admin_route_guard(request: Request) -> dict:
    """Like require_auth, but the token must carry the is_admin claim."""
    claims = await require_auth(request)
    if not claims.get("is_admin"):
        logger.warning(
            "ADMIN_ROUTE_DENIED account_id=%s path=%s",
            claims.get("account_id"), request.url.path,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return claims
