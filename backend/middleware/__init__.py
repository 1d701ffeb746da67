from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def user_route_guard(request: Request) -> dict:
    """Guard for signed-in user routes; stores the user on request.state for feature gating."""
    user = await require_auth(request)
    request.state.user = user
    return user
