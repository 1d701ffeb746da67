"""Usage Routes - Resource counts against the effective tier's limits."""
from fastapi import APIRouter, HTTPException, Request, status
from services.usage_service import usage_service
from middleware import user_route_guard
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("")
async def get_usage(request: Request):
    user = await user_route_guard(request)
    stats = await usage_service.get_usage_stats(user["user_id"])
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve usage"
        )
    return stats


@router.get("/{limit_type}")
async def get_usage_limit(request: Request, limit_type: str):
    user = await user_route_guard(request)
    try:
        return await usage_service.check_usage_limit(user["user_id"], limit_type)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
