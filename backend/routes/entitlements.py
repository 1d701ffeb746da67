"""Entitlement Routes - What the signed-in user may use.

GET /api/entitlements - Feature list, limits and summary
GET /api/entitlements/features/{feature_key} - Single feature check
GET /api/entitlements/matrix - Public feature x tier matrix
"""
from fastapi import APIRouter, Request
from services.entitlement_service import entitlement_service
from services.tier_registry import tier_registry
from middleware import user_route_guard
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("")
async def get_entitlements(request: Request):
    user = await user_route_guard(request)
    return await entitlement_service.get_user_entitlements(user["user_id"])


@router.get("/matrix")
async def get_entitlement_matrix():
    return tier_registry.get_entitlement_matrix()


@router.get("/features/{feature_key}")
async def check_feature(request: Request, feature_key: str):
    user = await user_route_guard(request)
    feature = tier_registry.resolve_feature_key(feature_key)
    has_access = await entitlement_service.has_feature_access(user["user_id"], feature)
    min_tier = tier_registry.get_minimum_tier_for_feature(feature)
    return {
        "feature": feature,
        "has_access": has_access,
        "minimum_tier": min_tier.value if min_tier else None,
    }
