"""
Feature Gating Middleware
Server-side enforcement of tier-based feature access.
Uses tier_registry as single source of truth; reads the subscription from DB by user_id only.
"""
from fastapi import HTTPException, Request
from models import AuditAction, UserRole
from utils.audit import create_audit_log
from middleware import get_current_user
from services.entitlement_service import entitlement_service
from services.tier_registry import TierGatingError
from functools import wraps
import logging

logger = logging.getLogger(__name__)


def require_feature(feature_key: str):
    """
    Decorator to enforce tier-based feature access.
    Fetches the subscription fresh from DB by user_id; never trusts the request payload.

    Usage:
        @router.get("/{card_id}/leads")
        @require_feature("lead_collection")
        async def list_leads(request: Request, card_id: str):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(request: Request, *args, **kwargs):
            # Get user from request state (set by user_route_guard)
            user = getattr(request.state, 'user', None)
            if not user:
                user = await get_current_user(request)

            if not user:
                raise HTTPException(401, "Authentication required")

            # Admins are never tier-gated
            if user.get("role") == UserRole.ROLE_ADMIN.value:
                return await func(request, *args, **kwargs)

            user_id = user.get("user_id") or user.get("sub")

            try:
                await entitlement_service.require_feature(user_id, feature_key)
            except TierGatingError as e:
                details = e.details
                await create_audit_log(
                    action=AuditAction.FEATURE_GATE_DENIED,
                    actor_role=user.get("role"),
                    actor_id=user_id,
                    user_id=user_id,
                    metadata={
                        "feature_key": feature_key,
                        "error_code": details.get("error_code"),
                        "current_tier": details.get("current_tier"),
                        "endpoint": str(request.url.path),
                        "method": request.method
                    }
                )
                logger.warning(
                    "Feature access denied: user_id=%s requested_feature=%s error_code=%s endpoint=%s method=%s",
                    user_id, feature_key, details.get("error_code"), request.url.path, request.method
                )

                raise HTTPException(
                    status_code=403,
                    detail={"message": str(e), **details}
                ) from e

            # Feature allowed - proceed
            return await func(request, *args, **kwargs)

        return wrapper
    return decorator
