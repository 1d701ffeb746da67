"""Billing Routes - Lifetime license purchase and payment history.

Endpoints:
- GET /api/billing/tiers - Public tier list with prices
- POST /api/billing/checkout - Create checkout session for a lifetime tier
- GET /api/billing/subscription - Get current subscription
- POST /api/billing/portal - Create Stripe billing portal session
- GET /api/billing/payments - Payment history
"""
from fastapi import APIRouter, HTTPException, Request, status
from services.stripe_service import stripe_service
from services.entitlement_service import entitlement_service
from services.tier_registry import tier_registry
from middleware import user_route_guard
from models import CheckoutRequest
import logging
import os

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


def _origin_from_request(request: Request) -> str:
    origin = request.headers.get("origin", "")
    if not origin:
        origin = os.getenv("FRONTEND_URL", "")
    if not origin:
        # Fallback to host
        host = request.headers.get("host", "localhost")
        origin = f"{request.url.scheme}://{host}"
    return origin


@router.get("/tiers")
async def get_tiers():
    """Public tier list for the pricing page."""
    tiers = []
    for tier in tier_registry.get_all_tiers():
        tiers.append({
            **tier,
            "price_display": tier_registry.get_price_display(tier["id"]),
            "lifetime_savings": tier_registry.get_lifetime_savings(tier["id"]),
        })
    return {"tiers": tiers}


@router.post("/checkout")
async def create_checkout(request: Request, body: CheckoutRequest):
    """Create Stripe checkout session for a one-time lifetime purchase."""
    user = await user_route_guard(request)

    try:
        return await stripe_service.create_checkout_session(
            user_id=user["user_id"],
            email=user.get("email"),
            tier_id=body.tier_id,
            origin_url=_origin_from_request(request),
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except Exception as e:
        logger.error(f"Checkout creation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create checkout session"
        )


@router.get("/subscription")
async def get_subscription(request: Request):
    """Current subscription with resolved features and limits."""
    user = await user_route_guard(request)

    subscription = await entitlement_service.get_user_subscription(user["user_id"])
    if not subscription:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve subscription"
        )

    subscription["status_badge_color"] = tier_registry.get_status_badge_color(subscription["status"])
    return subscription


@router.post("/portal")
async def create_billing_portal(request: Request):
    """Create Stripe billing portal session (receipts and payment methods)."""
    user = await user_route_guard(request)

    try:
        return await stripe_service.create_portal_session(
            user_id=user["user_id"],
            origin_url=_origin_from_request(request),
        )
    except LookupError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.get("/payments")
async def get_payments(request: Request, limit: int = 50):
    """Payment history, newest first."""
    user = await user_route_guard(request)
    limit = max(1, min(limit, 200))

    payments = await stripe_service.list_payments(user["user_id"], limit=limit)
    return {"payments": payments, "count": len(payments)}
