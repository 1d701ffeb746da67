"""Webhook Routes - Stripe webhooks.

Stripe webhook endpoint with:
- Signature verification
- Idempotency (via stripe_events collection)
- Full audit logging

POST /api/webhook/stripe - Main Stripe webhook endpoint
POST /api/webhooks/stripe - Alias for Stripe webhook (for backward compatibility)
"""
from fastapi import APIRouter, HTTPException, Request, Header, status
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None):
    """
    Core Stripe webhook handler.

    Security:
    - Verifies Stripe signature when STRIPE_WEBHOOK_SECRET is set
    - Rejects unsigned or unparseable payloads with 400
    - Once verified, always answers 200; processing failures are recorded on the event row
    """
    payload = await request.body()

    success, message, details = await stripe_webhook_service.process_webhook(
        payload=payload,
        signature=stripe_signature or ""
    )

    if not success:
        logger.error(f"Webhook rejected: {message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=message
        )

    return {"status": "received", "message": message, "details": details}


# Primary webhook endpoint
@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhook/stripe"""
    return await _handle_stripe_webhook(request, stripe_signature)


# Alias endpoint for backward compatibility (Stripe may be configured with this URL)
@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)
