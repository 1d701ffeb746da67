"""Stripe Service - Checkout session creation and billing management.

This service handles:
- Creating one-time checkout sessions for lifetime tiers
- Getting or creating the Stripe customer for a user
- Billing portal access (receipts, payment methods)

Key Principles:
- Uses tier_registry as single source of truth for pricing
- All price_ids come from tier_registry
- Metadata includes user_id and tier_id for webhook tracing
"""
import stripe
import os
import logging
from typing import Optional, Dict, Any, List

from database import database
from services.tier_registry import tier_registry
from services.entitlement_service import entitlement_service
from utils.audit import create_audit_log
from services.subscription_state import LIFETIME_STATUSES
from models import AuditAction, CheckoutSessionRecord, TierId

logger = logging.getLogger(__name__)

# Initialize Stripe (no placeholder default; missing key fails at checkout with clear error)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


def _validate_origin(origin_url: str) -> str:
    base = (origin_url or "").strip().rstrip("/")
    if not base.startswith("http://") and not base.startswith("https://"):
        raise ValueError(
            "Invalid redirect base URL: origin must be http or https. "
            "Set Origin header or FRONTEND_URL env."
        )
    return base


class StripeService:
    """Stripe billing operations service."""

    async def get_or_create_customer(self, user_id: str, email: Optional[str]) -> str:
        """
        Return the Stripe customer id for the user.

        Order: stored subscription row, then an existing customer with the same
        email, then a new customer tagged with metadata.user_id.
        """
        db = database.get_db()
        record = await db.subscriptions.find_one(
            {"user_id": user_id},
            {"_id": 0, "stripe_customer_id": 1}
        )
        if record and record.get("stripe_customer_id"):
            return record["stripe_customer_id"]

        if email:
            existing = stripe.Customer.list(email=email, limit=1)
            if existing.data:
                return existing.data[0].id

        customer = stripe.Customer.create(
            email=email,
            metadata={"user_id": user_id},
        )
        logger.info(f"Stripe customer created for user {user_id}: {customer.id}")
        return customer.id

    async def create_checkout_session(
        self,
        user_id: str,
        email: Optional[str],
        tier_id: str,
        origin_url: str
    ) -> Dict[str, Any]:
        """
        Create Stripe checkout session for a lifetime tier.

        Args:
            user_id: Internal user ID (MANDATORY for webhook)
            email: Customer email used to find or create the Stripe customer
            tier_id: pro | business
            origin_url: Base URL for success/cancel redirects

        Returns:
            Dict with session_id, checkout_url, tier_id, tier_name
        """
        if not (stripe.api_key or "").strip():
            raise ValueError("Stripe not configured: set STRIPE_SECRET_KEY or STRIPE_API_KEY and restart.")

        tier_def = tier_registry.get_subscription_tier(tier_id)
        if not tier_def:
            raise ValueError(f"Invalid tier: {tier_id}")
        tier = TierId(tier_def["id"])
        if tier == TierId.FREE:
            raise ValueError("The free tier cannot be purchased")

        price_id = tier_registry.get_stripe_price_id(tier)
        if not price_id:
            raise ValueError(f"No Stripe price configured for tier {tier.value}")

        # A lifetime license (disputed included) never goes down; buying the same or a lower tier is pointless
        subscription = await entitlement_service.get_user_subscription(user_id)
        if subscription and subscription["status"] in {s.value for s in LIFETIME_STATUSES} and \
                tier_registry.tier_rank(subscription["tier_id"]) >= tier_registry.tier_rank(tier):
            raise ValueError(f"User already owns {subscription['tier_name']} (lifetime)")

        base = _validate_origin(origin_url)

        success_url = f"{base}/app?checkout=success&session_id={{CHECKOUT_SESSION_ID}}"
        cancel_url = f"{base}/app?checkout=cancelled"

        db = database.get_db()

        try:
            customer_id = await self.get_or_create_customer(user_id, email)

            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="payment",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                allow_promotion_codes=True,
                metadata={
                    "user_id": user_id,  # MANDATORY for webhook
                    "tier_id": tier.value,
                    "purchase_type": "lifetime",
                },
                payment_intent_data={
                    "metadata": {
                        "user_id": user_id,
                        "tier_id": tier.value,
                        "purchase_type": "lifetime",
                    },
                },
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout error for user {user_id}: {e}")
            raise ValueError(f"Failed to create checkout session: {str(e)}")

        # Record checkout attempt
        checkout_record = CheckoutSessionRecord(
            session_id=session.id,
            user_id=user_id,
            tier_id=tier,
            checkout_url=session.url,
            amount_total=session.amount_total,
            currency=session.currency,
            stripe_customer_id=customer_id,
        )
        doc = checkout_record.model_dump()
        doc["created_at"] = doc["created_at"].isoformat()
        await db.checkout_sessions.insert_one(doc)

        await create_audit_log(
            action=AuditAction.CHECKOUT_CREATED,
            actor_role="USER",
            actor_id=user_id,
            user_id=user_id,
            resource_type="checkout_session",
            resource_id=session.id,
            metadata={"tier_id": tier.value, "price_id": price_id},
        )

        logger.info(f"Checkout session created for user {user_id}: {session.id} tier={tier.value}")

        return {
            "session_id": session.id,
            "checkout_url": session.url,
            "tier_id": tier.value,
            "tier_name": tier_def["name"],
        }

    async def create_portal_session(self, user_id: str, origin_url: str) -> Dict[str, Any]:
        """Create Stripe billing portal session (receipts, payment methods)."""
        if not (stripe.api_key or "").strip():
            raise ValueError("Stripe not configured: set STRIPE_SECRET_KEY or STRIPE_API_KEY and restart.")

        db = database.get_db()
        record = await db.subscriptions.find_one(
            {"user_id": user_id},
            {"_id": 0, "stripe_customer_id": 1}
        )
        if not record or not record.get("stripe_customer_id"):
            raise LookupError("No billing account found")

        base = _validate_origin(origin_url)

        try:
            portal_session = stripe.billing_portal.Session.create(
                customer=record["stripe_customer_id"],
                return_url=f"{base}/app/billing",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe portal error for user {user_id}: {e}")
            raise ValueError(f"Failed to create billing portal session: {str(e)}")

        logger.info(f"Billing portal session created for user {user_id}")
        return {"portal_url": portal_session.url}

    async def list_payments(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Payment history recorded by the webhook handlers, newest first."""
        db = database.get_db()
        cursor = db.payment_history.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)


# Singleton instance
stripe_service = StripeService()
