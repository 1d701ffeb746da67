"""Stripe Webhook Service - Production-ready webhook handling with idempotency.

This service turns Stripe webhook events into lifetime license transitions.

Key Principles:
1. Idempotency: Every event is processed exactly once
2. Signature verification: All events must be signed
3. Tier derivation: tier comes from checkout metadata or the price_id, never the client
4. Audit logging: Every transition is logged
5. Server-authoritative: Backend controls all entitlements

Events Handled:
- checkout.session.completed (primary license trigger)
- checkout.session.async_payment_succeeded / async_payment_failed / expired
- charge.refunded
- charge.dispute.created / charge.dispute.closed
- customer.subscription.created / updated / deleted
- invoice.paid
- invoice.payment_failed
"""
import stripe
import os
import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from database import database
from services.tier_registry import tier_registry
from services.subscription_state import (
    BillingEvent, Transition, apply_billing_event,
)
from utils.audit import create_audit_log
from models import AuditAction, BillingMode, CheckoutSessionStatus, PaymentRecord, SubscriptionStatus

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
_stripe_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
stripe.api_key = _stripe_key

# Transitions whose event-specific fields must not be written to the row
_SKIP_FIELDS_REASONS = frozenset({"lifetime_license_protected", "not_applicable", "lifetime_tier_kept"})


# Webhook secret: support test vs live. If STRIPE_WEBHOOK_SECRET is set, use it; else choose by key prefix.
def _get_webhook_secret() -> str:
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
    if key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Extract safe fields for structured logging (event_id, event_type, livemode, user_id, customer, object_id)."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "user_id": metadata.get("user_id"),
        "customer": obj.get("customer") if isinstance(obj.get("customer"), str) else None,
        "object_id": obj.get("id"),
    }


def _ts_to_iso(value) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def _invoice_subscription_id(invoice: Dict) -> Optional[str]:
    """Invoice -> subscription id (older API top-level field, newer API parent.subscription_details)."""
    if invoice.get("subscription"):
        sub = invoice["subscription"]
        return sub if isinstance(sub, str) else sub.get("id")
    parent = invoice.get("parent") or {}
    return (parent.get("subscription_details") or {}).get("subscription")


class StripeWebhookService:
    """Production-ready Stripe webhook handler with idempotency."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)
        """
        # Step 1: Verify signature (use test/live secret by key or explicit STRIPE_WEBHOOK_SECRET)
        webhook_secret = _get_webhook_secret()
        try:
            if webhook_secret:
                stripe.Webhook.construct_event(payload, signature, webhook_secret)
            else:
                logger.warning("STRIPE_WEBHOOK_SECRET (or _TEST/_LIVE) not set - skipping signature verification")
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s (check STRIPE_WEBHOOK_SECRET vs Stripe key mode)", e)
            return False, "Invalid signature", {"error": str(e)}
        except Exception as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s user_id=%s customer=%s object_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("user_id"), ctx.get("customer"), ctx.get("object_id"),
        )

        # Step 2: Idempotency check
        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id})

        if existing and existing.get("status") == "PROCESSED":
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        # Step 3: Record event
        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc).isoformat(),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
            "related_user_id": None,
            "raw_minimal": self._extract_safe_data(event),
        }

        if existing:
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": event_record}
            )
        else:
            try:
                await db.stripe_events.insert_one(event_record)
            except Exception as insert_err:
                if "duplicate key" in str(insert_err).lower() or "E11000" in str(insert_err):
                    logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                    return True, "Already processed", {"event_id": event_id}
                raise

        # Step 4: Process event
        try:
            result = await self._handle_event(event)

            await db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": "PROCESSED",
                        "processed_at": datetime.now(timezone.utc).isoformat(),
                        "related_user_id": result.get("user_id"),
                    }
                }
            )

            logger.info(
                "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s",
                event_id, event_type, result.get("user_id"),
            )
            return True, "Processed", result

        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )

            await db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": "FAILED",
                        "processed_at": datetime.now(timezone.utc).isoformat(),
                        "error": str(e),
                    }
                }
            )

            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_role="SYSTEM",
                resource_type="stripe_event",
                resource_id=event_id,
                metadata={
                    "event_id": event_id,
                    "event_type": event_type,
                    "error": str(e),
                }
            )

            # Return 200 to prevent Stripe retries (we've logged the failure)
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {})

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "checkout.session.async_payment_succeeded": self._handle_async_payment_succeeded,
            "checkout.session.async_payment_failed": self._handle_async_payment_failed,
            "checkout.session.expired": self._handle_checkout_expired,
            "charge.refunded": self._handle_charge_refunded,
            "charge.dispute.created": self._handle_dispute_created,
            "charge.dispute.closed": self._handle_dispute_closed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """
        Handle checkout.session.completed - PRIMARY license trigger.

        payment mode: lifetime purchase (paid now, or later via async_payment_succeeded)
        subscription mode: recurring subscription
        """
        mode = session.get("mode")
        metadata = session.get("metadata") or {}
        logger.info(
            "HANDLER_START event.type=checkout.session.completed session_id=%s mode=%s payment_status=%s metadata.user_id=%s metadata.tier_id=%s",
            session.get("id"), mode, session.get("payment_status"), metadata.get("user_id"), metadata.get("tier_id"),
        )

        if mode == "subscription":
            return await self._handle_subscription_checkout(session, event)
        if mode != "payment":
            logger.info(f"Ignoring checkout mode: {mode}")
            return {"handled": False, "mode": mode}

        if session.get("payment_status") not in ("paid", "no_payment_required"):
            # Bank debits and vouchers settle later
            await self._set_checkout_status(session.get("id"), CheckoutSessionStatus.AWAITING_PAYMENT)
            logger.info(
                "HANDLER_END event.type=checkout.session.completed session_id=%s awaiting_payment=True",
                session.get("id"),
            )
            return {
                "handled": True,
                "user_id": metadata.get("user_id"),
                "awaiting_payment": True,
            }

        return await self._grant_lifetime(session, event)

    async def _handle_async_payment_succeeded(self, session: Dict, event: Dict) -> Dict:
        return await self._grant_lifetime(session, event)

    async def _handle_async_payment_failed(self, session: Dict, event: Dict) -> Dict:
        await self._set_checkout_status(session.get("id"), CheckoutSessionStatus.FAILED)
        logger.info("Checkout %s async payment failed; subscription unchanged", session.get("id"))
        return {"handled": True, "user_id": (session.get("metadata") or {}).get("user_id"), "checkout_status": "FAILED"}

    async def _handle_checkout_expired(self, session: Dict, event: Dict) -> Dict:
        await self._set_checkout_status(session.get("id"), CheckoutSessionStatus.EXPIRED)
        return {"handled": True, "user_id": (session.get("metadata") or {}).get("user_id"), "checkout_status": "EXPIRED"}

    async def _grant_lifetime(self, session: Dict, event: Dict) -> Dict:
        metadata = session.get("metadata") or {}
        user_id = await self._resolve_user_id(metadata, customer=session.get("customer"))
        if not user_id:
            logger.error(f"No user_id for checkout session {session.get('id')}")
            raise ValueError("MANDATORY: user_id missing from session.metadata")

        raw_tier = metadata.get("tier_id")
        if not tier_registry.get_subscription_tier(raw_tier):
            raise ValueError(f"MANDATORY: unknown tier_id '{raw_tier}' in session.metadata")
        tier = tier_registry.resolve_tier_id(raw_tier).value

        amount_total = session.get("amount_total") or 0
        currency = session.get("currency") or "eur"
        now = datetime.now(timezone.utc).isoformat()

        result = await self._apply(
            user_id,
            BillingEvent.PAYMENT_SUCCEEDED,
            event,
            tier=tier,
            fields={
                "billing_mode": BillingMode.LIFETIME.value,
                "stripe_customer_id": session.get("customer"),
                "stripe_payment_intent_id": session.get("payment_intent"),
                "stripe_checkout_session_id": session.get("id"),
                "amount_paid": amount_total / 100,
                "currency": currency,
                "purchased_at": now,
            },
        )

        await self._record_payment(
            user_id,
            amount_cents=amount_total,
            currency=currency,
            status="succeeded",
            tier_id=tier,
            description=f"{tier_registry.get_tier(tier)['name']} lifetime license",
            stripe_payment_intent_id=session.get("payment_intent"),
            stripe_checkout_session_id=session.get("id"),
        )
        await self._set_checkout_status(session.get("id"), CheckoutSessionStatus.COMPLETED)

        logger.info(
            "HANDLER_END event.type=%s user_id=%s status=%s tier_id=%s changed=%s reason=%s",
            event.get("type"), user_id, result["status"], result["tier_id"], result["changed"], result["reason"],
        )
        return result

    async def _handle_subscription_checkout(self, session: Dict, event: Dict) -> Dict:
        metadata = session.get("metadata") or {}
        user_id = await self._resolve_user_id(metadata, customer=session.get("customer"))
        if not user_id:
            raise ValueError("MANDATORY: user_id missing from session.metadata")

        return await self._apply(
            user_id,
            BillingEvent.SUBSCRIPTION_UPDATED,
            event,
            tier=metadata.get("tier_id"),
            stripe_status="active" if session.get("payment_status") == "paid" else "incomplete",
            fields={
                "billing_mode": BillingMode.RECURRING.value,
                "stripe_customer_id": session.get("customer"),
                "stripe_subscription_id": session.get("subscription"),
                "stripe_checkout_session_id": session.get("id"),
            },
        )

    async def _handle_charge_refunded(self, charge: Dict, event: Dict) -> Dict:
        """Full refunds revoke the license; partial refunds are recorded only."""
        user_id = await self._resolve_user_id(
            charge.get("metadata") or {},
            customer=charge.get("customer"),
            payment_intent=charge.get("payment_intent"),
        )
        if not user_id:
            logger.warning(f"charge.refunded for unknown user (charge {charge.get('id')}) - ignoring")
            return {"handled": False, "reason": "user_not_found"}

        amount = charge.get("amount") or 0
        refunded = charge.get("amount_refunded") or 0
        full_refund = charge.get("refunded") is True or (amount > 0 and refunded >= amount)

        # amount_refunded is the running total for the charge
        new_refund = refunded - await self._recorded_refund_cents(charge.get("id"))
        if new_refund > 0:
            await self._record_payment(
                user_id,
                amount_cents=-new_refund,
                currency=charge.get("currency") or "eur",
                status="refunded" if full_refund else "partially_refunded",
                description="Refund",
                stripe_payment_intent_id=charge.get("payment_intent"),
                stripe_charge_id=charge.get("id"),
            )

        if not full_refund:
            logger.info(f"Partial refund for user {user_id} ({refunded}/{amount}) - license kept")
            return {"handled": True, "user_id": user_id, "changed": False, "reason": "partial_refund"}

        return await self._apply(user_id, BillingEvent.PAYMENT_REFUNDED, event)

    async def _handle_dispute_created(self, dispute: Dict, event: Dict) -> Dict:
        user_id = await self._resolve_user_id(
            dispute.get("metadata") or {},
            payment_intent=dispute.get("payment_intent"),
        )
        if not user_id:
            logger.warning(f"Dispute {dispute.get('id')} for unknown user - ignoring")
            return {"handled": False, "reason": "user_not_found"}
        return await self._apply(user_id, BillingEvent.PAYMENT_DISPUTED, event)

    async def _handle_dispute_closed(self, dispute: Dict, event: Dict) -> Dict:
        user_id = await self._resolve_user_id(
            dispute.get("metadata") or {},
            payment_intent=dispute.get("payment_intent"),
        )
        if not user_id:
            logger.warning(f"Dispute {dispute.get('id')} for unknown user - ignoring")
            return {"handled": False, "reason": "user_not_found"}

        outcome = dispute.get("status")
        if outcome in ("won", "warning_closed"):
            return await self._apply(user_id, BillingEvent.DISPUTE_WON, event)
        if outcome == "lost":
            return await self._apply(user_id, BillingEvent.DISPUTE_LOST, event)

        logger.info(f"Dispute {dispute.get('id')} closed with status {outcome} - no change")
        return {"handled": True, "user_id": user_id, "changed": False, "reason": "not_applicable"}

    async def _handle_subscription_change(self, subscription: Dict, event: Dict) -> Dict:
        """
        Handle customer.subscription.created / updated.

        Tier is derived from the subscription item's price_id, falling back to metadata.
        """
        stripe_customer_id = subscription.get("customer")
        stripe_subscription_id = subscription.get("id")
        metadata = subscription.get("metadata") or {}
        logger.info(
            "HANDLER_START event.type=%s stripe_customer_id=%s subscription_id=%s status=%s",
            event.get("type"), stripe_customer_id, stripe_subscription_id, subscription.get("status"),
        )

        user_id = await self._resolve_user_id(
            metadata, customer=stripe_customer_id, subscription=stripe_subscription_id,
        )
        if not user_id:
            logger.warning(f"No user for subscription {stripe_subscription_id}")
            return {"handled": False, "reason": "user_not_found"}

        items = (subscription.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price_id = (first_item.get("price") or {}).get("id")
        tier = tier_registry.get_tier_from_price_id(price_id) or metadata.get("tier_id")

        period_start = subscription.get("current_period_start") or first_item.get("current_period_start")
        period_end = subscription.get("current_period_end") or first_item.get("current_period_end")

        return await self._apply(
            user_id,
            BillingEvent.SUBSCRIPTION_UPDATED,
            event,
            tier=tier,
            stripe_status=subscription.get("status"),
            fields={
                "billing_mode": BillingMode.RECURRING.value,
                "stripe_customer_id": stripe_customer_id,
                "stripe_subscription_id": stripe_subscription_id,
                "current_period_start": _ts_to_iso(period_start),
                "current_period_end": _ts_to_iso(period_end),
                "cancel_at_period_end": subscription.get("cancel_at_period_end", False),
                "trial_end": _ts_to_iso(subscription.get("trial_end")),
            },
        )

    async def _handle_subscription_deleted(self, subscription: Dict, event: Dict) -> Dict:
        user_id = await self._resolve_user_id(
            subscription.get("metadata") or {},
            customer=subscription.get("customer"),
            subscription=subscription.get("id"),
        )
        if not user_id:
            return {"handled": False, "reason": "user_not_found"}
        return await self._apply(
            user_id,
            BillingEvent.SUBSCRIPTION_DELETED,
            event,
            fields={"cancel_at_period_end": False},
        )

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            # One-time invoices are covered by checkout events
            return {"handled": False, "reason": "not_a_subscription_invoice"}

        user_id = await self._resolve_user_id(
            invoice.get("metadata") or {}, customer=invoice.get("customer"), subscription=subscription_id,
        )
        if not user_id:
            return {"handled": False, "reason": "user_not_found"}

        result = await self._apply(user_id, BillingEvent.INVOICE_PAID, event)
        if result["reason"] != "lifetime_license_protected":
            await self._record_payment(
                user_id,
                amount_cents=invoice.get("amount_paid") or 0,
                currency=invoice.get("currency") or "eur",
                status="succeeded",
                description="Subscription invoice",
                stripe_invoice_id=invoice.get("id"),
            )
        return result

    async def _handle_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return {"handled": False, "reason": "not_a_subscription_invoice"}

        user_id = await self._resolve_user_id(
            invoice.get("metadata") or {}, customer=invoice.get("customer"), subscription=subscription_id,
        )
        if not user_id:
            return {"handled": False, "reason": "user_not_found"}
        return await self._apply(user_id, BillingEvent.INVOICE_PAYMENT_FAILED, event)

    # =========================================================================
    # Persistence helpers
    # =========================================================================

    async def _apply(
        self,
        user_id: str,
        billing_event: BillingEvent,
        event: Dict,
        tier: Optional[str] = None,
        stripe_status: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run the state machine for the user's row and persist the outcome."""
        db = database.get_db()
        current = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0}) or {}
        before_status = current.get("status") or SubscriptionStatus.FREE.value
        before_tier = current.get("tier_id") or "free"

        transition: Transition = apply_billing_event(
            before_status, before_tier, billing_event, tier=tier, stripe_status=stripe_status,
        )

        updates: Dict[str, Any] = {}
        if transition.reason not in _SKIP_FIELDS_REASONS:
            updates.update({k: v for k, v in (fields or {}).items() if v is not None})
        if transition.changed:
            updates.update({
                "status": transition.status.value,
                "tier_id": transition.tier.value,
                "entitlement_status": tier_registry.get_entitlement_status_from_subscription(
                    transition.status.value
                ).value,
            })

        entitlements_version = current.get("entitlements_version", 0)
        if updates:
            now = datetime.now(timezone.utc).isoformat()
            updates["updated_at"] = now
            update_doc: Dict[str, Any] = {
                "$set": updates,
                "$setOnInsert": {
                    "subscription_id": f"SUB-{uuid.uuid4().hex[:12].upper()}",
                    "created_at": now,
                },
            }
            if transition.changed:
                update_doc["$inc"] = {"entitlements_version": 1}
                entitlements_version += 1
            await db.subscriptions.update_one({"user_id": user_id}, update_doc, upsert=True)

        if transition.changed:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_UPDATED,
                actor_role="SYSTEM",
                user_id=user_id,
                resource_type="subscription",
                resource_id=current.get("subscription_id"),
                before_state={"status": before_status, "tier_id": before_tier},
                after_state={"status": transition.status.value, "tier_id": transition.tier.value},
                metadata={
                    "event_id": event.get("id"),
                    "event_type": event.get("type"),
                    "billing_event": billing_event.value,
                    "reason": transition.reason,
                    "entitlements_version": entitlements_version,
                },
            )
        else:
            logger.info(
                "No license change for user %s on %s (%s)", user_id, billing_event.value, transition.reason,
            )

        return {
            "handled": True,
            "user_id": user_id,
            "status": transition.status.value,
            "tier_id": transition.tier.value,
            "changed": transition.changed,
            "reason": transition.reason,
            "entitlements_version": entitlements_version,
        }

    async def _resolve_user_id(
        self,
        metadata: Dict,
        customer: Optional[str] = None,
        subscription: Optional[str] = None,
        payment_intent: Optional[str] = None,
    ) -> Optional[str]:
        """metadata.user_id first, then the stored subscription row by Stripe reference."""
        if metadata.get("user_id"):
            return metadata["user_id"]

        db = database.get_db()
        lookups = [
            ("stripe_subscription_id", subscription),
            ("stripe_payment_intent_id", payment_intent),
            ("stripe_customer_id", customer if isinstance(customer, str) else None),
        ]
        for field, value in lookups:
            if not value:
                continue
            row = await db.subscriptions.find_one({field: value}, {"_id": 0, "user_id": 1})
            if row and row.get("user_id"):
                return row["user_id"]
        return None

    async def _record_payment(
        self,
        user_id: str,
        amount_cents: int,
        currency: str,
        status: str,
        tier_id: Optional[str] = None,
        description: Optional[str] = None,
        stripe_payment_intent_id: Optional[str] = None,
        stripe_invoice_id: Optional[str] = None,
        stripe_checkout_session_id: Optional[str] = None,
        stripe_charge_id: Optional[str] = None,
    ) -> None:
        db = database.get_db()
        row = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0, "subscription_id": 1}) or {}
        payment = PaymentRecord(
            user_id=user_id,
            subscription_id=row.get("subscription_id"),
            tier_id=tier_id,
            stripe_payment_intent_id=stripe_payment_intent_id,
            stripe_invoice_id=stripe_invoice_id,
            stripe_checkout_session_id=stripe_checkout_session_id,
            stripe_charge_id=stripe_charge_id,
            amount=amount_cents / 100,
            currency=currency,
            status=status,
            description=description,
        )
        doc = payment.model_dump()
        doc["created_at"] = doc["created_at"].isoformat()
        await db.payment_history.insert_one(doc)
        logger.info(f"Payment recorded for user {user_id}: {amount_cents / 100:.2f} {currency} ({status})")

    async def _recorded_refund_cents(self, charge_id: Optional[str]) -> int:
        """Refund cents already in payment_history for the charge."""
        if not charge_id:
            return 0
        db = database.get_db()
        total = 0
        async for row in db.payment_history.find({"stripe_charge_id": charge_id}, {"_id": 0, "amount": 1}):
            total += round(-(row.get("amount") or 0) * 100)
        return total

    async def _set_checkout_status(self, session_id: Optional[str], status: CheckoutSessionStatus) -> None:
        if not session_id:
            return
        db = database.get_db()
        updates = {"status": status.value, "updated_at": datetime.now(timezone.utc).isoformat()}
        if status == CheckoutSessionStatus.COMPLETED:
            updates["completed_at"] = updates["updated_at"]
        await db.checkout_sessions.update_one({"session_id": session_id}, {"$set": updates})

    def _extract_safe_data(self, event: Dict) -> Dict:
        """Extract safe subset of event data for logging (no secrets)."""
        return {
            "id": event.get("id"),
            "type": event.get("type"),
            "created": event.get("created"),
            "object_id": event.get("data", {}).get("object", {}).get("id"),
            "object_type": event.get("data", {}).get("object", {}).get("object"),
        }


# Singleton instance
stripe_webhook_service = StripeWebhookService()
