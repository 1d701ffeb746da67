"""Lifetime license state machine.

Every billing fact that reaches us from Stripe is reduced to a BillingEvent and
applied to the stored (status, tier) pair here. The function is pure; the
webhook service owns persistence.

Rules:
- A settled one-time payment grants LIFETIME; the tier never goes down.
- Refunds and lost disputes revoke the license (tier -> free).
- Recurring subscription events never overwrite a lifetime license.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

from models import SubscriptionStatus, TierId
from services.tier_registry import tier_registry

logger = logging.getLogger(__name__)


class BillingEvent(str, Enum):
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    PAYMENT_DISPUTED = "PAYMENT_DISPUTED"
    DISPUTE_WON = "DISPUTE_WON"
    DISPUTE_LOST = "DISPUTE_LOST"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_DELETED = "SUBSCRIPTION_DELETED"
    INVOICE_PAID = "INVOICE_PAID"
    INVOICE_PAYMENT_FAILED = "INVOICE_PAYMENT_FAILED"


RECURRING_EVENTS = frozenset({
    BillingEvent.SUBSCRIPTION_UPDATED,
    BillingEvent.SUBSCRIPTION_DELETED,
    BillingEvent.INVOICE_PAID,
    BillingEvent.INVOICE_PAYMENT_FAILED,
})

LIFETIME_STATUSES = frozenset({SubscriptionStatus.LIFETIME, SubscriptionStatus.DISPUTED})

# Stripe subscription.status -> our status
STRIPE_SUBSCRIPTION_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
}


@dataclass
class Transition:
    """Outcome of applying one billing event."""
    status: SubscriptionStatus
    tier: TierId
    changed: bool
    reason: str


def map_stripe_subscription_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    return STRIPE_SUBSCRIPTION_STATUS_MAP.get((stripe_status or "").lower(), SubscriptionStatus.INCOMPLETE)


def _coerce_status(value) -> SubscriptionStatus:
    if isinstance(value, SubscriptionStatus):
        return value
    try:
        return SubscriptionStatus((value or "FREE").upper())
    except ValueError:
        logger.warning(f"Unknown stored subscription status '{value}', treating as FREE")
        return SubscriptionStatus.FREE


def apply_billing_event(
    current_status,
    current_tier,
    event: BillingEvent,
    tier=None,
    stripe_status: Optional[str] = None,
) -> Transition:
    """Compute the next (status, tier) for a billing event.

    Args:
        current_status: stored SubscriptionStatus (or its string value)
        current_tier: stored tier id
        event: the billing event
        tier: tier carried by the event (purchase or subscription price)
        stripe_status: Stripe subscription status for SUBSCRIPTION_UPDATED
    """
    status = _coerce_status(current_status)
    current = tier_registry.resolve_tier_id(current_tier)
    event = BillingEvent(event)

    def to(new_status: SubscriptionStatus, new_tier: TierId, reason: str) -> Transition:
        return Transition(
            status=new_status,
            tier=new_tier,
            changed=(new_status != status or new_tier != current),
            reason=reason,
        )

    def keep(reason: str) -> Transition:
        return Transition(status=status, tier=current, changed=False, reason=reason)

    if event in RECURRING_EVENTS and status in LIFETIME_STATUSES:
        return keep("lifetime_license_protected")

    if event == BillingEvent.PAYMENT_SUCCEEDED:
        purchased = tier_registry.resolve_tier_id(tier)
        if purchased == TierId.FREE:
            return keep("not_applicable")
        # An open dispute stays open; a new payment can only raise the tier
        if status in LIFETIME_STATUSES:
            new_tier = tier_registry.higher_tier(current, purchased)
            return to(status, new_tier, "lifetime_upgrade" if new_tier != current else "lifetime_tier_kept")
        return to(SubscriptionStatus.LIFETIME, purchased, "lifetime_purchase")

    if event == BillingEvent.PAYMENT_REFUNDED:
        if status in LIFETIME_STATUSES:
            return to(SubscriptionStatus.REFUNDED, TierId.FREE, "payment_refunded")
        return keep("not_applicable")

    if event == BillingEvent.PAYMENT_DISPUTED:
        if status == SubscriptionStatus.LIFETIME:
            return to(SubscriptionStatus.DISPUTED, current, "payment_disputed")
        return keep("not_applicable")

    if event == BillingEvent.DISPUTE_WON:
        if status == SubscriptionStatus.DISPUTED:
            return to(SubscriptionStatus.LIFETIME, current, "dispute_won")
        return keep("not_applicable")

    if event == BillingEvent.DISPUTE_LOST:
        if status == SubscriptionStatus.DISPUTED:
            return to(SubscriptionStatus.REFUNDED, TierId.FREE, "dispute_lost")
        return keep("not_applicable")

    if event == BillingEvent.SUBSCRIPTION_UPDATED:
        new_tier = tier_registry.resolve_tier_id(tier) if tier else current
        return to(map_stripe_subscription_status(stripe_status), new_tier, "subscription_updated")

    if event == BillingEvent.SUBSCRIPTION_DELETED:
        return to(SubscriptionStatus.CANCELED, TierId.FREE, "subscription_deleted")

    if event == BillingEvent.INVOICE_PAID:
        if status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID, SubscriptionStatus.INCOMPLETE):
            return to(SubscriptionStatus.ACTIVE, current, "invoice_paid")
        return keep("not_applicable")

    if event == BillingEvent.INVOICE_PAYMENT_FAILED:
        if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            return to(SubscriptionStatus.PAST_DUE, current, "invoice_payment_failed")
        return keep("not_applicable")

    return keep("not_applicable")
