"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and can be called directly from scripts.
Each run_* returns a dict with "message" and "count".
"""
import os
import logging
from datetime import datetime, timezone, timedelta

from database import database
from models import AuditAction, CheckoutSessionStatus
from services.tier_registry import tier_registry
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _checkout_session_ttl_hours() -> int:
    try:
        return int(os.getenv("CHECKOUT_SESSION_TTL_HOURS", "24"))
    except ValueError:
        logger.warning("CHECKOUT_SESSION_TTL_HOURS is not an integer, using 24")
        return 24


async def run_checkout_session_expiry(now: datetime = None):
    """PENDING checkout sessions older than the TTL become EXPIRED."""
    try:
        db = database.get_db()
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=_checkout_session_ttl_hours())

        result = await db.checkout_sessions.update_many(
            {
                "status": CheckoutSessionStatus.PENDING.value,
                "created_at": {"$lt": cutoff.isoformat()},
            },
            {"$set": {"status": CheckoutSessionStatus.EXPIRED.value, "updated_at": now.isoformat()}},
        )
        count = result.modified_count

        if count:
            await create_audit_log(
                action=AuditAction.CHECKOUT_EXPIRED,
                actor_role="SYSTEM",
                metadata={"expired_count": count, "cutoff": cutoff.isoformat()},
            )
        logger.info(f"Checkout session expiry completed: {count} sessions expired")
        return {"message": f"Checkout sessions expired: {count}", "count": count}
    except Exception as e:
        logger.error(f"Checkout session expiry job failed: {e}")
        raise


async def run_entitlement_consistency_check():
    """Correct stored entitlement_status values that disagree with the subscription status."""
    try:
        db = database.get_db()
        cursor = db.subscriptions.find(
            {},
            {"_id": 0, "user_id": 1, "subscription_id": 1, "status": 1, "entitlement_status": 1}
        )

        corrected = 0
        async for row in cursor:
            expected = tier_registry.get_entitlement_status_from_subscription(row.get("status")).value
            if row.get("entitlement_status") == expected:
                continue

            await db.subscriptions.update_one(
                {"user_id": row["user_id"]},
                {
                    "$set": {
                        "entitlement_status": expected,
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    },
                    "$inc": {"entitlements_version": 1},
                },
            )
            await create_audit_log(
                action=AuditAction.ENTITLEMENT_CORRECTED,
                actor_role="SYSTEM",
                user_id=row["user_id"],
                resource_type="subscription",
                resource_id=row.get("subscription_id"),
                before_state={"entitlement_status": row.get("entitlement_status")},
                after_state={"entitlement_status": expected},
                metadata={"status": row.get("status")},
            )
            logger.warning(
                "Entitlement corrected user_id=%s status=%s from=%s to=%s",
                row["user_id"], row.get("status"), row.get("entitlement_status"), expected,
            )
            corrected += 1

        logger.info(f"Entitlement consistency check completed: {corrected} rows corrected")
        return {"message": f"Entitlements corrected: {corrected}", "count": corrected}
    except Exception as e:
        logger.error(f"Entitlement consistency check failed: {e}")
        raise
