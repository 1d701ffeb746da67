"""Entitlement resolution - what a user may do right now.

The stored subscription row is the only input. The effective tier is the
stored tier while its entitlement is ENABLED and free otherwise; nothing the
user created is deleted when the effective tier drops.
"""
from typing import Dict, Optional, Tuple, Any
import logging

from database import database
from models import SubscriptionStatus, TierId, BillingMode
from services.tier_registry import tier_registry, EntitlementStatus, TierGatingError

logger = logging.getLogger(__name__)


class EntitlementService:

    async def get_user_subscription(self, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Read the user's subscription and resolve it against the tier table.

        Returns None when there is no user or the store cannot be read.
        A user with no stored row is on the implicit free subscription.
        """
        if not user_id:
            return None

        try:
            db = database.get_db()
            record = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
        except Exception as e:
            logger.error(f"Failed to load subscription for user {user_id}: {e}")
            return None

        return self.build_subscription_view(user_id, record)

    def build_subscription_view(self, user_id: str, record: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        record = record or {}
        status = (record.get("status") or SubscriptionStatus.FREE.value).upper()
        tier_id = tier_registry.resolve_tier_id(record.get("tier_id"))
        entitlement_status = tier_registry.get_entitlement_status_from_subscription(status)
        effective_tier_id = tier_id if entitlement_status == EntitlementStatus.ENABLED else TierId.FREE

        tier_def = tier_registry.get_tier(tier_id)

        return {
            "user_id": user_id,
            "subscription_id": record.get("subscription_id"),
            "tier_id": tier_id.value,
            "tier_name": tier_def["name"],
            "status": status,
            "billing_mode": record.get("billing_mode") or self._infer_billing_mode(status),
            "purchased_at": record.get("purchased_at"),
            "amount_paid": record.get("amount_paid"),
            "currency": record.get("currency") or tier_def["currency"],
            "current_period_end": record.get("current_period_end"),
            "cancel_at_period_end": record.get("cancel_at_period_end", False),
            "entitlement_status": entitlement_status.value,
            "effective_tier_id": effective_tier_id.value,
            "features": tier_registry.get_features(effective_tier_id),
            "limits": tier_registry.get_limits(effective_tier_id),
            "entitlements_version": record.get("entitlements_version", 0),
        }

    def _infer_billing_mode(self, status: str) -> str:
        if status in (SubscriptionStatus.LIFETIME.value, SubscriptionStatus.DISPUTED.value,
                      SubscriptionStatus.REFUNDED.value):
            return BillingMode.LIFETIME.value
        if status == SubscriptionStatus.FREE.value:
            return BillingMode.FREE.value
        return BillingMode.RECURRING.value

    async def has_feature_access(self, user_id: Optional[str], feature_key: str) -> bool:
        subscription = await self.get_user_subscription(user_id)
        if not subscription:
            return False
        return tier_registry.is_feature_available(subscription["effective_tier_id"], feature_key)

    async def enforce_feature(
        self,
        user_id: str,
        feature: str
    ) -> Tuple[bool, Optional[str], Optional[Dict]]:
        """
        Server-side enforcement of feature access.

        Returns:
            (is_allowed, error_message, error_details)
        """
        feature = tier_registry.resolve_feature_key(feature)
        subscription = await self.get_user_subscription(user_id)

        if not subscription:
            return False, "Subscription could not be loaded", {"error_code": "SUBSCRIPTION_NOT_FOUND"}

        if tier_registry.is_feature_available(subscription["effective_tier_id"], feature):
            return True, None, None

        # Paid for, but the license is not currently in good standing
        if subscription["entitlement_status"] != EntitlementStatus.ENABLED.value and \
                tier_registry.is_feature_available(subscription["tier_id"], feature):
            return False, f"Subscription is {subscription['status']}. Features of {subscription['tier_name']} are unavailable.", {
                "error_code": "SUBSCRIPTION_INACTIVE",
                "feature": feature,
                "subscription_status": subscription["status"],
                "entitlement_status": subscription["entitlement_status"],
            }

        _, message, upgrade_info = tier_registry.check_feature_access(subscription["effective_tier_id"], feature)
        return False, message, {
            "error_code": "FEATURE_NOT_IN_TIER",
            "feature": feature,
            "upgrade_required": True,
            "current_tier": subscription["effective_tier_id"],
            **(upgrade_info or {})
        }

    async def require_feature(self, user_id: str, feature: str) -> None:
        """Raise TierGatingError unless enforce_feature allows the feature."""
        allowed, message, details = await self.enforce_feature(user_id, feature)
        if allowed:
            return
        details = details or {}
        raise TierGatingError(
            tier_registry.resolve_feature_key(feature),
            details.get("current_tier"),
            details.get("required_tier"),
            message=message,
            details=details,
        )

    async def get_user_entitlements(self, user_id: str) -> Dict[str, Any]:
        """Get complete entitlement info for a user."""
        subscription = await self.get_user_subscription(user_id)
        if not subscription:
            subscription = self.build_subscription_view(user_id, None)
            subscription["status"] = "UNKNOWN"

        effective_tier = subscription["effective_tier_id"]
        features = tier_registry.get_features(effective_tier)

        detailed_features = {}
        for feature_key, is_enabled in features.items():
            feature_info = tier_registry.get_feature_metadata(feature_key)
            min_tier = tier_registry.get_minimum_tier_for_feature(feature_key)
            detailed_features[feature_key] = {
                "enabled": is_enabled,
                "name": feature_info.get("name"),
                "description": feature_info.get("description"),
                "category": feature_info.get("category"),
                "minimum_tier": min_tier.value if min_tier else None,
            }

        return {
            "user_id": user_id,
            "tier_id": subscription["tier_id"],
            "tier_name": subscription["tier_name"],
            "effective_tier_id": effective_tier,
            "subscription_status": subscription["status"],
            "entitlement_status": subscription["entitlement_status"],
            "limits": subscription["limits"],
            "features": detailed_features,
            "feature_summary": {
                "total": len(detailed_features),
                "enabled": sum(1 for f in detailed_features.values() if f["enabled"]),
                "disabled": sum(1 for f in detailed_features.values() if not f["enabled"]),
            }
        }


# Singleton instance
entitlement_service = EntitlementService()
