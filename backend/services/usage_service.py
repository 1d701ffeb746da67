"""Usage limits - counts the user's resources against the effective tier."""
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Any
import logging

from database import database
from services.tier_registry import tier_registry
from services.entitlement_service import entitlement_service

logger = logging.getLogger(__name__)

LIMIT_KEYS = {
    "cards": "max_cards",
    "links": "max_links",
    "qr_scans_monthly": "qr_scans_monthly",
}


class UsageService:

    async def count_cards(self, user_id: str) -> int:
        db = database.get_db()
        return await db.cards.count_documents({"user_id": user_id})

    async def max_links_on_any_card(self, user_id: str) -> int:
        db = database.get_db()
        pipeline = [
            {"$match": {"user_id": user_id}},
            {"$project": {"link_count": {"$size": {"$ifNull": ["$links", []]}}}},
            {"$group": {"_id": None, "max_links": {"$max": "$link_count"}}},
        ]
        result = await db.cards.aggregate(pipeline).to_list(length=1)
        return result[0]["max_links"] if result else 0

    async def count_qr_scans_this_month(self, user_id: str, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        db = database.get_db()
        return await db.analytics_events.count_documents({
            "user_id": user_id,
            "event_type": "qr_scan",
            "created_at": {"$gte": month_start.isoformat()},
        })

    async def check_usage_limit(self, user_id: str, limit_type: str) -> Dict[str, Any]:
        """
        Check one limit for the user.

        cards: within limit while the card count is below max_cards.
        links: current is the largest link count on any single card.
        """
        if limit_type not in ("cards", "links"):
            raise ValueError(f"Unknown limit type: {limit_type}")

        subscription = await entitlement_service.get_user_subscription(user_id)
        if not subscription:
            return {"is_within_limit": False, "current": 0, "max": 0}

        max_value = subscription["limits"].get(LIMIT_KEYS[limit_type], 0)

        try:
            if limit_type == "cards":
                current = await self.count_cards(user_id)
            else:
                current = await self.max_links_on_any_card(user_id)
        except Exception as e:
            # Fail closed: an uncountable resource is never within limit
            logger.error(f"Usage count failed for user {user_id} ({limit_type}): {e}")
            return {"is_within_limit": False, "current": 0, "max": 0, "error": "USAGE_CHECK_FAILED"}

        return {"is_within_limit": current < max_value, "current": current, "max": max_value}

    async def can_create_card(self, user_id: str) -> Tuple[bool, Optional[str], Optional[Dict]]:
        """
        Gate card creation on max_cards.

        Returns:
            (is_allowed, error_message, error_details)
        """
        subscription = await entitlement_service.get_user_subscription(user_id)
        if not subscription:
            return False, "Subscription could not be loaded", {"error_code": "SUBSCRIPTION_NOT_FOUND"}

        usage = await self.check_usage_limit(user_id, "cards")
        if usage["is_within_limit"]:
            return True, None, None
        if usage.get("error"):
            return False, "Card usage could not be checked. Please try again.", {"error_code": usage["error"]}

        upgrade_to = tier_registry.next_tier(subscription["effective_tier_id"])
        upgrade_name = tier_registry.get_tier(upgrade_to)["name"] if upgrade_to else None
        return False, f"You've reached the maximum of {usage['max']} cards for the {tier_registry.get_tier(subscription['effective_tier_id'])['name']} tier." + (f" Upgrade to {upgrade_name} to create more." if upgrade_name else ""), {
            "error_code": "CARD_LIMIT_REACHED",
            "current": usage["current"],
            "max": usage["max"],
            "current_tier": subscription["effective_tier_id"],
            "upgrade_to": upgrade_to.value if upgrade_to else None,
            "upgrade_to_name": upgrade_name,
        }

    def can_add_link(self, tier_id: Any, current_count: int) -> Tuple[bool, Optional[str], Optional[Dict]]:
        """Pure check of one card's link count against the tier's max_links."""
        max_links = tier_registry.get_limit(tier_id, "max_links")
        if current_count < max_links:
            return True, None, None

        upgrade_to = tier_registry.next_tier(tier_id)
        return False, f"You've reached the maximum of {max_links} links per card.", {
            "error_code": "LINK_LIMIT_REACHED",
            "current": current_count,
            "max": max_links,
            "upgrade_to": upgrade_to.value if upgrade_to else None,
        }

    def _usage_entry(self, current: int, max_value: int) -> Dict[str, Any]:
        unlimited = tier_registry.is_unlimited(max_value)
        if unlimited or max_value <= 0:
            percentage = 0 if unlimited else 100
        else:
            percentage = min(100, round(current / max_value * 100))
        return {
            "current": current,
            "max": max_value,
            "is_unlimited": unlimited,
            "is_within_limit": current < max_value,
            "percentage": percentage,
        }

    async def get_usage_stats(self, user_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Usage against every numeric limit of the effective tier."""
        subscription = await entitlement_service.get_user_subscription(user_id)
        if not subscription:
            return None

        now = now or datetime.now(timezone.utc)
        limits = subscription["limits"]
        analytics_days = limits.get("analytics_days", 0)
        cutoff = self.get_analytics_cutoff(subscription["effective_tier_id"], now)

        return {
            "user_id": user_id,
            "tier_id": subscription["effective_tier_id"],
            "cards": self._usage_entry(await self.count_cards(user_id), limits.get("max_cards", 0)),
            "links": self._usage_entry(await self.max_links_on_any_card(user_id), limits.get("max_links", 0)),
            "qr_scans_monthly": self._usage_entry(
                await self.count_qr_scans_this_month(user_id, now), limits.get("qr_scans_monthly", 0)
            ),
            "analytics_days": analytics_days,
            "analytics_unlimited": tier_registry.is_unlimited(analytics_days),
            "analytics_since": cutoff.isoformat() if cutoff else None,
        }

    def get_analytics_cutoff(self, tier_id: Any, now: datetime) -> Optional[datetime]:
        return tier_registry.get_analytics_cutoff(tier_id, now)


# Singleton instance
usage_service = UsageService()
