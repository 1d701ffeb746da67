"""Canonical Tier Registry - Single Source of Truth for all tier definitions.

This is the AUTHORITATIVE source for:
- Tier identifiers and their order (free < pro < business)
- Feature flags per tier
- Usage limits per tier
- Lifetime pricing and Stripe price ID mappings

NON-NEGOTIABLE RULES:
1. Backend is authoritative - all entitlement checks happen server-side
2. Stripe is a billing system, not a permission system
3. A tier is derived from the purchased price_id (or checkout metadata), never from the client
4. Admin access is never tier-gated

Tier Structure (one-time "lifetime" purchases):
- free: 1 card, 3 links, 7 days of analytics, 100 QR scans / month
- pro: Pro LTD, €89 once
- business: Business LTD, €249 once
"""
from enum import Enum
from typing import Dict, List, Optional, Tuple, Any
from datetime import datetime, timedelta
import copy
import math
import os
import re
import logging

from models import TierId

logger = logging.getLogger(__name__)

# Values at or above this threshold are rendered as "unlimited".
UNLIMITED_THRESHOLD = 999


# ============================================================================
# ENTITLEMENT STATUS - Subscription-based access level
# ============================================================================
class EntitlementStatus(str, Enum):
    """Entitlement status derived from subscription status."""
    ENABLED = "ENABLED"       # Full access (FREE, LIFETIME, ACTIVE, TRIALING)
    LIMITED = "LIMITED"       # Free tier only until resolved (PAST_DUE, DISPUTED)
    DISABLED = "DISABLED"     # Free tier only (REFUNDED, CANCELED, UNPAID, ...)


class TierGatingError(Exception):
    """Raised when a feature is requested above the caller's tier."""

    def __init__(
        self,
        feature: str,
        current_tier: Optional[str],
        required_tier: Optional[str],
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.feature = feature
        self.current_tier = current_tier
        self.required_tier = required_tier
        self.details = details or {}
        super().__init__(
            message or f"Feature '{feature}' requires tier '{required_tier}' (current: '{current_tier}')"
        )


TIER_ORDER = [TierId.FREE, TierId.PRO, TierId.BUSINESS]

ENABLED_STATUSES = frozenset({"FREE", "LIFETIME", "ACTIVE", "TRIALING"})
LIMITED_STATUSES = frozenset({"PAST_DUE", "DISPUTED"})


# ============================================================================
# STRIPE PRICE ID MAPPINGS - one-time lifetime prices
# ============================================================================
STRIPE_LIFETIME_PRICES = {
    TierId.PRO: "price_1SXJTN2EeXK7mLiF7sYKU680",
    TierId.BUSINESS: "price_1SXJUo2EeXK7mLiFDCXcvhXw",
}

# Env var that overrides the built-in price for a tier (test mode, staging)
STRIPE_PRICE_ENV_VARS = {
    TierId.PRO: "STRIPE_PRICE_PRO_LIFETIME",
    TierId.BUSINESS: "STRIPE_PRICE_BUSINESS_LIFETIME",
}

# Monthly equivalent used for the "pays for itself" line on the pricing page
MONTHLY_EQUIVALENT = {
    TierId.PRO: 9.99,
    TierId.BUSINESS: 29.99,
}


# ============================================================================
# FEATURE MATRIX - what each tier unlocks
# ============================================================================
FREE_FEATURES = {
    "basic_analytics": True,
    "standard_themes": True,
    "qr_code": True,
}

PRO_FEATURES = {
    **FREE_FEATURES,
    "advanced_analytics": True,
    "all_themes": True,
    "custom_colors": True,
    "remove_branding": True,
    "lead_collection": True,
    "priority_support": True,
    "video_integration": True,
    "lifetime_access": True,
}

BUSINESS_FEATURES = {
    **PRO_FEATURES,
    "team_management": True,
    "api_access": True,
    "custom_domain": True,
    "crm_integrations": True,
    "white_label": True,
    "dedicated_support": True,
    "unlimited_everything": True,
}


# ============================================================================
# TIER DEFINITIONS - Complete tier configuration
# ============================================================================
TIER_DEFINITIONS = {
    TierId.FREE: {
        "id": "free",
        "name": "Free",
        "price_lifetime": 0,
        "currency": "EUR",
        "stripe_price_id": None,
        "features": FREE_FEATURES,
        "limits": {
            "max_cards": 1,
            "max_links": 3,
            "analytics_days": 7,
            "qr_scans_monthly": 100,
        },
    },
    TierId.PRO: {
        "id": "pro",
        "name": "Pro LTD",
        "price_lifetime": 89,
        "currency": "EUR",
        "stripe_price_id": STRIPE_LIFETIME_PRICES[TierId.PRO],
        "is_popular": True,
        "features": PRO_FEATURES,
        "limits": {
            "max_cards": 999,
            "max_links": 999,
            "analytics_days": 999999,
            "qr_scans_monthly": 999999,
            "storage_gb": 10,
        },
    },
    TierId.BUSINESS: {
        "id": "business",
        "name": "Business LTD",
        "price_lifetime": 249,
        "currency": "EUR",
        "stripe_price_id": STRIPE_LIFETIME_PRICES[TierId.BUSINESS],
        "features": BUSINESS_FEATURES,
        "limits": {
            "max_cards": 999999,
            "max_links": 999999,
            "analytics_days": 999999,
            "qr_scans_monthly": 999999,
            "storage_gb": 999999,
            "team_members": 999,
        },
    },
}


# ============================================================================
# FEATURE METADATA - Display info for features
# ============================================================================
FEATURE_METADATA = {
    "basic_analytics": {"name": "Basic Analytics", "description": "Views and clicks for the last 7 days", "category": "analytics"},
    "standard_themes": {"name": "Standard Themes", "description": "The default set of card themes", "category": "design"},
    "qr_code": {"name": "QR Code", "description": "Share your card with a QR code", "category": "sharing"},
    "advanced_analytics": {"name": "Advanced Analytics", "description": "Full history, referrers and per-link clicks", "category": "analytics"},
    "all_themes": {"name": "All Themes", "description": "Every premium theme", "category": "design"},
    "custom_colors": {"name": "Custom Colors", "description": "Pick your own brand colors", "category": "design"},
    "remove_branding": {"name": "Remove Branding", "description": "Hide the product badge on your card", "category": "design"},
    "lead_collection": {"name": "Lead Collection", "description": "Collect contact details from visitors", "category": "leads"},
    "priority_support": {"name": "Priority Support", "description": "Faster answers from support", "category": "support"},
    "video_integration": {"name": "Video Integration", "description": "Embed videos on your card", "category": "content"},
    "lifetime_access": {"name": "Lifetime Access", "description": "Pay once, keep the tier forever", "category": "billing"},
    "team_management": {"name": "Team Management", "description": "Manage cards for a whole team", "category": "team"},
    "api_access": {"name": "API Access", "description": "Programmatic access to cards and leads", "category": "integrations"},
    "custom_domain": {"name": "Custom Domain", "description": "Serve your card from your own domain", "category": "sharing"},
    "crm_integrations": {"name": "CRM Integrations", "description": "Push leads into your CRM", "category": "integrations"},
    "white_label": {"name": "White Label", "description": "Fully unbranded experience", "category": "design"},
    "dedicated_support": {"name": "Dedicated Support", "description": "A named support contact", "category": "support"},
    "unlimited_everything": {"name": "Unlimited Everything", "description": "No caps on cards, links or scans", "category": "limits"},
}


# Lowest tier that unlocks each feature
MINIMUM_TIER_FOR_FEATURE = {
    feature: next(tier for tier in TIER_ORDER if TIER_DEFINITIONS[tier]["features"].get(feature))
    for feature in BUSINESS_FEATURES
}


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


class TierRegistryService:
    """
    Service for tier-related operations.
    All getters hand out copies; the tables above are never mutated.
    """

    def get_subscription_tier(self, tier_id: Any) -> Optional[Dict[str, Any]]:
        """Get a copy of the tier definition, or None for unknown ids."""
        if isinstance(tier_id, TierId):
            key = tier_id
        else:
            try:
                key = TierId(str(tier_id).lower())
            except ValueError:
                return None

        tier = copy.deepcopy(TIER_DEFINITIONS[key])
        tier["stripe_price_id"] = self.get_stripe_price_id(key)
        return tier

    def get_tier(self, tier_id: TierId) -> Dict[str, Any]:
        """Get tier definition; unknown ids resolve to free."""
        return self.get_subscription_tier(self.resolve_tier_id(tier_id))

    def get_all_tiers(self) -> List[Dict[str, Any]]:
        """Get all tier definitions in ascending order."""
        return [self.get_tier(tier) for tier in TIER_ORDER]

    def resolve_tier_id(self, value: Any) -> TierId:
        """Resolve a stored or requested string to TierId (unknown -> free)."""
        if isinstance(value, TierId):
            return value
        if not value:
            return TierId.FREE
        try:
            return TierId(str(value).strip().lower())
        except ValueError:
            logger.warning(f"Unknown tier id '{value}', treating as free")
            return TierId.FREE

    def tier_rank(self, tier_id: Any) -> int:
        return TIER_ORDER.index(self.resolve_tier_id(tier_id))

    def higher_tier(self, a: Any, b: Any) -> TierId:
        """Return the higher of two tiers."""
        a, b = self.resolve_tier_id(a), self.resolve_tier_id(b)
        return a if self.tier_rank(a) >= self.tier_rank(b) else b

    def next_tier(self, tier_id: Any) -> Optional[TierId]:
        rank = self.tier_rank(tier_id)
        return TIER_ORDER[rank + 1] if rank + 1 < len(TIER_ORDER) else None

    # -------------------------------------------------------------------------
    # Features
    # -------------------------------------------------------------------------

    def resolve_feature_key(self, feature_key: str) -> str:
        """Accept both camelCase (customColors) and snake_case (custom_colors)."""
        if not feature_key:
            return ""
        return _CAMEL_BOUNDARY.sub("_", feature_key.strip()).lower()

    def get_features(self, tier_id: Any) -> Dict[str, bool]:
        """Every known feature with its flag for the tier (missing -> False)."""
        tier_features = TIER_DEFINITIONS[self.resolve_tier_id(tier_id)]["features"]
        return {feature: tier_features.get(feature, False) for feature in FEATURE_METADATA}

    def is_feature_available(self, tier_id: Any, feature: str) -> bool:
        feature = self.resolve_feature_key(feature)
        return TIER_DEFINITIONS[self.resolve_tier_id(tier_id)]["features"].get(feature, False)

    def get_feature_metadata(self, feature: str) -> Optional[Dict]:
        return FEATURE_METADATA.get(self.resolve_feature_key(feature))

    def get_minimum_tier_for_feature(self, feature: str) -> Optional[TierId]:
        return MINIMUM_TIER_FOR_FEATURE.get(self.resolve_feature_key(feature))

    def check_feature_access(
        self,
        tier_id: Any,
        feature: str
    ) -> Tuple[bool, Optional[str], Optional[Dict]]:
        """
        Check if feature is accessible and return detailed info.

        Returns:
            (is_allowed, upgrade_message, upgrade_info)
        """
        feature = self.resolve_feature_key(feature)
        if self.is_feature_available(tier_id, feature):
            return True, None, None

        feature_info = self.get_feature_metadata(feature)
        feature_name = feature_info.get("name", feature) if feature_info else feature

        min_tier = self.get_minimum_tier_for_feature(feature)

        if min_tier:
            min_tier_def = TIER_DEFINITIONS[min_tier]
            upgrade_info = {
                "required_tier": min_tier.value,
                "required_tier_name": min_tier_def["name"],
                "feature_key": feature,
                "feature_name": feature_name,
                "upgrade_path": f"/app/upgrade?tier={min_tier.value}",
            }
            return False, f"{feature_name} requires {min_tier_def['name']} or higher", upgrade_info

        return False, f"{feature_name} is not available on your current tier", None

    # -------------------------------------------------------------------------
    # Limits
    # -------------------------------------------------------------------------

    def get_limits(self, tier_id: Any) -> Dict[str, int]:
        return dict(TIER_DEFINITIONS[self.resolve_tier_id(tier_id)]["limits"])

    def get_limit(self, tier_id: Any, limit_key: str) -> int:
        """Numeric limit for the tier; a limit the tier does not define is 0."""
        return TIER_DEFINITIONS[self.resolve_tier_id(tier_id)]["limits"].get(limit_key, 0)

    def is_unlimited(self, value: Optional[int]) -> bool:
        return value is not None and value >= UNLIMITED_THRESHOLD

    # -------------------------------------------------------------------------
    # Stripe Price ID Mappings
    # -------------------------------------------------------------------------

    def get_stripe_price_id(self, tier_id: Any) -> Optional[str]:
        tier = self.resolve_tier_id(tier_id)
        if tier not in STRIPE_LIFETIME_PRICES:
            return None
        return os.getenv(STRIPE_PRICE_ENV_VARS[tier]) or STRIPE_LIFETIME_PRICES[tier]

    def get_tier_from_price_id(self, price_id: Optional[str]) -> Optional[TierId]:
        """
        Derive tier from a Stripe price_id.
        Built-in ids and env overrides are both recognised.
        """
        if not price_id:
            return None
        for tier in STRIPE_LIFETIME_PRICES:
            if price_id in (STRIPE_LIFETIME_PRICES[tier], os.getenv(STRIPE_PRICE_ENV_VARS[tier])):
                return tier
        return None

    # -------------------------------------------------------------------------
    # Entitlement Status Mapping
    # -------------------------------------------------------------------------

    def get_entitlement_status_from_subscription(self, subscription_status: Optional[str]) -> EntitlementStatus:
        """
        Map subscription status to entitlement status.

        FREE, LIFETIME, ACTIVE, TRIALING -> ENABLED
        PAST_DUE, DISPUTED -> LIMITED (effective tier falls back to free)
        everything else -> DISABLED
        """
        status_upper = subscription_status.upper() if subscription_status else "UNKNOWN"

        if status_upper in ENABLED_STATUSES:
            return EntitlementStatus.ENABLED
        elif status_upper in LIMITED_STATUSES:
            return EntitlementStatus.LIMITED
        else:
            return EntitlementStatus.DISABLED

    # -------------------------------------------------------------------------
    # Display helpers
    # -------------------------------------------------------------------------

    def get_price_display(self, tier_id: Any) -> str:
        tier = TIER_DEFINITIONS[self.resolve_tier_id(tier_id)]
        if tier["price_lifetime"] == 0:
            return "Kostenlos"
        return f"€{tier['price_lifetime']} einmalig"

    def get_status_badge_color(self, status: Optional[str]) -> str:
        status_lower = (status or "").lower()
        if status_lower in ("active", "lifetime"):
            return "bg-green-100 text-green-800"
        if status_lower == "past_due":
            return "bg-yellow-100 text-yellow-800"
        if status_lower in ("canceled", "incomplete"):
            return "bg-red-100 text-red-800"
        return "bg-gray-100 text-gray-800"

    def get_lifetime_savings(self, tier_id: Any) -> str:
        tier_key = self.resolve_tier_id(tier_id)
        tier = TIER_DEFINITIONS[tier_key]
        if tier["price_lifetime"] == 0:
            return ""
        monthly = MONTHLY_EQUIVALENT.get(tier_key, 29.99)
        months = math.ceil(tier["price_lifetime"] / monthly)
        return f"Zahlt sich nach {months} Monaten ab"

    def get_analytics_cutoff(self, tier_id: Any, now: datetime) -> Optional[datetime]:
        """Oldest analytics timestamp visible to the tier (None when unlimited)."""
        days = self.get_limit(tier_id, "analytics_days")
        if self.is_unlimited(days):
            return None
        return now - timedelta(days=days)

    # -------------------------------------------------------------------------
    # Entitlement Matrix (for admin/docs)
    # -------------------------------------------------------------------------

    def get_entitlement_matrix(self) -> Dict[str, Any]:
        """Generate complete feature/tier matrix for documentation."""
        matrix = {}

        for feature_key, feature_info in FEATURE_METADATA.items():
            min_tier = MINIMUM_TIER_FOR_FEATURE.get(feature_key)
            matrix[feature_key] = {
                "name": feature_info.get("name"),
                "description": feature_info.get("description"),
                "category": feature_info.get("category"),
                "minimum_tier": min_tier.value if min_tier else None,
                "tiers": {
                    tier.value: TIER_DEFINITIONS[tier]["features"].get(feature_key, False)
                    for tier in TIER_ORDER
                },
            }

        return {
            "features": matrix,
            "tiers": {
                tier.value: {
                    "name": TIER_DEFINITIONS[tier]["name"],
                    "price_lifetime": TIER_DEFINITIONS[tier]["price_lifetime"],
                    "currency": TIER_DEFINITIONS[tier]["currency"],
                    "limits": dict(TIER_DEFINITIONS[tier]["limits"]),
                }
                for tier in TIER_ORDER
            },
        }


# Singleton instance
tier_registry = TierRegistryService()
