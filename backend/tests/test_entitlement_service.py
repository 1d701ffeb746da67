"""
Entitlement service: subscription view, effective tier, feature enforcement.
Uses a mocked db; no MongoDB needed.
"""
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest

from services.entitlement_service import entitlement_service
from services.tier_registry import TierGatingError


def _db_with_subscription(record):
    db = MagicMock()
    db.subscriptions.find_one = AsyncMock(return_value=record)
    return db


class TestGetUserSubscription:

    @pytest.mark.asyncio
    async def test_missing_row_is_implicit_free(self):
        db = _db_with_subscription(None)
        with patch("services.entitlement_service.database.get_db", return_value=db):
            sub = await entitlement_service.get_user_subscription("user-1")
        assert sub["status"] == "FREE"
        assert sub["tier_id"] == "free"
        assert sub["effective_tier_id"] == "free"
        assert sub["entitlement_status"] == "ENABLED"
        assert sub["billing_mode"] == "free"
        assert sub["limits"]["max_cards"] == 1
        assert sub["entitlements_version"] == 0

    @pytest.mark.asyncio
    async def test_lifetime_pro(self):
        db = _db_with_subscription({
            "user_id": "user-1", "subscription_id": "sub-1", "tier_id": "pro",
            "status": "LIFETIME", "amount_paid": 89.0, "entitlements_version": 2,
        })
        with patch("services.entitlement_service.database.get_db", return_value=db):
            sub = await entitlement_service.get_user_subscription("user-1")
        assert sub["effective_tier_id"] == "pro"
        assert sub["tier_name"] == "Pro LTD"
        assert sub["billing_mode"] == "lifetime"
        assert sub["features"]["lead_collection"] is True
        assert sub["entitlements_version"] == 2

    @pytest.mark.asyncio
    async def test_disputed_license_falls_back_to_free(self):
        db = _db_with_subscription({"user_id": "user-1", "tier_id": "business", "status": "DISPUTED"})
        with patch("services.entitlement_service.database.get_db", return_value=db):
            sub = await entitlement_service.get_user_subscription("user-1")
        assert sub["tier_id"] == "business"
        assert sub["entitlement_status"] == "LIMITED"
        assert sub["effective_tier_id"] == "free"
        assert sub["limits"]["max_cards"] == 1

    @pytest.mark.asyncio
    async def test_no_user_returns_none(self):
        assert await entitlement_service.get_user_subscription(None) is None

    @pytest.mark.asyncio
    async def test_db_error_returns_none(self):
        db = MagicMock()
        db.subscriptions.find_one = AsyncMock(side_effect=RuntimeError("connection refused"))
        with patch("services.entitlement_service.database.get_db", return_value=db):
            assert await entitlement_service.get_user_subscription("user-1") is None


class TestEnforceFeature:

    @pytest.mark.asyncio
    async def test_free_user_denied_with_upgrade_info(self):
        db = _db_with_subscription(None)
        with patch("services.entitlement_service.database.get_db", return_value=db):
            allowed, message, details = await entitlement_service.enforce_feature("user-1", "customColors")
        assert allowed is False
        assert details["error_code"] == "FEATURE_NOT_IN_TIER"
        assert details["feature"] == "custom_colors"
        assert details["current_tier"] == "free"
        assert details["required_tier"] == "pro"
        assert details["upgrade_required"] is True

    @pytest.mark.asyncio
    async def test_lifetime_business_allowed(self):
        db = _db_with_subscription({"user_id": "user-1", "tier_id": "business", "status": "LIFETIME"})
        with patch("services.entitlement_service.database.get_db", return_value=db):
            assert await entitlement_service.enforce_feature("user-1", "api_access") == (True, None, None)

    @pytest.mark.asyncio
    async def test_past_due_user_gets_inactive_code(self):
        db = _db_with_subscription({"user_id": "user-1", "tier_id": "pro", "status": "PAST_DUE"})
        with patch("services.entitlement_service.database.get_db", return_value=db):
            allowed, _, details = await entitlement_service.enforce_feature("user-1", "lead_collection")
        assert allowed is False
        assert details["error_code"] == "SUBSCRIPTION_INACTIVE"
        assert details["subscription_status"] == "PAST_DUE"

    @pytest.mark.asyncio
    async def test_unreadable_subscription(self):
        db = MagicMock()
        db.subscriptions.find_one = AsyncMock(side_effect=RuntimeError("down"))
        with patch("services.entitlement_service.database.get_db", return_value=db):
            allowed, _, details = await entitlement_service.enforce_feature("user-1", "qr_code")
        assert allowed is False
        assert details["error_code"] == "SUBSCRIPTION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_has_feature_access(self):
        db = _db_with_subscription({"user_id": "user-1", "tier_id": "pro", "status": "LIFETIME"})
        with patch("services.entitlement_service.database.get_db", return_value=db):
            assert await entitlement_service.has_feature_access("user-1", "videoIntegration") is True
            assert await entitlement_service.has_feature_access("user-1", "white_label") is False

    @pytest.mark.asyncio
    async def test_require_feature_raises_gating_error(self):
        db = _db_with_subscription({"user_id": "user-1", "tier_id": "pro", "status": "LIFETIME"})
        with patch("services.entitlement_service.database.get_db", return_value=db):
            with pytest.raises(TierGatingError) as exc:
                await entitlement_service.require_feature("user-1", "customDomain")
        assert exc.value.feature == "custom_domain"
        assert exc.value.current_tier == "pro"
        assert exc.value.required_tier == "business"
        assert exc.value.details["error_code"] == "FEATURE_NOT_IN_TIER"
        assert "Business LTD" in str(exc.value)

    @pytest.mark.asyncio
    async def test_require_feature_passes_when_allowed(self):
        db = _db_with_subscription({"user_id": "user-1", "tier_id": "business", "status": "LIFETIME"})
        with patch("services.entitlement_service.database.get_db", return_value=db):
            assert await entitlement_service.require_feature("user-1", "custom_domain") is None


class TestGetUserEntitlements:

    @pytest.mark.asyncio
    async def test_summary_counts(self):
        db = _db_with_subscription({"user_id": "user-1", "tier_id": "pro", "status": "LIFETIME"})
        with patch("services.entitlement_service.database.get_db", return_value=db):
            result = await entitlement_service.get_user_entitlements("user-1")
        assert result["effective_tier_id"] == "pro"
        assert result["subscription_status"] == "LIFETIME"
        assert result["features"]["lead_collection"]["enabled"] is True
        assert result["features"]["white_label"]["minimum_tier"] == "business"
        summary = result["feature_summary"]
        assert summary["enabled"] == 11
        assert summary["enabled"] + summary["disabled"] == summary["total"] == 18

    @pytest.mark.asyncio
    async def test_unreadable_store_yields_free_view(self):
        db = MagicMock()
        db.subscriptions.find_one = AsyncMock(side_effect=RuntimeError("down"))
        with patch("services.entitlement_service.database.get_db", return_value=db):
            result = await entitlement_service.get_user_entitlements("user-1")
        assert result["subscription_status"] == "UNKNOWN"
        assert result["effective_tier_id"] == "free"
