"""
Usage limits: card/link counts against the effective tier, usage stats.
"""
import sys
from pathlib import Path
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest

from services.usage_service import usage_service


def _mock_db(subscription=None, card_count=0, max_links=None, qr_scans=0):
    db = MagicMock()
    db.subscriptions.find_one = AsyncMock(return_value=subscription)
    db.cards.count_documents = AsyncMock(return_value=card_count)
    aggregate_result = [{"_id": None, "max_links": max_links}] if max_links is not None else []
    db.cards.aggregate = MagicMock(return_value=MagicMock(to_list=AsyncMock(return_value=aggregate_result)))
    db.analytics_events.count_documents = AsyncMock(return_value=qr_scans)
    return db


class TestCheckUsageLimit:

    @pytest.mark.asyncio
    async def test_free_user_with_one_card_is_at_limit(self):
        db = _mock_db(card_count=1)
        with patch("services.usage_service.database.get_db", return_value=db):
            result = await usage_service.check_usage_limit("user-1", "cards")
        assert result == {"is_within_limit": False, "current": 1, "max": 1}

    @pytest.mark.asyncio
    async def test_links_uses_largest_card(self):
        db = _mock_db(max_links=2)
        with patch("services.usage_service.database.get_db", return_value=db):
            result = await usage_service.check_usage_limit("user-1", "links")
        assert result == {"is_within_limit": True, "current": 2, "max": 3}

    @pytest.mark.asyncio
    async def test_no_cards_means_zero_links(self):
        db = _mock_db()
        with patch("services.usage_service.database.get_db", return_value=db):
            result = await usage_service.check_usage_limit("user-1", "links")
        assert result["current"] == 0

    @pytest.mark.asyncio
    async def test_unknown_limit_type(self):
        with pytest.raises(ValueError):
            await usage_service.check_usage_limit("user-1", "storage")

    @pytest.mark.asyncio
    async def test_unreadable_subscription(self):
        db = _mock_db()
        db.subscriptions.find_one = AsyncMock(side_effect=RuntimeError("down"))
        with patch("services.usage_service.database.get_db", return_value=db):
            result = await usage_service.check_usage_limit("user-1", "cards")
        assert result == {"is_within_limit": False, "current": 0, "max": 0}

    @pytest.mark.asyncio
    async def test_count_failure_fails_closed(self):
        db = _mock_db()
        db.cards.count_documents = AsyncMock(side_effect=RuntimeError("down"))
        with patch("services.usage_service.database.get_db", return_value=db):
            result = await usage_service.check_usage_limit("user-1", "cards")
        assert result["is_within_limit"] is False
        assert (result["current"], result["max"]) == (0, 0)
        assert result["error"] == "USAGE_CHECK_FAILED"

    @pytest.mark.asyncio
    async def test_link_aggregate_failure_fails_closed(self):
        db = _mock_db()
        db.cards.aggregate = MagicMock(side_effect=RuntimeError("down"))
        with patch("services.usage_service.database.get_db", return_value=db):
            result = await usage_service.check_usage_limit("user-1", "links")
        assert result["is_within_limit"] is False
        assert result["error"] == "USAGE_CHECK_FAILED"


class TestCanCreateCard:

    @pytest.mark.asyncio
    async def test_free_user_first_card_allowed(self):
        db = _mock_db(card_count=0)
        with patch("services.usage_service.database.get_db", return_value=db):
            assert await usage_service.can_create_card("user-1") == (True, None, None)

    @pytest.mark.asyncio
    async def test_free_user_second_card_denied(self):
        db = _mock_db(card_count=1)
        with patch("services.usage_service.database.get_db", return_value=db):
            allowed, message, details = await usage_service.can_create_card("user-1")
        assert allowed is False
        assert "Pro LTD" in message
        assert details["error_code"] == "CARD_LIMIT_REACHED"
        assert details["current"] == 1
        assert details["max"] == 1
        assert details["current_tier"] == "free"
        assert details["upgrade_to"] == "pro"

    @pytest.mark.asyncio
    async def test_lifetime_pro_has_room(self):
        db = _mock_db(subscription={"user_id": "user-1", "tier_id": "pro", "status": "LIFETIME"}, card_count=40)
        with patch("services.usage_service.database.get_db", return_value=db):
            allowed, _, _ = await usage_service.can_create_card("user-1")
        assert allowed is True

    @pytest.mark.asyncio
    async def test_refunded_user_keeps_cards_but_cannot_add(self):
        db = _mock_db(subscription={"user_id": "user-1", "tier_id": "free", "status": "REFUNDED"}, card_count=5)
        with patch("services.usage_service.database.get_db", return_value=db):
            allowed, _, details = await usage_service.can_create_card("user-1")
        assert allowed is False
        assert details["current"] == 5
        assert details["max"] == 1

    @pytest.mark.asyncio
    async def test_count_failure_denies_creation(self):
        db = _mock_db(subscription={"user_id": "user-1", "tier_id": "pro", "status": "LIFETIME"})
        db.cards.count_documents = AsyncMock(side_effect=RuntimeError("down"))
        with patch("services.usage_service.database.get_db", return_value=db):
            allowed, message, details = await usage_service.can_create_card("user-1")
        assert allowed is False
        assert "could not be checked" in message
        assert details == {"error_code": "USAGE_CHECK_FAILED"}


class TestCanAddLink:

    def test_free_below_limit(self):
        assert usage_service.can_add_link("free", 2) == (True, None, None)

    def test_free_at_limit(self):
        allowed, _, details = usage_service.can_add_link("free", 3)
        assert allowed is False
        assert details["error_code"] == "LINK_LIMIT_REACHED"
        assert details["max"] == 3
        assert details["upgrade_to"] == "pro"

    def test_business_has_no_upgrade(self):
        allowed, _, details = usage_service.can_add_link("business", 999999)
        assert allowed is False
        assert details["upgrade_to"] is None


class TestUsageStats:

    @pytest.mark.asyncio
    async def test_free_user_stats(self):
        now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
        db = _mock_db(card_count=1, max_links=2, qr_scans=150)
        with patch("services.usage_service.database.get_db", return_value=db):
            stats = await usage_service.get_usage_stats("user-1", now=now)
        assert stats["tier_id"] == "free"
        assert stats["cards"] == {"current": 1, "max": 1, "is_unlimited": False, "is_within_limit": False, "percentage": 100}
        assert stats["links"]["percentage"] == 67
        assert stats["qr_scans_monthly"]["percentage"] == 100
        assert stats["analytics_days"] == 7
        assert stats["analytics_unlimited"] is False
        assert stats["analytics_since"] == "2026-03-08T12:00:00+00:00"

        query = db.analytics_events.count_documents.call_args[0][0]
        assert query["event_type"] == "qr_scan"
        assert query["created_at"] == {"$gte": "2026-03-01T00:00:00+00:00"}

    @pytest.mark.asyncio
    async def test_pro_user_is_unlimited(self):
        db = _mock_db(subscription={"user_id": "user-1", "tier_id": "pro", "status": "LIFETIME"}, card_count=12)
        with patch("services.usage_service.database.get_db", return_value=db):
            stats = await usage_service.get_usage_stats("user-1")
        assert stats["cards"]["is_unlimited"] is True
        assert stats["cards"]["percentage"] == 0
        assert stats["analytics_unlimited"] is True
        assert stats["analytics_since"] is None

    def test_zero_limit_is_full(self):
        entry = usage_service._usage_entry(0, 0)
        assert entry["percentage"] == 100
        assert entry["is_within_limit"] is False
