"""
HTTP surface: auth guard, tier/limit gating on card routes, billing and webhook endpoints.
Uses TestClient with a mocked db; no MongoDB or Stripe needed.
"""
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest

from auth import create_access_token


def _mock_db(subscription=None, card=None, card_count=0):
    db = MagicMock()
    db.subscriptions.find_one = AsyncMock(return_value=subscription)
    db.cards.find_one = AsyncMock(return_value=card)
    db.cards.count_documents = AsyncMock(return_value=card_count)
    db.cards.insert_one = AsyncMock()
    db.cards.update_one = AsyncMock()
    db.cards.delete_one = AsyncMock()
    db.cards.aggregate = MagicMock(return_value=MagicMock(to_list=AsyncMock(return_value=[])))
    db.analytics_events.count_documents = AsyncMock(return_value=0)
    db.leads.find.return_value.sort.return_value.to_list = AsyncMock(
        return_value=[{"lead_id": "lead-1", "card_id": "card-1", "email": "visitor@example.com"}]
    )
    db.audit_logs.insert_one = AsyncMock()
    return db


LIFETIME_PRO = {"user_id": "user-1", "subscription_id": "SUB-1", "tier_id": "pro", "status": "LIFETIME"}


def auth_headers(user_id: str = "user-1", email: str = "user@example.com", role: str = None) -> dict:
    claims = {"sub": user_id, "email": email}
    if role:
        claims["role"] = role
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


class TestPublicEndpoints:

    def test_health(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root_and_version(self, client):
        assert client.get("/api").json()["status"] == "operational"
        assert "commit_sha" in client.get("/api/version").json()

    def test_tiers(self, client):
        r = client.get("/api/billing/tiers")
        assert r.status_code == 200
        tiers = r.json()["tiers"]
        assert [t["id"] for t in tiers] == ["free", "pro", "business"]
        assert tiers[0]["price_display"] == "Kostenlos"
        assert tiers[1]["price_display"] == "€89 einmalig"
        assert tiers[2]["lifetime_savings"].startswith("Zahlt sich nach")

    def test_matrix(self, client):
        r = client.get("/api/entitlements/matrix")
        assert r.status_code == 200
        assert r.json()["features"]["api_access"]["minimum_tier"] == "business"


class TestAuthGuard:

    @pytest.mark.parametrize("path", ["/api/entitlements", "/api/usage", "/api/billing/subscription", "/api/cards"])
    def test_requires_bearer_token(self, client, path):
        r = client.get(path)
        assert r.status_code == 401

    def test_rejects_bad_token(self, client):
        r = client.get("/api/entitlements", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401


class TestEntitlementRoutes:

    def test_subscription_for_new_user_is_free(self, client):
        with patch("database.database.get_db", return_value=_mock_db()):
            r = client.get("/api/billing/subscription", headers=auth_headers())
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "FREE"
        assert body["effective_tier_id"] == "free"
        assert body["status_badge_color"] == "bg-gray-100 text-gray-800"

    def test_feature_check_camel_case(self, client):
        with patch("database.database.get_db", return_value=_mock_db()):
            r = client.get("/api/entitlements/features/customColors", headers=auth_headers())
        assert r.json() == {"feature": "custom_colors", "has_access": False, "minimum_tier": "pro"}

    def test_entitlements_for_lifetime_user(self, client):
        with patch("database.database.get_db", return_value=_mock_db(subscription=LIFETIME_PRO)):
            r = client.get("/api/entitlements", headers=auth_headers())
        assert r.status_code == 200
        assert r.json()["features"]["lead_collection"]["enabled"] is True

    def test_usage(self, client):
        with patch("database.database.get_db", return_value=_mock_db(card_count=1)):
            r = client.get("/api/usage", headers=auth_headers())
            single = client.get("/api/usage/cards", headers=auth_headers())
            bad = client.get("/api/usage/storage", headers=auth_headers())
        assert r.json()["cards"]["percentage"] == 100
        assert single.json() == {"is_within_limit": False, "current": 1, "max": 1}
        assert bad.status_code == 400


class TestCardRoutes:

    def test_free_user_creates_first_card(self, client):
        db = _mock_db(card_count=0)
        with patch("database.database.get_db", return_value=db):
            r = client.post("/api/cards", json={}, headers=auth_headers())
        assert r.status_code == 201
        body = r.json()
        assert body["user_id"] == "user-1"
        assert body["internal_name"] == "New Untitled Site"
        assert body["slug"].startswith("site-")
        db.cards.insert_one.assert_awaited_once()

    def test_free_user_second_card_denied(self, client):
        db = _mock_db(card_count=1)
        with patch("database.database.get_db", return_value=db), \
             patch("routes.cards.create_audit_log", new_callable=AsyncMock) as audit:
            r = client.post("/api/cards", json={"internal_name": "Second"}, headers=auth_headers())
        assert r.status_code == 403
        detail = r.json()["detail"]
        assert detail["error_code"] == "CARD_LIMIT_REACHED"
        assert detail["upgrade_to"] == "pro"
        db.cards.insert_one.assert_not_called()
        assert audit.call_args.kwargs["action"].value == "USAGE_LIMIT_DENIED"

    def test_link_limit(self, client):
        card = {"card_id": "card-1", "user_id": "user-1", "links": [{"id": str(i)} for i in range(3)]}
        db = _mock_db(card=card)
        with patch("database.database.get_db", return_value=db):
            r = client.post(
                "/api/cards/card-1/links",
                json={"platform": "github", "url": "https://github.com/someone"},
                headers=auth_headers(),
            )
        assert r.status_code == 403
        assert r.json()["detail"]["error_code"] == "LINK_LIMIT_REACHED"
        db.cards.update_one.assert_not_called()

    def test_add_link_below_limit(self, client):
        card = {"card_id": "card-1", "user_id": "user-1", "links": []}
        db = _mock_db(card=card)
        with patch("database.database.get_db", return_value=db):
            r = client.post(
                "/api/cards/card-1/links",
                json={"platform": "github", "url": "https://github.com/someone"},
                headers=auth_headers(),
            )
        assert r.status_code == 201
        assert r.json()["platform"] == "github"
        update = db.cards.update_one.call_args[0][1]
        assert update["$push"]["links"]["url"] == "https://github.com/someone"

    def test_missing_card_is_404(self, client):
        with patch("database.database.get_db", return_value=_mock_db(card=None)):
            r = client.delete("/api/cards/nope", headers=auth_headers())
        assert r.status_code == 404

    def test_delete_card(self, client):
        db = _mock_db(card={"card_id": "card-1", "user_id": "user-1"})
        with patch("database.database.get_db", return_value=db):
            r = client.delete("/api/cards/card-1", headers=auth_headers())
        assert r.status_code == 200
        db.cards.delete_one.assert_awaited_once_with({"card_id": "card-1", "user_id": "user-1"})


class TestLeadGating:

    def test_free_user_denied(self, client):
        db = _mock_db(card={"card_id": "card-1", "user_id": "user-1"})
        with patch("database.database.get_db", return_value=db), \
             patch("middleware.feature_gating.create_audit_log", new_callable=AsyncMock) as audit:
            r = client.get("/api/cards/card-1/leads", headers=auth_headers())
        assert r.status_code == 403
        detail = r.json()["detail"]
        assert detail["error_code"] == "FEATURE_NOT_IN_TIER"
        assert detail["required_tier"] == "pro"
        assert detail["message"] == "Lead Collection requires Pro LTD or higher"
        assert audit.call_args.kwargs["metadata"]["feature_key"] == "lead_collection"

    def test_lifetime_pro_allowed(self, client):
        db = _mock_db(subscription=LIFETIME_PRO, card={"card_id": "card-1", "user_id": "user-1"})
        with patch("database.database.get_db", return_value=db):
            r = client.get("/api/cards/card-1/leads", headers=auth_headers())
        assert r.status_code == 200
        assert r.json()["count"] == 1

    def test_disputed_license_is_limited(self, client):
        disputed = {**LIFETIME_PRO, "status": "DISPUTED"}
        db = _mock_db(subscription=disputed, card={"card_id": "card-1", "user_id": "user-1"})
        with patch("database.database.get_db", return_value=db):
            r = client.get("/api/cards/card-1/leads", headers=auth_headers())
        assert r.status_code == 403
        assert r.json()["detail"]["error_code"] == "SUBSCRIPTION_INACTIVE"

    def test_admin_bypasses_tier(self, client):
        db = _mock_db(card={"card_id": "card-1", "user_id": "admin-1"})
        with patch("database.database.get_db", return_value=db):
            r = client.get("/api/cards/card-1/leads", headers=auth_headers("admin-1", role="ROLE_ADMIN"))
        assert r.status_code == 200

    def test_unauthenticated(self, client):
        r = client.get("/api/cards/card-1/leads")
        assert r.status_code == 401


class TestBillingRoutes:

    def test_checkout_passes_origin(self, client):
        create = AsyncMock(return_value={"session_id": "cs_1", "checkout_url": "https://checkout", "tier_id": "pro", "tier_name": "Pro LTD"})
        with patch("routes.billing.stripe_service.create_checkout_session", create):
            r = client.post(
                "/api/billing/checkout",
                json={"tier_id": "pro"},
                headers={**auth_headers(), "Origin": "https://cards.example.com"},
            )
        assert r.status_code == 200
        assert r.json()["session_id"] == "cs_1"
        assert create.call_args.kwargs == {
            "user_id": "user-1",
            "email": "user@example.com",
            "tier_id": "pro",
            "origin_url": "https://cards.example.com",
        }

    def test_checkout_value_error_is_400(self, client):
        create = AsyncMock(side_effect=ValueError("User already owns Pro LTD (lifetime)"))
        with patch("routes.billing.stripe_service.create_checkout_session", create):
            r = client.post("/api/billing/checkout", json={"tier_id": "pro"}, headers=auth_headers())
        assert r.status_code == 400
        assert "already owns" in r.json()["detail"]

    def test_checkout_validation_error_has_request_id(self, client):
        r = client.post("/api/billing/checkout", json={}, headers=auth_headers())
        assert r.status_code == 422
        assert "request_id" in r.json()

    def test_portal_without_billing_account(self, client):
        portal = AsyncMock(side_effect=LookupError("No billing account found"))
        with patch("routes.billing.stripe_service.create_portal_session", portal):
            r = client.post("/api/billing/portal", headers=auth_headers())
        assert r.status_code == 404

    def test_payments_limit_is_clamped(self, client):
        payments = AsyncMock(return_value=[{"amount": 89.0}])
        with patch("routes.billing.stripe_service.list_payments", payments):
            r = client.get("/api/billing/payments?limit=5000", headers=auth_headers())
        assert r.json()["count"] == 1
        assert payments.call_args.kwargs["limit"] == 200


class TestWebhookRoutes:

    @pytest.mark.parametrize("path", ["/api/webhook/stripe", "/api/webhooks/stripe"])
    def test_processed(self, client, path):
        process = AsyncMock(return_value=(True, "Processed", {"user_id": "user-1"}))
        with patch("routes.webhooks.stripe_webhook_service.process_webhook", process):
            r = client.post(path, content=b'{"id": "evt_1"}', headers={"Stripe-Signature": "t=1,v1=abc"})
        assert r.status_code == 200
        assert r.json()["status"] == "received"
        assert process.call_args.kwargs == {"payload": b'{"id": "evt_1"}', "signature": "t=1,v1=abc"}

    def test_invalid_signature_is_400(self, client):
        process = AsyncMock(return_value=(False, "Invalid signature", {"error": "bad"}))
        with patch("routes.webhooks.stripe_webhook_service.process_webhook", process):
            r = client.post("/api/webhook/stripe", content=b"{}")
        assert r.status_code == 400
        assert r.json()["detail"] == "Invalid signature"
