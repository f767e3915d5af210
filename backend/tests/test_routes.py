"""
HTTP surface via TestClient: webhook acknowledgement, error mapping,
auth guards, capture redirects, and the timer cache / fallback.
"""
from unittest.mock import AsyncMock, patch

import pytest

from entitlements.models.account import Account
from entitlements.routes import payment as payment_routes
from entitlements.routes import timer as timer_routes
from entitlements.routes import webhooks as webhook_routes
from entitlements.services.checkout import CheckoutResult

USER_ID = "ACC-USER00000001"
SUB_ID = "I-ROUTES000001"


def _seed(db, **fields):
    account = Account(**{"account_id": USER_ID, "email": "user@example.com", **fields})
    db.accounts.docs.append(account.model_dump())
    return account.account_id


def _account(db, account_id=USER_ID):
    return next(d for d in db.accounts.docs if d["account_id"] == account_id)


@pytest.fixture(autouse=True)
def no_webhook_id(monkeypatch):
    monkeypatch.delenv("PAYPAL_WEBHOOK_ID", raising=False)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestWebhook:

    def test_activation_is_applied_and_acknowledged(self, client, fake_db):
        _seed(fake_db, plan="pro_monthly", external_subscription_id=SUB_ID)
        event = {"id": "WH-ROUTE-1", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED", "resource": {"id": SUB_ID}}

        response = client.post("/api/payment/webhook", json=event)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["received"] is True
        assert _account(fake_db)["subscription_status"] == "active"

    def test_internal_failure_is_still_acknowledged(self, client, fake_db):
        event = {"id": "WH-ROUTE-2", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED", "resource": {"id": SUB_ID}}
        with patch.object(webhook_routes.webhook_reconciler, "handle", AsyncMock(side_effect=RuntimeError("boom"))):
            response = client.post("/api/payment/webhook", json=event)
        assert response.status_code == 200
        assert response.json()["received"] is True

    def test_invalid_payload(self, client, fake_db):
        response = client.post("/api/payment/webhook", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_invalid_signature_rejected_when_webhook_id_configured(self, client, fake_db, monkeypatch):
        monkeypatch.setenv("PAYPAL_WEBHOOK_ID", "WH-CONFIG")
        provider = AsyncMock()
        provider.verify_webhook_signature.return_value = False
        with patch.object(webhook_routes, "paypal_client", provider):
            response = client.post("/api/payment/webhook", json={"id": "WH-X", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED"})
        assert response.status_code == 400
        assert fake_db.billing_events.docs == []


class TestCredits:

    def test_requires_auth(self, client):
        assert client.get("/api/user/credits").status_code == 401

    def test_balance(self, client, fake_db, user_headers):
        _seed(fake_db, plan="starter_monthly", credits_remaining=40, credits_total=100)
        response = client.get("/api/user/credits", headers=user_headers)
        assert response.status_code == 200
        assert response.json()["credits"]["remaining"] == 40
        assert response.json()["credits"]["percentage"] == 40.0

    def test_insufficient_credits_is_402(self, client, fake_db, user_headers):
        _seed(fake_db, plan="starter_monthly", credits_remaining=1, credits_total=100)
        response = client.post("/api/user/credits/consume", json={"amount": 5}, headers=user_headers)
        assert response.status_code == 402
        body = response.json()
        assert body["error_code"] == "INSUFFICIENT_CREDITS"
        assert body["upgrade_url"] == "/#pricing"
        assert _account(fake_db)["credits_remaining"] == 1


class TestAdmin:

    def test_non_admin_is_forbidden(self, client, fake_db, user_headers):
        _seed(fake_db, plan="pro_monthly", subscription_status="active")
        response = client.post(f"/api/admin/users/{USER_ID}/pause", headers=user_headers)
        assert response.status_code == 403
        assert _account(fake_db)["subscription_status"] == "active"

    def test_pause_then_pause_again(self, client, fake_db, admin_headers):
        _seed(fake_db, plan="pro_monthly", subscription_status="active", external_subscription_id=SUB_ID)

        first = client.post(f"/api/admin/users/{USER_ID}/pause", headers=admin_headers)
        second = client.post(f"/api/admin/users/{USER_ID}/pause", headers=admin_headers)

        assert first.status_code == 200
        assert first.json()["account"]["status"] == "paused"
        assert second.status_code == 400
        assert second.json()["error_code"] == "VALIDATION_ERROR"

    def test_audit_trail_lists_overrides(self, client, fake_db, admin_headers):
        _seed(fake_db, plan="pro_monthly", subscription_status="active", external_subscription_id=SUB_ID)
        client.post(f"/api/admin/users/{USER_ID}/pause", headers=admin_headers)

        response = client.get(f"/api/admin/users/{USER_ID}/audit?action=ACCOUNT_PAUSED", headers=admin_headers)

        assert response.status_code == 200
        logs = response.json()["logs"]
        assert [log["action"] for log in logs] == ["ACCOUNT_PAUSED"]
        assert logs[0]["actor_id"] == "ACC-ADMIN0000001"

    def test_audit_trail_rejects_unknown_action(self, client, fake_db, admin_headers):
        response = client.get(f"/api/admin/users/{USER_ID}/audit?action=NOPE", headers=admin_headers)
        assert response.status_code == 400

    def test_unknown_account_is_404(self, client, fake_db, admin_headers):
        response = client.post("/api/admin/users/ACC-NOPE/resume", headers=admin_headers)
        assert response.status_code == 404

    def test_entitlement(self, client, fake_db, admin_headers):
        _seed(fake_db, plan="lifetime", subscription_status="active", credits_remaining=-1, credits_total=-1)
        response = client.get(f"/api/admin/users/{USER_ID}/entitlement", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["entitlement"]["has_access"] is True

    def test_timer_duration_out_of_range(self, client, fake_db, admin_headers):
        response = client.put("/api/admin/settings", json={"timer_duration_days": 0}, headers=admin_headers)
        assert response.status_code == 400

    def test_paypal_config_is_masked(self, client, fake_db, admin_headers):
        fake_db.site_settings.docs.append({"settings_id": "global", "version": 0, "paypal_mode": "sandbox",
                                           "paypal_sandbox_secret": "sandbox-secret-4321"})
        response = client.get("/api/admin/paypal-config", headers=admin_headers)
        assert response.status_code == 200
        secret = response.json()["config"]["paypal_sandbox_secret"]
        assert secret.endswith("4321")
        assert "sandbox-secret" not in secret


class TestCheckoutRoutes:

    def test_capture_order_redirect_carries_recovery(self, client, fake_db):
        result = CheckoutResult(
            account_id=USER_ID, email="user@example.com", transaction_id="CAP-1",
            is_new_account=True, credentials_delivered=False, recovery_required=True,
        )
        with patch.object(payment_routes.checkout_flow, "capture_order", AsyncMock(return_value=result)):
            response = client.get("/api/payment/capture-order?token=O-1&PayerID=P-1", follow_redirects=False)
        assert response.status_code == 302
        location = response.headers["location"]
        assert "payment=success" in location
        assert "recovery=resend_credentials" in location
        assert "txn=CAP-1" in location

    def test_capture_order_without_token(self, client, fake_db):
        response = client.get("/api/payment/capture-order", follow_redirects=False)
        assert response.status_code == 302
        assert "payment=error" in response.headers["location"]

    def test_create_subscription_unknown_plan(self, client, fake_db):
        response = client.post("/api/payment/create-subscription", json={"planType": "platinum"})
        assert response.status_code == 400
        assert response.json()["success"] is False


class TestTimer:

    def test_timer_sets_cache_header(self, client, fake_db):
        response = client.get("/api/timer")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.headers["cache-control"] == timer_routes.CACHE_CONTROL

    def test_timer_falls_back_on_store_failure(self, client, fake_db):
        failing = AsyncMock(side_effect=RuntimeError("datastore unavailable"))
        with patch.object(timer_routes.countdown_controller, "current_deadline", failing):
            response = client.get("/api/timer")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["durationDays"] == 7
