"""
ai_billing - API Layer Tests

Route tests through FastAPI's TestClient with MODE=test (in-memory stores,
no Stripe key, so reporting runs in demo mode).
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from ai_billing.server import app


_BILLING_ENV = (
    "BILLING_SERVICE_TOKEN",
    "STRIPE_SECRET_KEY",
    "BILLING_ALERT_WEBHOOK_URL",
    "BILLING_DEMO_MODE",
    "BILLING_REQUIRE_ACTIVE_SUBSCRIPTION",
    "BILLING_DEFAULT_HARD_LIMIT",
    "BILLING_DEFAULT_MONTHLY_LIMIT",
    "BILLING_EXCHANGE_RATE",
)


# ============================================================
# Test Fixtures
# ============================================================

@pytest.fixture
def test_env(monkeypatch):
    monkeypatch.setenv("MODE", "test")
    for name in _BILLING_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def client(test_env):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def secured_client(test_env):
    test_env.setenv("BILLING_SERVICE_TOKEN", "svc_secret")
    with TestClient(app) as test_client:
        yield test_client


def _record(client, **overrides):
    body = {
        "user_id": "u1",
        "model_key": "gpt-4o",
        "feature": "chat",
        "input_units": 1000,
        "output_units": 500,
    }
    body.update(overrides)
    return client.post("/v1/usage/record", json=body)


# ============================================================
# Core endpoints
# ============================================================

class TestCoreEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["mode"] == "test"
        assert data["database"] == "not_configured"
        assert data["retry_worker"] == "stopped"
        assert data["outbox_pending"] == 0

    def test_metrics_exposed(self, client):
        _record(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "billing_charges_total" in response.text


# ============================================================
# Usage
# ============================================================

class TestUsageRoutes:

    def test_record_usage(self, client):
        response = _record(client, event_id="evt_1")

        assert response.status_code == 200
        data = response.json()
        assert data["object"] == "usage.charge"
        assert Decimal(data["price_amount"]) == Decimal("0.0105")
        assert data["pricing_source"] == "config"
        assert data["report_status"] == "demo"
        assert data["idempotency_key"] == "ai-usage:u1:evt_1"

    def test_request_id_echoed(self, client):
        response = client.post(
            "/v1/usage/check",
            json={"user_id": "u1"},
            headers={"X-Request-Id": "req_abc"},
        )

        assert response.headers["X-Request-Id"] == "req_abc"

    def test_unknown_model_falls_back(self, client):
        response = _record(client, model_key="unlisted-model", reported_cost="0.5")

        assert response.status_code == 200
        data = response.json()
        assert data["pricing_source"] == "default_margin"
        assert Decimal(data["price_amount"]) == Decimal("0.7")

    def test_negative_units_rejected(self, client):
        response = _record(client, input_units=-1)

        assert response.status_code == 422

    def test_check_allows_new_user(self, client):
        response = client.post("/v1/usage/check", json={"user_id": "fresh"})

        assert response.status_code == 200
        assert response.json()["allowed"] is True

    def test_check_denies_over_hard_limit(self, client):
        client.patch("/v1/spending-limit/u1", json={"monthly_limit_amount": "1", "hard_limit": True})
        _record(client, model_key="flux-kontext-max", runs=20)

        response = client.post("/v1/usage/check", json={"user_id": "u1"})

        assert response.status_code == 402
        assert response.headers["X-Error-Type"] == "semantic_error"
        error = response.json()["error"]
        assert error["code"] == "spending_limit_exceeded"
        assert error["user_id"] == "u1"
        assert error["request_id"]

    def test_check_denies_after_limit_set_to_zero(self, client):
        _record(client, model_key="flux-kontext-max", runs=1)
        client.patch("/v1/spending-limit/u1", json={"monthly_limit_amount": "0", "hard_limit": True})

        response = client.post("/v1/usage/check", json={"user_id": "u1"})

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "spending_limit_exceeded"


# ============================================================
# Spending limit
# ============================================================

class TestSpendingLimitRoutes:

    def test_get_missing_ledger(self, client):
        response = client.get("/v1/spending-limit/nobody")

        assert response.status_code == 200
        data = response.json()
        assert data["exists"] is False
        assert data["limit"]["monthly_limit_amount"] == "50"
        assert data["usage"]["current_month_spent"] == "0"

    def test_get_does_not_create_ledger(self, client):
        client.get("/v1/spending-limit/nobody")

        assert client.get("/v1/spending-limit/nobody").json()["exists"] is False

    def test_patch_updates_preferences(self, client):
        response = client.patch(
            "/v1/spending-limit/u1",
            json={"monthly_limit_amount": "100", "alert_threshold_percent": "90"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["exists"] is True
        assert data["limit"] == {
            "monthly_limit_amount": "100",
            "alert_threshold_percent": "90",
            "hard_limit": False,
        }

    def test_patch_reflects_usage(self, client):
        _record(client, model_key="flux-schnell", runs=10)

        data = client.get("/v1/spending-limit/u1").json()

        assert Decimal(data["usage"]["current_month_spent"]) == Decimal("0.045")
        assert data["usage"]["state"] == "under_threshold"
        assert data["cycle_started_at"] is not None

    @pytest.mark.parametrize("body,param", [
        ({"monthly_limit_amount": "20000"}, "monthly_limit_amount"),
        ({"alert_threshold_percent": "150"}, "alert_threshold_percent"),
    ])
    def test_patch_out_of_range(self, client, body, param):
        response = client.patch("/v1/spending-limit/u1", json=body)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_request"
        assert error["param"] == param


# ============================================================
# Billing jobs
# ============================================================

class TestBillingJobRoutes:

    def test_rollover_single_user(self, client):
        _record(client)

        response = client.post("/v1/billing/rollover", json={"user_id": "u1"})

        assert response.status_code == 200
        assert response.json()["reset"] == 1
        assert client.get("/v1/spending-limit/u1").json()["usage"]["current_month_spent"] == "0"

    def test_rollover_unknown_user(self, client):
        response = client.post("/v1/billing/rollover", json={"user_id": "ghost"})

        assert response.json()["reset"] == 0

    def test_rollover_sweep_default_cycle(self, client):
        """Test ledgers created this month are not stale."""
        _record(client)

        response = client.post("/v1/billing/rollover", json={})

        assert response.status_code == 200
        assert response.json()["reset"] == 0

    def test_rollover_sweep_explicit_cycle(self, client):
        _record(client)

        response = client.post("/v1/billing/rollover", json={"cycle_start": "2099-01-01T00:00:00Z"})

        assert response.json()["reset"] == 1

    def test_rollover_requires_timezone(self, client):
        response = client.post("/v1/billing/rollover", json={"cycle_start": "2099-01-01T00:00:00"})

        assert response.status_code == 400
        assert response.json()["error"]["param"] == "cycle_start"

    def test_retry_reports(self, client):
        response = client.post("/v1/billing/reports/retry")

        assert response.status_code == 200
        assert response.json() == {
            "object": "billing.report_retry",
            "claimed": 0,
            "sent": 0,
            "rescheduled": 0,
            "failed": 0,
        }


# ============================================================
# Service token
# ============================================================

class TestServiceToken:

    def test_missing_token_rejected(self, secured_client):
        response = secured_client.post("/v1/usage/check", json={"user_id": "u1"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_wrong_token_rejected(self, secured_client):
        response = secured_client.post(
            "/v1/usage/check",
            json={"user_id": "u1"},
            headers={"X-Service-Token": "nope"},
        )

        assert response.status_code == 401

    def test_valid_token_accepted(self, secured_client):
        response = secured_client.post(
            "/v1/usage/check",
            json={"user_id": "u1"},
            headers={"X-Service-Token": "svc_secret"},
        )

        assert response.status_code == 200

    def test_health_is_open(self, secured_client):
        assert secured_client.get("/health").status_code == 200
