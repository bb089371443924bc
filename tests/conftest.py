"""
ai_billing - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- A fresh Prometheus registry per test
- A fake Stripe patched into the stripe SDK
- In-memory billing services wired to the fake Stripe
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import stripe
from prometheus_client import CollectorRegistry

from ai_billing.api.dependencies import BillingServices
from ai_billing.billing.reporter import StripeMeteredBillingClient
from ai_billing.config import BillingSettings
from ai_billing.db.models import BillingAccount
from ai_billing.observability.metrics import setup_metrics


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1 and DATABASE_URL)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )

    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


# ============================================================
# Metrics
# ============================================================

@pytest.fixture(autouse=True)
def metrics_registry():
    """Route all metrics of a test into its own registry."""
    registry = CollectorRegistry()
    setup_metrics(registry)
    yield registry


# ============================================================
# Fake Stripe
# ============================================================

@dataclass
class StripeCall:
    """One call that reached the patched Stripe SDK."""
    method: str
    target: str
    params: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    api_key: Optional[str] = None


class FakeStripe:
    """
    In-process stand-in for the Stripe SDK calls the reporter makes.

    Usage records are deduplicated by idempotency key, like Stripe does.
    Failure knobs raise the SDK's own error types.
    """

    def __init__(self):
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.usage_records: Dict[str, Dict[str, Any]] = {}
        self.calls: List[StripeCall] = []
        self.usage_failures: List[int] = []      # status codes for the next usage records
        self.connect_errors = 0                  # next N usage records fail to connect
        self.subscription_failures: List[int] = []

    def add_subscription(self, subscription_id: str, item_id: str = "si_metered", metered: bool = True):
        usage_type = "metered" if metered else "licensed"
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "object": "subscription",
            "items": {
                "object": "list",
                "data": [
                    {"id": "si_base", "price": {"id": "price_base", "recurring": {"usage_type": "licensed"}}},
                    {"id": item_id, "price": {"id": "price_ai", "recurring": {"usage_type": usage_type}}},
                ],
            },
        }

    @property
    def usage_posts(self) -> List[StripeCall]:
        return [c for c in self.calls if c.method == "create_usage_record"]

    @property
    def total_quantity(self) -> int:
        return sum(record["quantity"] for record in self.usage_records.values())

    @staticmethod
    def error_for(status: int, message: str) -> stripe.StripeError:
        if status == 429:
            return stripe.RateLimitError(message, http_status=status)
        if status >= 500:
            return stripe.APIError(message, http_status=status)
        return stripe.InvalidRequestError(message, None, http_status=status)

    async def retrieve_subscription(self, subscription_id, api_key=None, **params):
        self.calls.append(StripeCall("retrieve_subscription", subscription_id, params, api_key=api_key))
        if self.subscription_failures:
            status = self.subscription_failures.pop(0)
            raise self.error_for(status, f"subscription lookup {status}")
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise stripe.InvalidRequestError(
                f"No such subscription: '{subscription_id}'", "id", http_status=404
            )
        return subscription

    async def create_usage_record(self, subscription_item_id, api_key=None, idempotency_key=None, **params):
        self.calls.append(StripeCall(
            "create_usage_record", subscription_item_id, params,
            idempotency_key=idempotency_key, api_key=api_key,
        ))
        if self.connect_errors:
            self.connect_errors -= 1
            raise stripe.APIConnectionError("connection refused")
        if self.usage_failures:
            status = self.usage_failures.pop(0)
            raise self.error_for(status, f"usage record {status}")

        if idempotency_key in self.usage_records:
            return self.usage_records[idempotency_key]

        record = {
            "id": f"mbur_{len(self.usage_records) + 1}",
            "object": "usage_record",
            "subscription_item": subscription_item_id,
            "quantity": int(params["quantity"]),
            "timestamp": int(params["timestamp"]),
            "action": params["action"],
        }
        self.usage_records[idempotency_key] = record
        return record


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    fake.add_subscription("sub_1")
    monkeypatch.setattr(stripe.Subscription, "retrieve_async", staticmethod(fake.retrieve_subscription))
    monkeypatch.setattr(
        stripe.SubscriptionItem, "create_usage_record_async", staticmethod(fake.create_usage_record)
    )
    return fake


@pytest.fixture
def stripe_client(fake_stripe):
    return StripeMeteredBillingClient(secret_key="sk_test_123")


# ============================================================
# Billing services
# ============================================================

@pytest.fixture
def settings():
    return BillingSettings(report_max_attempts=3)


@pytest.fixture
def services(settings, stripe_client):
    """
    In-memory services with one subscribed user.

    user_1: subscription sub_1 (metered item si_metered), plan with 10.00 included.
    """
    services = BillingServices.in_memory(settings, stripe_client)
    services.accounts.set_plan_allowance("price_pro", Decimal("10"))
    services.accounts.upsert_account(BillingAccount(
        user_id="user_1",
        subscription_id="sub_1",
        subscription_status="active",
        price_id="price_pro",
    ))
    return services
