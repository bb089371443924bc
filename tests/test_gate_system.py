"""
ai_billing - Limit Gate Tests

Tests for the pre-use check: allow, warn, deny, demo mode and the
subscription requirement.
"""

from decimal import Decimal

import pytest

from ai_billing.billing.accounts import InMemoryAccountDirectory
from ai_billing.billing.gate import (
    DEMO_MESSAGE,
    LIMIT_REACHED_MESSAGE,
    NO_SUBSCRIPTION_MESSAGE,
    OVER_ZERO_LIMIT_MESSAGE,
    SUBSCRIPTION_CANCELED_MESSAGE,
    LimitGate,
)
from ai_billing.billing.ledger import InMemoryLedgerStore, LedgerState, SpendingLedgerService
from ai_billing.config import BillingSettings
from ai_billing.core.errors import LimitExceededError
from ai_billing.db.models import BillingAccount


D = Decimal


# ============================================================
# Test Fixtures
# ============================================================

@pytest.fixture
def ledger():
    return SpendingLedgerService(InMemoryLedgerStore())


@pytest.fixture
def accounts():
    directory = InMemoryAccountDirectory(plan_allowances={"price_pro": D("10")})
    directory.upsert_account(BillingAccount(
        user_id="user_1",
        subscription_id="sub_1",
        subscription_status="active",
        price_id="price_pro",
    ))
    return directory


@pytest.fixture
def gate(ledger, accounts):
    return LimitGate(ledger, accounts, BillingSettings())


# ============================================================
# Decisions
# ============================================================

class TestCheckBeforeUse:
    """Tests for LimitGate.check_before_use."""

    @pytest.mark.asyncio
    async def test_no_ledger_allows(self, gate):
        decision = await gate.check_before_use("user_1")

        assert decision.allowed is True
        assert decision.message is None
        assert decision.included_allowance == D("10")
        assert decision.included_remaining == D("10")

    @pytest.mark.asyncio
    async def test_under_threshold_allows_silently(self, gate, ledger):
        await ledger.apply_charge("user_1", D("12"))

        decision = await gate.check_before_use("user_1")

        assert decision.allowed is True
        assert decision.message is None
        assert decision.percent_used == D("24")
        assert decision.remaining == D("38")
        assert decision.included_remaining == D("0")
        assert decision.state == LedgerState.UNDER_THRESHOLD

    @pytest.mark.asyncio
    async def test_at_threshold_warns(self, gate, ledger):
        """Test limit 50, threshold 80%, spent 45: allowed with a warning."""
        await ledger.apply_charge("user_1", D("45"))

        decision = await gate.check_before_use("user_1")

        assert decision.allowed is True
        assert "90%" in decision.message
        assert decision.state == LedgerState.ALERT_SENT

    @pytest.mark.asyncio
    async def test_soft_limit_over_100_still_allows(self, gate, ledger):
        await ledger.apply_charge("user_1", D("80"))

        decision = await gate.check_before_use("user_1")

        assert decision.allowed is True
        assert decision.remaining == D("0")
        assert "160%" in decision.message

    @pytest.mark.asyncio
    async def test_hard_limit_denies(self, gate, ledger, metrics_registry):
        await ledger.update_preferences("user_1", hard_limit=True)
        await ledger.apply_charge("user_1", D("53"))

        decision = await gate.check_before_use("user_1")

        assert decision.allowed is False
        assert decision.message == LIMIT_REACHED_MESSAGE
        assert decision.state == LedgerState.LIMIT_HIT
        assert metrics_registry.get_sample_value(
            "billing_gate_decisions_total", {"allowed": "false"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_hard_limit_exactly_at_limit_denies(self, gate, ledger):
        await ledger.update_preferences("user_1", hard_limit=True)
        await ledger.apply_charge("user_1", D("50"))

        decision = await gate.check_before_use("user_1")

        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_zero_hard_limit_denies_after_any_spend(self, gate, ledger):
        await ledger.update_preferences("user_1", monthly_limit_amount=D("0"), hard_limit=True)
        await ledger.apply_charge("user_1", D("0.01"))

        decision = await gate.check_before_use("user_1")

        assert decision.allowed is False
        assert decision.message == LIMIT_REACHED_MESSAGE
        assert decision.state == LedgerState.LIMIT_HIT

    @pytest.mark.asyncio
    async def test_zero_hard_limit_without_spend_allows(self, gate, ledger):
        await ledger.update_preferences("user_1", monthly_limit_amount=D("0"), hard_limit=True)

        decision = await gate.check_before_use("user_1")

        assert decision.allowed is True
        assert decision.message is None

    @pytest.mark.asyncio
    async def test_zero_soft_limit_warns(self, gate, ledger):
        await ledger.update_preferences("user_1", monthly_limit_amount=D("0"))
        await ledger.apply_charge("user_1", D("0.01"))

        decision = await gate.check_before_use("user_1")

        assert decision.allowed is True
        assert decision.message == OVER_ZERO_LIMIT_MESSAGE

    @pytest.mark.asyncio
    async def test_raising_limit_allows_again(self, gate, ledger):
        await ledger.update_preferences("user_1", hard_limit=True)
        await ledger.apply_charge("user_1", D("53"))

        await ledger.update_preferences("user_1", monthly_limit_amount=D("100"))
        decision = await gate.check_before_use("user_1")

        assert decision.allowed is True
        assert decision.state == LedgerState.UNDER_THRESHOLD

    @pytest.mark.asyncio
    async def test_to_dict(self, gate, ledger):
        await ledger.apply_charge("user_1", D("45"))

        data = (await gate.check_before_use("user_1")).to_dict()

        assert data["allowed"] is True
        assert data["percent_used"] == "90.00"
        assert data["remaining"] == "5"
        assert data["state"] == "alert_sent"


# ============================================================
# Demo mode & subscriptions
# ============================================================

class TestDemoAndSubscription:
    """Tests for demo mode and require_active_subscription."""

    @pytest.mark.asyncio
    async def test_demo_mode_always_allows(self, ledger, accounts):
        gate = LimitGate(ledger, accounts, BillingSettings(demo_mode=True))
        await ledger.update_preferences("user_1", hard_limit=True)
        await ledger.apply_charge("user_1", D("500"))

        decision = await gate.check_before_use("user_1")

        assert decision.allowed is True
        assert decision.is_demo is True
        assert decision.remaining is None
        assert decision.subscription_status == "demo"
        assert decision.message == DEMO_MESSAGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["active", "trialing", "past_due"])
    async def test_active_statuses_allowed(self, ledger, accounts, status):
        accounts.upsert_account(BillingAccount(user_id="user_2", subscription_status=status))
        gate = LimitGate(ledger, accounts, BillingSettings(require_active_subscription=True))

        decision = await gate.check_before_use("user_2")

        assert decision.allowed is True
        assert decision.subscription_status == status

    @pytest.mark.asyncio
    async def test_canceled_subscription_denied(self, ledger, accounts):
        accounts.upsert_account(BillingAccount(user_id="user_2", subscription_status="canceled"))
        gate = LimitGate(ledger, accounts, BillingSettings(require_active_subscription=True))

        decision = await gate.check_before_use("user_2")

        assert decision.allowed is False
        assert decision.message == SUBSCRIPTION_CANCELED_MESSAGE

    @pytest.mark.asyncio
    async def test_no_account_denied(self, ledger, accounts):
        gate = LimitGate(ledger, accounts, BillingSettings(require_active_subscription=True))

        decision = await gate.check_before_use("nobody")

        assert decision.allowed is False
        assert decision.message == NO_SUBSCRIPTION_MESSAGE
        assert decision.subscription_status == "none"

    @pytest.mark.asyncio
    async def test_admin_bypasses_subscription(self, ledger, accounts):
        accounts.upsert_account(BillingAccount(user_id="admin", is_admin=True))
        gate = LimitGate(ledger, accounts, BillingSettings(require_active_subscription=True))

        decision = await gate.check_before_use("admin")

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_subscription_not_required_by_default(self, gate):
        decision = await gate.check_before_use("nobody")

        assert decision.allowed is True


# ============================================================
# enforce
# ============================================================

class TestEnforce:
    """Tests for LimitGate.enforce."""

    @pytest.mark.asyncio
    async def test_enforce_returns_decision_when_allowed(self, gate):
        decision = await gate.enforce("user_1")

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_enforce_raises_when_denied(self, gate, ledger):
        await ledger.update_preferences("user_1", hard_limit=True)
        await ledger.apply_charge("user_1", D("53"))

        with pytest.raises(LimitExceededError) as exc_info:
            await gate.enforce("user_1")

        error = exc_info.value
        assert error.status_code == 402
        assert error.error.code == "spending_limit_exceeded"
        assert error.error.details == {"monthly_limit": "50", "current_month_spent": "53"}
        assert error.error.retryable is False
