"""
ai_billing - Limit Gate

Pre-check called by AI features before they start paid work.

The gate reads the ledger without locking it: two requests that pass just
under a hard limit can both run, and the ledger then records the overshoot.
The next check after that denies.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from ..config import ACTIVE_SUBSCRIPTION_STATUSES, BillingSettings
from ..core.errors import LimitExceededError
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from .accounts import AccountDirectory
from .ledger import LedgerState, SpendingLedgerService, ledger_state


logger = get_logger("ai_billing.billing.gate")

ZERO = Decimal("0")

LIMIT_REACHED_MESSAGE = (
    "You have reached your monthly AI spending limit. "
    "Raise your limit in the billing settings to continue."
)
SUBSCRIPTION_CANCELED_MESSAGE = (
    "Your subscription has been canceled. Choose a new plan to use AI features."
)
NO_SUBSCRIPTION_MESSAGE = "No active subscription. Choose a plan to use AI features."
OVER_ZERO_LIMIT_MESSAGE = "Your monthly AI spending limit is set to 0 and has been exceeded."
DEMO_MESSAGE = "Demo mode active: unlimited AI usage."


@dataclass
class GateDecision:
    """Answer to "may this user start a paid AI operation now?"."""
    allowed: bool
    percent_used: Decimal = ZERO
    remaining: Optional[Decimal] = None  # None means unlimited
    message: Optional[str] = None
    current_month_spent: Decimal = ZERO
    included_allowance: Decimal = ZERO
    included_remaining: Decimal = ZERO
    state: Optional[LedgerState] = None
    subscription_status: Optional[str] = None
    is_demo: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "percent_used": str(self.percent_used.quantize(Decimal("0.01"))),
            "remaining": str(self.remaining) if self.remaining is not None else None,
            "message": self.message,
            "current_month_spent": str(self.current_month_spent),
            "included_allowance": str(self.included_allowance),
            "included_remaining": str(self.included_remaining),
            "state": self.state.value if self.state else None,
            "subscription_status": self.subscription_status,
            "is_demo": self.is_demo,
        }


class LimitGate:
    """Allows, warns or denies based on the spending ledger."""

    def __init__(
        self,
        ledger: SpendingLedgerService,
        accounts: AccountDirectory,
        settings: Optional[BillingSettings] = None,
    ):
        self.ledger = ledger
        self.accounts = accounts
        self.settings = settings or BillingSettings()

    async def check_before_use(self, user_id: str) -> GateDecision:
        decision = await self._decide(user_id)
        get_metrics().record_gate_decision(decision.allowed)
        if not decision.allowed:
            logger.info(
                "AI usage denied",
                user_id=user_id,
                percent_used=str(decision.percent_used.quantize(Decimal("0.01"))),
                subscription_status=decision.subscription_status,
            )
        return decision

    async def _decide(self, user_id: str) -> GateDecision:
        ledger = await self.ledger.get(user_id)
        allowance = await self.accounts.get_included_allowance(user_id)
        spent = ledger.current_month_spent if ledger else ZERO
        included_remaining = max(ZERO, allowance - spent)

        if self.settings.demo_mode:
            return GateDecision(
                allowed=True,
                message=DEMO_MESSAGE,
                current_month_spent=spent,
                included_allowance=allowance,
                included_remaining=included_remaining,
                state=ledger_state(ledger) if ledger else None,
                subscription_status="demo",
                is_demo=True,
            )

        subscription_status = None
        if self.settings.require_active_subscription:
            account = await self.accounts.get_account(user_id)
            subscription_status = account.subscription_status if account else None
            is_admin = bool(account and account.is_admin)
            if not is_admin and subscription_status not in ACTIVE_SUBSCRIPTION_STATUSES:
                return GateDecision(
                    allowed=False,
                    remaining=ZERO,
                    message=(
                        SUBSCRIPTION_CANCELED_MESSAGE
                        if subscription_status == "canceled"
                        else NO_SUBSCRIPTION_MESSAGE
                    ),
                    subscription_status=subscription_status or "none",
                )

        if ledger is None:
            return GateDecision(
                allowed=True,
                included_allowance=allowance,
                included_remaining=included_remaining,
                subscription_status=subscription_status,
            )

        percent = ledger.percent_used
        common = dict(
            percent_used=percent,
            remaining=ledger.remaining,
            current_month_spent=spent,
            included_allowance=allowance,
            included_remaining=included_remaining,
            state=ledger_state(ledger),
            subscription_status=subscription_status,
        )

        if ledger.hard_limit and ledger.over_limit:
            return GateDecision(allowed=False, message=LIMIT_REACHED_MESSAGE, **common)

        message = None
        if ledger.over_limit and ledger.monthly_limit_amount <= 0:
            message = OVER_ZERO_LIMIT_MESSAGE
        elif ledger.monthly_limit_amount > 0 and percent >= ledger.alert_threshold_percent:
            message = f"You have already used {percent:.0f}% of your monthly AI spending limit."
        return GateDecision(allowed=True, message=message, **common)

    async def enforce(self, user_id: str) -> GateDecision:
        """
        Check and raise if the user may not proceed.

        Raises:
            LimitExceededError: Hard limit reached or subscription inactive
        """
        decision = await self.check_before_use(user_id)
        if not decision.allowed:
            ledger = await self.ledger.get(user_id)
            raise LimitExceededError(
                user_id=user_id,
                message=decision.message or LIMIT_REACHED_MESSAGE,
                monthly_limit=ledger.monthly_limit_amount if ledger else ZERO,
                current_spent=decision.current_month_spent,
            )
        return decision
