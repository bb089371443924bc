"""
ai_billing - Database Models

Dataclass models for database entities.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass
class SpendingLedger:
    """Per-user monthly spend accumulator."""

    user_id: str
    monthly_limit_amount: Decimal = Decimal("50")
    current_month_spent: Decimal = Decimal("0")
    alert_threshold_percent: Decimal = Decimal("80")
    hard_limit: bool = False
    alert_sent_at: Optional[datetime] = None
    limit_hit_at: Optional[datetime] = None
    cycle_started_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "SpendingLedger":
        """Create SpendingLedger from database record."""
        return cls(
            user_id=record["user_id"],
            monthly_limit_amount=Decimal(record["monthly_limit_amount"]),
            current_month_spent=Decimal(record["current_month_spent"]),
            alert_threshold_percent=Decimal(record["alert_threshold_percent"]),
            hard_limit=record["hard_limit"],
            alert_sent_at=record["alert_sent_at"],
            limit_hit_at=record["limit_hit_at"],
            cycle_started_at=record["cycle_started_at"],
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    @property
    def percent_used(self) -> Decimal:
        """Spend as a percentage of the monthly limit (0 when no limit is set)."""
        if self.monthly_limit_amount <= 0:
            return Decimal("0")
        return self.current_month_spent / self.monthly_limit_amount * 100

    @property
    def over_limit(self) -> bool:
        """Spend has reached the limit; with a zero limit any spend counts."""
        if self.monthly_limit_amount <= 0:
            return self.current_month_spent > 0
        return self.current_month_spent >= self.monthly_limit_amount

    @property
    def remaining(self) -> Decimal:
        """Headroom below the monthly limit, never negative."""
        return max(Decimal("0"), self.monthly_limit_amount - self.current_month_spent)


@dataclass
class PendingReport:
    """Outbox entry for an overage report that still has to reach the billing platform."""

    id: int
    user_id: str
    quantity: int  # minor units
    amount: Decimal
    idempotency_key: str
    event_timestamp: datetime
    subscription_item_id: Optional[str] = None
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    status: str = "pending"  # pending, sent, failed
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "PendingReport":
        """Create PendingReport from database record."""
        return cls(
            id=record["id"],
            user_id=record["user_id"],
            quantity=record["quantity"],
            amount=Decimal(record["amount"]),
            idempotency_key=record["idempotency_key"],
            event_timestamp=record["event_timestamp"],
            subscription_item_id=record["subscription_item_id"],
            attempts=record["attempts"],
            next_attempt_at=record["next_attempt_at"],
            last_error=record["last_error"],
            status=record["status"],
            created_at=record["created_at"],
        )


@dataclass
class BillingAccount:
    """Subscription facts about a user, owned by the platform's account tables."""

    user_id: str
    subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    price_id: Optional[str] = None
    is_admin: bool = False

    @classmethod
    def from_record(cls, record) -> "BillingAccount":
        """Create BillingAccount from database record."""
        return cls(
            user_id=record["user_id"],
            subscription_id=record["subscription_id"],
            subscription_status=record["subscription_status"],
            price_id=record["price_id"],
            is_admin=bool(record["is_admin"]),
        )
