"""
ai_billing - Account Directory

Read-only view of the platform's subscription data: a user's billing account
(subscription id/status, price id, admin flag) and the included AI credit
allowance of their plan. A user without a plan has allowance 0.
"""

from decimal import Decimal
from typing import Dict, Optional

from ..db.connection import DatabasePool
from ..db.models import BillingAccount


class AccountDirectory:
    """Interface for account lookups."""

    async def get_account(self, user_id: str) -> Optional[BillingAccount]:
        raise NotImplementedError

    async def get_included_allowance(self, user_id: str) -> Decimal:
        raise NotImplementedError


class InMemoryAccountDirectory(AccountDirectory):
    """Dict-backed directory for local and test mode."""

    def __init__(
        self,
        accounts: Optional[Dict[str, BillingAccount]] = None,
        plan_allowances: Optional[Dict[str, Decimal]] = None,
    ):
        self._accounts: Dict[str, BillingAccount] = dict(accounts or {})
        # price_id -> included credits
        self._plan_allowances: Dict[str, Decimal] = dict(plan_allowances or {})

    def upsert_account(self, account: BillingAccount) -> None:
        self._accounts[account.user_id] = account

    def set_plan_allowance(self, price_id: str, allowance: Decimal) -> None:
        self._plan_allowances[price_id] = allowance

    async def get_account(self, user_id: str) -> Optional[BillingAccount]:
        return self._accounts.get(user_id)

    async def get_included_allowance(self, user_id: str) -> Decimal:
        account = self._accounts.get(user_id)
        if account is None or not account.price_id:
            return Decimal("0")
        return self._plan_allowances.get(account.price_id, Decimal("0"))


class PostgresAccountDirectory(AccountDirectory):
    """Reads ``billing_accounts`` and ``subscription_plans``."""

    def __init__(self, db: DatabasePool):
        self.db = db

    async def get_account(self, user_id: str) -> Optional[BillingAccount]:
        row = await self.db.fetchrow(
            """
            SELECT user_id, subscription_id, subscription_status, price_id, is_admin
            FROM billing_accounts
            WHERE user_id = $1
            """,
            user_id,
        )
        return BillingAccount.from_record(row) if row else None

    async def get_included_allowance(self, user_id: str) -> Decimal:
        value = await self.db.fetchval(
            """
            SELECT p.included_ai_credits
            FROM billing_accounts a
            JOIN subscription_plans p ON p.price_id = a.price_id
            WHERE a.user_id = $1
            """,
            user_id,
        )
        return Decimal(value) if value is not None else Decimal("0")
