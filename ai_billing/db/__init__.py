"""
ai_billing - Database Layer

Provides async database access for the spending ledger, the report outbox
and the read-only pricing/account tables.
"""

from .connection import DatabasePool, get_db, get_db_optional, init_db, close_db
from .models import SpendingLedger, PendingReport, BillingAccount

__all__ = [
    "DatabasePool",
    "get_db",
    "get_db_optional",
    "init_db",
    "close_db",
    "SpendingLedger",
    "PendingReport",
    "BillingAccount",
]
