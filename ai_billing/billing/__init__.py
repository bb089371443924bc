"""
ai_billing - Billing Module

Usage-based AI billing: pricing, credit allocation, the spending ledger,
the limit gate and overage reporting.

Usage:
    from ai_billing.billing import BillingEngine, LimitGate, Quantities

    decision = await gate.check_before_use(user_id)
    if decision.allowed:
        ...  # run the model
        await engine.record_usage(user_id, "gpt-4o", "caption", Quantities.tokens(1200, 300))
"""

from .pricing import (
    BillingMode,
    ModelCategory,
    ModelPricingConfig,
    PriceQuote,
    PricingCatalog,
    PricingSource,
    Quantities,
    get_catalog,
    resolve_price,
)
from .allocator import Allocation, allocate, to_minor_units
from .accounts import (
    AccountDirectory,
    InMemoryAccountDirectory,
    PostgresAccountDirectory,
)
from .ledger import (
    AlertNotifier,
    ChargeResult,
    InMemoryLedgerStore,
    LedgerState,
    LedgerStore,
    LoggingAlertNotifier,
    PostgresLedgerStore,
    SpendingLedgerService,
    Transition,
    WebhookAlertNotifier,
    evaluate_transition,
)
from .outbox import (
    InMemoryOutboxStore,
    OutboxStatus,
    OutboxStore,
    PostgresOutboxStore,
)
from .reporter import (
    ReportResult,
    ReportStatus,
    StripeMeteredBillingClient,
    UsageReporter,
    make_idempotency_key,
)
from .retry_worker import ReportRetryWorker, RetryRunStats
from .gate import GateDecision, LimitGate
from .engine import AuditSink, BillingEngine, ChargeOutcome, UsageEvent

__all__ = [
    # Pricing
    "BillingMode",
    "ModelCategory",
    "ModelPricingConfig",
    "PriceQuote",
    "PricingCatalog",
    "PricingSource",
    "Quantities",
    "get_catalog",
    "resolve_price",
    # Allocation
    "Allocation",
    "allocate",
    "to_minor_units",
    # Accounts
    "AccountDirectory",
    "InMemoryAccountDirectory",
    "PostgresAccountDirectory",
    # Ledger
    "AlertNotifier",
    "ChargeResult",
    "InMemoryLedgerStore",
    "LedgerState",
    "LedgerStore",
    "LoggingAlertNotifier",
    "PostgresLedgerStore",
    "SpendingLedgerService",
    "Transition",
    "WebhookAlertNotifier",
    "evaluate_transition",
    # Outbox / reporting
    "InMemoryOutboxStore",
    "OutboxStatus",
    "OutboxStore",
    "PostgresOutboxStore",
    "ReportResult",
    "ReportStatus",
    "StripeMeteredBillingClient",
    "UsageReporter",
    "make_idempotency_key",
    "ReportRetryWorker",
    "RetryRunStats",
    # Gate / engine
    "GateDecision",
    "LimitGate",
    "AuditSink",
    "BillingEngine",
    "ChargeOutcome",
    "UsageEvent",
]
