"""
ai_billing - API Dependencies

Service container wired by the server lifespan, plus shared FastAPI
dependencies (service token, request id).
"""

import secrets
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from ..config import BillingSettings
from ..core.errors import ServiceUnavailableError, UnauthorizedError
from ..db.connection import DatabasePool
from ..billing.accounts import (
    AccountDirectory,
    InMemoryAccountDirectory,
    PostgresAccountDirectory,
)
from ..billing.engine import BillingEngine
from ..billing.gate import LimitGate
from ..billing.ledger import (
    AlertNotifier,
    InMemoryLedgerStore,
    PostgresLedgerStore,
    SpendingLedgerService,
)
from ..billing.outbox import InMemoryOutboxStore, OutboxStore, PostgresOutboxStore
from ..billing.pricing import PricingCatalog
from ..billing.reporter import StripeMeteredBillingClient, UsageReporter
from ..billing.retry_worker import ReportRetryWorker


@dataclass
class BillingServices:
    """Everything the routes need, built once per process."""
    settings: BillingSettings
    catalog: PricingCatalog
    accounts: AccountDirectory
    outbox: OutboxStore
    ledger: SpendingLedgerService
    reporter: UsageReporter
    gate: LimitGate
    engine: BillingEngine
    retry_worker: ReportRetryWorker
    stripe_client: Optional[StripeMeteredBillingClient] = None

    @classmethod
    def build(
        cls,
        settings: BillingSettings,
        catalog: PricingCatalog,
        accounts: AccountDirectory,
        ledger: SpendingLedgerService,
        outbox: OutboxStore,
        stripe_client: Optional[StripeMeteredBillingClient] = None,
    ) -> "BillingServices":
        reporter = UsageReporter(stripe_client, accounts, outbox, settings)
        return cls(
            settings=settings,
            catalog=catalog,
            accounts=accounts,
            outbox=outbox,
            ledger=ledger,
            reporter=reporter,
            gate=LimitGate(ledger, accounts, settings),
            engine=BillingEngine(catalog, ledger, reporter, accounts, settings),
            retry_worker=ReportRetryWorker(reporter, outbox, settings),
            stripe_client=stripe_client,
        )

    @classmethod
    def in_memory(
        cls,
        settings: BillingSettings,
        stripe_client: Optional[StripeMeteredBillingClient] = None,
        notifier: Optional[AlertNotifier] = None,
    ) -> "BillingServices":
        """Process-local stores for local and test mode."""
        return cls.build(
            settings=settings,
            catalog=PricingCatalog(),
            accounts=InMemoryAccountDirectory(),
            ledger=SpendingLedgerService(
                InMemoryLedgerStore(),
                defaults=settings.ledger_defaults,
                notifier=notifier,
                max_attempts=settings.ledger_max_attempts,
            ),
            outbox=InMemoryOutboxStore(),
            stripe_client=stripe_client,
        )

    @classmethod
    def postgres(
        cls,
        db: DatabasePool,
        settings: BillingSettings,
        stripe_client: Optional[StripeMeteredBillingClient] = None,
        notifier: Optional[AlertNotifier] = None,
    ) -> "BillingServices":
        """Postgres-backed stores for production."""
        return cls.build(
            settings=settings,
            catalog=PricingCatalog(),
            accounts=PostgresAccountDirectory(db),
            ledger=SpendingLedgerService(
                PostgresLedgerStore(db),
                defaults=settings.ledger_defaults,
                notifier=notifier,
                max_attempts=settings.ledger_max_attempts,
            ),
            outbox=PostgresOutboxStore(db),
            stripe_client=stripe_client,
        )


_services: Optional[BillingServices] = None


def set_services(services: Optional[BillingServices]) -> None:
    global _services
    _services = services


def get_services() -> BillingServices:
    """
    Get the service container.

    Raises:
        ServiceUnavailableError: Server is still starting up
    """
    if _services is None:
        raise ServiceUnavailableError("Billing services not initialized. Server may be starting up.")
    return _services


def get_request_id(x_request_id: Optional[str] = Header(default=None)) -> str:
    """Caller-supplied X-Request-Id, or a fresh one."""
    return x_request_id or f"req_{uuid.uuid4().hex[:24]}"


def require_service_token(x_service_token: Optional[str] = Header(default=None)) -> None:
    """
    Check the X-Service-Token header against BILLING_SERVICE_TOKEN.

    When no token is configured (local/test mode) every caller is accepted.
    """
    expected = get_services().settings.service_token
    if not expected:
        return
    if not x_service_token or not secrets.compare_digest(x_service_token, expected):
        raise UnauthorizedError()
