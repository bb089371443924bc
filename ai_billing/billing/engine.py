"""
ai_billing - Billing Engine

Inbound entry point. ``record_usage`` is called once after every successful
model invocation:

    price -> atomic ledger charge -> allocate against allowance -> report overage

The ledger commit is the point of no return. Anything after it (audit,
allowance lookup, reporting) is logged on failure and never raised, because
the generation has already been paid for.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from ..config import BillingSettings
from ..core.errors import InvalidRequestError
from ..observability.logging import LogContext, get_logger
from ..observability.metrics import get_metrics
from ..observability.tracing import get_tracer
from .accounts import AccountDirectory
from .allocator import Allocation, allocate
from .ledger import ChargeResult, SpendingLedgerService
from .pricing import PriceQuote, PricingCatalog, Quantities
from .reporter import ReportResult, UsageReporter, make_idempotency_key


logger = get_logger("ai_billing.billing.engine")


@dataclass
class UsageEvent:
    """One charged AI invocation, kept for audit."""
    event_id: str
    user_id: str
    model_key: str
    feature: str
    quantities: Quantities
    computed_cost_amount: Decimal
    computed_price_amount: Decimal
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "model_key": self.model_key,
            "feature": self.feature,
            "input_units": self.quantities.input_units,
            "output_units": self.quantities.output_units,
            "runs": self.quantities.runs,
            "computed_cost_amount": str(self.computed_cost_amount),
            "computed_price_amount": str(self.computed_price_amount),
            "timestamp": self.timestamp.isoformat(),
        }


class AuditSink:
    """Receives every UsageEvent after its charge is committed."""

    async def record(self, event: UsageEvent) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    async def record(self, event: UsageEvent) -> None:
        logger.info("AI usage event", audit=True, **event.to_dict())


@dataclass
class ChargeOutcome:
    """Everything ``record_usage`` did for one event."""
    event: UsageEvent
    quote: PriceQuote
    charge: ChargeResult
    allocation: Optional[Allocation] = None
    report: Optional[ReportResult] = None
    included_allowance: Optional[Decimal] = None

    @property
    def idempotency_key(self) -> str:
        return make_idempotency_key(self.event.user_id, self.event.event_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event.event_id,
            "user_id": self.event.user_id,
            "model_key": self.event.model_key,
            "feature": self.event.feature,
            "cost_amount": str(self.event.computed_cost_amount),
            "price_amount": str(self.event.computed_price_amount),
            "pricing_source": self.quote.source.value,
            "from_included": str(self.allocation.from_included) if self.allocation else None,
            "overage": str(self.allocation.overage) if self.allocation else None,
            "included_allowance": (
                str(self.included_allowance) if self.included_allowance is not None else None
            ),
            "current_month_spent": str(self.charge.ledger.current_month_spent),
            "percent_used": str(self.charge.percent_used.quantize(Decimal("0.01"))),
            "state": self.charge.state.value,
            "transition": self.charge.transition.value,
            "replayed": self.charge.replayed,
            "report_status": self.report.status.value if self.report else None,
            "idempotency_key": self.idempotency_key,
        }


class BillingEngine:
    """Charges AI usage and reports overage."""

    def __init__(
        self,
        catalog: PricingCatalog,
        ledger: SpendingLedgerService,
        reporter: UsageReporter,
        accounts: AccountDirectory,
        settings: Optional[BillingSettings] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.catalog = catalog
        self.ledger = ledger
        self.reporter = reporter
        self.accounts = accounts
        self.settings = settings or BillingSettings()
        self.audit_sink = audit_sink or LoggingAuditSink()

    async def record_usage(
        self,
        user_id: str,
        model_key: str,
        feature: str,
        quantities: Quantities,
        event_id: Optional[str] = None,
        request_id: str = "",
    ) -> ChargeOutcome:
        """
        Charge one successful AI invocation.

        Args:
            user_id: Paying user
            model_key: Pricing config key of the model that ran
            feature: Calling feature, for metrics and audit
            quantities: Tokens or runs consumed
            event_id: Caller-supplied event id. A retried call with the same
                id is not charged again: the ledger returns the recorded
                charge and the overage is re-reported under the same
                idempotency key. Generated if omitted.
            request_id: Correlation id for logs

        Raises:
            InvalidRequestError: Missing identifiers or negative quantities
            LedgerWriteConflictError: Ledger still conflicting after retries
        """
        for name, value in (("user_id", user_id), ("model_key", model_key), ("feature", feature)):
            if not value:
                raise InvalidRequestError(f"{name} is required", param=name)

        event_id = event_id or uuid.uuid4().hex
        token = LogContext.set_current(LogContext(
            request_id=request_id,
            user_id=user_id,
            feature=feature,
            model_key=model_key,
            event_id=event_id,
        ))
        try:
            with get_tracer().start_as_current_span("billing.record_usage") as span:
                span.set_attribute("billing.user_id", user_id)
                span.set_attribute("billing.model_key", model_key)
                span.set_attribute("billing.feature", feature)
                outcome = await self._record(user_id, model_key, feature, quantities, event_id)
                span.set_attribute("billing.price_amount", str(outcome.event.computed_price_amount))
                span.set_attribute("billing.transition", outcome.charge.transition.value)
                return outcome
        finally:
            LogContext.reset(token)

    async def _record(self, user_id, model_key, feature, quantities, event_id) -> ChargeOutcome:
        now = datetime.now(timezone.utc)
        metrics = get_metrics()
        rate = self.settings.exchange_rate

        quote = self.catalog.resolve_price_or_default(
            model_key, quantities, self.settings.default_margin_percent
        )
        price = quote.price_amount * rate

        charge = await self.ledger.apply_charge(user_id, price, now, event_id=event_id)
        # the amount the ledger holds for this event (storage precision, or
        # the recorded amount when the event was already charged)
        price = charge.amount
        if charge.replayed and charge.charged_at is not None:
            # resend with the original timestamp so the usage record matches
            now = charge.charged_at
        if not charge.replayed:
            metrics.record_charge(feature, price, quote.source.value)

        event = UsageEvent(
            event_id=event_id,
            user_id=user_id,
            model_key=model_key,
            feature=feature,
            quantities=quantities,
            computed_cost_amount=quote.cost_amount * rate,
            computed_price_amount=price,
            timestamp=now,
        )
        outcome = ChargeOutcome(event=event, quote=quote, charge=charge)

        if not charge.replayed:
            try:
                await self.audit_sink.record(event)
            except Exception as e:
                logger.error("Audit sink failed", error=str(e))

        try:
            allowance = await self.accounts.get_included_allowance(user_id)
        except Exception as e:
            logger.exception(
                "Included allowance lookup failed, overage not reported",
                price=str(price),
                error=str(e),
            )
            return outcome

        # spend before this charge, as seen by the atomic increment
        allocation = allocate(price, allowance, charge.spent_before)
        outcome.included_allowance = allowance
        outcome.allocation = allocation
        if not charge.replayed:
            metrics.record_overage(allocation.overage)

        try:
            outcome.report = await self.reporter.report_overage(
                user_id,
                allocation.overage,
                make_idempotency_key(user_id, event_id),
                event_timestamp=now,
            )
        except Exception as e:
            logger.exception(
                "Overage reporting failed",
                overage=str(allocation.overage),
                error=str(e),
            )

        logger.info(
            "Usage charged",
            price=str(price),
            from_included=str(allocation.from_included),
            overage=str(allocation.overage),
            current_month_spent=str(charge.ledger.current_month_spent),
            transition=charge.transition.value,
            replayed=charge.replayed,
            report_status=outcome.report.status.value if outcome.report else None,
        )
        return outcome
