"""
ai_billing - Usage Reporter

Reports overage to Stripe as metered usage records.

Every report carries an idempotency key derived from (user_id, event_id), so
a replay after a network failure is deduplicated by Stripe. The ledger is
committed before reporting starts; a report that cannot be delivered is
parked in the outbox for the retry worker and never fails the caller.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

import stripe

from ..config import BillingSettings
from ..core.errors import InvalidRequestError, ReportingUnavailableError
from ..observability.logging import TimedOperation, get_logger
from ..observability.metrics import get_metrics
from ..observability.tracing import get_tracer
from .accounts import AccountDirectory
from .allocator import to_minor_units
from .outbox import OutboxStatus, OutboxStore, retry_delay_seconds


logger = get_logger("ai_billing.billing.reporter")


def make_idempotency_key(user_id: str, event_id: str) -> str:
    """Idempotency key for the overage report of one usage event."""
    return f"ai-usage:{user_id}:{event_id}"


class ReportStatus(str, Enum):
    """Outcome of a report attempt."""
    SENT = "sent"                        # Accepted by Stripe
    SKIPPED = "skipped"                  # Nothing to report
    DEMO = "demo"                        # Demo mode, no external call
    NO_SUBSCRIPTION = "no_subscription"  # No metered subscription item
    DEFERRED = "deferred"                # Parked in the outbox for retry
    REJECTED = "rejected"                # Stripe refused it, dead-lettered


@dataclass
class ReportResult:
    """Result of ``report_overage``."""
    status: ReportStatus
    idempotency_key: str
    quantity: int = 0
    subscription_item_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        """Whether nothing is left to do for this report."""
        return self.status in (ReportStatus.SENT, ReportStatus.SKIPPED, ReportStatus.DEMO)


class StripeMeteredBillingClient:
    """
    Stripe metered-usage calls through the official SDK.

    Raises ReportingUnavailableError for every failure; ``retryable`` is
    False for 4xx responses other than 429.
    """

    def __init__(self, secret_key: str, api_base: Optional[str] = None):
        self.secret_key = secret_key
        if api_base:
            stripe.api_base = api_base

    @staticmethod
    def _unavailable(error: stripe.StripeError, action: str) -> ReportingUnavailableError:
        status = error.http_status or 0
        retryable = (
            isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError))
            or status == 0
            or status == 429
            or status >= 500
        )
        return ReportingUnavailableError(
            f"Stripe {action} failed: {error.user_message or error}",
            status_code=status,
            retryable=retryable,
            request_id=error.request_id or "",
        )

    async def get_metered_subscription_item_id(self, subscription_id: str) -> Optional[str]:
        """
        Find the subscription item whose price is metered.

        Returns None when the subscription does not exist or has no metered
        item.
        """
        try:
            subscription = await stripe.Subscription.retrieve_async(
                subscription_id,
                api_key=self.secret_key,
                expand=["items.data.price"],
            )
        except stripe.InvalidRequestError as e:
            if e.http_status == 404:
                return None
            raise self._unavailable(e, "subscription lookup") from e
        except stripe.StripeError as e:
            raise self._unavailable(e, "subscription lookup") from e

        items = (subscription.get("items") or {}).get("data") or []
        for item in items:
            recurring = (item.get("price") or {}).get("recurring") or {}
            if recurring.get("usage_type") == "metered":
                return item.get("id")
        return None

    async def create_usage_record(
        self,
        subscription_item_id: str,
        quantity: int,
        timestamp: datetime,
        idempotency_key: str,
    ):
        """Increment metered usage on a subscription item."""
        try:
            return await stripe.SubscriptionItem.create_usage_record_async(
                subscription_item_id,
                api_key=self.secret_key,
                idempotency_key=idempotency_key,
                quantity=quantity,
                timestamp=int(timestamp.timestamp()),
                action="increment",
            )
        except stripe.StripeError as e:
            raise self._unavailable(e, "usage record") from e


class UsageReporter:
    """Converts overage into metered usage and delivers it at most once effectively."""

    def __init__(
        self,
        client: Optional[StripeMeteredBillingClient],
        accounts: AccountDirectory,
        outbox: OutboxStore,
        settings: Optional[BillingSettings] = None,
    ):
        self.client = client
        self.accounts = accounts
        self.outbox = outbox
        self.settings = settings or BillingSettings()

    @property
    def demo_mode(self) -> bool:
        return self.settings.demo_mode or self.client is None

    async def resolve_subscription_item(self, user_id: str) -> Optional[str]:
        """Metered subscription item of the user, or None if there is none."""
        account = await self.accounts.get_account(user_id)
        if account is None or not account.subscription_id:
            return None
        return await self.client.get_metered_subscription_item_id(account.subscription_id)

    async def send(
        self,
        user_id: str,
        subscription_item_id: str,
        quantity: int,
        timestamp: datetime,
        idempotency_key: str,
    ) -> None:
        """Submit one usage record; raises ReportingUnavailableError on failure."""
        metrics = get_metrics()
        start = time.perf_counter()
        async with TimedOperation(
            "stripe_usage_record",
            logger,
            extra={"user_id": user_id, "idempotency_key": idempotency_key},
        ):
            try:
                await self.client.create_usage_record(
                    subscription_item_id, quantity, timestamp, idempotency_key
                )
            finally:
                metrics.report_duration.observe(time.perf_counter() - start)

    async def report_overage(
        self,
        user_id: str,
        overage: Decimal,
        idempotency_key: str,
        event_timestamp: Optional[datetime] = None,
    ) -> ReportResult:
        """
        Report an overage amount for one usage event.

        Never raises for delivery problems; those come back as DEFERRED or
        REJECTED with the report stored in the outbox.
        """
        if overage < 0:
            raise InvalidRequestError("Overage must not be negative", param="overage")

        tracer = get_tracer()
        with tracer.start_as_current_span("billing.report_overage") as span:
            span.set_attribute("billing.user_id", user_id)
            span.set_attribute("billing.idempotency_key", idempotency_key)
            result = await self._report(user_id, overage, idempotency_key, event_timestamp)
            span.set_attribute("billing.report_status", result.status.value)

        get_metrics().record_report(result.status.value)
        return result

    async def _report(self, user_id, overage, idempotency_key, event_timestamp) -> ReportResult:
        if overage == 0:
            return ReportResult(status=ReportStatus.SKIPPED, idempotency_key=idempotency_key)

        quantity = to_minor_units(overage, self.settings.minor_units_per_major)
        if quantity <= 0:
            logger.debug(
                "Overage below smallest billable unit, not reported",
                user_id=user_id,
                overage=str(overage),
            )
            return ReportResult(status=ReportStatus.SKIPPED, idempotency_key=idempotency_key)

        if self.demo_mode:
            logger.info(
                "Demo mode, skipping usage report",
                user_id=user_id,
                overage=str(overage),
                quantity=quantity,
            )
            return ReportResult(status=ReportStatus.DEMO, idempotency_key=idempotency_key, quantity=quantity)

        timestamp = event_timestamp or datetime.now(timezone.utc)

        try:
            item_id = await self.resolve_subscription_item(user_id)
        except ReportingUnavailableError as e:
            return await self._park(user_id, None, quantity, overage, idempotency_key, timestamp, e)

        if item_id is None:
            logger.warning(
                "No metered subscription item, overage not reported",
                user_id=user_id,
                overage=str(overage),
            )
            return ReportResult(
                status=ReportStatus.NO_SUBSCRIPTION,
                idempotency_key=idempotency_key,
                quantity=quantity,
            )

        try:
            await self.send(user_id, item_id, quantity, timestamp, idempotency_key)
        except ReportingUnavailableError as e:
            return await self._park(user_id, item_id, quantity, overage, idempotency_key, timestamp, e)

        logger.info(
            "Overage reported",
            user_id=user_id,
            quantity=quantity,
            subscription_item_id=item_id,
            idempotency_key=idempotency_key,
        )
        return ReportResult(
            status=ReportStatus.SENT,
            idempotency_key=idempotency_key,
            quantity=quantity,
            subscription_item_id=item_id,
        )

    async def _park(
        self,
        user_id: str,
        item_id: Optional[str],
        quantity: int,
        overage: Decimal,
        idempotency_key: str,
        timestamp: datetime,
        error: ReportingUnavailableError,
    ) -> ReportResult:
        """Store a failed report: pending if retryable, failed otherwise."""
        retryable = error.error.retryable
        status = OutboxStatus.PENDING if retryable else OutboxStatus.FAILED
        delay = retry_delay_seconds(
            1,
            self.settings.report_retry_base_delay_seconds,
            self.settings.report_retry_max_delay_seconds,
        )
        await self.outbox.enqueue(
            user_id=user_id,
            quantity=quantity,
            amount=overage,
            idempotency_key=idempotency_key,
            event_timestamp=timestamp,
            subscription_item_id=item_id,
            status=status,
            last_error=str(error),
            next_attempt_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
            attempts=1,
        )

        log = logger.warning if retryable else logger.error
        log(
            "Usage report deferred to outbox" if retryable else "Usage report rejected",
            user_id=user_id,
            quantity=quantity,
            idempotency_key=idempotency_key,
            upstream_status=error.upstream_status,
            error=str(error),
        )
        return ReportResult(
            status=ReportStatus.DEFERRED if retryable else ReportStatus.REJECTED,
            idempotency_key=idempotency_key,
            quantity=quantity,
            subscription_item_id=item_id,
            error=str(error),
        )
