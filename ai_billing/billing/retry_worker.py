"""
ai_billing - Report Retry Worker

Drains the usage report outbox: due entries are replayed in creation order
with their original idempotency key. Policy per entry:

- backoff 60s * 2^(attempts-1), capped at 1h, +/-25% jitter
- at most ``report_max_attempts`` attempts, then the entry is dead-lettered
- 4xx responses other than 429 dead-letter immediately
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import BillingSettings
from ..core.errors import ReportingUnavailableError
from ..db.models import PendingReport
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from .outbox import OutboxStore, retry_delay_seconds
from .reporter import UsageReporter


logger = get_logger("ai_billing.billing.retry_worker")

# How long a claimed entry is hidden from other workers while being sent
CLAIM_LEASE_SECONDS = 300


@dataclass
class RetryRunStats:
    """Counts from one drain pass."""
    claimed: int = 0
    sent: int = 0
    rescheduled: int = 0
    failed: int = 0

    def to_dict(self):
        return {
            "claimed": self.claimed,
            "sent": self.sent,
            "rescheduled": self.rescheduled,
            "failed": self.failed,
        }


class ReportRetryWorker:
    """Background task that redelivers parked usage reports."""

    def __init__(
        self,
        reporter: UsageReporter,
        outbox: OutboxStore,
        settings: Optional[BillingSettings] = None,
        batch_size: int = 100,
    ):
        self.reporter = reporter
        self.outbox = outbox
        self.settings = settings or reporter.settings
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[datetime] = None) -> RetryRunStats:
        """Process every entry that is due at ``now``."""
        now = now or datetime.now(timezone.utc)
        stats = RetryRunStats()

        if self.reporter.demo_mode:
            return stats

        entries = await self.outbox.claim_due(
            now,
            now + timedelta(seconds=CLAIM_LEASE_SECONDS),
            limit=self.batch_size,
        )
        stats.claimed = len(entries)

        for entry in entries:
            outcome = await self._deliver(entry, now)
            setattr(stats, outcome, getattr(stats, outcome) + 1)

        get_metrics().set_outbox_pending(await self.outbox.count_pending())
        if stats.claimed:
            logger.info("Outbox drain pass finished", **stats.to_dict())
        return stats

    async def _deliver(self, entry: PendingReport, now: datetime) -> str:
        attempts = entry.attempts + 1
        metrics = get_metrics()

        try:
            item_id = entry.subscription_item_id
            if not item_id:
                item_id = await self.reporter.resolve_subscription_item(entry.user_id)
                if item_id is None:
                    await self.outbox.mark_failed(entry.id, attempts, "No metered subscription item")
                    metrics.record_report("no_subscription")
                    logger.error(
                        "Outbox entry has no metered subscription item",
                        user_id=entry.user_id,
                        idempotency_key=entry.idempotency_key,
                    )
                    return "failed"

            await self.reporter.send(
                entry.user_id,
                item_id,
                entry.quantity,
                entry.event_timestamp,
                entry.idempotency_key,
            )
        except ReportingUnavailableError as e:
            if not e.error.retryable or attempts >= self.settings.report_max_attempts:
                await self.outbox.mark_failed(entry.id, attempts, str(e))
                metrics.record_report("rejected")
                logger.error(
                    "Usage report dead-lettered",
                    user_id=entry.user_id,
                    idempotency_key=entry.idempotency_key,
                    attempts=attempts,
                    error=str(e),
                )
                return "failed"

            delay = retry_delay_seconds(
                attempts,
                self.settings.report_retry_base_delay_seconds,
                self.settings.report_retry_max_delay_seconds,
            )
            await self.outbox.mark_retry(
                entry.id, attempts, now + timedelta(seconds=delay), str(e)
            )
            metrics.record_report("deferred")
            logger.warning(
                "Usage report retry scheduled",
                user_id=entry.user_id,
                idempotency_key=entry.idempotency_key,
                attempts=attempts,
                delay_seconds=round(delay, 1),
            )
            return "rescheduled"

        await self.outbox.mark_sent(entry.id, item_id)
        metrics.record_report("sent")
        logger.info(
            "Deferred usage report delivered",
            user_id=entry.user_id,
            idempotency_key=entry.idempotency_key,
            attempts=attempts,
        )
        return "sent"

    async def start(self) -> None:
        """Start the periodic drain loop."""
        if self._task is not None:
            return

        async def drain_loop():
            while True:
                await asyncio.sleep(self.settings.report_retry_interval_seconds)
                try:
                    await self.run_once()
                except Exception as e:
                    logger.exception("Outbox drain pass failed", error=str(e))

        self._task = asyncio.create_task(drain_loop())

    async def stop(self) -> None:
        """Stop the drain loop."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
