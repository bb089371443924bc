"""
ai_billing - Usage Report Outbox

Local table of overage reports that have not reached the billing platform
yet. Entries are keyed by idempotency key, so parking the same report twice
is a no-op, and the retry worker replays them with the original key.
"""

import asyncio
import dataclasses
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from ..core.http_client import calculate_backoff
from ..db.connection import DatabasePool
from ..db.models import PendingReport


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"  # dead letter, needs an operator


def retry_delay_seconds(attempts: int, base_delay: float = 60.0, max_delay: float = 3600.0) -> float:
    """
    Delay before the next delivery attempt after ``attempts`` failures.

    60s, 120s, 240s ... capped at one hour, +/-25% jitter.
    """
    return calculate_backoff(
        max(0, attempts - 1),
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=2.0,
        jitter_factor=0.25,
    )


class OutboxStore:
    """Interface for outbox storage."""

    async def enqueue(
        self,
        user_id: str,
        quantity: int,
        amount: Decimal,
        idempotency_key: str,
        event_timestamp: datetime,
        subscription_item_id: Optional[str] = None,
        status: OutboxStatus = OutboxStatus.PENDING,
        last_error: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
        attempts: int = 0,
    ) -> PendingReport:
        raise NotImplementedError

    async def get_by_key(self, idempotency_key: str) -> Optional[PendingReport]:
        raise NotImplementedError

    async def claim_due(self, now: datetime, lease_until: datetime, limit: int = 100) -> List[PendingReport]:
        """
        Return pending entries due at ``now`` in creation order.

        Claimed entries get ``next_attempt_at = lease_until`` so a concurrent
        worker does not pick them up while they are being sent.
        """
        raise NotImplementedError

    async def mark_sent(self, report_id: int, subscription_item_id: Optional[str]) -> None:
        raise NotImplementedError

    async def mark_retry(self, report_id: int, attempts: int, next_attempt_at: datetime, last_error: str) -> None:
        raise NotImplementedError

    async def mark_failed(self, report_id: int, attempts: int, last_error: str) -> None:
        raise NotImplementedError

    async def count_pending(self) -> int:
        raise NotImplementedError


class InMemoryOutboxStore(OutboxStore):
    """Process-local outbox for local and test mode."""

    def __init__(self):
        self._entries: Dict[int, PendingReport] = {}
        self._by_key: Dict[str, int] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        user_id,
        quantity,
        amount,
        idempotency_key,
        event_timestamp,
        subscription_item_id=None,
        status=OutboxStatus.PENDING,
        last_error=None,
        next_attempt_at=None,
        attempts=0,
    ):
        async with self._lock:
            existing_id = self._by_key.get(idempotency_key)
            if existing_id is not None:
                return dataclasses.replace(self._entries[existing_id])

            now = datetime.now(timezone.utc)
            entry = PendingReport(
                id=self._next_id,
                user_id=user_id,
                quantity=quantity,
                amount=amount,
                idempotency_key=idempotency_key,
                event_timestamp=event_timestamp,
                subscription_item_id=subscription_item_id,
                attempts=attempts,
                next_attempt_at=next_attempt_at or now,
                last_error=last_error,
                status=OutboxStatus(status).value,
                created_at=now,
            )
            self._entries[entry.id] = entry
            self._by_key[idempotency_key] = entry.id
            self._next_id += 1
            return dataclasses.replace(entry)

    async def get_by_key(self, idempotency_key):
        entry_id = self._by_key.get(idempotency_key)
        if entry_id is None:
            return None
        return dataclasses.replace(self._entries[entry_id])

    async def claim_due(self, now, lease_until, limit=100):
        async with self._lock:
            due = sorted(
                (
                    e for e in self._entries.values()
                    if e.status == OutboxStatus.PENDING.value and e.next_attempt_at <= now
                ),
                key=lambda e: (e.created_at, e.id),
            )[:limit]
            for entry in due:
                entry.next_attempt_at = lease_until
            return [dataclasses.replace(e) for e in due]

    async def mark_sent(self, report_id, subscription_item_id):
        async with self._lock:
            entry = self._entries[report_id]
            entry.status = OutboxStatus.SENT.value
            entry.attempts += 1
            entry.last_error = None
            if subscription_item_id:
                entry.subscription_item_id = subscription_item_id

    async def mark_retry(self, report_id, attempts, next_attempt_at, last_error):
        async with self._lock:
            entry = self._entries[report_id]
            entry.attempts = attempts
            entry.next_attempt_at = next_attempt_at
            entry.last_error = last_error

    async def mark_failed(self, report_id, attempts, last_error):
        async with self._lock:
            entry = self._entries[report_id]
            entry.status = OutboxStatus.FAILED.value
            entry.attempts = attempts
            entry.last_error = last_error

    async def count_pending(self):
        return sum(1 for e in self._entries.values() if e.status == OutboxStatus.PENDING.value)

    def all_entries(self) -> List[PendingReport]:
        """Snapshot of every entry, oldest first."""
        return [dataclasses.replace(e) for e in sorted(self._entries.values(), key=lambda e: e.id)]


class PostgresOutboxStore(OutboxStore):
    """asyncpg-backed outbox in ``usage_report_outbox``."""

    def __init__(self, db: DatabasePool):
        self.db = db

    async def enqueue(
        self,
        user_id,
        quantity,
        amount,
        idempotency_key,
        event_timestamp,
        subscription_item_id=None,
        status=OutboxStatus.PENDING,
        last_error=None,
        next_attempt_at=None,
        attempts=0,
    ):
        row = await self.db.fetchrow(
            """
            INSERT INTO usage_report_outbox (
                user_id, subscription_item_id, quantity, amount, idempotency_key,
                event_timestamp, attempts, next_attempt_at, last_error, status
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, COALESCE($8, NOW()), $9, $10)
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING *
            """,
            user_id,
            subscription_item_id,
            quantity,
            amount,
            idempotency_key,
            event_timestamp,
            attempts,
            next_attempt_at,
            last_error,
            OutboxStatus(status).value,
        )
        if row is None:
            return await self.get_by_key(idempotency_key)
        return PendingReport.from_record(row)

    async def get_by_key(self, idempotency_key):
        row = await self.db.fetchrow(
            "SELECT * FROM usage_report_outbox WHERE idempotency_key = $1",
            idempotency_key,
        )
        return PendingReport.from_record(row) if row else None

    async def claim_due(self, now, lease_until, limit=100):
        rows = await self.db.fetch(
            """
            UPDATE usage_report_outbox
            SET next_attempt_at = $2, updated_at = NOW()
            WHERE id IN (
                SELECT id FROM usage_report_outbox
                WHERE status = 'pending' AND next_attempt_at <= $1
                ORDER BY created_at, id
                LIMIT $3
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *
            """,
            now,
            lease_until,
            limit,
        )
        entries = [PendingReport.from_record(row) for row in rows]
        # RETURNING does not preserve the subquery order
        entries.sort(key=lambda e: (e.created_at, e.id))
        return entries

    async def mark_sent(self, report_id, subscription_item_id):
        await self.db.execute(
            """
            UPDATE usage_report_outbox
            SET status = 'sent', attempts = attempts + 1, last_error = NULL,
                subscription_item_id = COALESCE($2, subscription_item_id),
                updated_at = NOW()
            WHERE id = $1
            """,
            report_id,
            subscription_item_id,
        )

    async def mark_retry(self, report_id, attempts, next_attempt_at, last_error):
        await self.db.execute(
            """
            UPDATE usage_report_outbox
            SET attempts = $2, next_attempt_at = $3, last_error = $4, updated_at = NOW()
            WHERE id = $1
            """,
            report_id,
            attempts,
            next_attempt_at,
            last_error,
        )

    async def mark_failed(self, report_id, attempts, last_error):
        await self.db.execute(
            """
            UPDATE usage_report_outbox
            SET status = 'failed', attempts = $2, last_error = $3, updated_at = NOW()
            WHERE id = $1
            """,
            report_id,
            attempts,
            last_error,
        )

    async def count_pending(self):
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM usage_report_outbox WHERE status = 'pending'"
        )
        return int(value or 0)
