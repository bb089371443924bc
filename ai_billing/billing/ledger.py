"""
ai_billing - Spending Ledger

Per-user monthly spend accumulator and its threshold state machine.

States per (user, billing cycle):

    UNDER_THRESHOLD -> ALERT_SENT -> LIMIT_HIT

LIMIT_HIT is only reachable with ``hard_limit``; a soft-limit ledger keeps
accumulating spend in ALERT_SENT. ``alert_sent_at`` and ``limit_hit_at`` are
latches: set by a conditional write (``... WHERE x IS NULL``) and reported
only by the writer that actually set them.

The spend increment is a single atomic statement against the store
(create-if-missing and add in one upsert), never a read-modify-write.
"""

import asyncio
import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, Optional, Tuple

import asyncpg
import httpx

from ..config import LedgerDefaults
from ..core.errors import InvalidRequestError, LedgerWriteConflictError
from ..core.http_client import RetryConfig, RobustHttpClient, calculate_backoff
from ..db.connection import DatabasePool
from ..db.models import SpendingLedger
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics


logger = get_logger("ai_billing.billing.ledger")

MAX_MONTHLY_LIMIT = Decimal("10000")

# storage precision of ledger amounts, NUMERIC(18, 6)
LEDGER_QUANTUM = Decimal("0.000001")


def to_ledger_precision(amount: Decimal) -> Decimal:
    """Round to storage precision, half up. Coarser amounts are returned as given."""
    if amount.as_tuple().exponent >= LEDGER_QUANTUM.as_tuple().exponent:
        return amount
    return amount.quantize(LEDGER_QUANTUM, rounding=ROUND_HALF_UP)


class LedgerState(str, Enum):
    """Threshold state of a ledger within the current cycle."""
    UNDER_THRESHOLD = "under_threshold"
    ALERT_SENT = "alert_sent"
    LIMIT_HIT = "limit_hit"


class Transition(str, Enum):
    """Latch set by a charge, if any."""
    NONE = "none"
    ALERT_SENT = "alert_sent"
    LIMIT_HIT = "limit_hit"


def ledger_state(ledger: SpendingLedger) -> LedgerState:
    if ledger.limit_hit_at is not None:
        return LedgerState.LIMIT_HIT
    if ledger.alert_sent_at is not None:
        return LedgerState.ALERT_SENT
    return LedgerState.UNDER_THRESHOLD


def evaluate_transition(ledger: SpendingLedger) -> Transition:
    """
    Decide which latch a post-charge snapshot should set.

    The hard-limit latch takes precedence; at most one latch is set per
    charge. A zero limit is exceeded by any spend at all.
    """
    over_limit = ledger.over_limit
    if over_limit and ledger.hard_limit and ledger.limit_hit_at is None:
        return Transition.LIMIT_HIT
    reached = over_limit or (
        ledger.monthly_limit_amount > 0
        and ledger.percent_used >= ledger.alert_threshold_percent
    )
    if reached and ledger.alert_sent_at is None:
        return Transition.ALERT_SENT
    return Transition.NONE


@dataclass
class ChargeResult:
    """Outcome of one atomic ledger update."""
    ledger: SpendingLedger
    amount: Decimal
    spent_before: Decimal
    transition: Transition = Transition.NONE
    created: bool = False
    replayed: bool = False  # event already charged; nothing was added
    charged_at: Optional[datetime] = None

    @property
    def percent_used(self) -> Decimal:
        return self.ledger.percent_used

    @property
    def state(self) -> LedgerState:
        return ledger_state(self.ledger)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Stores
# ============================================================

class LedgerStore:
    """
    Storage for spending ledgers.

    ``apply_charge`` must add the amount and set at most one latch as one
    atomic unit for the user. With an ``event_id`` it also records the
    charge under (user_id, event_id) in that same unit, and a repeated
    event returns the recorded charge instead of adding again.
    """

    async def get(self, user_id: str) -> Optional[SpendingLedger]:
        raise NotImplementedError

    async def apply_charge(
        self,
        user_id: str,
        amount: Decimal,
        defaults: LedgerDefaults,
        now: datetime,
        event_id: Optional[str] = None,
    ) -> ChargeResult:
        raise NotImplementedError

    async def upsert_preferences(
        self,
        user_id: str,
        monthly_limit_amount: Optional[Decimal],
        alert_threshold_percent: Optional[Decimal],
        hard_limit: Optional[bool],
        defaults: LedgerDefaults,
        now: datetime,
    ) -> SpendingLedger:
        raise NotImplementedError

    async def reset_cycle(self, user_id: str, now: datetime) -> Optional[SpendingLedger]:
        raise NotImplementedError

    async def reset_stale_cycles(self, cycle_start: datetime) -> int:
        raise NotImplementedError


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local store for local and test mode.

    A single asyncio.Lock serialises writers, which is atomic within one
    event loop only; production uses PostgresLedgerStore.
    """

    def __init__(self):
        self._ledgers: Dict[str, SpendingLedger] = {}
        # (user_id, event_id) -> (amount, spent_before, charged_at)
        self._charges: Dict[Tuple[str, str], Tuple[Decimal, Decimal, datetime]] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[SpendingLedger]:
        ledger = self._ledgers.get(user_id)
        return dataclasses.replace(ledger) if ledger else None

    def _new_ledger(self, user_id: str, defaults: LedgerDefaults, now: datetime) -> SpendingLedger:
        return SpendingLedger(
            user_id=user_id,
            monthly_limit_amount=defaults.monthly_limit_amount,
            alert_threshold_percent=defaults.alert_threshold_percent,
            hard_limit=defaults.hard_limit,
            cycle_started_at=now,
            created_at=now,
            updated_at=now,
        )

    async def apply_charge(self, user_id, amount, defaults, now, event_id=None):
        async with self._lock:
            ledger = self._ledgers.get(user_id)
            if event_id is not None and (user_id, event_id) in self._charges:
                charged, spent_before, charged_at = self._charges[(user_id, event_id)]
                return ChargeResult(
                    ledger=dataclasses.replace(ledger),
                    amount=charged,
                    spent_before=spent_before,
                    replayed=True,
                    charged_at=charged_at,
                )

            created = ledger is None
            if created:
                ledger = self._new_ledger(user_id, defaults, now)
                self._ledgers[user_id] = ledger

            spent_before = ledger.current_month_spent
            ledger.current_month_spent = spent_before + amount
            ledger.updated_at = now
            if event_id is not None:
                self._charges[(user_id, event_id)] = (amount, spent_before, now)

            transition = evaluate_transition(ledger)
            if transition == Transition.LIMIT_HIT:
                ledger.limit_hit_at = now
            elif transition == Transition.ALERT_SENT:
                ledger.alert_sent_at = now

            return ChargeResult(
                ledger=dataclasses.replace(ledger),
                amount=amount,
                spent_before=spent_before,
                transition=transition,
                created=created,
                charged_at=now,
            )

    async def upsert_preferences(
        self, user_id, monthly_limit_amount, alert_threshold_percent, hard_limit, defaults, now
    ):
        async with self._lock:
            ledger = self._ledgers.get(user_id)
            if ledger is None:
                ledger = self._new_ledger(user_id, defaults, now)
                self._ledgers[user_id] = ledger

            if monthly_limit_amount is not None:
                if monthly_limit_amount > ledger.monthly_limit_amount:
                    ledger.alert_sent_at = None
                    ledger.limit_hit_at = None
                ledger.monthly_limit_amount = monthly_limit_amount
            if alert_threshold_percent is not None:
                ledger.alert_threshold_percent = alert_threshold_percent
            if hard_limit is not None:
                ledger.hard_limit = hard_limit
            ledger.updated_at = now
            return dataclasses.replace(ledger)

    def _reset(self, ledger: SpendingLedger, now: datetime) -> None:
        ledger.current_month_spent = Decimal("0")
        ledger.alert_sent_at = None
        ledger.limit_hit_at = None
        ledger.cycle_started_at = now
        ledger.updated_at = now

    async def reset_cycle(self, user_id, now):
        async with self._lock:
            ledger = self._ledgers.get(user_id)
            if ledger is None:
                return None
            self._reset(ledger, now)
            return dataclasses.replace(ledger)

    async def reset_stale_cycles(self, cycle_start):
        async with self._lock:
            count = 0
            for ledger in self._ledgers.values():
                if ledger.cycle_started_at is None or ledger.cycle_started_at < cycle_start:
                    self._reset(ledger, cycle_start)
                    count += 1
            return count


class PostgresLedgerStore(LedgerStore):
    """asyncpg-backed store; one row per user in ``spending_ledgers``."""

    # (xmax = 0) is true only for a freshly inserted row
    _CHARGE_SQL = """
        INSERT INTO spending_ledgers (
            user_id, current_month_spent, monthly_limit_amount,
            alert_threshold_percent, hard_limit, cycle_started_at,
            created_at, updated_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $6, $6)
        ON CONFLICT (user_id) DO UPDATE
        SET current_month_spent = spending_ledgers.current_month_spent + EXCLUDED.current_month_spent,
            updated_at = EXCLUDED.updated_at
        RETURNING *, (xmax = 0) AS inserted
    """

    _LATCH_SQL = {
        Transition.LIMIT_HIT: """
            UPDATE spending_ledgers
            SET limit_hit_at = $2, updated_at = $2
            WHERE user_id = $1 AND limit_hit_at IS NULL
            RETURNING *
        """,
        Transition.ALERT_SENT: """
            UPDATE spending_ledgers
            SET alert_sent_at = $2, updated_at = $2
            WHERE user_id = $1 AND alert_sent_at IS NULL
            RETURNING *
        """,
    }

    _PREFERENCES_SQL = """
        INSERT INTO spending_ledgers (
            user_id, monthly_limit_amount, alert_threshold_percent, hard_limit,
            cycle_started_at, created_at, updated_at
        )
        VALUES ($1, $2, $3, $4, $8, $8, $8)
        ON CONFLICT (user_id) DO UPDATE
        SET monthly_limit_amount = COALESCE($5::numeric, spending_ledgers.monthly_limit_amount),
            alert_threshold_percent = COALESCE($6::numeric, spending_ledgers.alert_threshold_percent),
            hard_limit = COALESCE($7::boolean, spending_ledgers.hard_limit),
            alert_sent_at = CASE
                WHEN $5::numeric > spending_ledgers.monthly_limit_amount THEN NULL
                ELSE spending_ledgers.alert_sent_at
            END,
            limit_hit_at = CASE
                WHEN $5::numeric > spending_ledgers.monthly_limit_amount THEN NULL
                ELSE spending_ledgers.limit_hit_at
            END,
            updated_at = $8
        RETURNING *
    """

    _RESET_SQL = """
        UPDATE spending_ledgers
        SET current_month_spent = 0, alert_sent_at = NULL, limit_hit_at = NULL,
            cycle_started_at = $2, updated_at = $2
        WHERE user_id = $1
        RETURNING *
    """

    # the primary key serialises concurrent charges of one event
    _CLAIM_EVENT_SQL = """
        INSERT INTO usage_charges (user_id, event_id, amount, created_at)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (user_id, event_id) DO NOTHING
        RETURNING event_id
    """

    _RECORDED_EVENT_SQL = """
        SELECT amount, spent_before, created_at FROM usage_charges
        WHERE user_id = $1 AND event_id = $2
    """

    _EVENT_SPENT_BEFORE_SQL = """
        UPDATE usage_charges SET spent_before = $3
        WHERE user_id = $1 AND event_id = $2
    """

    _RESET_STALE_SQL = """
        UPDATE spending_ledgers
        SET current_month_spent = 0, alert_sent_at = NULL, limit_hit_at = NULL,
            cycle_started_at = $1, updated_at = NOW()
        WHERE cycle_started_at < $1
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    async def get(self, user_id: str) -> Optional[SpendingLedger]:
        row = await self.db.fetchrow(
            "SELECT * FROM spending_ledgers WHERE user_id = $1",
            user_id,
        )
        return SpendingLedger.from_record(row) if row else None

    async def _replay(self, conn, user_id: str, event_id: str) -> ChargeResult:
        recorded = await conn.fetchrow(self._RECORDED_EVENT_SQL, user_id, event_id)
        row = await conn.fetchrow("SELECT * FROM spending_ledgers WHERE user_id = $1", user_id)
        return ChargeResult(
            ledger=SpendingLedger.from_record(row),
            amount=Decimal(recorded["amount"]),
            spent_before=Decimal(recorded["spent_before"]),
            replayed=True,
            charged_at=recorded["created_at"],
        )

    async def apply_charge(self, user_id, amount, defaults, now, event_id=None):
        try:
            async with self.db.transaction() as conn:
                if event_id is not None:
                    claimed = await conn.fetchval(
                        self._CLAIM_EVENT_SQL, user_id, event_id, amount, now
                    )
                    if claimed is None:
                        return await self._replay(conn, user_id, event_id)

                row = await conn.fetchrow(
                    self._CHARGE_SQL,
                    user_id,
                    amount,
                    defaults.monthly_limit_amount,
                    defaults.alert_threshold_percent,
                    defaults.hard_limit,
                    now,
                )
                ledger = SpendingLedger.from_record(row)
                created = bool(row["inserted"])
                spent_before = ledger.current_month_spent - amount
                if event_id is not None:
                    await conn.execute(
                        self._EVENT_SPENT_BEFORE_SQL, user_id, event_id, spent_before
                    )

                transition = evaluate_transition(ledger)
                if transition != Transition.NONE:
                    latched = await conn.fetchrow(self._LATCH_SQL[transition], user_id, now)
                    if latched is None:
                        # another writer already holds the latch
                        transition = Transition.NONE
                    else:
                        ledger = SpendingLedger.from_record(latched)

                return ChargeResult(
                    ledger=ledger,
                    amount=amount,
                    spent_before=spent_before,
                    transition=transition,
                    created=created,
                    charged_at=now,
                )
        except (
            asyncpg.exceptions.SerializationError,
            asyncpg.exceptions.DeadlockDetectedError,
        ) as e:
            logger.warning("Ledger write conflict", user_id=user_id, error=str(e))
            raise LedgerWriteConflictError(user_id) from e

    async def upsert_preferences(
        self, user_id, monthly_limit_amount, alert_threshold_percent, hard_limit, defaults, now
    ):
        row = await self.db.fetchrow(
            self._PREFERENCES_SQL,
            user_id,
            monthly_limit_amount if monthly_limit_amount is not None else defaults.monthly_limit_amount,
            alert_threshold_percent if alert_threshold_percent is not None else defaults.alert_threshold_percent,
            hard_limit if hard_limit is not None else defaults.hard_limit,
            monthly_limit_amount,
            alert_threshold_percent,
            hard_limit,
            now,
        )
        return SpendingLedger.from_record(row)

    async def reset_cycle(self, user_id, now):
        row = await self.db.fetchrow(self._RESET_SQL, user_id, now)
        return SpendingLedger.from_record(row) if row else None

    async def reset_stale_cycles(self, cycle_start):
        status = await self.db.execute(self._RESET_STALE_SQL, cycle_start)
        # asyncpg returns "UPDATE <n>"
        return int(status.split()[-1])


# ============================================================
# Notifier
# ============================================================

class AlertNotifier:
    """Receives latch transitions (alert threshold reached, hard limit hit)."""

    async def notify(self, transition: Transition, ledger: SpendingLedger) -> None:
        raise NotImplementedError


class LoggingAlertNotifier(AlertNotifier):
    """Default notifier: writes the transition to the log."""

    async def notify(self, transition: Transition, ledger: SpendingLedger) -> None:
        logger.info(
            "Spending threshold notification",
            user_id=ledger.user_id,
            transition=transition.value,
            percent_used=str(ledger.percent_used.quantize(Decimal("0.01"))),
            monthly_limit=str(ledger.monthly_limit_amount),
        )


class WebhookAlertNotifier(AlertNotifier):
    """
    Posts each transition as JSON to an operator webhook (mail relay, chat
    bridge, CRM). The transition is logged first, so a failed delivery still
    leaves a trace.

    The Idempotency-Key is stable per (user, transition, cycle), so the
    receiver can drop the client's own retries.
    """

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        timeout: float = 5.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._log = LoggingAlertNotifier()
        self._http = RobustHttpClient(
            base_url=url,
            timeout=timeout,
            retry_config=retry_config or RetryConfig(max_retries=2),
            headers={"Authorization": f"Bearer {secret}"} if secret else None,
            transport=transport,
        )

    async def close(self) -> None:
        await self._http.close()

    async def notify(self, transition: Transition, ledger: SpendingLedger) -> None:
        await self._log.notify(transition, ledger)

        cycle = ledger.cycle_started_at.isoformat() if ledger.cycle_started_at else "none"
        response = await self._http.request(
            "POST",
            "",
            step_name="spending_alert_webhook",
            json={
                "type": f"spending_limit.{transition.value}",
                "user_id": ledger.user_id,
                "percent_used": str(ledger.percent_used.quantize(Decimal("0.01"))),
                "current_month_spent": str(ledger.current_month_spent),
                "monthly_limit_amount": str(ledger.monthly_limit_amount),
                "alert_threshold_percent": str(ledger.alert_threshold_percent),
                "hard_limit": ledger.hard_limit,
                "cycle_started_at": cycle,
            },
            idempotency_key=f"spending-alert:{ledger.user_id}:{transition.value}:{cycle}",
        )
        if not response.ok:
            logger.warning(
                "Spending alert webhook refused",
                user_id=ledger.user_id,
                transition=transition.value,
                status_code=response.status_code,
                error=response.error_message(),
            )


# ============================================================
# Service
# ============================================================

class SpendingLedgerService:
    """
    Ledger operations: charges, preference changes and cycle rollover.

    Storage conflicts on a charge are retried with a short backoff before
    ``LedgerWriteConflictError`` is raised to the caller.
    """

    def __init__(
        self,
        store: LedgerStore,
        defaults: Optional[LedgerDefaults] = None,
        notifier: Optional[AlertNotifier] = None,
        max_attempts: int = 5,
        retry_base_delay: float = 0.05,
    ):
        self.store = store
        self.defaults = defaults or LedgerDefaults()
        self.notifier = notifier or LoggingAlertNotifier()
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay

    async def get(self, user_id: str) -> Optional[SpendingLedger]:
        return await self.store.get(user_id)

    async def apply_charge(
        self,
        user_id: str,
        amount: Decimal,
        now: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> ChargeResult:
        """
        Atomically add ``amount`` to the user's cycle spend.

        Creates the ledger with defaults on first use. Notifies the alert
        notifier when this call won a latch. The amount is kept at the
        ledger's storage precision, so ``spent_before`` is exact.

        A charge for an ``event_id`` that was already charged adds nothing
        and comes back with ``replayed`` set and the original amount and
        ``spent_before``.
        """
        if amount < 0:
            raise InvalidRequestError("Charge amount must not be negative", param="amount")

        amount = to_ledger_precision(amount)
        now = now or _utcnow()
        metrics = get_metrics()

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self.store.apply_charge(
                    user_id, amount, self.defaults, now, event_id=event_id
                )
                break
            except LedgerWriteConflictError:
                metrics.record_ledger_conflict()
                if attempt >= self.max_attempts:
                    logger.error(
                        "Ledger write conflict retries exhausted",
                        user_id=user_id,
                        attempts=attempt,
                    )
                    raise LedgerWriteConflictError(user_id, attempts=attempt)
                delay = calculate_backoff(
                    attempt - 1,
                    base_delay=self.retry_base_delay,
                    max_delay=1.0,
                )
                await asyncio.sleep(delay)

        if result.replayed:
            logger.info(
                "Usage event already charged, ledger unchanged",
                user_id=user_id,
                event_id=event_id,
                amount=str(result.amount),
            )
            return result

        if result.created:
            logger.info("Spending ledger created", user_id=user_id)

        if result.transition != Transition.NONE:
            metrics.record_transition(result.transition.value)
            logger.info(
                "Spending threshold crossed",
                user_id=user_id,
                transition=result.transition.value,
                percent_used=str(result.percent_used.quantize(Decimal("0.01"))),
            )
            await self._notify(result.transition, result.ledger)

        return result

    async def _notify(self, transition: Transition, ledger: SpendingLedger) -> None:
        try:
            await self.notifier.notify(transition, ledger)
        except Exception as e:
            # the charge is committed; a failed notification must not undo it
            logger.error(
                "Alert notifier failed",
                user_id=ledger.user_id,
                transition=transition.value,
                error=str(e),
            )

    async def update_preferences(
        self,
        user_id: str,
        monthly_limit_amount: Optional[Decimal] = None,
        alert_threshold_percent: Optional[Decimal] = None,
        hard_limit: Optional[bool] = None,
    ) -> SpendingLedger:
        """
        Change a user's spending preferences, creating the ledger if missing.

        Raising the monthly limit clears both latches so the user is alerted
        again against the new ceiling.
        """
        if monthly_limit_amount is not None and not (0 <= monthly_limit_amount <= MAX_MONTHLY_LIMIT):
            raise InvalidRequestError(
                f"Monthly limit must be between 0 and {MAX_MONTHLY_LIMIT}",
                param="monthly_limit_amount",
            )
        if alert_threshold_percent is not None and not (0 <= alert_threshold_percent <= 100):
            raise InvalidRequestError(
                "Alert threshold must be between 0 and 100 percent",
                param="alert_threshold_percent",
            )

        ledger = await self.store.upsert_preferences(
            user_id,
            monthly_limit_amount,
            alert_threshold_percent,
            hard_limit,
            self.defaults,
            _utcnow(),
        )
        logger.info(
            "Spending preferences updated",
            user_id=user_id,
            monthly_limit=str(ledger.monthly_limit_amount),
            alert_threshold=str(ledger.alert_threshold_percent),
            hard_limit=ledger.hard_limit,
        )
        return ledger

    async def reset_cycle(self, user_id: str, now: Optional[datetime] = None) -> Optional[SpendingLedger]:
        """Start a new billing cycle for one user. Returns None if no ledger exists."""
        ledger = await self.store.reset_cycle(user_id, now or _utcnow())
        if ledger is not None:
            logger.info("Billing cycle reset", user_id=user_id)
        return ledger

    async def reset_stale_cycles(self, cycle_start: datetime) -> int:
        """Reset every ledger whose cycle started before ``cycle_start``."""
        count = await self.store.reset_stale_cycles(cycle_start)
        logger.info(
            "Stale billing cycles reset",
            cycle_start=cycle_start.isoformat(),
            count=count,
        )
        return count
