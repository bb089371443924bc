"""
ai_billing - Configuration

Run mode (local / prod / test), billing settings read from the environment,
and startup safety checks.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import FrozenSet, Optional


class RunMode(str, Enum):
    """Service run mode."""

    LOCAL = "local"  # In-memory stores, no external billing calls required
    PROD = "prod"    # Postgres-backed stores, Stripe reporting
    TEST = "test"    # Deterministic in-memory mode for the test-suite


def get_run_mode() -> RunMode:
    """
    Get the current run mode.

    MODE must be one of: local, prod/production, test.

    Default: prod (fail-closed default for safer deployments).
    """
    mode = os.getenv("MODE", "prod").lower().strip()
    if mode in {"prod", "production"}:
        return RunMode.PROD
    if mode == "local":
        return RunMode.LOCAL
    if mode == "test":
        return RunMode.TEST
    raise ValueError("Invalid MODE. Use one of: local, prod, production, test")


def is_local_mode() -> bool:
    """Check if running in local mode."""
    return get_run_mode() == RunMode.LOCAL


def is_prod_mode() -> bool:
    """Check if running in production mode."""
    return get_run_mode() == RunMode.PROD


def is_test_mode() -> bool:
    """Check if running in test mode."""
    return get_run_mode() == RunMode.TEST


def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.lower().strip() in {"1", "true", "yes", "on"}


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"{name} must be a decimal number, got {raw!r}")


# Subscription states that still grant AI access
ACTIVE_SUBSCRIPTION_STATUSES: FrozenSet[str] = frozenset({"active", "trialing", "past_due"})


@dataclass(frozen=True)
class LedgerDefaults:
    """Values used when a ledger row is created lazily."""
    monthly_limit_amount: Decimal = Decimal("50")
    alert_threshold_percent: Decimal = Decimal("80")
    hard_limit: bool = False


@dataclass(frozen=True)
class BillingSettings:
    """Billing engine settings."""

    # Applied when a model has no pricing config
    default_margin_percent: Decimal = Decimal("40")
    # Multiplier from the pricing currency to the billing currency
    exchange_rate: Decimal = Decimal("1")
    # Minor units per major unit of the billing currency (cents)
    minor_units_per_major: int = 100
    ledger_defaults: LedgerDefaults = field(default_factory=LedgerDefaults)

    demo_mode: bool = False
    require_active_subscription: bool = False

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com"

    # Optional webhook receiving spending alert transitions
    alert_webhook_url: Optional[str] = None
    alert_webhook_secret: Optional[str] = None

    # Outbox retry worker
    report_retry_interval_seconds: float = 30.0
    report_retry_base_delay_seconds: float = 60.0
    report_retry_max_delay_seconds: float = 3600.0
    report_max_attempts: int = 12

    # Ledger conflict retries
    ledger_max_attempts: int = 5

    service_token: Optional[str] = None

    @classmethod
    def from_env(cls) -> "BillingSettings":
        """Build settings from environment variables."""
        return cls(
            default_margin_percent=_env_decimal("BILLING_DEFAULT_MARGIN_PERCENT", "40"),
            exchange_rate=_env_decimal("BILLING_EXCHANGE_RATE", "1"),
            ledger_defaults=LedgerDefaults(
                monthly_limit_amount=_env_decimal("BILLING_DEFAULT_MONTHLY_LIMIT", "50"),
                alert_threshold_percent=_env_decimal("BILLING_DEFAULT_ALERT_THRESHOLD", "80"),
                hard_limit=_is_truthy(os.getenv("BILLING_DEFAULT_HARD_LIMIT")),
            ),
            demo_mode=_is_truthy(os.getenv("BILLING_DEMO_MODE")),
            require_active_subscription=_is_truthy(
                os.getenv("BILLING_REQUIRE_ACTIVE_SUBSCRIPTION")
            ),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_api_base=os.getenv("STRIPE_API_BASE", "https://api.stripe.com"),
            alert_webhook_url=os.getenv("BILLING_ALERT_WEBHOOK_URL") or None,
            alert_webhook_secret=os.getenv("BILLING_ALERT_WEBHOOK_SECRET") or None,
            report_retry_interval_seconds=float(os.getenv("REPORT_RETRY_INTERVAL", "30")),
            report_max_attempts=int(os.getenv("REPORT_MAX_ATTEMPTS", "12")),
            service_token=os.getenv("BILLING_SERVICE_TOKEN") or None,
        )


def validate_security_config() -> None:
    """Fail closed for unsafe production startup configuration."""
    mode = get_run_mode()
    if mode in {RunMode.LOCAL, RunMode.TEST}:
        return

    if not os.getenv("DATABASE_URL"):
        raise RuntimeError("DATABASE_URL is required in production mode")

    if not os.getenv("STRIPE_SECRET_KEY") and not _is_truthy(os.getenv("BILLING_DEMO_MODE")):
        raise RuntimeError("STRIPE_SECRET_KEY is required in production mode unless BILLING_DEMO_MODE=1")

    if not os.getenv("BILLING_SERVICE_TOKEN"):
        raise RuntimeError("BILLING_SERVICE_TOKEN is required in production mode")
