"""
ai_billing - Database Schema

DDL for the tables the billing engine owns (spending ledgers, charged usage
events, usage report outbox) and the read-only tables it consumes (pricing configs, billing
accounts, subscription plans). Every statement is idempotent.
"""

SPENDING_LEDGERS = """
CREATE TABLE IF NOT EXISTS spending_ledgers (
    user_id TEXT PRIMARY KEY,
    monthly_limit_amount NUMERIC(12, 2) NOT NULL DEFAULT 50,
    current_month_spent NUMERIC(18, 6) NOT NULL DEFAULT 0,
    alert_threshold_percent NUMERIC(5, 2) NOT NULL DEFAULT 80,
    hard_limit BOOLEAN NOT NULL DEFAULT FALSE,
    alert_sent_at TIMESTAMPTZ,
    limit_hit_at TIMESTAMPTZ,
    cycle_started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT spent_non_negative CHECK (current_month_spent >= 0)
)
"""

USAGE_CHARGES = """
CREATE TABLE IF NOT EXISTS usage_charges (
    user_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    amount NUMERIC(18, 6) NOT NULL,
    spent_before NUMERIC(18, 6),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (user_id, event_id)
)
"""

AI_MODEL_CONFIGS = """
CREATE TABLE IF NOT EXISTS ai_model_configs (
    model_key TEXT PRIMARY KEY,
    billing_mode TEXT NOT NULL CHECK (billing_mode IN ('PER_TOKEN', 'PER_RUN')),
    cost_per_input_unit NUMERIC(18, 8) NOT NULL DEFAULT 0,
    cost_per_output_unit NUMERIC(18, 8) NOT NULL DEFAULT 0,
    cost_per_run NUMERIC(18, 8) NOT NULL DEFAULT 0,
    margin_percent NUMERIC(6, 2) NOT NULL DEFAULT 40,
    unit_size INTEGER NOT NULL DEFAULT 1000000,
    category TEXT NOT NULL DEFAULT 'text',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

USAGE_REPORT_OUTBOX = """
CREATE TABLE IF NOT EXISTS usage_report_outbox (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    subscription_item_id TEXT,
    quantity BIGINT NOT NULL,
    amount NUMERIC(18, 6) NOT NULL,
    idempotency_key TEXT NOT NULL UNIQUE,
    event_timestamp TIMESTAMPTZ NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_error TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'sent', 'failed')),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

USAGE_REPORT_OUTBOX_DUE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_usage_report_outbox_due
    ON usage_report_outbox (status, next_attempt_at, created_at)
"""

BILLING_ACCOUNTS = """
CREATE TABLE IF NOT EXISTS billing_accounts (
    user_id TEXT PRIMARY KEY,
    subscription_id TEXT,
    subscription_status TEXT,
    price_id TEXT,
    is_admin BOOLEAN NOT NULL DEFAULT FALSE
)
"""

SUBSCRIPTION_PLANS = """
CREATE TABLE IF NOT EXISTS subscription_plans (
    price_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    included_ai_credits NUMERIC(12, 2) NOT NULL DEFAULT 0
)
"""

SCHEMA_STATEMENTS = (
    SPENDING_LEDGERS,
    USAGE_CHARGES,
    AI_MODEL_CONFIGS,
    USAGE_REPORT_OUTBOX,
    USAGE_REPORT_OUTBOX_DUE_INDEX,
    BILLING_ACCOUNTS,
    SUBSCRIPTION_PLANS,
)
