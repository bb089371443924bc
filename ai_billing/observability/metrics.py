"""
ai_billing - Prometheus Metrics

Metrics exposed:
- billing_charges_total: Counter of recorded charges by feature and pricing source
- billing_charge_amount_total: Counter of charged amount (billing currency)
- billing_overage_amount_total: Counter of overage amount handed to the reporter
- billing_reports_total: Counter of usage report outcomes by status
- billing_gate_decisions_total: Counter of limit gate decisions
- billing_threshold_transitions_total: Counter of alert / limit latches won
- billing_pricing_fallbacks_total: Counter of charges priced with the default margin
- billing_ledger_conflicts_total: Counter of retried ledger write conflicts
- billing_outbox_pending: Gauge of reports waiting in the outbox
- billing_report_duration_seconds: Histogram of outbound report latency
"""

from decimal import Decimal
from typing import Dict, Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import Response


class MetricsCollector:
    """
    Central metrics collector using Prometheus client.

    One collector per registry; tests pass a fresh CollectorRegistry.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.charges_total = Counter(
            "billing_charges_total",
            "Total number of recorded AI usage charges",
            labelnames=["feature", "pricing_source"],
            registry=registry,
        )

        self.charge_amount_total = Counter(
            "billing_charge_amount_total",
            "Total charged amount in billing currency",
            labelnames=["feature"],
            registry=registry,
        )

        self.overage_amount_total = Counter(
            "billing_overage_amount_total",
            "Total overage amount handed to the usage reporter",
            registry=registry,
        )

        self.reports_total = Counter(
            "billing_reports_total",
            "Usage report outcomes",
            labelnames=["status"],
            registry=registry,
        )

        self.gate_decisions_total = Counter(
            "billing_gate_decisions_total",
            "Limit gate decisions",
            labelnames=["allowed"],
            registry=registry,
        )

        self.threshold_transitions_total = Counter(
            "billing_threshold_transitions_total",
            "Alert and hard-limit latches set",
            labelnames=["state"],
            registry=registry,
        )

        self.pricing_fallbacks_total = Counter(
            "billing_pricing_fallbacks_total",
            "Charges priced with the default margin because no config existed",
            labelnames=["model_key"],
            registry=registry,
        )

        self.ledger_conflicts_total = Counter(
            "billing_ledger_conflicts_total",
            "Spending ledger write conflicts that were retried",
            registry=registry,
        )

        self.outbox_pending = Gauge(
            "billing_outbox_pending",
            "Usage reports waiting in the outbox",
            registry=registry,
        )

        self.report_duration = Histogram(
            "billing_report_duration_seconds",
            "Outbound usage report latency",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf")),
            registry=registry,
        )

    def record_charge(self, feature: str, amount: Decimal, pricing_source: str) -> None:
        self.charges_total.labels(feature=feature, pricing_source=pricing_source).inc()
        self.charge_amount_total.labels(feature=feature).inc(float(amount))

    def record_overage(self, amount: Decimal) -> None:
        if amount > 0:
            self.overage_amount_total.inc(float(amount))

    def record_report(self, status: str, duration_seconds: Optional[float] = None) -> None:
        self.reports_total.labels(status=status).inc()
        if duration_seconds is not None:
            self.report_duration.observe(duration_seconds)

    def record_gate_decision(self, allowed: bool) -> None:
        self.gate_decisions_total.labels(allowed="true" if allowed else "false").inc()

    def record_transition(self, state: str) -> None:
        self.threshold_transitions_total.labels(state=state).inc()

    def record_pricing_fallback(self, model_key: str) -> None:
        self.pricing_fallbacks_total.labels(model_key=model_key).inc()

    def record_ledger_conflict(self) -> None:
        self.ledger_conflicts_total.inc()

    def set_outbox_pending(self, count: int) -> None:
        self.outbox_pending.set(count)


_metrics_instance: Optional[MetricsCollector] = None
# A registry rejects a second set of the same metric names
_collectors: Dict[int, MetricsCollector] = {}


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Setup metrics collection and make it the active collector.

    Safe to call multiple times - reuses the collector of a known registry.
    """
    global _metrics_instance

    collector = _collectors.get(id(registry))
    if collector is None:
        collector = MetricsCollector(registry)
        _collectors[id(registry)] = collector

    _metrics_instance = collector
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Get the metrics collector instance, creating it on the default registry."""
    if _metrics_instance is None:
        return setup_metrics()
    return _metrics_instance


def metrics_endpoint() -> Response:
    """Prometheus text exposition of the active registry."""
    registry = _metrics_instance.registry if _metrics_instance else REGISTRY
    return Response(
        content=generate_latest(registry),
        media_type=CONTENT_TYPE_LATEST,
    )
