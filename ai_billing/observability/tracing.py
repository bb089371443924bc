"""
ai_billing - OpenTelemetry Tracing

Spans around charge recording and outbound usage reports.

Without ``setup_tracing`` the global no-op provider is used, so spans cost
nothing in tests and local mode.
"""

import os
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

TRACER_NAME = "ai_billing"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str = "ai-billing",
    service_version: str = "1.0.0",
    console_export: bool = False,
) -> TracerProvider:
    """
    Install an SDK tracer provider.

    Call once at application startup. OTEL_CONSOLE_EXPORT=true prints spans
    to stdout.
    """
    global _provider

    if _provider is not None:
        return _provider

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": os.getenv("MODE", "prod"),
    })
    provider = TracerProvider(resource=resource)

    if console_export or os.getenv("OTEL_CONSOLE_EXPORT", "").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def shutdown_tracing() -> None:
    """Flush and shut down the SDK provider if one was installed."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def get_tracer() -> trace.Tracer:
    """Get the billing tracer."""
    return trace.get_tracer(TRACER_NAME)
