"""
ai_billing - API Server

FastAPI service around the billing engine.
Uses canonical error layer from ai_billing/core/errors.py

Supports three modes:
- MODE=local: In-memory stores, Stripe only if STRIPE_SECRET_KEY is set
- MODE=prod: Postgres-backed stores, Stripe reporting, service token required
- MODE=test: In-memory stores, no background worker
"""

import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import BillingSettings, get_run_mode, is_prod_mode, is_test_mode, validate_security_config
from .core.errors import BillingException
from .db.connection import init_db, close_db, get_db_optional
from .api import billing_router
from .api.dependencies import BillingServices, get_services, set_services
from .billing.ledger import WebhookAlertNotifier
from .billing.reporter import StripeMeteredBillingClient
from .observability import (
    get_logger,
    metrics_endpoint,
    setup_logging,
    setup_metrics,
    setup_tracing,
    shutdown_tracing,
)


VERSION = "1.0.0"


# ============================================================
# Lifespan management
# ============================================================

def _build_stripe_client(settings: BillingSettings):
    if settings.demo_mode or not settings.stripe_secret_key:
        return None
    return StripeMeteredBillingClient(
        secret_key=settings.stripe_secret_key,
        api_base=settings.stripe_api_base,
    )


def _build_alert_notifier(settings: BillingSettings):
    if not settings.alert_webhook_url:
        return None
    return WebhookAlertNotifier(
        url=settings.alert_webhook_url,
        secret=settings.alert_webhook_secret,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    mode = get_run_mode()
    validate_security_config()

    setup_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        json_output=os.getenv("LOG_FORMAT", "json").lower() == "json",
    )
    setup_metrics()
    setup_tracing(service_name="ai-billing", service_version=VERSION)

    logger = get_logger("ai_billing.server")
    logger.info(f"ai-billing starting in {mode.value.upper()} mode")

    settings = BillingSettings.from_env()
    stripe_client = _build_stripe_client(settings)
    notifier = _build_alert_notifier(settings)

    if is_prod_mode():
        db = await init_db(os.getenv("DATABASE_URL"))
        logger.info("Database connected")
        services = BillingServices.postgres(db, settings, stripe_client, notifier)
        await services.catalog.load_from_db(db)
    else:
        services = BillingServices.in_memory(settings, stripe_client, notifier)

    set_services(services)

    if stripe_client is None:
        logger.warning("Stripe reporting disabled (demo mode or STRIPE_SECRET_KEY unset)")

    if not is_test_mode():
        await services.retry_worker.start()
        logger.info(
            "Report retry worker started",
            interval_seconds=settings.report_retry_interval_seconds,
        )

    logger.info("ai-billing server ready", mode=mode.value, demo_mode=settings.demo_mode)

    yield

    await services.retry_worker.stop()
    if notifier is not None:
        await notifier.close()
    if is_prod_mode():
        await close_db()
    set_services(None)
    shutdown_tracing()

    logger.info("ai-billing server stopped")


# ============================================================
# FastAPI App
# ============================================================

app = FastAPI(
    title="ai-billing",
    description="Usage-based AI billing and spending-limit enforcement",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.include_router(billing_router)


# ============================================================
# Core Endpoints (not in routes)
# ============================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    services = get_services()
    db = get_db_optional()

    return {
        "status": "healthy",
        "version": VERSION,
        "mode": get_run_mode().value,
        "demo_mode": services.settings.demo_mode,
        "database": "connected" if db is not None and db.is_connected else "not_configured",
        "outbox_pending": await services.outbox.count_pending(),
        "retry_worker": "running" if services.retry_worker.running else "stopped",
    }


@app.get("/metrics")
async def prometheus_metrics():
    """
    Prometheus metrics endpoint.

    Exposes all collected metrics in Prometheus text format.
    """
    return metrics_endpoint()


# ============================================================
# Error handlers
# ============================================================

def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:24]}"


@app.exception_handler(BillingException)
async def billing_exception_handler(request: Request, exc: BillingException):
    """Handle all canonical billing errors."""
    if not exc.error.request_id:
        exc.error.request_id = _request_id(request)

    headers = {
        "X-Request-Id": exc.error.request_id,
        "X-Error-Type": exc.error.type.value,
        "X-Error-Code": exc.error.code,
    }

    if exc.error.retry_after:
        headers["Retry-After"] = str(exc.error.retry_after)

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.error.to_dict(),
        headers=headers
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle standard HTTP exceptions."""
    request_id = _request_id(request)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": "http_error",
                "message": str(exc.detail) if isinstance(exc.detail, str) else exc.detail.get("message", "Unknown error"),
                "type": "semantic_error" if exc.status_code < 500 else "infra_error",
                "request_id": request_id,
                "retryable": exc.status_code >= 500
            }
        },
        headers={"X-Request-Id": request_id}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = _request_id(request)
    get_logger("ai_billing.server").exception(
        "Unhandled error",
        request_id=request_id,
        path=request.url.path,
        error=str(exc),
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_error",
                "message": "An unexpected error occurred",
                "type": "infra_error",
                "request_id": request_id,
                "retryable": True
            }
        },
        headers={"X-Request-Id": request_id}
    )


# ============================================================
# Run server
# ============================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ai_billing.server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
