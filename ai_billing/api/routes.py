"""
ai_billing - Billing API

Service-to-service endpoints used by AI features and the platform:

- POST  /v1/usage/check                 pre-check before paid work (402 when denied)
- POST  /v1/usage/record                charge a successful invocation
- GET   /v1/spending-limit/{user_id}    limit, usage and included credits
- PATCH /v1/spending-limit/{user_id}    change spending preferences
- POST  /v1/billing/rollover            start a new billing cycle
- POST  /v1/billing/reports/retry       drain the report outbox once
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..billing.ledger import ledger_state
from ..billing.pricing import Quantities
from ..core.errors import InvalidRequestError
from .dependencies import get_request_id, get_services, require_service_token


router = APIRouter(
    prefix="/v1",
    tags=["billing"],
    dependencies=[Depends(require_service_token)],
)


# ============================================================
# Pydantic Models
# ============================================================

class UsageCheckRequest(BaseModel):
    """Pre-check for a paid AI operation."""
    user_id: str = Field(..., min_length=1, max_length=255)


class RecordUsageRequest(BaseModel):
    """A successful AI invocation to charge."""
    user_id: str = Field(..., min_length=1, max_length=255)
    model_key: str = Field(..., min_length=1, max_length=255)
    feature: str = Field(..., min_length=1, max_length=100)
    input_units: int = Field(default=0, ge=0)
    output_units: int = Field(default=0, ge=0)
    runs: int = Field(default=1, ge=0)
    reported_cost: Optional[Decimal] = Field(default=None, ge=0)
    event_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


class SpendingLimitUpdate(BaseModel):
    """Spending preferences; omitted fields are left unchanged."""
    monthly_limit_amount: Optional[Decimal] = None
    alert_threshold_percent: Optional[Decimal] = None
    hard_limit: Optional[bool] = None


class RolloverRequest(BaseModel):
    """Cycle rollover for one user, or a sweep over every stale ledger."""
    user_id: Optional[str] = Field(default=None, min_length=1, max_length=255)
    cycle_start: Optional[datetime] = None


def _json(content: Dict[str, Any], request_id: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers={"X-Request-Id": request_id},
    )


def _current_cycle_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


# ============================================================
# Usage
# ============================================================

@router.post("/usage/check")
async def check_usage(
    body: UsageCheckRequest,
    request_id: str = Depends(get_request_id),
):
    """Allow, warn or deny; denial is returned as 402."""
    services = get_services()
    decision = await services.gate.enforce(body.user_id)
    return _json({"object": "usage.check", **decision.to_dict()}, request_id)


@router.post("/usage/record")
async def record_usage(
    body: RecordUsageRequest,
    request_id: str = Depends(get_request_id),
):
    """Charge one successful AI invocation."""
    services = get_services()
    quantities = Quantities(
        input_units=body.input_units,
        output_units=body.output_units,
        runs=body.runs,
        reported_cost=body.reported_cost,
    )
    outcome = await services.engine.record_usage(
        body.user_id,
        body.model_key,
        body.feature,
        quantities,
        event_id=body.event_id,
        request_id=request_id,
    )
    return _json({"object": "usage.charge", **outcome.to_dict()}, request_id)


# ============================================================
# Spending limit settings
# ============================================================

async def _spending_limit_view(user_id: str) -> Dict[str, Any]:
    services = get_services()
    ledger = await services.ledger.get(user_id)
    allowance = await services.accounts.get_included_allowance(user_id)
    defaults = services.settings.ledger_defaults

    if ledger is None:
        return {
            "object": "spending_limit",
            "user_id": user_id,
            "exists": False,
            "limit": {
                "monthly_limit_amount": str(defaults.monthly_limit_amount),
                "alert_threshold_percent": str(defaults.alert_threshold_percent),
                "hard_limit": defaults.hard_limit,
            },
            "usage": {
                "current_month_spent": "0",
                "remaining": str(defaults.monthly_limit_amount),
                "percent_used": "0.00",
                "state": "under_threshold",
            },
            "included_credits": {
                "total": str(allowance),
                "remaining": str(allowance),
                "used": "0",
            },
            "alerts": {"alert_sent_at": None, "limit_hit_at": None},
            "cycle_started_at": None,
        }

    spent = ledger.current_month_spent
    return {
        "object": "spending_limit",
        "user_id": user_id,
        "exists": True,
        "limit": {
            "monthly_limit_amount": str(ledger.monthly_limit_amount),
            "alert_threshold_percent": str(ledger.alert_threshold_percent),
            "hard_limit": ledger.hard_limit,
        },
        "usage": {
            "current_month_spent": str(spent),
            "remaining": str(ledger.remaining),
            "percent_used": str(ledger.percent_used.quantize(Decimal("0.01"))),
            "state": ledger_state(ledger).value,
        },
        "included_credits": {
            "total": str(allowance),
            "remaining": str(max(Decimal("0"), allowance - spent)),
            "used": str(min(spent, allowance)),
        },
        "alerts": {
            "alert_sent_at": ledger.alert_sent_at.isoformat() if ledger.alert_sent_at else None,
            "limit_hit_at": ledger.limit_hit_at.isoformat() if ledger.limit_hit_at else None,
        },
        "cycle_started_at": ledger.cycle_started_at.isoformat() if ledger.cycle_started_at else None,
    }


@router.get("/spending-limit/{user_id}")
async def get_spending_limit(
    user_id: str,
    request_id: str = Depends(get_request_id),
):
    """Current limit, usage and included credits."""
    return _json(await _spending_limit_view(user_id), request_id)


@router.patch("/spending-limit/{user_id}")
async def update_spending_limit(
    user_id: str,
    body: SpendingLimitUpdate,
    request_id: str = Depends(get_request_id),
):
    """Update spending preferences."""
    services = get_services()
    await services.ledger.update_preferences(
        user_id,
        monthly_limit_amount=body.monthly_limit_amount,
        alert_threshold_percent=body.alert_threshold_percent,
        hard_limit=body.hard_limit,
    )
    return _json(await _spending_limit_view(user_id), request_id)


# ============================================================
# Billing cycle & reporting jobs
# ============================================================

@router.post("/billing/rollover")
async def rollover(
    body: RolloverRequest,
    request_id: str = Depends(get_request_id),
):
    """
    Billing-cycle rollover signal.

    With ``user_id`` one ledger is reset; without it every ledger whose
    cycle started before ``cycle_start`` (default: 00:00 UTC on the 1st of
    the current month) is reset.
    """
    services = get_services()
    now = datetime.now(timezone.utc)

    if body.user_id:
        ledger = await services.ledger.reset_cycle(body.user_id, now)
        return _json(
            {"object": "billing.rollover", "user_id": body.user_id, "reset": 1 if ledger else 0},
            request_id,
        )

    cycle_start = body.cycle_start or _current_cycle_start(now)
    if cycle_start.tzinfo is None:
        raise InvalidRequestError("cycle_start must include a timezone", param="cycle_start")
    count = await services.ledger.reset_stale_cycles(cycle_start)
    return _json(
        {"object": "billing.rollover", "cycle_start": cycle_start.isoformat(), "reset": count},
        request_id,
    )


@router.post("/billing/reports/retry")
async def retry_reports(request_id: str = Depends(get_request_id)):
    """Run one outbox drain pass now."""
    services = get_services()
    stats = await services.retry_worker.run_once()
    return _json({"object": "billing.report_retry", **stats.to_dict()}, request_id)
