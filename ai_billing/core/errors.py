"""
ai_billing - Error Definitions

Error taxonomy for the billing engine with infra vs semantic classification.

Infra errors are conditions of the storage layer or the external billing
platform; they are retried (ledger conflicts) or deferred (reporting).
Semantic errors are conditions the caller has to act on (denied usage,
invalid payloads, missing pricing configuration).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    SEMANTIC = "semantic_error"


@dataclass
class ErrorDetails:
    """Full error information for API response."""
    # Core fields (always present)
    code: str
    message: str
    type: ErrorType

    # Context fields
    user_id: Optional[str] = None
    param: Optional[str] = None

    # Trace fields
    request_id: str = ""

    # Recovery fields
    retryable: bool = False
    retry_after: Optional[int] = None

    # Debug fields
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
            "request_id": self.request_id,
            "retryable": self.retryable,
        }

        if self.user_id:
            result["user_id"] = self.user_id
        if self.param:
            result["param"] = self.param
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class BillingException(Exception):
    """Base exception for all billing engine errors."""

    def __init__(self, error: ErrorDetails, status_code: int = 500):
        self.error = error
        self.status_code = status_code
        super().__init__(error.message)


# ============================================================
# Infra Errors (Retryable)
# ============================================================

class InfraError(BillingException):
    """Base class for infrastructure errors."""
    pass


class ReportingUnavailableError(InfraError):
    """External billing platform is unreachable or erroring.

    Never surfaced to the end user: the ledger is already authoritative and
    the report is parked in the outbox for the retry worker.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        retryable: bool = True,
        user_id: str = "",
        request_id: str = "",
    ):
        self.upstream_status = status_code
        super().__init__(
            ErrorDetails(
                code="reporting_unavailable",
                message=message,
                type=ErrorType.INFRA,
                user_id=user_id or None,
                request_id=request_id,
                retryable=retryable,
                retry_after=60 if retryable else None,
                details={"upstream_status": status_code} if status_code else {},
            ),
            status_code=503
        )


class LedgerWriteConflictError(InfraError):
    """Concurrent update race at the storage layer."""

    def __init__(self, user_id: str, attempts: int = 1, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="ledger_write_conflict",
                message=f"Spending ledger update for {user_id} conflicted after {attempts} attempt(s)",
                type=ErrorType.INFRA,
                user_id=user_id,
                request_id=request_id,
                retryable=True,
                retry_after=1,
                details={"attempts": attempts}
            ),
            status_code=503
        )


class ServiceUnavailableError(InfraError):
    """A collaborator the engine depends on is not initialised."""

    def __init__(self, message: str, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="service_unavailable",
                message=message,
                type=ErrorType.INFRA,
                request_id=request_id,
                retryable=True,
                retry_after=5
            ),
            status_code=503
        )


# ============================================================
# Semantic Errors (Not Retryable)
# ============================================================

class SemanticError(BillingException):
    """Base class for semantic errors (client must fix request)."""
    pass


class ConfigNotFoundError(SemanticError):
    """No active pricing configuration exists for a model."""

    def __init__(self, model_key: str, request_id: str = ""):
        self.model_key = model_key
        super().__init__(
            ErrorDetails(
                code="pricing_config_not_found",
                message=f"No active pricing configuration for model '{model_key}'",
                type=ErrorType.SEMANTIC,
                param="model_key",
                request_id=request_id,
                retryable=False,
                details={"model_key": model_key}
            ),
            status_code=404
        )


class LimitExceededError(SemanticError):
    """Hard spending limit reached; the paid feature must not run."""

    def __init__(
        self,
        user_id: str,
        message: str,
        monthly_limit: Decimal,
        current_spent: Decimal,
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code="spending_limit_exceeded",
                message=message,
                type=ErrorType.SEMANTIC,
                user_id=user_id,
                request_id=request_id,
                retryable=False,
                details={
                    "monthly_limit": str(monthly_limit),
                    "current_month_spent": str(current_spent),
                }
            ),
            status_code=402
        )


class InvalidRequestError(SemanticError):
    """Request validation failed."""

    def __init__(
        self,
        message: str,
        param: str = "",
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code="invalid_request",
                message=message,
                type=ErrorType.SEMANTIC,
                param=param or None,
                request_id=request_id,
                retryable=False
            ),
            status_code=400
        )


class UnauthorizedError(SemanticError):
    """Service token missing or wrong."""

    def __init__(self, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="unauthorized",
                message="A valid X-Service-Token header is required",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=False
            ),
            status_code=401
        )


def is_retryable(error: BaseException) -> bool:
    """Whether an error should be retried by a background job."""
    if isinstance(error, BillingException):
        return error.error.retryable
    return False
