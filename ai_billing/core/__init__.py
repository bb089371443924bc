"""
ai_billing Core Module

Error taxonomy and the outbound HTTP client.
"""

from .errors import (
    # Error types
    ErrorType,
    ErrorDetails,
    BillingException,

    # Infra errors
    InfraError,
    ReportingUnavailableError,
    LedgerWriteConflictError,
    ServiceUnavailableError,

    # Semantic errors
    SemanticError,
    ConfigNotFoundError,
    LimitExceededError,
    InvalidRequestError,
    UnauthorizedError,

    is_retryable,
)

__all__ = [
    "ErrorType",
    "ErrorDetails",
    "BillingException",
    "InfraError",
    "ReportingUnavailableError",
    "LedgerWriteConflictError",
    "ServiceUnavailableError",
    "SemanticError",
    "ConfigNotFoundError",
    "LimitExceededError",
    "InvalidRequestError",
    "UnauthorizedError",
    "is_retryable",
]
