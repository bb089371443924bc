"""
ai_billing - API Module

FastAPI router and dependencies for the billing service.
"""

from .routes import router as billing_router
from .dependencies import BillingServices, get_services, set_services

__all__ = [
    "billing_router",
    "BillingServices",
    "get_services",
    "set_services",
]
