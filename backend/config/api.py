"""
Django Ninja API configuration.
"""

from django.http import HttpRequest
from ninja import NinjaAPI

from apps.billing.api import router as billing_router

api = NinjaAPI(
    title="Billing API",
    version="1.0.0",
    description="Stripe subscription billing with webhook reconciliation.",
    openapi_extra={
        "info": {
            "contact": {"name": "API Support"},
        },
        "tags": [
            {
                "name": "billing",
                "description": "Payment confirmation for incomplete payments",
            },
            {
                "name": "health",
                "description": "Service health and readiness checks",
            },
        ],
    },
)

# Register routers
api.add_router("/billing", billing_router)


@api.get("/health", tags=["health"], operation_id="healthCheck", summary="Health check")
def health_check(request: HttpRequest) -> dict:
    """Health check endpoint for load balancer."""
    return {"status": "ok"}
