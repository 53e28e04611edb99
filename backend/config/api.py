"""
Django Ninja API configuration.
"""

from django.http import HttpRequest
from ninja import NinjaAPI

from apps.billing.api import router as billing_router

api = NinjaAPI(
    title="Pro Billing API",
    version="1.0.0",
    description="Pro entitlement billing: checkout, payment verification and subscription management.",
    openapi_extra={
        "tags": [
            {
                "name": "billing",
                "description": "Pro checkout, entitlement and subscription management",
            },
            {
                "name": "health",
                "description": "Service health and readiness checks",
            },
        ],
    },
)

api.add_router("/billing", billing_router)


@api.get("/health", tags=["health"], operation_id="healthCheck", summary="Health check")
def health_check(request: HttpRequest) -> dict:
    """Health check endpoint for load balancer."""
    return {"status": "ok"}
