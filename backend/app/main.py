"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from sqlalchemy import text

from app.core.config import settings
from app.core.database import engine
from app.core.logging import setup_logging
from app.core.metrics import get_content_type, get_metrics, set_app_info
from app.core.redis import redis_client
from app.core.middleware import (
    MetricsMiddleware,
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
)
from app.modules.billing.router import router as billing_router
from app.modules.payment_gateway.router import router as payment_gateway_router

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Recurring Crypto Billing & Payment Reconciliation API

Generates per-cycle subscription invoices backed by single-use crypto payment
links and reconciles processor payment status into local transactions.

### Features

* **Subscriptions** - Lifecycle changes, amount overrides, invoice history
* **Scheduler** - Idempotent per-cycle invoice generation and dunning
* **Payments** - NOWPayments IPN webhooks and status polling

### Authentication

Internal endpoints require the shared key in the `X-Internal-Key` header.
Processor webhooks are authenticated by their HMAC signature.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check endpoints",
        },
        {
            "name": "subscriptions",
            "description": "Subscription lifecycle, invoices, amount overrides and the scheduler trigger",
        },
        {
            "name": "payments",
            "description": "Payment transactions, processor webhooks and status refresh",
        },
    ],
)

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

set_app_info(
    version=settings.VERSION,
    environment=settings.ENVIRONMENT,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


def custom_openapi() -> dict:
    """Generate custom OpenAPI schema."""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
        tags=app.openapi_tags,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "InternalKeyAuth": {
            "type": "apiKey",
            "in": "header",
            "name": "X-Internal-Key",
            "description": "Shared key for internal service calls",
        },
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


@app.get("/health", tags=["health"])
async def health_check(response: Response) -> dict[str, str]:
    """Report database and Redis reachability.

    Returns 503 when either dependency is down.
    """
    checks = {}
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.warning(f"Health check: database unreachable: {e}")
        checks["database"] = "unavailable"

    try:
        await redis_client.ping()
        checks["redis"] = "ok"
    except Exception as e:
        logger.warning(f"Health check: redis unreachable: {e}")
        checks["redis"] = "unavailable"

    healthy = all(value == "ok" for value in checks.values())
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"status": "healthy" if healthy else "unhealthy", **checks}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


# Include routers
app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
app.include_router(payment_gateway_router, prefix=settings.API_V1_PREFIX)
