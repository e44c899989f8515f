"""FastAPI application for the Payments Service."""

from fastapi import FastAPI
from libs.common.error_handler import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from libs.common.rate_limit import limiter
from services.payments_service.routers import (
    admin_payments_router,
    cron_router,
    crypto_router,
    nowpayments_router,
    payment_links_router,
    payments_router,
    webhooks_router,
)


def create_app() -> FastAPI:
    """Create and configure the Payments Service FastAPI app."""
    app = FastAPI(
        title="Payments Reconciliation Service",
        version="0.1.0",
        description="Multi-provider payment reconciliation and back-office API.",
    )
    app.state.limiter = limiter

    add_observability_middleware(app)
    add_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "payments"}

    # Client flows
    app.include_router(payments_router)
    app.include_router(crypto_router)
    app.include_router(nowpayments_router)

    # Provider callbacks
    app.include_router(webhooks_router)

    # Back office
    app.include_router(admin_payments_router)
    app.include_router(payment_links_router)
    app.include_router(cron_router)

    return app


app = create_app()
