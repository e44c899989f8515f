"""Routers package."""

from services.payments_service.routers.admin_payments import router as admin_payments_router
from services.payments_service.routers.cron import router as cron_router
from services.payments_service.routers.crypto import router as crypto_router
from services.payments_service.routers.nowpayments import router as nowpayments_router
from services.payments_service.routers.payment_links import router as payment_links_router
from services.payments_service.routers.payments import router as payments_router
from services.payments_service.routers.webhooks import router as webhooks_router

__all__ = [
    "admin_payments_router",
    "cron_router",
    "crypto_router",
    "nowpayments_router",
    "payment_links_router",
    "payments_router",
    "webhooks_router",
]
