"""Best-effort client notifications. Never raise into the caller."""

from libs.common.emails.client import get_email_client
from libs.common.logging import get_logger
from services.payments_service.models import Payment, ServiceRequest

logger = get_logger(__name__)


async def _send(template_type: str, to_email: str | None, data: dict) -> bool:
    if not to_email:
        return False
    try:
        return await get_email_client().send_template(
            template_type=template_type, to_email=to_email, template_data=data
        )
    except Exception:
        logger.warning("Notification %s to %s failed", template_type, to_email, exc_info=True)
        return False


async def notify_payment_expired(payment: Payment, request: ServiceRequest | None) -> bool:
    if request is None:
        return False
    return await _send(
        "payment_expired",
        request.client_email,
        {
            "client_name": request.client_name,
            "service_title": request.title,
            "amount": payment.amount,
            "currency": payment.currency,
            "payment_method": payment.payment_method.value,
        },
    )


async def notify_payment_confirmed(payment: Payment, request: ServiceRequest) -> bool:
    return await _send(
        "payment_confirmed",
        request.client_email,
        {
            "client_name": request.client_name,
            "service_title": request.title,
            "amount": payment.amount,
            "currency": payment.currency,
            "total_paid": request.total_paid,
            "balance_due": request.balance_due,
        },
    )
