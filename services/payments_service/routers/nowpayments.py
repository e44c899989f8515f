"""NOWPayments address generation and currency listing."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.rate_limit import payment_limit
from libs.db.session import get_async_db
from services.payments_service.models import PaymentStatus
from services.payments_service.providers.nowpayments import (
    FALLBACK_CURRENCIES,
    NowPaymentsClient,
    NowPaymentsError,
    get_nowpayments_client,
    sort_currencies,
)
from services.payments_service.schemas import NowPaymentsGenerateRequest
from services.payments_service.services.reconciliation import (
    AMOUNT_TOLERANCE,
    get_payment_or_404,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/nowpayments", tags=["crypto"])
logger = get_logger(__name__)


@router.post("/generate")
@payment_limit
async def generate_crypto_payment(
    request: Request,
    payload: NowPaymentsGenerateRequest,
    db: AsyncSession = Depends(get_async_db),
    client: NowPaymentsClient = Depends(get_nowpayments_client),
):
    """
    Create a NOWPayments deposit address for a pending payment.
    """
    payment = await get_payment_or_404(db, payload.payment_id)
    if payment.payment_status != PaymentStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Payment status is {payment.payment_status.value}, expected pending",
        )
    if abs(payment.amount - payload.usd_amount) > AMOUNT_TOLERANCE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Amount mismatch: expected {payment.amount}, got {payload.usd_amount}",
        )

    try:
        supported = await client.is_currency_supported(payload.pay_currency)
    except NowPaymentsError as e:
        logger.error("NOWPayments currency lookup failed: %s", e.message)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Crypto payment provider is unavailable",
        )
    if not supported:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Currency {payload.pay_currency.upper()} is not supported",
        )

    try:
        details = await client.create_payment(
            usd_amount=payload.usd_amount,
            pay_currency=payload.pay_currency,
            order_id=str(payment.id),
            order_description=f"Payment {payload.payment_reference}",
        )
    except NowPaymentsError as e:
        payment.error_message = e.message
        payment.append_note(f"NOWPayments error: {e.message}")
        await db.commit()
        logger.error("NOWPayments create failed for payment %s: %s", payment.id, e.message)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Crypto payment provider is unavailable",
        )

    metadata = dict(payment.payment_metadata or {})
    metadata["nowpayments"] = {
        "payment_id": details.nowpayments_id,
        "payment_reference": payload.payment_reference,
        "pay_currency": details.pay_currency,
        "expires_at": details.expires_at,
        "created_at": utc_now().isoformat(),
    }
    payment.crypto_address = details.pay_address
    payment.crypto_network = details.network
    payment.crypto_amount = details.pay_amount
    payment.crypto_symbol = details.pay_currency
    payment.payment_metadata = metadata
    payment.error_message = None
    await db.commit()
    await db.refresh(payment)

    logger.info(
        "Generated %s address for payment %s (nowpayments id %s)",
        details.pay_currency,
        payment.id,
        details.nowpayments_id,
    )
    return {"success": True, "payment_id": str(payment.id), "crypto_payment": asdict(details)}


@router.get("/generate")
async def list_crypto_currencies(
    client: NowPaymentsClient = Depends(get_nowpayments_client),
):
    """
    Supported currencies, popular and stablecoins first. Falls back to a
    fixed list when NOWPayments is unreachable.
    """
    try:
        currencies = await client.get_currencies()
    except NowPaymentsError as e:
        logger.warning("Using fallback currency list: %s", e.message)
        return {"success": True, "currencies": FALLBACK_CURRENCIES, "fallback": True}

    listed = [
        c.as_dict() for c in currencies if c.is_popular or c.is_stablecoin
    ]
    return {"success": True, "currencies": sort_currencies(listed), "fallback": False}
