"""Provider callbacks: Stripe events, NOWPayments IPN and Paystack charge events.

Each callback is verified, translated into a ProviderUpdate and handed to the
reconciliation engine. Re-delivery for a confirmed payment answers 200.
"""

import json
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.rate_limit import webhook_limit
from libs.db.session import get_async_db
from services.payments_service.models import Payment, PaymentStatus
from services.payments_service.providers import nowpayments, paystack, stripe_gateway
from services.payments_service.providers.base import ProviderOutcome, ProviderUpdate
from services.payments_service.services.reconciliation import (
    ReconcileResult,
    apply_provider_update,
)
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


def _parse_json(raw: bytes) -> dict:
    try:
        payload = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body"
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body"
        )
    return payload


async def _find_payment(db: AsyncSession, update: ProviderUpdate) -> Optional[Payment]:
    """Locate the payment by echoed id, falling back to provider references."""
    if update.payment_id:
        payment = await db.get(Payment, update.payment_id)
        if payment:
            return payment
    if not update.reference:
        return None
    result = await db.execute(
        select(Payment).where(
            or_(
                Payment.paystack_reference == update.reference,
                Payment.stripe_payment_intent_id == update.reference,
                Payment.crypto_transaction_hash == update.reference,
            )
        )
    )
    return result.scalars().first()


async def _reconcile(db: AsyncSession, update: ProviderUpdate) -> Optional[ReconcileResult]:
    if update.outcome == ProviderOutcome.IGNORED:
        logger.info("Ignoring %s event %s", update.provider, update.provider_status)
        return None

    payment = await _find_payment(db, update)
    if not payment:
        logger.warning(
            "%s callback for unknown payment",
            update.provider,
            extra={
                "extra_fields": {
                    "payment_id": str(update.payment_id) if update.payment_id else None,
                    "reference": update.reference,
                    "provider_status": update.provider_status,
                }
            },
        )
        return None

    if payment.payment_status == PaymentStatus.DELETED:
        logger.warning("%s callback for deleted payment %s", update.provider, payment.id)
        return None

    outcome = await apply_provider_update(db, payment, update)
    logger.info(
        "%s callback for payment %s: %s",
        update.provider,
        payment.id,
        outcome.status,
        extra={
            "extra_fields": {
                "payment_id": str(payment.id),
                "provider_status": update.provider_status,
                "result": outcome.status,
            }
        },
    )
    return outcome


@router.post("/stripe")
@webhook_limit
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Stripe webhook endpoint (no auth; verified by Stripe-Signature).
    """
    raw = await request.body()
    try:
        event = stripe_gateway.construct_event(raw, request.headers.get("stripe-signature"))
    except stripe_gateway.StripeConfigError:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook not configured",
        )
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature"
        )

    outcome = await _reconcile(db, stripe_gateway.translate_event(event))
    return {
        "received": True,
        "type": event.get("type"),
        "status": outcome.status if outcome else "ignored",
    }


@router.post("/nowpayments")
@webhook_limit
async def nowpayments_ipn(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """
    NOWPayments IPN endpoint. x-nowpayments-sig is required once
    NOWPAYMENTS_IPN_SECRET is configured.
    """
    raw = await request.body()
    secret = get_settings().NOWPAYMENTS_IPN_SECRET
    if secret:
        signature = request.headers.get("x-nowpayments-sig")
        if not nowpayments.verify_ipn_signature(raw, signature, secret):
            logger.warning("Rejected NOWPayments IPN with invalid signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
            )

    ipn = _parse_json(raw)
    order_id = ipn.get("order_id")
    if not order_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing order_id"
        )

    update = nowpayments.translate_ipn(ipn)
    if update.payment_id is None or await db.get(Payment, update.payment_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found"
        )

    outcome = await _reconcile(db, update)
    return {
        "success": True,
        "payment_id": ipn.get("payment_id"),
        "order_id": order_id,
        "status": outcome.status if outcome else "ignored",
        "message": outcome.message if outcome else "IPN processed",
    }


@router.get("/nowpayments")
async def nowpayments_ipn_status():
    return {
        "status": "active",
        "service": "nowpayments-ipn",
        "signature_required": bool(get_settings().NOWPAYMENTS_IPN_SECRET),
    }


@router.post("/paystack")
@webhook_limit
async def paystack_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Paystack webhook endpoint (no auth; verified by x-paystack-signature).
    """
    raw = await request.body()
    signature = request.headers.get("x-paystack-signature")
    if not paystack.verify_signature(raw, signature, get_settings().PAYSTACK_SECRET_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )

    event = _parse_json(raw)
    outcome = await _reconcile(db, paystack.translate_webhook(event))
    return {"received": True, "status": outcome.status if outcome else "ignored"}
