"""Client-facing payment initiation, verification and lookup."""

import uuid
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.rate_limit import payment_limit
from libs.db.session import get_async_db
from services.payments_service.models import (
    APPROVABLE_STATUSES,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
)
from services.payments_service.providers.paystack import (
    PaystackClient,
    PaystackError,
    get_paystack_client,
    translate_transaction,
)
from services.payments_service.providers.stripe_gateway import (
    StripeConfigError,
    create_checkout_session,
)
from services.payments_service.schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentLookupResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from services.payments_service.services.payment_links import require_active_link
from services.payments_service.services.reconciliation import (
    AMOUNT_TOLERANCE,
    apply_provider_update,
    get_request_or_404,
    next_payment_sequence,
    request_balance,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])
settings = get_settings()
logger = get_logger(__name__)

# Attempts at claiming the next payment_sequence under concurrent inserts
_SEQUENCE_ATTEMPTS = 3


def _paystack_reference(payment_id: uuid.UUID) -> str:
    return f"PAY-{payment_id.hex[:16].upper()}"


def _bank_details(payment: Payment) -> dict:
    return {
        "bank_name": settings.BANK_NAME,
        "account_number": settings.BANK_ACCOUNT_NUMBER,
        "account_name": settings.BANK_ACCOUNT_NAME,
        "amount": payment.amount,
        "currency": payment.currency,
        "narration": f"PAY-{str(payment.id)[:8].upper()}",
    }


async def _record_provider_error(
    db: AsyncSession, payment: Payment, provider: str, message: str
) -> HTTPException:
    payment.error_message = message
    payment.append_note(f"{provider} error: {message}")
    await db.commit()
    logger.error(
        "%s call failed for payment %s: %s",
        provider,
        payment.id,
        message,
        extra={"extra_fields": {"payment_id": str(payment.id), "provider": provider}},
    )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"{provider} is unavailable, please try again",
    )


@router.post("", response_model=CreatePaymentResponse, status_code=201)
@payment_limit
async def create_payment(
    request: Request,
    payload: CreatePaymentRequest,
    db: AsyncSession = Depends(get_async_db),
    paystack: PaystackClient = Depends(get_paystack_client),
):
    """
    Start a payment against a service request's active payment link.
    """
    service_request = await get_request_or_404(db, payload.request_id)
    require_active_link(service_request)

    balance = request_balance(service_request)
    if payload.payment_type == PaymentType.SPLIT:
        if payload.amount is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Split payments require an amount",
            )
        if balance is not None and payload.amount > balance + AMOUNT_TOLERANCE:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Split amount {payload.amount} exceeds balance due {balance}",
            )
        amount = payload.amount
    else:
        amount = payload.amount or balance
        if amount is None or amount <= 0:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Nothing is due on this request",
            )

    email = payload.email or service_request.client_email
    if payload.payment_method == PaymentMethod.PAYSTACK and not email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An email address is required for card payments",
        )

    payment = None
    for attempt in range(_SEQUENCE_ATTEMPTS):
        payment = Payment(
            request_id=service_request.id,
            payment_sequence=await next_payment_sequence(db, service_request.id),
            amount=round(amount, 2),
            currency=payload.currency,
            payment_method=payload.payment_method,
            payment_type=payload.payment_type,
            is_partial_payment=payload.payment_type == PaymentType.SPLIT,
            total_amount_due=service_request.estimated_cost,
            payment_status=PaymentStatus.PENDING,
        )
        db.add(payment)
        try:
            await db.commit()
            break
        except IntegrityError:
            await db.rollback()
            if attempt == _SEQUENCE_ATTEMPTS - 1:
                raise
    await db.refresh(payment)

    logger.info(
        "Created %s payment %s for request %s (%s %s)",
        payment.payment_method.value,
        payment.id,
        service_request.id,
        payment.amount,
        payment.currency,
    )

    response = CreatePaymentResponse(payment=payment)

    if payment.payment_method == PaymentMethod.PAYSTACK:
        reference = _paystack_reference(payment.id)
        try:
            initialized = await paystack.initialize_transaction(
                email=email,
                amount=payment.amount,
                currency=payment.currency,
                reference=reference,
                callback_url=(
                    f"{settings.FRONTEND_URL.rstrip('/')}/payment/verify?paymentId={payment.id}"
                ),
                metadata={
                    "paymentId": str(payment.id),
                    "requestId": str(service_request.id),
                    "paymentType": payment.payment_type.value,
                },
            )
        except PaystackError as e:
            raise await _record_provider_error(db, payment, "Paystack", e.message)
        payment.paystack_reference = initialized.reference
        await db.commit()
        await db.refresh(payment)
        response.payment = payment
        response.checkout_url = initialized.authorization_url
        response.next_step = "redirect"

    elif payment.payment_method == PaymentMethod.STRIPE:
        try:
            session = await create_checkout_session(
                payment_id=str(payment.id),
                request_id=str(service_request.id),
                payment_type=payment.payment_type.value,
                amount=payment.amount,
                currency=payment.currency,
                title=service_request.title,
                customer_email=email,
            )
        except (stripe.StripeError, StripeConfigError) as e:
            raise await _record_provider_error(db, payment, "Stripe", str(e))
        metadata = dict(payment.payment_metadata or {})
        metadata["stripe_checkout"] = {"session_id": session["id"]}
        payment.payment_metadata = metadata
        await db.commit()
        await db.refresh(payment)
        response.payment = payment
        response.checkout_url = session["url"]
        response.next_step = "redirect"

    elif payment.payment_method == PaymentMethod.BANK_TRANSFER:
        response.bank_details = _bank_details(payment)
        response.next_step = "bank_transfer"

    elif payment.payment_method == PaymentMethod.CRYPTO:
        response.next_step = "crypto"

    return response


@router.post("/verify", response_model=VerifyPaymentResponse)
@payment_limit
async def verify_payment(
    request: Request,
    payload: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_async_db),
    paystack: PaystackClient = Depends(get_paystack_client),
):
    """
    Verify a Paystack transaction synchronously after the checkout redirect.
    """
    if payload.payment_id:
        payment = await db.get(Payment, payload.payment_id)
    else:
        result = await db.execute(
            select(Payment).where(Payment.paystack_reference == payload.reference)
        )
        payment = result.scalar_one_or_none()
    if not payment or payment.payment_status == PaymentStatus.DELETED:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found"
        )

    if payment.payment_status == PaymentStatus.CONFIRMED:
        return VerifyPaymentResponse(
            success=True,
            status="already_confirmed",
            message="Payment already confirmed",
            payment=payment,
        )
    if payment.payment_status not in APPROVABLE_STATUSES:
        return VerifyPaymentResponse(
            success=False,
            status=payment.payment_status.value,
            message=f"Payment is {payment.payment_status.value}",
            payment=payment,
        )

    try:
        tx = await paystack.verify_transaction(payload.reference)
    except PaystackError as e:
        raise await _record_provider_error(db, payment, "Paystack", e.message)

    update = translate_transaction(tx, source="api_verification")
    if update.payment_id and update.payment_id != payment.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Transaction reference belongs to a different payment",
        )

    outcome = await apply_provider_update(db, payment, update)
    if outcome.status == "amount_mismatch":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=outcome.message
        )

    return VerifyPaymentResponse(
        success=outcome.status in ("confirmed", "already_confirmed"),
        status=outcome.status,
        message=outcome.message,
        payment=outcome.payment,
    )


@router.get("/verify", response_model=PaymentLookupResponse)
async def lookup_payment(
    reference: Optional[str] = None,
    payment_id: Optional[uuid.UUID] = None,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Look up a payment by Paystack reference or id, with its request summary.
    """
    if not reference and not payment_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide reference or payment_id",
        )

    query = select(Payment)
    if payment_id:
        query = query.where(Payment.id == payment_id)
    else:
        query = query.where(Payment.paystack_reference == reference)
    payment = (await db.execute(query)).scalar_one_or_none()
    if not payment or payment.payment_status == PaymentStatus.DELETED:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found"
        )

    service_request = await get_request_or_404(db, payment.request_id)
    return PaymentLookupResponse(payment=payment, service_request=service_request)
