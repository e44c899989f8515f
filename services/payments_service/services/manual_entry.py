"""Admin-recorded offline payments (bank transfer, cash, cheque)."""

from typing import Optional

from fastapi import HTTPException, status
from libs.auth.models import AuthUser
from libs.common.datetime_utils import as_utc, utc_now
from libs.common.logging import get_logger
from services.payments_service.models import (
    PaymentStatus,
    Payment,
    PaymentType,
    ServiceRequestStatus,
)
from services.payments_service.schemas import ManualPaymentRequest
from services.payments_service.services.reconciliation import (
    AMOUNT_TOLERANCE,
    apply_incremental_confirmation,
    confirm_payment,
    get_request_or_404,
    next_payment_sequence,
    request_balance,
)
from sqlalchemy import String, cast, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def find_duplicate_reference(
    db: AsyncSession, data: ManualPaymentRequest
) -> Optional[Payment]:
    """Best-effort match of the reference inside same-request, same-method metadata."""
    if not data.reference:
        return None
    result = await db.execute(
        select(Payment)
        .where(
            Payment.request_id == data.request_id,
            Payment.payment_method == data.payment_method,
            cast(Payment.payment_metadata, String).contains(
                data.reference.strip(), autoescape=True
            ),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def record_manual_payment(
    db: AsyncSession, data: ManualPaymentRequest, *, admin: AuthUser
) -> Payment:
    """Create an offline payment row.

    Verified entries are confirmed immediately and folded into the request
    totals incrementally.
    """
    request = await get_request_or_404(db, data.request_id)
    if request.status in (ServiceRequestStatus.CANCELLED, ServiceRequestStatus.REJECTED):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot record a payment for a {request.status.value} request",
        )

    duplicate = await find_duplicate_reference(db, data)
    if duplicate is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Reference '{data.reference}' already recorded on payment {duplicate.id}",
        )

    balance = request_balance(request)
    if (
        data.payment_type == PaymentType.SPLIT
        and balance is not None
        and data.amount > balance + AMOUNT_TOLERANCE
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Split amount {data.amount} exceeds balance due {balance}",
        )

    actor = admin.email or admin.sub
    now = utc_now()
    payment_date = as_utc(data.payment_date) or now
    note = f"Manual {data.payment_method.value} payment recorded by {actor}"
    if data.notes:
        note = f"{note}: {data.notes}"

    payment = Payment(
        request_id=request.id,
        payment_sequence=await next_payment_sequence(db, request.id),
        amount=round(data.amount, 2),
        currency=data.currency,
        payment_method=data.payment_method,
        payment_type=data.payment_type,
        is_partial_payment=data.payment_type == PaymentType.SPLIT,
        total_amount_due=request.estimated_cost,
        payment_status=(
            PaymentStatus.COMPLETED if data.admin_verified else PaymentStatus.PENDING
        ),
        manual_entry=True,
        admin_verified=data.admin_verified,
        admin_notes=note,
        payment_metadata={
            "manual_entry": {
                "reference": data.reference,
                "payment_date": payment_date.isoformat(),
                "recorded_by": actor,
                "recorded_at": now.isoformat(),
                "notes": data.notes,
            }
        },
    )
    db.add(payment)
    await db.commit()
    await db.refresh(payment)
    logger.info(
        "Recorded manual payment %s for request %s (%s %s, verified=%s)",
        payment.id,
        request.id,
        payment.amount,
        payment.currency,
        data.admin_verified,
    )

    if data.admin_verified:
        won = await confirm_payment(
            db,
            payment,
            confirmed_by=actor,
            allowed_from=[PaymentStatus.COMPLETED],
            propagate=False,
        )
        if won:
            updated = await apply_incremental_confirmation(
                db, request.id, payment.amount, payment.payment_type
            )
            if updated is None:
                await db.refresh(payment)

    return payment
