"""Admin back-office payment operations."""

import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from libs.common.rate_limit import admin_limit
from libs.db.session import get_async_db
from services.payments_service.models import (
    APPROVABLE_STATUSES,
    DELETABLE_STATUSES,
    Payment,
    PaymentStatus,
)
from services.payments_service.schemas import (
    ApprovePaymentRequest,
    CancelPaymentRequest,
    ManualPaymentRequest,
    PaymentResponse,
)
from services.payments_service.services import reconciliation
from services.payments_service.services.audit import record_admin_action
from services.payments_service.services.manual_entry import record_manual_payment
from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin/payments", tags=["admin"])
logger = get_logger(__name__)


def _sorted_values(statuses) -> list[str]:
    return sorted(s.value for s in statuses)


@router.get("", response_model=list[PaymentResponse])
async def list_payments(
    request_id: Optional[uuid.UUID] = None,
    payment_status: Optional[PaymentStatus] = Query(default=None, alias="status"),
    include_deleted: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """
    List payments, newest first. Soft-deleted rows are hidden unless asked for.
    """
    query = select(Payment)
    if request_id:
        query = query.where(Payment.request_id == request_id)
    if payment_status:
        query = query.where(Payment.payment_status == payment_status)
    elif not include_deleted:
        query = query.where(Payment.payment_status != PaymentStatus.DELETED)
    query = query.order_by(desc(Payment.created_at)).offset(offset).limit(limit)

    result = await db.execute(query)
    return result.scalars().all()


@router.get("/stats")
async def payment_stats(
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Payment counts by status and method, and confirmed revenue by currency.
    """
    by_status = await db.execute(
        select(Payment.payment_status, func.count(Payment.id)).group_by(
            Payment.payment_status
        )
    )
    by_method = await db.execute(
        select(Payment.payment_method, func.count(Payment.id))
        .where(Payment.payment_status != PaymentStatus.DELETED)
        .group_by(Payment.payment_method)
    )
    revenue = await db.execute(
        select(Payment.currency, func.sum(Payment.amount), func.count(Payment.id))
        .where(Payment.payment_status == PaymentStatus.CONFIRMED)
        .group_by(Payment.currency)
    )

    status_counts = {s.value: n for s, n in by_status.all()}
    return {
        "total": sum(status_counts.values()),
        "by_status": status_counts,
        "by_method": {m.value: n for m, n in by_method.all()},
        "revenue": {
            currency: {"amount": round(total or 0.0, 2), "count": count}
            for currency, total, count in revenue.all()
        },
    }


@router.post("/manual", response_model=PaymentResponse, status_code=201)
@admin_limit
async def create_manual_payment(
    request: Request,
    payload: ManualPaymentRequest,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Record an offline payment (bank transfer, cash, cheque).
    """
    payment = await record_manual_payment(db, payload, admin=current_user)
    await record_admin_action(
        db,
        admin=current_user,
        action="manual_payment_recorded",
        resource_type="payment",
        resource_id=str(payment.id),
        metadata={
            "request_id": str(payment.request_id),
            "amount": payment.amount,
            "currency": payment.currency,
            "payment_method": payment.payment_method.value,
            "admin_verified": payment.admin_verified,
            "reference": payload.reference,
        },
    )
    return payment


@router.post("/{payment_id}/approve", response_model=PaymentResponse)
@admin_limit
async def approve_payment(
    request: Request,
    payment_id: uuid.UUID,
    payload: Optional[ApprovePaymentRequest] = Body(default=None),
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Confirm a payment by hand. Only success, completed, pending or processing
    payments qualify.
    """
    notes = payload.notes if payload else None
    payment = await reconciliation.approve_payment(
        db, payment_id, admin=current_user, notes=notes
    )
    await record_admin_action(
        db,
        admin=current_user,
        action="payment_approved",
        resource_type="payment",
        resource_id=str(payment.id),
        metadata={"amount": payment.amount, "currency": payment.currency, "notes": notes},
    )
    return payment


@router.get("/{payment_id}/approve")
async def check_approvable(
    payment_id: uuid.UUID,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    payment = await reconciliation.get_payment_or_404(db, payment_id)
    return {
        "payment_id": str(payment.id),
        "current_status": payment.payment_status.value,
        "can_approve": payment.payment_status in APPROVABLE_STATUSES,
        "approvable_statuses": _sorted_values(APPROVABLE_STATUSES),
        "amount": payment.amount,
        "currency": payment.currency,
    }


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
@admin_limit
async def cancel_payment(
    request: Request,
    payment_id: uuid.UUID,
    payload: Optional[CancelPaymentRequest] = Body(default=None),
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Cancel a pending or processing payment.
    """
    reason = payload.reason if payload else None
    payment = await reconciliation.cancel_payment(
        db, payment_id, admin=current_user, reason=reason
    )
    await record_admin_action(
        db,
        admin=current_user,
        action="payment_cancelled",
        resource_type="payment",
        resource_id=str(payment.id),
        metadata={"reason": reason},
    )
    return payment


@router.delete("/{payment_id}/delete", status_code=status.HTTP_200_OK)
@admin_limit
async def delete_payment(
    request: Request,
    payment_id: uuid.UUID,
    permanent: bool = False,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Soft-delete a payment, or with ``permanent=true`` remove it and its audit
    trail. Confirmed payments cannot be deleted.
    """
    result = await reconciliation.delete_payment(
        db, payment_id, admin=current_user, permanent=permanent
    )
    if not permanent:
        await record_admin_action(
            db,
            admin=current_user,
            action="payment_deleted",
            resource_type="payment",
            resource_id=str(payment_id),
            metadata={"original_status": result["original_status"]},
        )
    message = "Payment permanently deleted" if permanent else "Payment deleted"
    return {"success": True, "message": message, **result}


@router.get("/{payment_id}/delete")
async def check_deletable(
    payment_id: uuid.UUID,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    payment = await reconciliation.get_payment_or_404(db, payment_id)
    return {
        "payment_id": str(payment.id),
        "current_status": payment.payment_status.value,
        "can_delete": payment.payment_status in DELETABLE_STATUSES,
        "deletable_statuses": _sorted_values(DELETABLE_STATUSES),
        "is_deleted": payment.payment_status == PaymentStatus.DELETED,
    }
