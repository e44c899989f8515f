"""Time-boxed payment links on service requests.

A link is active while ``payment_link_expiry`` is set and in the future,
expired once it has passed, and absent when null.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, status
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.datetime_utils import as_utc, utc_now
from libs.common.logging import get_logger
from services.payments_service.models import (
    OPEN_STATUSES,
    Payment,
    PaymentStatus,
    ServiceRequest,
    ServiceRequestStatus,
)
from services.payments_service.services.reconciliation import get_request_or_404
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

LINK_NONE = "none"
LINK_ACTIVE = "active"
LINK_EXPIRED = "expired"

CLOSED_REQUEST_STATUSES = frozenset(
    {ServiceRequestStatus.CANCELLED, ServiceRequestStatus.REJECTED}
)


def link_state(request: ServiceRequest, now: Optional[datetime] = None) -> str:
    expiry = as_utc(request.payment_link_expiry)
    if expiry is None:
        return LINK_NONE
    now = now or utc_now()
    return LINK_ACTIVE if now < expiry else LINK_EXPIRED


def payment_link_url(request: ServiceRequest) -> str:
    return f"{get_settings().FRONTEND_URL.rstrip('/')}/pay/{request.id}"


def require_active_link(request: ServiceRequest) -> None:
    state = link_state(request)
    if state == LINK_NONE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No payment link has been issued for this request",
        )
    if state == LINK_EXPIRED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment link has expired",
        )


async def issue_payment_link(
    db: AsyncSession, request_id: uuid.UUID, *, hours: Optional[float] = None
) -> ServiceRequest:
    """Open (or re-open) the payment window.

    ``hours`` overrides the default window, used for remaining-balance links.
    """
    request = await get_request_or_404(db, request_id)

    if request.status in CLOSED_REQUEST_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot issue a payment link for a {request.status.value} request",
        )
    if request.estimated_cost is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Service request has no estimated cost",
        )
    if (request.total_paid or 0) > 0 and request.balance_due == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Service request is already paid in full",
        )

    window = hours if hours is not None else get_settings().PAYMENT_LINK_EXPIRY_HOURS
    now = utc_now()
    request.payment_link_expiry = now + timedelta(hours=window)
    request.payment_link_sent_at = now
    if request.balance_due is None:
        request.balance_due = round(request.estimated_cost - (request.total_paid or 0), 2)
    if request.status == ServiceRequestStatus.PENDING:
        request.status = ServiceRequestStatus.APPROVED

    await db.commit()
    await db.refresh(request)
    logger.info(
        "Issued payment link for request %s, expires %s",
        request.id,
        request.payment_link_expiry,
    )
    return request


async def count_open_payments(db: AsyncSession, request_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(Payment.id)).where(
            Payment.request_id == request_id,
            Payment.payment_status.in_(list(OPEN_STATUSES)),
        )
    )
    return result.scalar() or 0


async def get_link_status(db: AsyncSession, request_id: uuid.UUID) -> dict:
    request = await get_request_or_404(db, request_id)
    now = utc_now()
    state = link_state(request, now)
    expiry = as_utc(request.payment_link_expiry)

    return {
        "request_id": str(request.id),
        "has_link": state != LINK_NONE,
        "is_active": state == LINK_ACTIVE,
        "is_expired": state == LINK_EXPIRED,
        "expires_at": expiry.isoformat() if expiry else None,
        "pending_payments": await count_open_payments(db, request.id),
        "time_until_expiry": (
            int((expiry - now).total_seconds()) if state == LINK_ACTIVE else 0
        ),
        "can_deactivate": state == LINK_ACTIVE,
    }


async def deactivate_payment_link(
    db: AsyncSession,
    request_id: uuid.UUID,
    *,
    admin: AuthUser,
    reason: Optional[str] = None,
) -> dict:
    """Expire an active link now and cancel the request's open payments."""
    request = await get_request_or_404(db, request_id)
    state = link_state(request)
    if state == LINK_NONE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No payment link exists for this request",
        )
    if state == LINK_EXPIRED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment link has already expired",
        )

    actor = admin.email or admin.sub
    reason = reason or "manual_deactivation"
    now = utc_now()
    note = (
        f"Payment cancelled due to link deactivation by {actor}. Reason: {reason}"
    )

    request.payment_link_expiry = now
    result = await db.execute(
        update(Payment)
        .where(
            Payment.request_id == request.id,
            Payment.payment_status.in_(list(OPEN_STATUSES)),
        )
        .values(
            {
                Payment.payment_status: PaymentStatus.CANCELLED,
                Payment.admin_notes: func.coalesce(Payment.admin_notes + "\n", "") + note,
                Payment.updated_at: now,
            }
        )
        .execution_options(synchronize_session=False)
    )
    cancelled = result.rowcount or 0
    await db.commit()
    await db.refresh(request)

    logger.info(
        "Payment link for request %s deactivated by %s, %d payments cancelled",
        request.id,
        actor,
        cancelled,
    )
    return {
        "request_id": str(request.id),
        "deactivated_at": now.isoformat(),
        "deactivated_by": actor,
        "reason": reason,
        "cancelled_payments": cancelled,
    }
