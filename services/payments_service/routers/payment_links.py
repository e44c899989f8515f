"""Admin payment-link issue, status and deactivation."""

import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from libs.common.rate_limit import admin_limit
from libs.db.session import get_async_db
from services.payments_service.schemas import (
    DeactivateLinkRequest,
    IssueLinkRequest,
    ServiceRequestSummary,
)
from services.payments_service.services.audit import record_admin_action
from services.payments_service.services.payment_links import (
    deactivate_payment_link,
    get_link_status,
    issue_payment_link,
    payment_link_url,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin/payment-links", tags=["admin"])
logger = get_logger(__name__)


@router.post("/{request_id}")
@admin_limit
async def issue_link(
    request: Request,
    request_id: uuid.UUID,
    payload: Optional[IssueLinkRequest] = Body(default=None),
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Issue a payment link; ``hours`` sets a custom window for remaining-balance links.
    """
    hours = payload.hours if payload else None
    service_request = await issue_payment_link(db, request_id, hours=hours)
    await record_admin_action(
        db,
        admin=current_user,
        action="payment_link_issued",
        resource_type="service_request",
        resource_id=str(service_request.id),
        metadata={"expires_at": service_request.payment_link_expiry.isoformat()},
    )
    return {
        "success": True,
        "payment_link": payment_link_url(service_request),
        "expires_at": service_request.payment_link_expiry,
        "service_request": ServiceRequestSummary.model_validate(service_request),
    }


@router.patch("/{request_id}/deactivate")
@admin_limit
async def deactivate_link(
    request: Request,
    request_id: uuid.UUID,
    payload: DeactivateLinkRequest,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Expire an active link immediately and cancel its open payments.
    """
    result = await deactivate_payment_link(
        db, request_id, admin=current_user, reason=payload.reason
    )
    await record_admin_action(
        db,
        admin=current_user,
        action="payment_link_deactivated",
        resource_type="service_request",
        resource_id=str(request_id),
        metadata={
            "reason": result["reason"],
            "cancelled_payments": result["cancelled_payments"],
        },
    )
    return {"success": True, "message": "Payment link deactivated", **result}


@router.get("/{request_id}/deactivate")
async def link_status(
    request_id: uuid.UUID,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await get_link_status(db, request_id)
