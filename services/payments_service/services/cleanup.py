"""Scheduled sweeps over stale payment state.

Each sweep runs in its own transaction; a failure is recorded in
``errors`` and the remaining sweeps still run.
"""

from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.payments_service.models import (
    STALE_STATUSES,
    Payment,
    PaymentStatus,
    ServiceRequest,
)
from services.payments_service.services.notifications import notify_payment_expired
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def expire_pending_payments(db: AsyncSession, now: datetime) -> int:
    """Cancel pending payments older than the payment expiry window."""
    hours = get_settings().PAYMENT_EXPIRY_HOURS
    cutoff = now - timedelta(hours=hours)

    rows = (
        await db.execute(
            select(Payment, ServiceRequest)
            .outerjoin(ServiceRequest, ServiceRequest.id == Payment.request_id)
            .where(
                Payment.payment_status == PaymentStatus.PENDING,
                Payment.created_at < cutoff,
            )
        )
    ).all()
    if not rows:
        return 0

    note = f"Auto-cancelled after {hours}h timeout at {now.isoformat()}"
    result = await db.execute(
        update(Payment)
        .where(
            Payment.id.in_([payment.id for payment, _ in rows]),
            Payment.payment_status == PaymentStatus.PENDING,
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
    await db.commit()

    for payment, request in rows:
        await notify_payment_expired(payment, request)

    return result.rowcount or 0


async def clear_expired_links(db: AsyncSession, now: datetime) -> int:
    """Clear payment links that expired more than the link window ago."""
    cutoff = now - timedelta(hours=get_settings().PAYMENT_LINK_EXPIRY_HOURS)
    result = await db.execute(
        update(ServiceRequest)
        .where(
            ServiceRequest.payment_link_expiry.is_not(None),
            ServiceRequest.payment_link_expiry < cutoff,
        )
        .values(
            {
                ServiceRequest.payment_link_expiry: None,
                ServiceRequest.updated_at: now,
            }
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def delete_stale_payments(db: AsyncSession, now: datetime) -> int:
    """Hard-delete failed/cancelled/expired rows past the retention window."""
    cutoff = now - timedelta(days=get_settings().STALE_PAYMENT_RETENTION_DAYS)
    result = await db.execute(
        delete(Payment)
        .where(
            Payment.payment_status.in_(list(STALE_STATUSES)),
            Payment.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def run_cleanup(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    now = now or utc_now()
    results = {
        "timestamp": now.isoformat(),
        "expired_payments": 0,
        "expired_payment_links": 0,
        "deleted_stale_payments": 0,
        "errors": [],
    }

    try:
        results["expired_payments"] = await expire_pending_payments(db, now)
    except Exception as e:
        await db.rollback()
        logger.exception("Expired payment sweep failed")
        results["errors"].append(f"Payment cleanup: {e}")

    try:
        results["expired_payment_links"] = await clear_expired_links(db, now)
    except Exception as e:
        await db.rollback()
        logger.exception("Expired link sweep failed")
        results["errors"].append(f"Link cleanup: {e}")

    try:
        results["deleted_stale_payments"] = await delete_stale_payments(db, now)
    except Exception as e:
        await db.rollback()
        logger.warning("Stale payment sweep failed: %s", e)
        results["errors"].append(f"Stale payment cleanup: {e}")

    logger.info(
        "Payment cleanup complete",
        extra={"extra_fields": {k: v for k, v in results.items() if k != "timestamp"}},
    )

    summary = (
        f"Payment cleanup complete. Expired payments: {results['expired_payments']}. "
        f"Expired links: {results['expired_payment_links']}. "
        f"Stale payments deleted: {results['deleted_stale_payments']}. "
        f"Errors: {len(results['errors'])}."
    )
    return {
        "success": True,
        "message": "Automated payment cleanup completed",
        "results": results,
        "summary": summary,
    }
