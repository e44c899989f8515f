"""Background jobs for the payments service."""

from __future__ import annotations

from datetime import timedelta

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.session import session_scope
from services.payments_service.models import Payment, PaymentMethod, PaymentStatus
from services.payments_service.providers.paystack import (
    PaystackClient,
    PaystackError,
    translate_transaction,
)
from services.payments_service.services.cleanup import run_cleanup
from services.payments_service.services.reconciliation import apply_provider_update
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Leave fresh checkouts alone; the client's own verify call usually lands first.
PENDING_GRACE_MINUTES = 2
RECONCILE_BATCH_SIZE = 200


async def reconcile_pending_paystack_payments(
    db: AsyncSession | None = None, client: PaystackClient | None = None
) -> int:
    """Re-verify stale pending Paystack payments through the adapter.

    Returns how many payments changed state.
    """
    if db is None:
        async with session_scope() as session:
            return await reconcile_pending_paystack_payments(session, client)

    client = client or PaystackClient()
    cutoff = utc_now() - timedelta(minutes=PENDING_GRACE_MINUTES)
    result = await db.execute(
        select(Payment)
        .where(
            Payment.payment_status == PaymentStatus.PENDING,
            Payment.payment_method == PaymentMethod.PAYSTACK,
            Payment.paystack_reference.is_not(None),
            Payment.created_at <= cutoff,
        )
        .order_by(Payment.created_at.asc())
        .limit(RECONCILE_BATCH_SIZE)
    )
    pending = list(result.scalars().all())

    changed = 0
    for payment in pending:
        try:
            tx = await client.verify_transaction(payment.paystack_reference)
        except PaystackError as exc:
            logger.warning(
                "Pending payment verify failed for %s: %s",
                payment.paystack_reference,
                exc.message,
            )
            continue

        update = translate_transaction(tx, source="api_verification")
        outcome = await apply_provider_update(db, payment, update)
        if outcome.status in ("confirmed", "failed"):
            changed += 1

    if changed:
        logger.info("Reconciled %d pending Paystack payments", changed)
    return changed


async def cleanup_payments() -> dict:
    async with session_scope() as db:
        return await run_cleanup(db)
