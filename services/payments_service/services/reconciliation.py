"""Payment reconciliation: the only place payment_status changes.

Confirmation uses a conditional UPDATE so two concurrent confirms for the
same payment cannot both win. Service-request totals are then recomputed from
the full set of confirmed payments in a separate transaction; a failure there
is logged and never undoes the confirmation.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from fastapi import HTTPException, status
from libs.auth.models import AuthUser
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.payments_service.models import (
    APPROVABLE_STATUSES,
    DELETABLE_STATUSES,
    OPEN_STATUSES,
    AdminAuditLog,
    PartialPaymentStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    ServiceRequest,
    ServiceRequestStatus,
    append_note,
)
from services.payments_service.providers.base import ProviderOutcome, ProviderUpdate
from services.payments_service.services.notifications import notify_payment_confirmed
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

AMOUNT_TOLERANCE = 0.01
AUTO_CONFIRM_MIN_CONFIRMATIONS = 6

# Statuses a provider failure may overwrite.
FAILABLE_STATUSES = frozenset(
    {
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        PaymentStatus.SUCCESS,
        PaymentStatus.COMPLETED,
    }
)

# Forward order of request statuses driven by payments.
# Cancelled and rejected are outside the order and never overwritten.
_REQUEST_STATUS_RANK = {
    ServiceRequestStatus.PENDING: 0,
    ServiceRequestStatus.APPROVED: 1,
    ServiceRequestStatus.PARTIALLY_PAID: 2,
    ServiceRequestStatus.PAID: 3,
    ServiceRequestStatus.PAID_IN_FULL: 3,
    ServiceRequestStatus.CONFIRMED: 4,
    ServiceRequestStatus.IN_PROGRESS: 5,
    ServiceRequestStatus.COMPLETED: 6,
}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentTotals:
    total_paid: float
    balance_due: Optional[float]
    partial_payment_status: PartialPaymentStatus


def compute_payment_totals(
    estimated_cost: Optional[float], confirmed_amounts: Iterable[float]
) -> PaymentTotals:
    """Derive totals from the amounts of all confirmed payments."""
    total_paid = round(sum(confirmed_amounts), 2)

    if estimated_cost is None:
        balance_due = None
    else:
        balance_due = round(max(0.0, estimated_cost - total_paid), 2)

    if total_paid == 0:
        partial = PartialPaymentStatus.NONE
    elif balance_due == 0:
        partial = PartialPaymentStatus.COMPLETED
    else:
        partial = PartialPaymentStatus.FIRST_PAID

    return PaymentTotals(total_paid, balance_due, partial)


def derive_request_status(
    confirmed_types: Iterable[PaymentType],
) -> Optional[ServiceRequestStatus]:
    """Payment-driven request status, or None when nothing is confirmed.

    A lone split payment leaves the request partially paid even when it
    covers the whole balance.
    """
    types = list(confirmed_types)
    if not types:
        return None
    if PaymentType.FULL in types:
        return ServiceRequestStatus.PAID
    if len(types) >= 2:
        return ServiceRequestStatus.PAID
    return ServiceRequestStatus.PARTIALLY_PAID


def advance_request_status(
    current: ServiceRequestStatus, target: Optional[ServiceRequestStatus]
) -> ServiceRequestStatus:
    """Move forward only; never overwrite an explicit cancellation."""
    if target is None:
        return current
    if current in (ServiceRequestStatus.CANCELLED, ServiceRequestStatus.REJECTED):
        return current
    if _REQUEST_STATUS_RANK.get(target, 0) > _REQUEST_STATUS_RANK.get(current, 0):
        return target
    return current


def amounts_match(expected: float, received: float) -> bool:
    return round(abs(expected - received), 2) <= AMOUNT_TOLERANCE


def request_balance(request: ServiceRequest) -> Optional[float]:
    if request.balance_due is not None:
        return request.balance_due
    if request.estimated_cost is None:
        return None
    return round(max(0.0, request.estimated_cost - (request.total_paid or 0.0)), 2)


def _apply_totals(request: ServiceRequest, totals: PaymentTotals) -> None:
    request.total_paid = totals.total_paid
    request.balance_due = totals.balance_due
    request.partial_payment_status = totals.partial_payment_status


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_payment_or_404(db: AsyncSession, payment_id: uuid.UUID) -> Payment:
    payment = await db.get(Payment, payment_id)
    if not payment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found"
        )
    return payment


async def get_request_or_404(db: AsyncSession, request_id: uuid.UUID) -> ServiceRequest:
    request = await db.get(ServiceRequest, request_id)
    if not request:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Service request not found"
        )
    return request


async def next_payment_sequence(db: AsyncSession, request_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.max(Payment.payment_sequence)).where(
            Payment.request_id == request_id
        )
    )
    return (result.scalar() or 0) + 1


async def ensure_hash_available(
    db: AsyncSession, tx_hash: str, payment_id: uuid.UUID
) -> None:
    """Reject a transaction hash already attached to a different payment."""
    result = await db.execute(
        select(Payment.id).where(
            Payment.crypto_transaction_hash == tx_hash, Payment.id != payment_id
        )
    )
    if result.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Transaction hash already used for another payment",
        )


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------


async def recompute_request_totals(
    db: AsyncSession, request_id: uuid.UUID
) -> ServiceRequest:
    """Rebuild totals and status from every confirmed payment. Idempotent."""
    request = await get_request_or_404(db, request_id)
    await db.refresh(request)

    rows = (
        await db.execute(
            select(Payment.amount, Payment.payment_type).where(
                Payment.request_id == request_id,
                Payment.payment_status == PaymentStatus.CONFIRMED,
            )
        )
    ).all()

    totals = compute_payment_totals(request.estimated_cost, [r.amount for r in rows])
    _apply_totals(request, totals)

    target = derive_request_status([r.payment_type for r in rows])
    new_status = advance_request_status(request.status, target)
    if new_status != request.status:
        logger.info(
            "Service request %s status %s -> %s",
            request.id,
            request.status.value,
            new_status.value,
        )
        request.status = new_status
    if target is not None and request.payment_confirmed_at is None:
        request.payment_confirmed_at = utc_now()

    await db.commit()
    await db.refresh(request)
    return request


async def propagate_confirmation(
    db: AsyncSession, request_id: uuid.UUID
) -> Optional[ServiceRequest]:
    """Recompute totals after a committed confirmation.

    Failures are logged and leave the confirmation in place.
    """
    try:
        return await recompute_request_totals(db, request_id)
    except Exception:
        await db.rollback()
        logger.exception(
            "Failed to propagate confirmation to service request %s", request_id
        )
        return None


async def apply_incremental_confirmation(
    db: AsyncSession, request_id: uuid.UUID, amount: float, payment_type: PaymentType
) -> Optional[ServiceRequest]:
    """Fold one newly confirmed payment into the stored totals.

    Lands on the same values as recompute_request_totals when the stored
    totals were consistent beforehand.
    """
    try:
        request = await get_request_or_404(db, request_id)
        await db.refresh(request)
        previous_total = request.total_paid or 0.0

        totals = compute_payment_totals(request.estimated_cost, [previous_total, amount])
        _apply_totals(request, totals)

        if payment_type == PaymentType.FULL or previous_total > 0:
            target = ServiceRequestStatus.PAID
        else:
            target = ServiceRequestStatus.PARTIALLY_PAID
        request.status = advance_request_status(request.status, target)
        if request.payment_confirmed_at is None:
            request.payment_confirmed_at = utc_now()

        await db.commit()
        await db.refresh(request)
        return request
    except Exception:
        await db.rollback()
        logger.exception(
            "Failed to apply incremental totals to service request %s", request_id
        )
        return None


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _values(fields: dict[str, Any]) -> dict:
    return {getattr(Payment, name): value for name, value in fields.items()}


async def _conditional_update(
    db: AsyncSession,
    payment: Payment,
    allowed_from: Iterable[PaymentStatus] | None,
    fields: dict[str, Any],
) -> bool:
    """UPDATE the payment only while its status is still eligible.

    Returns False when another writer got there first.
    """
    stmt = update(Payment).where(Payment.id == payment.id)
    if allowed_from is None:
        stmt = stmt.where(Payment.payment_status != PaymentStatus.CONFIRMED)
    else:
        stmt = stmt.where(Payment.payment_status.in_(list(allowed_from)))
    fields = {**fields, "updated_at": utc_now()}
    result = await db.execute(
        stmt.values(_values(fields)).execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        await db.refresh(payment)
        return False
    await db.commit()
    await db.refresh(payment)
    return True


async def confirm_payment(
    db: AsyncSession,
    payment: Payment,
    *,
    confirmed_by: str,
    note: Optional[str] = None,
    allowed_from: Iterable[PaymentStatus] | None = None,
    propagate: bool = True,
    **fields: Any,
) -> bool:
    """Transition a payment into CONFIRMED.

    ``allowed_from`` narrows the source statuses; by default anything but
    CONFIRMED. Returns False if the payment was already confirmed (or left
    the allowed set) by the time the UPDATE ran.
    """
    values = {
        "payment_status": PaymentStatus.CONFIRMED,
        "confirmed_at": utc_now(),
        "confirmed_by": confirmed_by,
        "error_message": None,
        **fields,
    }
    if note:
        values["admin_notes"] = append_note(payment.admin_notes, note)

    won = await _conditional_update(db, payment, allowed_from, values)
    if not won:
        logger.info("Payment %s already confirmed, skipping", payment.id)
        return False

    logger.info(
        "Payment %s confirmed by %s (amount=%s %s)",
        payment.id,
        confirmed_by,
        payment.amount,
        payment.currency,
    )
    if propagate:
        request = await propagate_confirmation(db, payment.request_id)
        if request is None:
            # The rollback expired every loaded instance
            await db.refresh(payment)
        else:
            await notify_payment_confirmed(payment, request)
    return True


def _merged_metadata(payment: Payment, key: Optional[str], raw: dict) -> Optional[dict]:
    metadata = dict(payment.payment_metadata or {})
    if key:
        metadata[key] = {**raw, "received_at": utc_now().isoformat()}
    return metadata


@dataclass
class ReconcileResult:
    payment: Payment
    status: str
    changed: bool
    message: str


async def apply_provider_update(
    db: AsyncSession, payment: Payment, update_: ProviderUpdate
) -> ReconcileResult:
    """Apply a normalized provider report to a payment.

    Re-delivery for a confirmed payment is a successful no-op. Failed,
    cancelled, expired and deleted payments are closed to providers.
    """
    if payment.payment_status == PaymentStatus.CONFIRMED:
        return ReconcileResult(payment, "already_confirmed", False, "Payment already confirmed")
    if payment.payment_status not in APPROVABLE_STATUSES:
        logger.warning(
            "Ignoring %s %s report for %s payment %s",
            update_.provider,
            update_.provider_status,
            payment.payment_status.value,
            payment.id,
        )
        return ReconcileResult(
            payment, payment.payment_status.value, False, "Payment is closed"
        )

    outcome = update_.outcome
    metadata = _merged_metadata(payment, update_.metadata_key, update_.raw)

    if outcome == ProviderOutcome.CONFIRMED:
        if (
            update_.amount is not None
            and (update_.currency is None or update_.currency.upper() == payment.currency.upper())
            and not amounts_match(payment.amount, update_.amount)
        ):
            message = (
                f"Amount mismatch: expected {payment.amount} {payment.currency}, "
                f"provider reported {update_.amount}"
            )
            logger.warning("Payment %s: %s", payment.id, message)
            payment.error_message = message
            payment.payment_metadata = metadata
            payment.append_note(f"{update_.provider}: {message}")
            await db.commit()
            await db.refresh(payment)
            return ReconcileResult(payment, "amount_mismatch", False, message)

        tx_hash = update_.provenance.get("crypto_transaction_hash")
        if tx_hash:
            await ensure_hash_available(db, tx_hash, payment.id)

        won = await confirm_payment(
            db,
            payment,
            confirmed_by=update_.confirmed_by,
            note=update_.note,
            allowed_from=APPROVABLE_STATUSES,
            payment_metadata=metadata,
            **update_.provenance,
        )
        if not won:
            return ReconcileResult(payment, "already_confirmed", False, "Payment already confirmed")
        return ReconcileResult(payment, "confirmed", True, "Payment confirmed")

    if outcome == ProviderOutcome.FAILED:
        fields = {
            "payment_status": PaymentStatus.FAILED,
            "error_message": update_.error_message or f"{update_.provider} reported {update_.provider_status}",
            "payment_metadata": metadata,
            **update_.provenance,
        }
        if update_.note:
            fields["admin_notes"] = append_note(payment.admin_notes, update_.note)
        if await _conditional_update(db, payment, FAILABLE_STATUSES, fields):
            logger.info("Payment %s failed via %s", payment.id, update_.provider)
            return ReconcileResult(payment, "failed", True, fields["error_message"])
        return ReconcileResult(payment, payment.payment_status.value, False, "Payment not in a failable state")

    if outcome in (ProviderOutcome.PROCESSING, ProviderOutcome.PENDING):
        target = (
            PaymentStatus.PROCESSING
            if outcome == ProviderOutcome.PROCESSING
            else payment.payment_status
        )
        tx_hash = update_.provenance.get("crypto_transaction_hash")
        if tx_hash:
            await ensure_hash_available(db, tx_hash, payment.id)

        fields = {"payment_status": target, "payment_metadata": metadata, **update_.provenance}
        if update_.error_message:
            fields["error_message"] = update_.error_message
        if update_.note:
            fields["admin_notes"] = append_note(payment.admin_notes, update_.note)
        if await _conditional_update(db, payment, OPEN_STATUSES, fields):
            return ReconcileResult(payment, target.value, True, f"Payment {target.value}")
        return ReconcileResult(payment, payment.payment_status.value, False, "Payment is closed")

    return ReconcileResult(payment, payment.payment_status.value, False, "Event ignored")


async def record_crypto_submission(
    db: AsyncSession,
    payment: Payment,
    *,
    tx_hash: str,
    network: str,
    amount_received: float,
    confirmations: int,
    verification: dict,
    expected_amount: Optional[float] = None,
) -> ReconcileResult:
    """Move a payment to PROCESSING with its on-chain proof attached.

    Auto-confirms when the chain is deep enough and the amount matches.
    """
    expected = expected_amount if expected_amount is not None else payment.amount
    await ensure_hash_available(db, tx_hash, payment.id)

    metadata = dict(payment.payment_metadata or {})
    metadata["crypto_verification"] = {
        **verification,
        "verified_at": utc_now().isoformat(),
    }
    fields = {
        "payment_status": PaymentStatus.PROCESSING,
        "crypto_transaction_hash": tx_hash,
        "crypto_network": network,
        "payment_metadata": metadata,
        "admin_notes": append_note(
            payment.admin_notes,
            f"Crypto transaction submitted: {tx_hash}. Amount: {amount_received}. "
            "Awaiting admin verification.",
        ),
    }
    try:
        moved = await _conditional_update(db, payment, OPEN_STATUSES, fields)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Transaction hash already used for another payment",
        )
    if not moved:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Payment status is {payment.payment_status.value}, cannot attach a transaction",
        )

    if (
        confirmations >= AUTO_CONFIRM_MIN_CONFIRMATIONS
        and abs(expected - amount_received) < AMOUNT_TOLERANCE
    ):
        won = await confirm_payment(
            db,
            payment,
            confirmed_by="crypto_auto_verification",
            note=f"Auto-confirmed crypto payment. TX: {tx_hash}, Amount: {amount_received}",
            allowed_from=APPROVABLE_STATUSES,
        )
        if won:
            return ReconcileResult(payment, "confirmed", True, "Payment confirmed automatically")

    return ReconcileResult(
        payment, "pending_verification", True, "Payment submitted for verification"
    )


async def approve_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    *,
    admin: AuthUser,
    notes: Optional[str] = None,
) -> Payment:
    """Admin approval into CONFIRMED."""
    payment = await get_payment_or_404(db, payment_id)

    if payment.payment_status == PaymentStatus.CONFIRMED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment is already confirmed",
        )
    if payment.payment_status not in APPROVABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot approve payment with status '{payment.payment_status.value}'",
        )

    approver = admin.email or admin.sub
    note = f"Approved by {approver} on {utc_now().isoformat()}"
    if notes:
        note = f"{note}: {notes}"

    won = await confirm_payment(
        db,
        payment,
        confirmed_by=approver,
        note=note,
        allowed_from=APPROVABLE_STATUSES,
        admin_verified=True,
    )
    if not won:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment is already confirmed",
        )
    return payment


async def cancel_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    *,
    admin: AuthUser,
    reason: Optional[str] = None,
) -> Payment:
    payment = await get_payment_or_404(db, payment_id)
    if payment.payment_status not in OPEN_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot cancel payment with status '{payment.payment_status.value}'",
        )

    actor = admin.email or admin.sub
    reason = reason or "admin_cancellation"
    metadata = dict(payment.payment_metadata or {})
    metadata["cancellation"] = {
        "cancelled_by": actor,
        "reason": reason,
        "cancelled_at": utc_now().isoformat(),
    }
    fields = {
        "payment_status": PaymentStatus.CANCELLED,
        "payment_metadata": metadata,
        "admin_notes": append_note(
            payment.admin_notes, f"Cancelled by {actor}. Reason: {reason}"
        ),
    }
    if not await _conditional_update(db, payment, OPEN_STATUSES, fields):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot cancel payment with status '{payment.payment_status.value}'",
        )
    logger.info("Payment %s cancelled by %s", payment.id, actor)
    return payment


async def delete_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    *,
    admin: AuthUser,
    permanent: bool = False,
) -> dict:
    """Soft delete (status DELETED) or purge a payment and its audit rows."""
    payment = await get_payment_or_404(db, payment_id)
    original_status = payment.payment_status

    if original_status not in DELETABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Cannot delete payment with status '{original_status.value}'. "
                "Only failed, cancelled, pending or processing payments can be deleted."
            ),
        )

    actor = admin.email or admin.sub
    now = utc_now()

    if permanent:
        await db.execute(
            delete(AdminAuditLog).where(
                AdminAuditLog.resource_type == "payment",
                AdminAuditLog.resource_id == str(payment.id),
            )
        )
        result = await db.execute(
            delete(Payment).where(
                Payment.id == payment.id,
                Payment.payment_status.in_(list(DELETABLE_STATUSES)),
            )
        )
        if result.rowcount == 0:
            await db.rollback()
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Payment changed status and can no longer be deleted",
            )
        await db.commit()
        logger.warning("Payment %s permanently deleted by %s", payment_id, actor)
    else:
        fields = {
            "payment_status": PaymentStatus.DELETED,
            "deleted_at": now,
            "deleted_by": actor,
            "admin_notes": append_note(
                payment.admin_notes,
                f"Payment deleted by admin {actor} on {now.isoformat()}. "
                f"Original status: {original_status.value}",
            ),
        }
        if not await _conditional_update(db, payment, DELETABLE_STATUSES, fields):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Payment changed status and can no longer be deleted",
            )
        logger.info("Payment %s soft-deleted by %s", payment_id, actor)

    return {
        "payment_id": str(payment_id),
        "original_status": original_status.value,
        "permanent": permanent,
        "deleted_at": now.isoformat(),
        "deleted_by": actor,
    }
