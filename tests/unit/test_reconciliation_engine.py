"""Unit tests for the reconciliation engine against a real database session.

Tests call the service functions directly with the db_session fixture.
No HTTP layer involved.
"""

import pytest
from fastapi import HTTPException
from services.payments_service.models import (
    AdminAuditLog,
    PartialPaymentStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    ServiceRequest,
    ServiceRequestStatus,
)
from services.payments_service.providers.base import ProviderOutcome, ProviderUpdate
from services.payments_service.schemas import ManualPaymentRequest
from services.payments_service.services import reconciliation
from services.payments_service.services.manual_entry import record_manual_payment
from sqlalchemy import func, select
from tests.factories import PaymentFactory, ServiceRequestFactory

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _seed(db, cost=1000.0, **request_overrides):
    request = ServiceRequestFactory.create(estimated_cost=cost, **request_overrides)
    db.add(request)
    await db.commit()
    return request


async def _add_payment(db, request, **overrides):
    payment = PaymentFactory.create(request, **overrides)
    db.add(payment)
    await db.commit()
    await db.refresh(payment)
    return payment


async def _reload(db, model, id_):
    return await db.get(model, id_, populate_existing=True)


def _confirmed_update(amount, currency="NGN", **kwargs):
    return ProviderUpdate(
        provider="paystack",
        outcome=ProviderOutcome.CONFIRMED,
        provider_status="success",
        amount=amount,
        currency=currency,
        metadata_key="paystack_data",
        raw={"status": "success"},
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_split_payments_complete_the_request(db_session):
    request = await _seed(db_session, cost=1000.0)
    first = await _add_payment(
        db_session, request, amount=400.0, payment_type=PaymentType.SPLIT
    )
    second = await _add_payment(
        db_session, request, amount=600.0, payment_type=PaymentType.SPLIT
    )

    assert await reconciliation.confirm_payment(db_session, first, confirmed_by="test")
    request = await _reload(db_session, ServiceRequest, request.id)
    assert request.total_paid == 400.0
    assert request.balance_due == 600.0
    assert request.partial_payment_status == PartialPaymentStatus.FIRST_PAID
    assert request.status == ServiceRequestStatus.PARTIALLY_PAID

    assert await reconciliation.confirm_payment(db_session, second, confirmed_by="test")
    request = await _reload(db_session, ServiceRequest, request.id)
    assert request.total_paid == 1000.0
    assert request.balance_due == 0
    assert request.partial_payment_status == PartialPaymentStatus.COMPLETED
    assert request.status == ServiceRequestStatus.PAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_full_payment_marks_request_paid(db_session):
    request = await _seed(db_session, cost=1000.0)
    split = await _add_payment(
        db_session, request, amount=200.0, payment_type=PaymentType.SPLIT
    )
    full = await _add_payment(
        db_session, request, amount=50.0, payment_type=PaymentType.FULL
    )

    await reconciliation.confirm_payment(db_session, split, confirmed_by="test")
    await reconciliation.confirm_payment(db_session, full, confirmed_by="test")

    request = await _reload(db_session, ServiceRequest, request.id)
    assert request.status == ServiceRequestStatus.PAID
    assert request.total_paid == 250.0
    assert request.balance_due == 750.0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_single_split_covering_balance_is_partially_paid(db_session):
    request = await _seed(db_session, cost=1000.0)
    split = await _add_payment(
        db_session, request, amount=1000.0, payment_type=PaymentType.SPLIT
    )

    assert await reconciliation.confirm_payment(db_session, split, confirmed_by="test")

    request = await _reload(db_session, ServiceRequest, request.id)
    assert request.balance_due == 0
    assert request.partial_payment_status == PartialPaymentStatus.COMPLETED
    assert request.status == ServiceRequestStatus.PARTIALLY_PAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_recompute_is_idempotent(db_session):
    request = await _seed(db_session, cost=1000.0)
    await _add_payment(
        db_session,
        request,
        amount=400.0,
        payment_type=PaymentType.SPLIT,
        payment_status=PaymentStatus.CONFIRMED,
    )

    first = await reconciliation.recompute_request_totals(db_session, request.id)
    snapshot = (first.total_paid, first.balance_due, first.partial_payment_status, first.status)
    second = await reconciliation.recompute_request_totals(db_session, request.id)

    assert (
        second.total_paid,
        second.balance_due,
        second.partial_payment_status,
        second.status,
    ) == snapshot
    assert second.total_paid + second.balance_due == second.estimated_cost


@pytest.mark.asyncio
@pytest.mark.unit
async def test_propagation_failure_keeps_confirmation(db_session, monkeypatch):
    request = await _seed(db_session)
    request_id = request.id
    payment = await _add_payment(db_session, request)

    async def broken_recompute(db, request_id):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(reconciliation, "recompute_request_totals", broken_recompute)

    assert await reconciliation.confirm_payment(db_session, payment, confirmed_by="test")
    assert payment.payment_status == PaymentStatus.CONFIRMED
    assert payment.confirmed_by == "test"

    payment = await _reload(db_session, Payment, payment.id)
    assert payment.payment_status == PaymentStatus.CONFIRMED

    request = await _reload(db_session, ServiceRequest, request_id)
    assert request.total_paid == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancelled_request_status_is_kept(db_session):
    request = await _seed(db_session, status=ServiceRequestStatus.CANCELLED)
    payment = await _add_payment(db_session, request)

    await reconciliation.confirm_payment(db_session, payment, confirmed_by="test")

    request = await _reload(db_session, ServiceRequest, request.id)
    assert request.status == ServiceRequestStatus.CANCELLED
    assert request.total_paid == payment.amount


# ---------------------------------------------------------------------------
# Double confirmation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_concurrent_confirms_only_one_wins(db_session, session_factory):
    request = await _seed(db_session)
    payment = await _add_payment(db_session, request)

    # Both sessions hold the payment as pending before either writes
    async with session_factory() as other:
        stale = await other.get(Payment, payment.id)
        assert stale.payment_status == PaymentStatus.PENDING

        assert await reconciliation.confirm_payment(db_session, payment, confirmed_by="first")
        assert not await reconciliation.confirm_payment(other, stale, confirmed_by="second")

    payment = await _reload(db_session, Payment, payment.id)
    assert payment.confirmed_by == "first"
    request = await _reload(db_session, ServiceRequest, request.id)
    assert request.total_paid == payment.amount


@pytest.mark.asyncio
@pytest.mark.unit
async def test_approving_confirmed_payment_is_rejected(db_session, admin_user):
    request = await _seed(db_session)
    payment = await _add_payment(db_session, request)
    await reconciliation.approve_payment(db_session, payment.id, admin=admin_user)

    payment = await _reload(db_session, Payment, payment.id)
    confirmed_at = payment.confirmed_at
    assert payment.confirmed_by == "admin@example.com"
    assert payment.admin_verified

    with pytest.raises(HTTPException) as exc:
        await reconciliation.approve_payment(db_session, payment.id, admin=admin_user)
    assert exc.value.status_code == 400

    payment = await _reload(db_session, Payment, payment.id)
    assert payment.confirmed_at == confirmed_at


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_payment_cannot_be_approved(db_session, admin_user):
    request = await _seed(db_session)
    payment = await _add_payment(
        db_session, request, payment_status=PaymentStatus.FAILED
    )

    with pytest.raises(HTTPException) as exc:
        await reconciliation.approve_payment(db_session, payment.id, admin=admin_user)
    assert exc.value.status_code == 400


# ---------------------------------------------------------------------------
# Provider updates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_provider_amount_mismatch_is_rejected(db_session):
    request = await _seed(db_session, cost=100.0)
    payment = await _add_payment(db_session, request, amount=100.0)

    result = await reconciliation.apply_provider_update(
        db_session, payment, _confirmed_update(99.0)
    )

    assert result.status == "amount_mismatch"
    payment = await _reload(db_session, Payment, payment.id)
    assert payment.payment_status == PaymentStatus.PENDING
    assert "Amount mismatch" in payment.error_message


@pytest.mark.asyncio
@pytest.mark.unit
async def test_redelivered_confirmation_is_a_noop(db_session):
    request = await _seed(db_session, cost=100.0)
    payment = await _add_payment(db_session, request, amount=100.0)

    update = _confirmed_update(100.0, provenance={"paystack_reference": "REF-1"})
    first = await reconciliation.apply_provider_update(db_session, payment, update)
    second = await reconciliation.apply_provider_update(db_session, payment, update)

    assert first.status == "confirmed"
    assert second.status == "already_confirmed"
    assert not second.changed
    payment = await _reload(db_session, Payment, payment.id)
    assert payment.paystack_reference == "REF-1"
    assert payment.confirmed_by == "paystack_webhook"
    assert "paystack_data" in payment.payment_metadata


@pytest.mark.asyncio
@pytest.mark.unit
async def test_provider_failure_marks_failed(db_session):
    request = await _seed(db_session)
    payment = await _add_payment(db_session, request)

    update = ProviderUpdate(
        provider="stripe",
        outcome=ProviderOutcome.FAILED,
        provider_status="payment_intent.payment_failed",
        error_message="Card declined",
    )
    result = await reconciliation.apply_provider_update(db_session, payment, update)

    assert result.status == "failed"
    payment = await _reload(db_session, Payment, payment.id)
    assert payment.payment_status == PaymentStatus.FAILED
    assert payment.error_message == "Card declined"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pending_outcome_records_error_without_moving(db_session):
    request = await _seed(db_session)
    payment = await _add_payment(db_session, request)

    update = ProviderUpdate(
        provider="paystack",
        outcome=ProviderOutcome.PENDING,
        provider_status="abandoned",
        error_message="Paystack status: abandoned",
    )
    await reconciliation.apply_provider_update(db_session, payment, update)

    payment = await _reload(db_session, Payment, payment.id)
    assert payment.payment_status == PaymentStatus.PENDING
    assert payment.error_message == "Paystack status: abandoned"


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "closed_status",
    [
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.EXPIRED,
        PaymentStatus.DELETED,
    ],
)
async def test_late_provider_success_leaves_closed_payment_alone(
    db_session, closed_status
):
    request = await _seed(db_session, cost=1000.0)
    payment = await _add_payment(
        db_session, request, amount=1000.0, payment_status=closed_status
    )

    result = await reconciliation.apply_provider_update(
        db_session, payment, _confirmed_update(1000.0)
    )

    assert result.changed is False
    assert result.status == closed_status.value
    payment = await _reload(db_session, Payment, payment.id)
    assert payment.payment_status == closed_status
    assert payment.confirmed_at is None
    request = await _reload(db_session, ServiceRequest, request.id)
    assert request.total_paid == 0
    assert request.status == ServiceRequestStatus.APPROVED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_processing_update_with_reused_hash_is_rejected(db_session):
    request = await _seed(db_session)
    await _add_payment(
        db_session,
        request,
        payment_method=PaymentMethod.CRYPTO,
        payment_status=PaymentStatus.PROCESSING,
        crypto_transaction_hash="np-5551",
    )
    other = await _add_payment(db_session, request, payment_method=PaymentMethod.CRYPTO)

    update = ProviderUpdate(
        provider="nowpayments",
        outcome=ProviderOutcome.PROCESSING,
        provider_status="confirming",
        provenance={"crypto_transaction_hash": "np-5551"},
    )
    with pytest.raises(HTTPException) as exc:
        await reconciliation.apply_provider_update(db_session, other, update)
    assert exc.value.status_code == 400

    other = await _reload(db_session, Payment, other.id)
    assert other.payment_status == PaymentStatus.PENDING
    assert other.crypto_transaction_hash is None


# ---------------------------------------------------------------------------
# Crypto submissions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reused_transaction_hash_is_rejected(db_session):
    request = await _seed(db_session)
    await _add_payment(
        db_session,
        request,
        payment_method=PaymentMethod.CRYPTO,
        payment_status=PaymentStatus.PROCESSING,
        crypto_transaction_hash="hash-a",
    )
    other = await _add_payment(db_session, request, payment_method=PaymentMethod.CRYPTO)

    with pytest.raises(HTTPException) as exc:
        await reconciliation.record_crypto_submission(
            db_session,
            other,
            tx_hash="hash-a",
            network="TRC20",
            amount_received=other.amount,
            confirmations=20,
            verification={"valid": True},
        )
    assert exc.value.status_code == 400

    other = await _reload(db_session, Payment, other.id)
    assert other.payment_status == PaymentStatus.PENDING
    assert other.crypto_transaction_hash is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_shallow_crypto_submission_waits_for_admin(db_session):
    request = await _seed(db_session, cost=100.0)
    payment = await _add_payment(
        db_session, request, amount=100.0, payment_method=PaymentMethod.CRYPTO
    )

    result = await reconciliation.record_crypto_submission(
        db_session,
        payment,
        tx_hash="hash-b",
        network="TRC20",
        amount_received=100.0,
        confirmations=3,
        verification={"valid": True},
    )

    assert result.status == "pending_verification"
    payment = await _reload(db_session, Payment, payment.id)
    assert payment.payment_status == PaymentStatus.PROCESSING
    assert payment.crypto_network == "TRC20"
    assert "crypto_verification" in payment.payment_metadata


@pytest.mark.asyncio
@pytest.mark.unit
async def test_deep_exact_crypto_submission_auto_confirms(db_session):
    request = await _seed(db_session, cost=100.0)
    payment = await _add_payment(
        db_session, request, amount=100.0, payment_method=PaymentMethod.CRYPTO
    )

    result = await reconciliation.record_crypto_submission(
        db_session,
        payment,
        tx_hash="hash-c",
        network="TRC20",
        amount_received=100.0,
        confirmations=6,
        verification={"valid": True},
    )

    assert result.status == "confirmed"
    payment = await _reload(db_session, Payment, payment.id)
    assert payment.payment_status == PaymentStatus.CONFIRMED
    assert payment.confirmed_by == "crypto_auto_verification"


# ---------------------------------------------------------------------------
# Manual entry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_entry_converges_with_recompute(db_session, admin_user):
    request = await _seed(db_session, cost=1000.0)

    for amount in (300.0, 700.0):
        await record_manual_payment(
            db_session,
            ManualPaymentRequest(
                request_id=request.id,
                amount=amount,
                payment_method=PaymentMethod.BANK_TRANSFER,
                payment_type=PaymentType.SPLIT,
                admin_verified=True,
            ),
            admin=admin_user,
        )

    incremental = await _reload(db_session, ServiceRequest, request.id)
    snapshot = (
        incremental.total_paid,
        incremental.balance_due,
        incremental.partial_payment_status,
        incremental.status,
    )
    recomputed = await reconciliation.recompute_request_totals(db_session, request.id)

    assert (
        recomputed.total_paid,
        recomputed.balance_due,
        recomputed.partial_payment_status,
        recomputed.status,
    ) == snapshot
    assert snapshot == (1000.0, 0, PartialPaymentStatus.COMPLETED, ServiceRequestStatus.PAID)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unverified_manual_entry_stays_pending(db_session, admin_user):
    request = await _seed(db_session)

    payment = await record_manual_payment(
        db_session,
        ManualPaymentRequest(
            request_id=request.id,
            amount=500.0,
            payment_method=PaymentMethod.CASH,
            reference="RCPT-1",
        ),
        admin=admin_user,
    )

    assert payment.payment_status == PaymentStatus.PENDING
    assert payment.manual_entry
    request = await _reload(db_session, ServiceRequest, request.id)
    assert request.total_paid == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_entry_duplicate_reference_is_rejected(db_session, admin_user):
    request = await _seed(db_session)
    data = dict(
        request_id=request.id,
        amount=100.0,
        payment_method=PaymentMethod.BANK_TRANSFER,
        payment_type=PaymentType.SPLIT,
        reference="TRF-778899",
    )
    await record_manual_payment(db_session, ManualPaymentRequest(**data), admin=admin_user)

    with pytest.raises(HTTPException) as exc:
        await record_manual_payment(
            db_session, ManualPaymentRequest(**data), admin=admin_user
        )
    assert exc.value.status_code == 400


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_reference_wildcards_match_literally(db_session, admin_user):
    request = await _seed(db_session)
    data = dict(
        request_id=request.id,
        amount=100.0,
        payment_method=PaymentMethod.BANK_TRANSFER,
        payment_type=PaymentType.SPLIT,
    )
    await record_manual_payment(
        db_session, ManualPaymentRequest(reference="TRF-123", **data), admin=admin_user
    )

    payment = await record_manual_payment(
        db_session, ManualPaymentRequest(reference="TRF-%", **data), admin=admin_user
    )
    assert payment.payment_metadata["manual_entry"]["reference"] == "TRF-%"

    with pytest.raises(HTTPException) as exc:
        await record_manual_payment(
            db_session, ManualPaymentRequest(reference="TRF-%", **data), admin=admin_user
        )
    assert exc.value.status_code == 400


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_split_above_balance_is_rejected(db_session, admin_user):
    request = await _seed(db_session, cost=1000.0, total_paid=600.0, balance_due=400.0)

    with pytest.raises(HTTPException) as exc:
        await record_manual_payment(
            db_session,
            ManualPaymentRequest(
                request_id=request.id,
                amount=450.0,
                payment_method=PaymentMethod.BANK_TRANSFER,
                payment_type=PaymentType.SPLIT,
            ),
            admin=admin_user,
        )
    assert exc.value.status_code == 400

    count = await db_session.scalar(select(func.count(Payment.id)))
    assert count == 0


# ---------------------------------------------------------------------------
# Delete and cancel
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_confirmed_payment_cannot_be_deleted(db_session, admin_user):
    request = await _seed(db_session)
    payment = await _add_payment(
        db_session, request, payment_status=PaymentStatus.CONFIRMED
    )

    with pytest.raises(HTTPException) as exc:
        await reconciliation.delete_payment(db_session, payment.id, admin=admin_user)
    assert exc.value.status_code == 400


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_payment_soft_delete(db_session, admin_user):
    request = await _seed(db_session)
    payment = await _add_payment(db_session, request, payment_status=PaymentStatus.FAILED)

    result = await reconciliation.delete_payment(db_session, payment.id, admin=admin_user)

    assert result["original_status"] == "failed"
    payment = await _reload(db_session, Payment, payment.id)
    assert payment.payment_status == PaymentStatus.DELETED
    assert payment.deleted_by == "admin@example.com"
    assert payment.deleted_at is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_permanent_delete_purges_audit_rows(db_session, admin_user):
    request = await _seed(db_session)
    payment = await _add_payment(
        db_session, request, payment_status=PaymentStatus.CANCELLED
    )
    db_session.add(
        AdminAuditLog(
            admin_user_id="admin-1",
            action="payment_cancelled",
            resource_type="payment",
            resource_id=str(payment.id),
        )
    )
    await db_session.commit()

    await reconciliation.delete_payment(
        db_session, payment.id, admin=admin_user, permanent=True
    )

    db_session.expunge_all()
    assert await db_session.get(Payment, payment.id) is None
    audit_rows = await db_session.scalar(
        select(func.count(AdminAuditLog.id)).where(
            AdminAuditLog.resource_id == str(payment.id)
        )
    )
    assert audit_rows == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_only_open_payments(db_session, admin_user):
    request = await _seed(db_session)
    payment = await _add_payment(db_session, request)

    cancelled = await reconciliation.cancel_payment(
        db_session, payment.id, admin=admin_user, reason="client request"
    )
    assert cancelled.payment_status == PaymentStatus.CANCELLED
    assert "client request" in cancelled.admin_notes
    assert cancelled.payment_metadata["cancellation"]["reason"] == "client request"

    with pytest.raises(HTTPException) as exc:
        await reconciliation.cancel_payment(db_session, payment.id, admin=admin_user)
    assert exc.value.status_code == 400
