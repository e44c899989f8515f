"""Unit tests for the scheduled cleanup sweeps."""

from datetime import timedelta

import pytest
from libs.common.datetime_utils import utc_now
from services.payments_service.models import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    ServiceRequest,
)
from services.payments_service.schemas import ManualPaymentRequest
from services.payments_service.services.cleanup import run_cleanup
from services.payments_service.services.manual_entry import record_manual_payment
from tests.factories import PaymentFactory, ServiceRequestFactory, hours_ago


@pytest.mark.asyncio
@pytest.mark.unit
async def test_only_payments_past_expiry_are_cancelled(db_session):
    request = ServiceRequestFactory.create()
    old = PaymentFactory.create(request, created_at=hours_ago(25))
    recent = PaymentFactory.create(request, created_at=hours_ago(23))
    db_session.add_all([request, old, recent])
    await db_session.commit()

    response = await run_cleanup(db_session)

    assert response["success"]
    assert response["results"]["expired_payments"] == 1
    assert response["results"]["errors"] == []

    old = await db_session.get(Payment, old.id, populate_existing=True)
    recent = await db_session.get(Payment, recent.id, populate_existing=True)
    assert old.payment_status == PaymentStatus.CANCELLED
    assert "Auto-cancelled after 24h timeout" in old.admin_notes
    assert recent.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.unit
async def test_processing_payments_are_not_expired(db_session):
    request = ServiceRequestFactory.create()
    payment = PaymentFactory.create(
        request, created_at=hours_ago(48), payment_status=PaymentStatus.PROCESSING
    )
    db_session.add_all([request, payment])
    await db_session.commit()

    response = await run_cleanup(db_session)

    assert response["results"]["expired_payments"] == 0
    payment = await db_session.get(Payment, payment.id, populate_existing=True)
    assert payment.payment_status == PaymentStatus.PROCESSING


@pytest.mark.asyncio
@pytest.mark.unit
async def test_backdated_manual_entry_is_not_expired(db_session, admin_user):
    request = ServiceRequestFactory.create()
    paid_on = utc_now() - timedelta(days=3)
    db_session.add(request)
    await db_session.commit()

    payment = await record_manual_payment(
        db_session,
        ManualPaymentRequest(
            request_id=request.id,
            amount=250.0,
            payment_method=PaymentMethod.CASH,
            payment_type=PaymentType.SPLIT,
            payment_date=paid_on,
        ),
        admin=admin_user,
    )

    response = await run_cleanup(db_session)

    assert response["results"]["expired_payments"] == 0
    payment = await db_session.get(Payment, payment.id, populate_existing=True)
    assert payment.payment_status == PaymentStatus.PENDING
    assert payment.payment_metadata["manual_entry"]["payment_date"].startswith(
        paid_on.date().isoformat()
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_links_expired_past_window_are_cleared(db_session):
    stale = ServiceRequestFactory.create(payment_link_expiry=hours_ago(2))
    just_expired = ServiceRequestFactory.create(payment_link_expiry=hours_ago(0.5))
    active = ServiceRequestFactory.create()
    db_session.add_all([stale, just_expired, active])
    await db_session.commit()

    response = await run_cleanup(db_session)

    assert response["results"]["expired_payment_links"] == 1
    stale = await db_session.get(ServiceRequest, stale.id, populate_existing=True)
    just_expired = await db_session.get(
        ServiceRequest, just_expired.id, populate_existing=True
    )
    active = await db_session.get(ServiceRequest, active.id, populate_existing=True)
    assert stale.payment_link_expiry is None
    assert just_expired.payment_link_expiry is not None
    assert active.payment_link_expiry is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stale_rows_are_deleted_after_retention(db_session):
    request = ServiceRequestFactory.create()
    stale_failed = PaymentFactory.create(
        request, payment_status=PaymentStatus.FAILED, created_at=hours_ago(24 * 8)
    )
    recent_failed = PaymentFactory.create(
        request, payment_status=PaymentStatus.FAILED, created_at=hours_ago(24 * 2)
    )
    old_confirmed = PaymentFactory.create(
        request, payment_status=PaymentStatus.CONFIRMED, created_at=hours_ago(24 * 30)
    )
    db_session.add_all([request, stale_failed, recent_failed, old_confirmed])
    await db_session.commit()

    response = await run_cleanup(db_session)

    assert response["results"]["deleted_stale_payments"] == 1
    db_session.expunge_all()
    assert await db_session.get(Payment, stale_failed.id) is None
    assert await db_session.get(Payment, recent_failed.id) is not None
    assert await db_session.get(Payment, old_confirmed.id) is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cleanup_reports_a_summary(db_session):
    response = await run_cleanup(db_session, now=utc_now() + timedelta(minutes=1))

    assert response["message"] == "Automated payment cleanup completed"
    assert "Expired payments: 0" in response["summary"]
    assert "Errors: 0" in response["summary"]
