"""Integration tests for client payment initiation, verification and lookup."""

import uuid

import pytest
from services.payments_service.models import Payment, PaymentStatus, ServiceRequest
from services.payments_service.providers.paystack import (
    InitializedTransaction,
    PaystackError,
    parse_transaction,
)
from sqlalchemy import select
from tests.factories import PaymentFactory, ServiceRequestFactory, hours_ago


def _paystack_success(payment: Payment, amount_kobo: int, reference: str = "PAY-REF"):
    return parse_transaction(
        {
            "reference": reference,
            "status": "success",
            "amount": amount_kobo,
            "currency": "NGN",
            "gateway_response": "Approved",
            "channel": "card",
            "metadata": {"paymentId": str(payment.id)},
        }
    )


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_create_paystack_payment(client, db_session, paystack_mock):
    request = ServiceRequestFactory.create(estimated_cost=1000.0)
    db_session.add(request)
    await db_session.commit()
    paystack_mock.initialize_transaction.return_value = InitializedTransaction(
        reference="PAY-ABC",
        authorization_url="https://checkout.paystack.test/abc",
        access_code="abc",
    )

    response = await client.post(
        "/payments",
        json={"request_id": str(request.id), "payment_method": "paystack"},
    )

    assert response.status_code == 201, response.text
    data = response.json()
    assert data["checkout_url"] == "https://checkout.paystack.test/abc"
    assert data["next_step"] == "redirect"
    assert data["payment"]["amount"] == 1000.0
    assert data["payment"]["payment_status"] == "pending"
    assert data["payment"]["paystack_reference"] == "PAY-ABC"
    assert data["payment"]["payment_sequence"] == 1

    kwargs = paystack_mock.initialize_transaction.call_args.kwargs
    assert kwargs["email"] == request.client_email
    assert kwargs["metadata"]["paymentId"] == data["payment"]["id"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_create_bank_transfer_split(client, db_session):
    request = ServiceRequestFactory.create(estimated_cost=1000.0)
    db_session.add(request)
    await db_session.commit()

    response = await client.post(
        "/payments",
        json={
            "request_id": str(request.id),
            "payment_method": "bank_transfer",
            "payment_type": "split",
            "amount": 400,
        },
    )

    assert response.status_code == 201, response.text
    data = response.json()
    assert data["next_step"] == "bank_transfer"
    assert data["bank_details"]["amount"] == 400.0
    assert data["payment"]["is_partial_payment"] is True


@pytest.mark.asyncio
@pytest.mark.integration
async def test_split_above_balance_is_rejected(client, db_session):
    request = ServiceRequestFactory.create(
        estimated_cost=1000.0, total_paid=700.0, balance_due=300.0
    )
    db_session.add(request)
    await db_session.commit()

    response = await client.post(
        "/payments",
        json={
            "request_id": str(request.id),
            "payment_method": "bank_transfer",
            "payment_type": "split",
            "amount": 400,
        },
    )

    assert response.status_code == 400
    assert "exceeds balance" in response.json()["error"]


@pytest.mark.asyncio
@pytest.mark.integration
@pytest.mark.parametrize("expiry", [None, "expired"])
async def test_create_requires_active_link(client, db_session, expiry):
    request = ServiceRequestFactory.create(
        payment_link_expiry=hours_ago(2) if expiry else None
    )
    db_session.add(request)
    await db_session.commit()

    response = await client.post(
        "/payments",
        json={"request_id": str(request.id), "payment_method": "bank_transfer"},
    )

    assert response.status_code == 400
    count = (await db_session.execute(select(Payment.id))).all()
    assert count == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_create_for_unknown_request(client):
    response = await client.post(
        "/payments",
        json={"request_id": str(uuid.uuid4()), "payment_method": "crypto"},
    )
    assert response.status_code == 404
    assert response.json() == {"error": "Service request not found"}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_paystack_outage_records_error(client, db_session, paystack_mock):
    request = ServiceRequestFactory.create()
    db_session.add(request)
    await db_session.commit()
    paystack_mock.initialize_transaction.side_effect = PaystackError("timeout")

    response = await client.post(
        "/payments",
        json={"request_id": str(request.id), "payment_method": "paystack"},
    )

    assert response.status_code == 502
    payment = (await db_session.execute(select(Payment))).scalar_one()
    assert payment.payment_status == PaymentStatus.PENDING
    assert payment.error_message == "timeout"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_invalid_body_is_a_400(client):
    response = await client.post("/payments", json={"payment_method": "paystack"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request"


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_confirms_and_propagates(client, db_session, paystack_mock):
    request = ServiceRequestFactory.create(estimated_cost=1000.0)
    payment = PaymentFactory.create(request, amount=1000.0, paystack_reference="PAY-REF")
    db_session.add_all([request, payment])
    await db_session.commit()
    paystack_mock.verify_transaction.return_value = _paystack_success(payment, 100000)

    response = await client.post(
        "/payments/verify",
        json={"reference": "PAY-REF", "payment_id": str(payment.id)},
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["success"] is True
    assert data["status"] == "confirmed"
    assert data["payment"]["confirmed_by"] == "api_verification"

    request = await db_session.get(ServiceRequest, request.id, populate_existing=True)
    assert request.status.value == "paid"
    assert request.balance_due == 0

    again = await client.post("/payments/verify", json={"reference": "PAY-REF"})
    assert again.status_code == 200
    assert again.json()["status"] == "already_confirmed"
    assert paystack_mock.verify_transaction.await_count == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_amount_mismatch(client, db_session, paystack_mock):
    request = ServiceRequestFactory.create(estimated_cost=100.0)
    payment = PaymentFactory.create(request, amount=100.0, paystack_reference="PAY-REF")
    db_session.add_all([request, payment])
    await db_session.commit()
    paystack_mock.verify_transaction.return_value = _paystack_success(payment, 9900)

    response = await client.post("/payments/verify", json={"reference": "PAY-REF"})

    assert response.status_code == 400
    assert "Amount mismatch" in response.json()["error"]
    payment = await db_session.get(Payment, payment.id, populate_existing=True)
    assert payment.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_rejects_foreign_reference(client, db_session, paystack_mock):
    request = ServiceRequestFactory.create()
    payment = PaymentFactory.create(request, paystack_reference="PAY-REF")
    other = PaymentFactory.create(request)
    db_session.add_all([request, payment, other])
    await db_session.commit()
    paystack_mock.verify_transaction.return_value = _paystack_success(other, 100000)

    response = await client.post("/payments/verify", json={"reference": "PAY-REF"})

    assert response.status_code == 400


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_does_not_revive_failed_payment(client, db_session, paystack_mock):
    request = ServiceRequestFactory.create(estimated_cost=1000.0)
    payment = PaymentFactory.create(
        request,
        amount=1000.0,
        paystack_reference="PAY-LATE",
        payment_status=PaymentStatus.FAILED,
    )
    db_session.add_all([request, payment])
    await db_session.commit()
    paystack_mock.verify_transaction.return_value = _paystack_success(
        payment, 100000, reference="PAY-LATE"
    )

    response = await client.post("/payments/verify", json={"reference": "PAY-LATE"})

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["success"] is False
    assert data["status"] == "failed"
    assert paystack_mock.verify_transaction.await_count == 0

    request = await db_session.get(ServiceRequest, request.id, populate_existing=True)
    assert request.total_paid == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_deleted_payment_is_not_found(client, db_session, paystack_mock):
    request = ServiceRequestFactory.create(estimated_cost=1000.0)
    payment = PaymentFactory.create(
        request,
        amount=1000.0,
        paystack_reference="PAY-GONE",
        payment_status=PaymentStatus.DELETED,
    )
    db_session.add_all([request, payment])
    await db_session.commit()
    paystack_mock.verify_transaction.return_value = _paystack_success(
        payment, 100000, reference="PAY-GONE"
    )

    response = await client.post(
        "/payments/verify",
        json={"reference": "PAY-GONE", "payment_id": str(payment.id)},
    )

    assert response.status_code == 404
    payment = await db_session.get(Payment, payment.id, populate_existing=True)
    assert payment.payment_status == PaymentStatus.DELETED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_unknown_payment(client):
    response = await client.post("/payments/verify", json={"reference": "NOPE"})
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_provider_outage(client, db_session, paystack_mock):
    request = ServiceRequestFactory.create()
    payment = PaymentFactory.create(request, paystack_reference="PAY-REF")
    db_session.add_all([request, payment])
    await db_session.commit()
    paystack_mock.verify_transaction.side_effect = PaystackError("HTTP error", 503)

    response = await client.post("/payments/verify", json={"reference": "PAY-REF"})

    assert response.status_code == 502
    payment = await db_session.get(Payment, payment.id, populate_existing=True)
    assert payment.error_message == "HTTP error"
    assert "Paystack error" in payment.admin_notes


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_lookup_by_reference(client, db_session):
    request = ServiceRequestFactory.create()
    payment = PaymentFactory.create(request, paystack_reference="PAY-LOOK")
    db_session.add_all([request, payment])
    await db_session.commit()

    response = await client.get("/payments/verify", params={"reference": "PAY-LOOK"})

    assert response.status_code == 200
    data = response.json()
    assert data["payment"]["id"] == str(payment.id)
    assert data["service_request"]["id"] == str(request.id)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_lookup_hides_deleted(client, db_session):
    request = ServiceRequestFactory.create()
    payment = PaymentFactory.create(request, payment_status=PaymentStatus.DELETED)
    db_session.add_all([request, payment])
    await db_session.commit()

    response = await client.get("/payments/verify", params={"payment_id": str(payment.id)})
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.integration
async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "ok", "service": "payments"}
