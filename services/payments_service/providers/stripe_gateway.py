"""Stripe checkout sessions and webhook translation."""

import asyncio
import json
from typing import Any, Optional

import stripe
from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.payments_service.providers.base import (
    ProviderOutcome,
    ProviderUpdate,
    parse_uuid,
)
from services.payments_service.providers.paystack import to_minor_units

logger = get_logger(__name__)

PROVIDER = "stripe"


class StripeConfigError(Exception):
    pass


def construct_event(payload: bytes, sig_header: Optional[str]) -> dict:
    """Verify the Stripe-Signature header and return the event.

    Raises:
        StripeConfigError: STRIPE_WEBHOOK_SECRET is not set.
        stripe.SignatureVerificationError: signature missing or wrong.
        ValueError: body is not JSON.
    """
    secret = get_settings().STRIPE_WEBHOOK_SECRET
    if not secret:
        raise StripeConfigError("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise stripe.SignatureVerificationError("No signature header", sig_header, payload)
    stripe.Webhook.construct_event(payload, sig_header, secret)
    # Signature checked; work on the plain JSON rather than StripeObject
    return json.loads(payload)


def _metadata(obj: dict) -> dict:
    metadata = obj.get("metadata") or {}
    return metadata if isinstance(metadata, dict) else {}


def translate_event(event: dict) -> ProviderUpdate:
    event_type = event.get("type", "")
    obj: dict[str, Any] = (event.get("data") or {}).get("object") or {}
    metadata = _metadata(obj)
    payment_id = parse_uuid(metadata.get("paymentId") or metadata.get("payment_id"))

    if event_type == "checkout.session.completed":
        intent_id = obj.get("payment_intent")
        amount = obj.get("amount_total")
        return ProviderUpdate(
            provider=PROVIDER,
            outcome=ProviderOutcome.CONFIRMED,
            provider_status=event_type,
            payment_id=payment_id,
            reference=intent_id,
            provenance={"stripe_payment_intent_id": intent_id} if intent_id else {},
            amount=amount / 100 if amount is not None else None,
            currency=(obj.get("currency") or "").upper() or None,
            note=f"Payment confirmed via Stripe checkout: {obj.get('id')}",
            metadata_key="stripe_data",
            raw={"event_id": event.get("id"), "type": event_type, "session_id": obj.get("id"),
                 "payment_intent": intent_id, "payment_status": obj.get("payment_status")},
        )

    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        intent_id = obj.get("id")
        succeeded = event_type == "payment_intent.succeeded"
        amount = obj.get("amount_received") if succeeded else obj.get("amount")
        error = (obj.get("last_payment_error") or {}).get("message")
        return ProviderUpdate(
            provider=PROVIDER,
            outcome=ProviderOutcome.CONFIRMED if succeeded else ProviderOutcome.FAILED,
            provider_status=event_type,
            payment_id=payment_id,
            reference=intent_id,
            provenance={"stripe_payment_intent_id": intent_id} if intent_id else {},
            amount=amount / 100 if (succeeded and amount is not None) else None,
            currency=(obj.get("currency") or "").upper() or None,
            error_message=None if succeeded else (error or "Payment failed"),
            note=f"Stripe {event_type}: {intent_id}",
            metadata_key="stripe_data",
            raw={"event_id": event.get("id"), "type": event_type, "payment_intent": intent_id,
                 "status": obj.get("status")},
        )

    return ProviderUpdate(
        provider=PROVIDER,
        outcome=ProviderOutcome.IGNORED,
        provider_status=event_type,
    )


async def create_checkout_session(
    *,
    payment_id: str,
    request_id: str,
    payment_type: str,
    amount: float,
    currency: str,
    title: str,
    customer_email: Optional[str] = None,
) -> dict:
    """Create a hosted Checkout Session; returns ``{"id", "url"}``.

    Raises stripe.StripeError on provider failure.
    """
    settings = get_settings()
    if not settings.STRIPE_SECRET_KEY:
        raise StripeConfigError("STRIPE_SECRET_KEY is not configured")

    frontend = settings.FRONTEND_URL.rstrip("/")
    metadata = {"paymentId": payment_id, "requestId": request_id, "paymentType": payment_type}
    params = dict(
        api_key=settings.STRIPE_SECRET_KEY,
        mode="payment",
        payment_method_types=["card"],
        line_items=[
            {
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {"name": title},
                    "unit_amount": to_minor_units(amount),
                },
                "quantity": 1,
            }
        ],
        success_url=f"{frontend}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{frontend}/payment/cancel?payment_id={payment_id}",
        metadata=metadata,
        payment_intent_data={"metadata": metadata},
        idempotency_key=f"checkout_{payment_id}",
    )
    if customer_email:
        params["customer_email"] = customer_email

    # stripe's sync client; run off the event loop
    session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
    logger.info("Created Stripe checkout session %s for payment %s", session.id, payment_id)
    return {"id": session.id, "url": session.url}
