"""
Paystack API client and payload translation.

Provides async methods for:
- Initializing a checkout transaction
- Verifying a transaction by reference

and pure helpers that turn verify responses and webhook events into
ProviderUpdate values.
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.service_client import outbound_request
from services.payments_service.providers.base import (
    ProviderOutcome,
    ProviderUpdate,
    parse_uuid,
)

logger = get_logger(__name__)

PROVIDER = "paystack"


@dataclass
class InitializedTransaction:
    """Checkout handle returned by transaction/initialize."""

    reference: str
    authorization_url: str
    access_code: str


@dataclass
class PaystackTransaction:
    """Result of transaction/verify."""

    reference: str
    status: str  # success, failed, abandoned, ongoing, pending, ...
    amount: float  # major units
    currency: str
    gateway_response: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)


class PaystackError(Exception):
    """Base exception for Paystack API errors."""

    def __init__(
        self, message: str, status_code: int = None, response_data: dict = None
    ):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)


def to_minor_units(amount: float) -> int:
    """Major units to kobo/cents, rounded half-up."""
    return int(
        (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


def from_minor_units(amount: Any) -> float:
    return float(Decimal(str(amount or 0)) / 100)


class PaystackClient:
    """Async client for Paystack's transaction API."""

    def __init__(self, secret_key: str = None, base_url: str = None):
        settings = get_settings()
        self.secret_key = secret_key or settings.PAYSTACK_SECRET_KEY
        self.base_url = (base_url or settings.PAYSTACK_API_BASE_URL).rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict = None,
        json_data: dict = None,
    ) -> dict:
        """Make an async request to Paystack API."""
        if not self.secret_key:
            raise PaystackError("PAYSTACK_SECRET_KEY is not configured")
        try:
            response = await outbound_request(
                method=method,
                url=f"{self.base_url}{endpoint}",
                headers=self._headers,
                params=params,
                json=json_data,
            )
        except httpx.HTTPError as e:
            raise PaystackError(f"Paystack unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {"message": response.text}

        if not response.is_success:
            logger.error("Paystack API error: %s - %s", response.status_code, data)
            raise PaystackError(
                message=data.get("message", "Unknown Paystack error"),
                status_code=response.status_code,
                response_data=data,
            )

        if not data.get("status"):
            raise PaystackError(
                message=data.get("message", "Paystack request failed"),
                response_data=data,
            )

        return data

    async def initialize_transaction(
        self,
        *,
        email: str,
        amount: float,
        currency: str,
        reference: str,
        callback_url: str,
        metadata: dict,
    ) -> InitializedTransaction:
        """
        Start a checkout. The client is redirected to authorization_url and
        returns to callback_url with ?reference=...
        """
        data = await self._request(
            "POST",
            "/transaction/initialize",
            json_data={
                "email": email,
                "amount": to_minor_units(amount),
                "currency": currency,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata,
            },
        )
        tx = data.get("data", {})
        return InitializedTransaction(
            reference=tx.get("reference", reference),
            authorization_url=tx.get("authorization_url", ""),
            access_code=tx.get("access_code", ""),
        )

    async def verify_transaction(self, reference: str) -> PaystackTransaction:
        """
        Fetch the current state of a transaction by reference.
        """
        data = await self._request("GET", f"/transaction/verify/{reference}")
        return parse_transaction(data.get("data", {}), fallback_reference=reference)


def get_paystack_client() -> PaystackClient:
    """Get a PaystackClient instance."""
    return PaystackClient()


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def parse_transaction(tx: dict, fallback_reference: str = "") -> PaystackTransaction:
    metadata = tx.get("metadata")
    return PaystackTransaction(
        reference=tx.get("reference", fallback_reference),
        status=str(tx.get("status", "unknown")).lower(),
        amount=from_minor_units(tx.get("amount")),
        currency=str(tx.get("currency", "NGN")).upper(),
        gateway_response=tx.get("gateway_response"),
        channel=tx.get("channel"),
        paid_at=tx.get("paid_at") or tx.get("paidAt"),
        metadata=metadata if isinstance(metadata, dict) else {},
        raw=tx,
    )


def _audit_payload(tx: PaystackTransaction) -> dict:
    return {
        "reference": tx.reference,
        "status": tx.status,
        "amount_paid": tx.amount,
        "currency": tx.currency,
        "channel": tx.channel,
        "gateway_response": tx.gateway_response,
        "paid_at": tx.paid_at,
    }


def translate_transaction(tx: PaystackTransaction, *, source: str) -> ProviderUpdate:
    """Map a verified transaction to a normalized update.

    ``source`` is "api_verification" for synchronous verify calls and
    "webhook" for charge events.
    """
    if tx.status == "success":
        outcome = ProviderOutcome.CONFIRMED
    elif tx.status == "failed":
        outcome = ProviderOutcome.FAILED
    else:
        outcome = ProviderOutcome.PENDING

    update = ProviderUpdate(
        provider=PROVIDER,
        outcome=outcome,
        provider_status=tx.status,
        payment_id=parse_uuid(tx.metadata.get("paymentId") or tx.metadata.get("payment_id")),
        reference=tx.reference,
        provenance={"paystack_reference": tx.reference},
        amount=tx.amount,
        currency=tx.currency,
        metadata_key="paystack_data",
        raw=_audit_payload(tx),
        actor="api_verification" if source == "api_verification" else None,
    )
    if outcome == ProviderOutcome.CONFIRMED:
        update.note = (
            f"Payment verified via {'API' if source == 'api_verification' else 'webhook'}: "
            f"{tx.reference}. Gateway: {tx.gateway_response}"
        )
    else:
        update.error_message = tx.gateway_response or f"Paystack status: {tx.status}"
    return update


def translate_webhook(event: dict) -> ProviderUpdate:
    event_type = event.get("event", "")
    tx = parse_transaction(event.get("data") or {})
    if event_type == "charge.success":
        tx.status = "success"
    elif event_type == "charge.failed":
        tx.status = "failed"
    else:
        return ProviderUpdate(
            provider=PROVIDER,
            outcome=ProviderOutcome.IGNORED,
            provider_status=event_type,
            reference=tx.reference,
        )
    return translate_transaction(tx, source="webhook")


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA512 of the raw body, hex encoded, keyed with the secret key."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)
