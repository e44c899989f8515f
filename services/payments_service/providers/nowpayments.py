"""
NOWPayments API client, IPN signature check and IPN translation.

Currencies are cached for ten minutes per process; callers fall back to a
fixed list when the API is unreachable.
"""

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

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

PROVIDER = "nowpayments"

CURRENCY_CACHE_SECONDS = 600

POPULAR_CURRENCIES = ("btc", "eth", "usdt", "usdc", "ltc", "doge", "bnb", "ada", "dot", "sol")
STABLECOINS = ("usdt", "usdc", "dai", "busd", "tusd", "usdp")

FALLBACK_CURRENCIES = [
    {"id": "btc", "name": "Bitcoin", "symbol": "BTC", "network": "Bitcoin",
     "min_amount": 0.0001, "max_amount": 100, "is_stablecoin": False, "is_popular": True},
    {"id": "eth", "name": "Ethereum", "symbol": "ETH", "network": "Ethereum",
     "min_amount": 0.001, "max_amount": 1000, "is_stablecoin": False, "is_popular": True},
    {"id": "usdt", "name": "Tether USD", "symbol": "USDT", "network": "ERC20",
     "min_amount": 1, "max_amount": 50000, "is_stablecoin": True, "is_popular": True},
    {"id": "usdc", "name": "USD Coin", "symbol": "USDC", "network": "ERC20",
     "min_amount": 1, "max_amount": 50000, "is_stablecoin": True, "is_popular": True},
]

_STATUS_MAP = {
    "waiting": ProviderOutcome.PROCESSING,
    "confirming": ProviderOutcome.PROCESSING,
    "partially_paid": ProviderOutcome.PROCESSING,
    "confirmed": ProviderOutcome.CONFIRMED,
    "finished": ProviderOutcome.CONFIRMED,
    "failed": ProviderOutcome.FAILED,
    "refunded": ProviderOutcome.FAILED,
    "expired": ProviderOutcome.FAILED,
}


class NowPaymentsError(Exception):
    def __init__(self, message: str, status_code: int = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class CryptoCurrency:
    code: str
    network: str
    is_popular: bool
    is_stablecoin: bool

    def as_dict(self) -> dict:
        return {
            "id": self.code.lower(),
            "name": self.code.upper(),
            "symbol": self.code.upper(),
            "network": self.network,
            "min_amount": 0.001,
            "max_amount": 1000000,
            "is_stablecoin": self.is_stablecoin,
            "is_popular": self.is_popular,
        }


@dataclass
class CryptoPaymentDetails:
    nowpayments_id: str
    pay_address: str
    pay_amount: float
    pay_currency: str
    price_amount: float
    price_currency: str
    payment_status: str
    network: str
    qr_code_url: str
    expires_at: Optional[str] = None


def network_name(currency: str) -> str:
    code = currency.lower()
    if code == "btc":
        return "Bitcoin"
    if code == "eth":
        return "Ethereum"
    for suffix in ("erc20", "trc20", "bep20"):
        if suffix in code:
            return suffix.upper()
    return "Unknown"


def is_popular(currency: str) -> bool:
    code = currency.lower()
    return code in POPULAR_CURRENCIES or "usdt" in code


def is_stablecoin(currency: str) -> bool:
    code = currency.lower()
    return any(stable in code for stable in STABLECOINS)


def qr_code_url(address: str, amount: float, currency: str) -> str:
    code = currency.lower()
    if code == "btc":
        content = f"bitcoin:{address}?amount={amount}"
    elif code == "eth" or "erc20" in code:
        content = f"ethereum:{address}?value={amount}"
    else:
        content = address
    params = urlencode({"size": "300x300", "data": content, "format": "png", "margin": "10"})
    return f"https://api.qrserver.com/v1/create-qr-code/?{params}"


def sort_currencies(currencies: list[dict]) -> list[dict]:
    """Popular first, then stablecoins, then by name."""
    return sorted(
        currencies,
        key=lambda c: (not c.get("is_popular"), not c.get("is_stablecoin"), c.get("name", "")),
    )


class NowPaymentsClient:
    """Async client for the NOWPayments REST API."""

    _currency_cache: Optional[tuple[float, list[CryptoCurrency]]] = None

    def __init__(self, api_key: str = None, base_url: str = None):
        settings = get_settings()
        self.api_key = api_key or settings.NOWPAYMENTS_API_KEY
        self.base_url = (base_url or settings.NOWPAYMENTS_API_BASE_URL).rstrip("/")
        self.ipn_callback_url = settings.NOWPAYMENTS_IPN_URL

    async def _request(self, method: str, endpoint: str, json_data: dict = None) -> Any:
        if not self.api_key:
            raise NowPaymentsError("NOWPAYMENTS_API_KEY is not configured")
        try:
            response = await outbound_request(
                method=method,
                url=f"{self.base_url}{endpoint}",
                headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
                json=json_data,
            )
        except httpx.HTTPError as e:
            raise NowPaymentsError(f"NOWPayments unreachable: {e}") from e

        if not response.is_success:
            message = f"NOWPayments API error: {response.status_code}"
            try:
                data = response.json()
                message = data.get("message") or data.get("error") or message
            except ValueError:
                message = f"{message} - {response.text}"
            raise NowPaymentsError(message, status_code=response.status_code)
        return response.json()

    async def get_currencies(self) -> list[CryptoCurrency]:
        cached = NowPaymentsClient._currency_cache
        if cached and time.monotonic() - cached[0] < CURRENCY_CACHE_SECONDS:
            return cached[1]

        data = await self._request("GET", "/v1/currencies")
        # Either {"currencies": [...]} or a bare list of codes
        codes = data.get("currencies") or [] if isinstance(data, dict) else data or []
        currencies = [
            CryptoCurrency(
                code=code,
                network=network_name(code),
                is_popular=is_popular(code),
                is_stablecoin=is_stablecoin(code),
            )
            for code in codes
            if isinstance(code, str)
        ]
        NowPaymentsClient._currency_cache = (time.monotonic(), currencies)
        return currencies

    async def is_currency_supported(self, currency: str) -> bool:
        code = currency.lower()
        return any(c.code.lower() == code for c in await self.get_currencies())

    async def create_payment(
        self,
        *,
        usd_amount: float,
        pay_currency: str,
        order_id: str,
        order_description: str,
    ) -> CryptoPaymentDetails:
        payload = {
            "price_amount": usd_amount,
            "price_currency": "USD",
            "pay_currency": pay_currency.upper(),
            "order_id": order_id,
            "order_description": order_description,
            "purchase_id": order_id,
        }
        if self.ipn_callback_url:
            payload["ipn_callback_url"] = self.ipn_callback_url

        data = await self._request("POST", "/v1/payment", json_data=payload)
        pay_currency = str(data.get("pay_currency", pay_currency)).upper()
        return CryptoPaymentDetails(
            nowpayments_id=str(data.get("payment_id", "")),
            pay_address=data.get("pay_address", ""),
            pay_amount=float(data.get("pay_amount") or 0),
            pay_currency=pay_currency,
            price_amount=float(data.get("price_amount") or usd_amount),
            price_currency=str(data.get("price_currency", "USD")).upper(),
            payment_status=data.get("payment_status", "waiting"),
            network=network_name(pay_currency),
            qr_code_url=qr_code_url(
                data.get("pay_address", ""), data.get("pay_amount") or 0, pay_currency
            ),
            expires_at=data.get("expiration_estimate_date"),
        )


def get_nowpayments_client() -> NowPaymentsClient:
    return NowPaymentsClient()


def verify_ipn_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA512 of the IPN body.

    Accepts the digest of the body as sent, or of the body re-serialized with
    sorted keys (the form NOWPayments documents).
    """
    if not signature:
        return False
    candidates = [raw_body]
    try:
        parsed = json.loads(raw_body)
        candidates.append(
            json.dumps(parsed, sort_keys=True, separators=(",", ":")).encode()
        )
    except ValueError:
        pass
    for body in candidates:
        expected = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
        if hmac.compare_digest(expected, signature.lower()):
            return True
    return False


def translate_ipn(ipn: dict) -> ProviderUpdate:
    provider_status = str(ipn.get("payment_status", "")).lower()
    outcome = _STATUS_MAP.get(provider_status, ProviderOutcome.IGNORED)
    nowpayments_id = ipn.get("payment_id")
    actually_paid = ipn.get("actually_paid")

    note = f"NOWPayments IPN: {provider_status}."
    if actually_paid:
        note = f"{note} Actually paid: {actually_paid} {ipn.get('pay_currency', '')}".rstrip()

    provenance: dict[str, Any] = {}
    if nowpayments_id:
        provenance["crypto_transaction_hash"] = str(nowpayments_id)
    if ipn.get("pay_address"):
        provenance["crypto_address"] = ipn["pay_address"]
    if ipn.get("pay_currency"):
        provenance["crypto_symbol"] = str(ipn["pay_currency"]).upper()
    if ipn.get("pay_amount") is not None:
        provenance["crypto_amount"] = float(ipn["pay_amount"])

    price_amount = ipn.get("price_amount")
    return ProviderUpdate(
        provider=PROVIDER,
        outcome=outcome,
        provider_status=provider_status,
        payment_id=parse_uuid(ipn.get("order_id")),
        reference=str(nowpayments_id) if nowpayments_id else None,
        provenance=provenance,
        amount=float(price_amount) if price_amount is not None else None,
        currency=str(ipn.get("price_currency") or "").upper() or None,
        error_message=(
            f"NOWPayments reported {provider_status}"
            if outcome == ProviderOutcome.FAILED
            else None
        ),
        note=note,
        metadata_key="nowpayments_ipn",
        raw=dict(ipn),
    )
