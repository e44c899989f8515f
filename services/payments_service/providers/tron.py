"""On-chain TRC20 (USDT on Tron) transaction lookup for manual crypto payments."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.service_client import outbound_request

logger = get_logger(__name__)

USDT_TRC20_CONTRACT = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
AMOUNT_TOLERANCE = Decimal("0.01")


class TronError(Exception):
    """Raised when no Tron endpoint could answer."""


@dataclass
class TronTransfer:
    tx_hash: str
    amount: float
    from_address: Optional[str]
    to_address: Optional[str]
    block_number: Optional[int]
    confirmations: int


@dataclass
class TronVerification:
    valid: bool
    transfer: Optional[TronTransfer] = None
    error: Optional[str] = None
    details: Optional[str] = None

    def as_dict(self) -> dict:
        body = {"valid": self.valid}
        if self.transfer:
            body.update(
                amount=self.transfer.amount,
                from_address=self.transfer.from_address,
                to_address=self.transfer.to_address,
                block_number=self.transfer.block_number,
                confirmations=self.transfer.confirmations,
            )
        if self.error:
            body["error"] = self.error
            body["details"] = self.details
        return body


def _usdt_transfer(tx: dict) -> Optional[dict]:
    for transfer in tx.get("trc20TransferInfo") or []:
        if (
            transfer.get("symbol") == "USDT"
            or transfer.get("contract_address") == USDT_TRC20_CONTRACT
        ):
            return transfer
    return None


def _transfer_amount(transfer: dict) -> Decimal:
    decimals = int(transfer.get("decimals", 6))
    return Decimal(str(transfer.get("amount_str", "0"))) / (Decimal(10) ** decimals)


class TronClient:
    """Queries the configured Tron HTTP endpoints in order until one answers."""

    def __init__(self, endpoints: Optional[list[str]] = None):
        self.endpoints = [e.rstrip("/") for e in (endpoints or get_settings().TRON_API_ENDPOINTS)]

    async def _get(self, url: str) -> Optional[dict]:
        try:
            response = await outbound_request(method="GET", url=url)
        except httpx.HTTPError as e:
            logger.warning("Tron endpoint %s failed: %s", url, e)
            return None
        if not response.is_success:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def latest_block(self) -> Optional[int]:
        for endpoint in self.endpoints:
            data = await self._get(f"{endpoint}/v1/blocks/latest")
            if data:
                number = ((data.get("block_header") or {}).get("raw_data") or {}).get("number")
                if number is not None:
                    return int(number)
        return None

    async def verify_trc20_transfer(
        self,
        tx_hash: str,
        *,
        expected_amount: float,
        expected_address: Optional[str] = None,
    ) -> TronVerification:
        """Check a USDT transfer against the amount and address we expect.

        Raises:
            TronError: every endpoint failed or returned no transfer data.
        """
        for endpoint in self.endpoints:
            tx = await self._get(f"{endpoint}/v1/transactions/{tx_hash}")
            if not tx or not tx.get("trc20TransferInfo"):
                continue

            transfer = _usdt_transfer(tx)
            if transfer is None:
                return TronVerification(
                    valid=False,
                    error="No USDT transfer found in transaction",
                    details="Transaction does not contain a USDT transfer",
                )

            received = _transfer_amount(transfer)
            expected = Decimal(str(expected_amount))
            if abs(received - expected) > AMOUNT_TOLERANCE:
                return TronVerification(
                    valid=False,
                    error="Amount mismatch",
                    details=f"Expected {expected_amount} USDT, received {float(received)} USDT",
                )

            to_address = transfer.get("to_address")
            if expected_address and to_address != expected_address:
                return TronVerification(
                    valid=False,
                    error="Address mismatch",
                    details=f"Payment sent to {to_address}, expected {expected_address}",
                )

            block_number = tx.get("blockNumber")
            current = await self.latest_block()
            confirmations = (
                max(0, current - int(block_number or 0)) if current is not None else 0
            )
            return TronVerification(
                valid=True,
                transfer=TronTransfer(
                    tx_hash=tx_hash,
                    amount=float(received),
                    from_address=transfer.get("from_address"),
                    to_address=to_address,
                    block_number=block_number,
                    confirmations=confirmations,
                ),
            )

        raise TronError("All Tron API endpoints failed")


def get_tron_client() -> TronClient:
    return TronClient()
