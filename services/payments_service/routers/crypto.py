"""Manual TRC20 payment verification by transaction hash."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from libs.common.logging import get_logger
from libs.common.rate_limit import payment_limit
from libs.db.session import get_async_db
from services.payments_service.models import OPEN_STATUSES, Payment, PaymentStatus
from services.payments_service.providers.tron import (
    TronClient,
    TronError,
    TronVerification,
    get_tron_client,
)
from services.payments_service.schemas import CryptoVerifyRequest
from services.payments_service.services.reconciliation import (
    ensure_hash_available,
    get_payment_or_404,
    record_crypto_submission,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/crypto", tags=["crypto"])
logger = get_logger(__name__)

SUPPORTED_NETWORKS = ("TRC20",)


def _expected_amount(payment: Payment) -> float:
    return payment.crypto_amount if payment.crypto_amount is not None else payment.amount


async def _verify_on_chain(
    tron: TronClient, payment: Payment, tx_hash: str
) -> TronVerification:
    try:
        return await tron.verify_trc20_transfer(
            tx_hash,
            expected_amount=_expected_amount(payment),
            expected_address=payment.crypto_address,
        )
    except TronError as e:
        logger.warning("TRC20 lookup failed for %s: %s", tx_hash, e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": "Unable to verify transaction",
                "details": "Transaction not found or network unreachable",
            },
        )


@router.post("/verify")
@payment_limit
async def submit_crypto_transaction(
    request: Request,
    payload: CryptoVerifyRequest,
    db: AsyncSession = Depends(get_async_db),
    tron: TronClient = Depends(get_tron_client),
):
    """
    Attach an on-chain transaction to a payment.

    A matching transfer moves the payment to processing for admin review;
    deep enough confirmations with an exact amount confirm it outright.
    """
    payment = await get_payment_or_404(db, payload.payment_id)

    if payment.payment_status == PaymentStatus.CONFIRMED:
        return {
            "success": True,
            "status": "already_confirmed",
            "message": "Payment already confirmed",
            "payment_id": str(payment.id),
        }
    if payment.payment_status not in OPEN_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Payment status is {payment.payment_status.value}, cannot attach a transaction",
        )

    network = payload.network.upper()
    if network not in SUPPORTED_NETWORKS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported network {payload.network}",
        )

    tx_hash = payload.transaction_hash.strip()
    await ensure_hash_available(db, tx_hash, payment.id)

    verification = await _verify_on_chain(tron, payment, tx_hash)
    if not verification.valid:
        logger.info(
            "Rejected TRC20 transaction %s for payment %s: %s",
            tx_hash,
            payment.id,
            verification.error,
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": verification.error, "details": verification.details},
        )

    outcome = await record_crypto_submission(
        db,
        payment,
        tx_hash=tx_hash,
        network=network,
        amount_received=verification.transfer.amount,
        confirmations=verification.transfer.confirmations,
        verification=verification.as_dict(),
        expected_amount=_expected_amount(payment),
    )
    return {
        "success": True,
        "status": outcome.status,
        "message": outcome.message,
        "payment_id": str(payment.id),
        "verification": verification.as_dict(),
    }


@router.get("/verify")
async def check_crypto_transaction(
    payment_id: uuid.UUID = Query(...),
    tx_hash: str = Query(..., min_length=8, max_length=128),
    db: AsyncSession = Depends(get_async_db),
    tron: TronClient = Depends(get_tron_client),
):
    """
    Check a transaction against a payment without recording anything.
    """
    payment = await get_payment_or_404(db, payment_id)
    verification = await _verify_on_chain(tron, payment, tx_hash.strip())
    return {
        "payment_id": str(payment.id),
        "transaction_hash": tx_hash,
        "verification": verification.as_dict(),
        "payment": {
            "amount": _expected_amount(payment),
            "status": payment.payment_status.value,
            "crypto_address": payment.crypto_address,
        },
    }
