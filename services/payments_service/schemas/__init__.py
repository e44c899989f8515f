"""Payments Service schemas package."""

from services.payments_service.schemas.main import (
    ApprovePaymentRequest,
    CancelPaymentRequest,
    CreatePaymentRequest,
    CreatePaymentResponse,
    CryptoVerifyRequest,
    DeactivateLinkRequest,
    IssueLinkRequest,
    ManualPaymentRequest,
    NowPaymentsGenerateRequest,
    PaymentLookupResponse,
    PaymentResponse,
    ServiceRequestSummary,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)

__all__ = [
    "ApprovePaymentRequest",
    "CancelPaymentRequest",
    "CreatePaymentRequest",
    "CreatePaymentResponse",
    "CryptoVerifyRequest",
    "DeactivateLinkRequest",
    "IssueLinkRequest",
    "ManualPaymentRequest",
    "NowPaymentsGenerateRequest",
    "PaymentLookupResponse",
    "PaymentResponse",
    "ServiceRequestSummary",
    "VerifyPaymentRequest",
    "VerifyPaymentResponse",
]
