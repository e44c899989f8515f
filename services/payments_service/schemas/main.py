import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from services.payments_service.models import (
    MANUAL_METHODS,
    PartialPaymentStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    ServiceRequestStatus,
)


class ClientRequest(BaseModel):
    """Request bodies arrive camelCased from the web client; snake_case also accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Responses ---


class PaymentResponse(BaseModel):
    id: uuid.UUID
    request_id: uuid.UUID
    payment_sequence: int
    amount: float
    currency: str
    payment_method: PaymentMethod
    payment_type: PaymentType
    is_partial_payment: bool
    total_amount_due: Optional[float] = None
    payment_status: PaymentStatus
    paystack_reference: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    crypto_transaction_hash: Optional[str] = None
    crypto_address: Optional[str] = None
    crypto_network: Optional[str] = None
    crypto_amount: Optional[float] = None
    crypto_symbol: Optional[str] = None
    admin_notes: Optional[str] = None
    error_message: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    manual_entry: bool
    admin_verified: bool
    payment_metadata: Optional[dict] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ServiceRequestSummary(BaseModel):
    id: uuid.UUID
    title: str
    status: ServiceRequestStatus
    estimated_cost: Optional[float] = None
    total_paid: float
    balance_due: Optional[float] = None
    partial_payment_status: PartialPaymentStatus
    payment_link_expiry: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class VerifyPaymentResponse(BaseModel):
    success: bool
    status: str
    message: str
    payment: PaymentResponse


class PaymentLookupResponse(BaseModel):
    success: bool = True
    payment: PaymentResponse
    service_request: Optional[ServiceRequestSummary] = None


class CreatePaymentResponse(BaseModel):
    success: bool = True
    payment: PaymentResponse
    checkout_url: Optional[str] = None
    bank_details: Optional[dict] = None
    next_step: Optional[str] = None


# --- Client requests ---


class VerifyPaymentRequest(ClientRequest):
    reference: str = Field(..., min_length=1, max_length=128)
    payment_id: Optional[uuid.UUID] = None


class CreatePaymentRequest(ClientRequest):
    request_id: uuid.UUID
    payment_method: PaymentMethod
    payment_type: PaymentType = PaymentType.FULL
    amount: Optional[float] = Field(default=None, gt=0)
    currency: str = Field(default="NGN", min_length=3, max_length=8)
    email: Optional[EmailStr] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("payment_method")
    @classmethod
    def online_method(cls, v: PaymentMethod) -> PaymentMethod:
        if v in (PaymentMethod.CASH, PaymentMethod.CHEQUE, PaymentMethod.OTHER):
            raise ValueError("Offline payments are recorded by an admin")
        return v


class CryptoVerifyRequest(ClientRequest):
    payment_id: uuid.UUID
    transaction_hash: str = Field(..., min_length=8, max_length=128)
    network: str = Field(default="TRC20", max_length=32)


class NowPaymentsGenerateRequest(ClientRequest):
    payment_id: uuid.UUID
    pay_currency: str = Field(..., min_length=2, max_length=32)
    usd_amount: float = Field(..., gt=0)
    payment_reference: str = Field(..., min_length=1, max_length=128)


# --- Admin requests ---


class ManualPaymentRequest(ClientRequest):
    request_id: uuid.UUID
    amount: float = Field(..., gt=0)
    currency: str = Field(default="NGN", min_length=3, max_length=8)
    payment_method: PaymentMethod
    payment_type: PaymentType = PaymentType.FULL
    reference: Optional[str] = Field(default=None, max_length=128)
    payment_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    admin_verified: bool = False

    @field_validator("payment_method")
    @classmethod
    def offline_method(cls, v: PaymentMethod) -> PaymentMethod:
        if v not in MANUAL_METHODS:
            raise ValueError("Manual entry supports bank_transfer, cash, cheque or other")
        return v

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class ApprovePaymentRequest(ClientRequest):
    notes: Optional[str] = Field(default=None, max_length=1000)


class CancelPaymentRequest(ClientRequest):
    reason: Optional[str] = Field(default=None, max_length=500)


class IssueLinkRequest(ClientRequest):
    hours: Optional[float] = Field(default=None, gt=0, le=24 * 7)


class DeactivateLinkRequest(ClientRequest):
    action: Literal["deactivate"]
    reason: Optional[str] = Field(default=None, max_length=500)
