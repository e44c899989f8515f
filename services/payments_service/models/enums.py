"""Enum definitions for payments service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    COMPLETED = "completed"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    EXPIRED = "expired"
    DELETED = "deleted"


class PaymentMethod(str, enum.Enum):
    PAYSTACK = "paystack"
    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"
    CRYPTO = "crypto"
    CASH = "cash"
    CHEQUE = "cheque"
    OTHER = "other"


class PaymentType(str, enum.Enum):
    FULL = "full"
    SPLIT = "split"


class PartialPaymentStatus(str, enum.Enum):
    NONE = "none"
    FIRST_PAID = "first_paid"
    COMPLETED = "completed"


class ServiceRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    PAID_IN_FULL = "paid_in_full"
    IN_PROGRESS = "in_progress"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses an admin may approve into CONFIRMED.
APPROVABLE_STATUSES = frozenset(
    {
        PaymentStatus.SUCCESS,
        PaymentStatus.COMPLETED,
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
    }
)

# Statuses from which a payment may be soft or hard deleted.
DELETABLE_STATUSES = frozenset(
    {
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
    }
)

# Statuses that still wait on a client or provider.
OPEN_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})

# Statuses swept by the stale-row cleanup.
STALE_STATUSES = frozenset(
    {PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED}
)

MANUAL_METHODS = frozenset(
    {
        PaymentMethod.BANK_TRANSFER,
        PaymentMethod.CASH,
        PaymentMethod.CHEQUE,
        PaymentMethod.OTHER,
    }
)
