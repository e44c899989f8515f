"""Payments Service models package."""

from services.payments_service.models.core import (
    AdminAuditLog,
    Payment,
    ServiceRequest,
    append_note,
)
from services.payments_service.models.enums import (
    APPROVABLE_STATUSES,
    DELETABLE_STATUSES,
    MANUAL_METHODS,
    OPEN_STATUSES,
    STALE_STATUSES,
    PartialPaymentStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    ServiceRequestStatus,
)

__all__ = [
    "APPROVABLE_STATUSES",
    "AdminAuditLog",
    "DELETABLE_STATUSES",
    "MANUAL_METHODS",
    "OPEN_STATUSES",
    "PartialPaymentStatus",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentType",
    "STALE_STATUSES",
    "ServiceRequest",
    "ServiceRequestStatus",
    "append_note",
]
