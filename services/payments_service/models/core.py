import uuid
from datetime import datetime

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.payments_service.models.enums import (
    PartialPaymentStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    ServiceRequestStatus,
    enum_values,
)
from sqlalchemy import Boolean, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Float, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class ServiceRequest(Base):
    """A client's request for work, and the ledger its payments settle."""

    __tablename__ = "service_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    client_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[ServiceRequestStatus] = mapped_column(
        SAEnum(
            ServiceRequestStatus,
            name="service_request_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=ServiceRequestStatus.PENDING,
        nullable=False,
    )

    estimated_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_paid: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    balance_due: Mapped[float | None] = mapped_column(Float, nullable=True)
    partial_payment_status: Mapped[PartialPaymentStatus] = mapped_column(
        SAEnum(
            PartialPaymentStatus,
            name="partial_payment_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=PartialPaymentStatus.NONE,
        nullable=False,
    )

    payment_link_expiry: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payment_link_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<ServiceRequest {self.id} {self.status.value}>"


class Payment(Base):
    """One payment attempt against a service request."""

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("request_id", "payment_sequence", name="uq_payments_request_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.id", ondelete="CASCADE"), index=True, nullable=False
    )
    payment_sequence: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="NGN", nullable=False)

    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(
            PaymentMethod,
            name="payment_method_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    payment_type: Mapped[PaymentType] = mapped_column(
        SAEnum(
            PaymentType,
            name="payment_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=PaymentType.FULL,
        nullable=False,
    )
    is_partial_payment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_amount_due: Mapped[float | None] = mapped_column(Float, nullable=True)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(
            PaymentStatus,
            name="payment_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=PaymentStatus.PENDING,
        index=True,
        nullable=False,
    )

    # Provider provenance, one cluster per payment_method
    paystack_reference: Mapped[str | None] = mapped_column(
        String(128), index=True, nullable=True
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(
        String(128), index=True, nullable=True
    )
    crypto_transaction_hash: Mapped[str | None] = mapped_column(
        String(128), unique=True, nullable=True
    )
    crypto_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    crypto_network: Mapped[str | None] = mapped_column(String(32), nullable=True)
    crypto_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    crypto_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)

    # Audit trail
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    confirmed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deleted_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    manual_entry: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    admin_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # "metadata" is reserved by SQLAlchemy's Declarative API, so we map the DB column
    # named "metadata" onto a safe attribute name.
    payment_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def append_note(self, note: str) -> None:
        self.admin_notes = append_note(self.admin_notes, note)

    def __repr__(self):
        return f"<Payment {self.id} {self.payment_status.value}>"


class AdminAuditLog(Base):
    """Record of admin actions taken on payments and payment links."""

    __tablename__ = "admin_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    admin_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    audit_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )


def append_note(existing: str | None, note: str) -> str:
    """Append a line to an admin notes trail."""
    if not existing:
        return note
    return f"{existing}\n{note}"
