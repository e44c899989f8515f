"""create payment reconciliation tables

Revision ID: b7c41e2a9d10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "b7c41e2a9d10"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

service_request_status = sa.Enum(
    "pending",
    "approved",
    "rejected",
    "partially_paid",
    "paid",
    "paid_in_full",
    "in_progress",
    "confirmed",
    "completed",
    "cancelled",
    name="service_request_status_enum",
)
partial_payment_status = sa.Enum(
    "none", "first_paid", "completed", name="partial_payment_status_enum"
)
payment_method = sa.Enum(
    "paystack",
    "stripe",
    "bank_transfer",
    "crypto",
    "cash",
    "cheque",
    "other",
    name="payment_method_enum",
)
payment_type = sa.Enum("full", "split", name="payment_type_enum")
payment_status = sa.Enum(
    "pending",
    "processing",
    "success",
    "completed",
    "confirmed",
    "failed",
    "cancelled",
    "declined",
    "expired",
    "deleted",
    name="payment_status_enum",
)


def upgrade() -> None:
    op.create_table(
        "service_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("client_id", sa.String(64), nullable=True),
        sa.Column("client_name", sa.String(255), nullable=True),
        sa.Column("client_email", sa.String(255), nullable=True),
        sa.Column("status", service_request_status, nullable=False),
        sa.Column("estimated_cost", sa.Float(), nullable=True),
        sa.Column("total_paid", sa.Float(), nullable=False, server_default="0"),
        sa.Column("balance_due", sa.Float(), nullable=True),
        sa.Column("partial_payment_status", partial_payment_status, nullable=False),
        sa.Column("payment_link_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_link_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_service_requests_client_id", "service_requests", ["client_id"]
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "request_id",
            sa.Uuid(),
            sa.ForeignKey("service_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("payment_sequence", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("payment_method", payment_method, nullable=False),
        sa.Column("payment_type", payment_type, nullable=False),
        sa.Column("is_partial_payment", sa.Boolean(), nullable=False),
        sa.Column("total_amount_due", sa.Float(), nullable=True),
        sa.Column("payment_status", payment_status, nullable=False),
        sa.Column("paystack_reference", sa.String(128), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(128), nullable=True),
        sa.Column("crypto_transaction_hash", sa.String(128), nullable=True),
        sa.Column("crypto_address", sa.String(128), nullable=True),
        sa.Column("crypto_network", sa.String(32), nullable=True),
        sa.Column("crypto_amount", sa.Float(), nullable=True),
        sa.Column("crypto_symbol", sa.String(16), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_by", sa.String(255), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(255), nullable=True),
        sa.Column("manual_entry", sa.Boolean(), nullable=False),
        sa.Column("admin_verified", sa.Boolean(), nullable=False),
        sa.Column("metadata", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "request_id", "payment_sequence", name="uq_payments_request_sequence"
        ),
        sa.UniqueConstraint("crypto_transaction_hash"),
    )
    op.create_index("ix_payments_request_id", "payments", ["request_id"])
    op.create_index("ix_payments_payment_status", "payments", ["payment_status"])
    op.create_index("ix_payments_paystack_reference", "payments", ["paystack_reference"])
    op.create_index(
        "ix_payments_stripe_payment_intent_id", "payments", ["stripe_payment_intent_id"]
    )
    op.create_index("ix_payments_created_at", "payments", ["created_at"])

    op.create_table(
        "admin_audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("admin_user_id", sa.String(64), nullable=True),
        sa.Column("admin_email", sa.String(255), nullable=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("resource_type", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.String(64), nullable=False),
        sa.Column("metadata", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_admin_audit_log_resource_id", "admin_audit_log", ["resource_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_admin_audit_log_resource_id", table_name="admin_audit_log")
    op.drop_table("admin_audit_log")
    op.drop_index("ix_payments_created_at", table_name="payments")
    op.drop_index("ix_payments_stripe_payment_intent_id", table_name="payments")
    op.drop_index("ix_payments_paystack_reference", table_name="payments")
    op.drop_index("ix_payments_payment_status", table_name="payments")
    op.drop_index("ix_payments_request_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_service_requests_client_id", table_name="service_requests")
    op.drop_table("service_requests")

    bind = op.get_bind()
    for enum_type in (
        payment_status,
        payment_type,
        payment_method,
        partial_payment_status,
        service_request_status,
    ):
        enum_type.drop(bind, checkfirst=True)
