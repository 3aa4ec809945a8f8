"""Create users, jobs, quotes, transactions, escrow_audit_log and escrow_events.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("clerk_id", sa.String(128), unique=True, nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column(
            "role",
            sa.Enum("buyer", "seller", "admin", name="userrole"),
            nullable=False,
            server_default="buyer",
        ),
        sa.Column("available_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_earnings", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_spending", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("available_balance >= 0", name="ck_users_available_balance_nonnegative"),
        sa.CheckConstraint("total_earnings >= 0", name="ck_users_total_earnings_nonnegative"),
    )

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("posted_by_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("hired_provider_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("transaction_id", sa.Uuid(), nullable=True),
        sa.Column(
            "state",
            sa.Enum(
                "open", "charge_pending", "in_escrow", "released", "refunded", "cancelled",
                name="jobstate",
            ),
            nullable=False,
            server_default="open",
        ),
        sa.Column("escrow_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_jobs_state", "jobs", ["state"])
    # Release sweeps scan escrowed jobs by deadline.
    op.create_index(
        "ix_jobs_escrow_end_date_in_escrow", "jobs", ["escrow_end_date"],
        postgresql_where=sa.text("state = 'in_escrow'"),
    )

    op.create_table(
        "quotes",
        sa.Column("quote_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "accepted", "rejected", name="quotestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("job_id", "provider_id", name="uq_quotes_job_provider"),
    )

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("customer_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("provider_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("service_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "in_escrow", "released", "failed", "refunded", name="transactionstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("gateway", sa.Enum("stripe", "paypal", name="gatewayname"), nullable=False),
        sa.Column("payment_method", sa.Enum("card", "paypal", name="paymentmethod"), nullable=False),
        sa.Column("payment_id", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("escrowed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("gateway", "payment_id", name="uq_transactions_gateway_payment_id"),
        sa.CheckConstraint("service_fee >= 0", name="ck_transactions_fee_nonnegative"),
        sa.CheckConstraint("amount >= service_fee", name="ck_transactions_amount_covers_fee"),
    )
    op.create_index("ix_transactions_job_id", "transactions", ["job_id"])

    op.create_table(
        "escrow_audit_log",
        sa.Column("escrow_audit_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "transaction_id", sa.Uuid(),
            sa.ForeignKey("transactions.transaction_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column(
            "action",
            sa.Enum(
                "charge_created", "charge_confirmed", "charge_failed", "released", "refunded",
                name="escrowaction",
            ),
            nullable=False,
        ),
        sa.Column("actor_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=True),
    )
    op.create_index("ix_escrow_audit_log_transaction_id", "escrow_audit_log", ["transaction_id"])

    op.create_table(
        "escrow_events",
        sa.Column("event_id", sa.Uuid(), primary_key=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("recipient_id", sa.Uuid(), nullable=True),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "delivered", name="eventstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_escrow_events_status", "escrow_events", ["status"])


def downgrade() -> None:
    op.drop_table("escrow_events")
    op.drop_table("escrow_audit_log")
    op.drop_table("transactions")
    op.drop_table("quotes")
    op.drop_table("jobs")
    op.drop_table("users")
    for enum_name in (
        "eventstatus", "escrowaction", "paymentmethod", "gatewayname",
        "transactionstatus", "quotestatus", "jobstate", "userrole",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
