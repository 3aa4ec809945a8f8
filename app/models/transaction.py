"""Transaction SQLAlchemy model: one gateway charge and its escrow outcome."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Enum,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    IN_ESCROW = "in_escrow"
    RELEASED = "released"
    FAILED = "failed"
    REFUNDED = "refunded"


# Monotonic: released, failed and refunded rows are immutable.
VALID_TRANSITIONS: dict[TransactionStatus, set[TransactionStatus]] = {
    TransactionStatus.PENDING: {TransactionStatus.IN_ESCROW, TransactionStatus.FAILED},
    TransactionStatus.IN_ESCROW: {TransactionStatus.RELEASED, TransactionStatus.REFUNDED},
    TransactionStatus.RELEASED: set(),
    TransactionStatus.FAILED: set(),
    TransactionStatus.REFUNDED: set(),
}


class GatewayName(enum.Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class PaymentMethod(enum.Enum):
    CARD = "card"
    PAYPAL = "paypal"


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("gateway", "payment_id", name="uq_transactions_gateway_payment_id"),
        CheckConstraint("service_fee >= 0", name="ck_transactions_fee_nonnegative"),
        CheckConstraint("amount >= service_fee", name="ck_transactions_amount_covers_fee"),
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    # Set when the hire finalizes at charge confirmation.
    provider_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    service_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    gateway: Mapped[GatewayName] = mapped_column(
        Enum(GatewayName, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    escrowed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def provider_amount(self) -> Decimal:
        return self.amount - self.service_fee
