"""Job and Quote SQLAlchemy models.

A job's escrow lifecycle is one tagged `state` column. The two fields the
marketplace UI reads (`status`, `payment_status`) are projections of it and
are never stored, so they cannot disagree.
"""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime


class JobState(enum.Enum):
    OPEN = "open"
    CHARGE_PENDING = "charge_pending"
    IN_ESCROW = "in_escrow"
    RELEASED = "released"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


# state -> (status, payment_status)
LEGACY_PROJECTION: dict[JobState, tuple[str, str]] = {
    JobState.OPEN: ("active", "pending"),
    JobState.CHARGE_PENDING: ("active", "pending"),
    JobState.IN_ESCROW: ("in_progress", "in_escrow"),
    JobState.RELEASED: ("completed", "released"),
    JobState.REFUNDED: ("cancelled", "refunded"),
    JobState.CANCELLED: ("cancelled", "pending"),
}


class Job(Base):
    __tablename__ = "jobs"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    posted_by_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    hired_provider_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    # Points at the live transaction; transactions.job_id carries the foreign key.
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    state: Mapped[JobState] = mapped_column(
        Enum(JobState, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobState.OPEN,
        index=True,
    )
    escrow_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def status(self) -> str:
        return LEGACY_PROJECTION[self.state][0]

    @property
    def payment_status(self) -> str:
        return LEGACY_PROJECTION[self.state][1]


class QuoteStatus(enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class Quote(Base):
    __tablename__ = "quotes"
    __table_args__ = (UniqueConstraint("job_id", "provider_id", name="uq_quotes_job_provider"),)

    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[QuoteStatus] = mapped_column(
        Enum(QuoteStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=QuoteStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
