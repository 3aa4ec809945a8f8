"""Pydantic v2 schemas for the job escrow endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.transaction import PaymentMethod
from app.schemas.escrow import TransactionResponse


class HireRequest(BaseModel):
    """Customer hires a provider who quoted on the job, paying now."""
    provider_id: uuid.UUID
    payment_method: PaymentMethod = PaymentMethod.CARD


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1024)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    title: str
    price: Decimal
    posted_by_id: uuid.UUID
    hired_provider_id: uuid.UUID | None
    transaction_id: uuid.UUID | None
    state: str
    # Legacy projections read by the marketplace UI
    status: str
    payment_status: str
    escrow_end_date: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @field_validator("state", mode="before")
    @classmethod
    def serialize_state(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class HireResponse(BaseModel):
    success: bool = True
    job: JobResponse
    transaction: TransactionResponse
    # Stripe client secret for card confirmation, or the PayPal approval URL.
    redirect_or_client_secret: str | None = None


class JobActionResponse(BaseModel):
    success: bool = True
    already_processed: bool = False
    job: JobResponse
