"""Pydantic v2 schemas for transactions and provider accounts."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: uuid.UUID
    job_id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID | None
    amount: Decimal
    service_fee: Decimal
    provider_amount: Decimal
    status: str
    gateway: str
    payment_method: str
    payment_id: str
    failure_reason: str | None
    escrowed_at: datetime | None
    released_at: datetime | None
    created_at: datetime

    @field_validator("status", "gateway", "payment_method", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class PaymentActionResponse(BaseModel):
    success: bool = True
    already_processed: bool = False
    transaction: TransactionResponse


class ProviderAccountResponse(BaseModel):
    """Earnings view of a user. Balances only grow through escrow release."""
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    name: str
    role: str
    available_balance: Decimal
    total_earnings: Decimal
    total_spending: Decimal

    @field_validator("role", mode="before")
    @classmethod
    def serialize_role(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
