"""Service fee calculation.

The marketplace fee is charged on top of the job price: the customer pays
price + fee, the provider receives the price. The fee is computed once at
charge time and frozen on the Transaction; release reads it back from there.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.config import settings
from app.errors import ValidationError

CENT = Decimal("0.01")


@dataclass(frozen=True)
class ChargeBreakdown:
    price: Decimal
    service_fee: Decimal
    amount: Decimal  # total charged to the customer

    @property
    def provider_amount(self) -> Decimal:
        return self.amount - self.service_fee

    def to_dict(self) -> dict:
        return {
            "price": str(self.price),
            "service_fee": str(self.service_fee),
            "amount": str(self.amount),
            "provider_amount": str(self.provider_amount),
        }


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_charge(price: Decimal, rate: Decimal | None = None) -> ChargeBreakdown:
    """Return the fee and total charge for a job price, rounded half-up to cents."""
    if rate is None:
        rate = settings.service_fee_rate
    if price is None or price <= 0:
        raise ValidationError("Job price must be positive")
    if rate < 0:
        raise ValidationError("Service fee rate cannot be negative")

    price = quantize(Decimal(price))
    service_fee = quantize(price * Decimal(rate))
    return ChargeBreakdown(price=price, service_fee=service_fee, amount=price + service_fee)
