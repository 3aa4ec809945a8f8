"""Payment gateway interface.

Every gateway normalizes its provider's responses into the result types
below. Gateways never touch the ledger: they report what happened at the
provider and the escrow state machine decides what it means.
"""

import enum
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal

from app.errors import ValidationError
from app.models.transaction import GatewayName


@dataclass
class ChargeResult:
    success: bool
    external_payment_id: str | None = None
    # Stripe client secret, or the PayPal approval URL the customer is sent to.
    redirect_or_client_secret: str | None = None
    error_message: str | None = None


@dataclass
class CaptureResult:
    success: bool
    captured_amount: Decimal | None = None
    error_message: str | None = None
    # False when retrying the capture can never succeed (declined, order voided).
    retryable: bool = False


class GatewayEventKind(enum.Enum):
    AUTHORIZED = "authorized"  # payer approved, capture still required
    CONFIRMED = "confirmed"  # funds captured
    FAILED = "failed"
    REFUNDED = "refunded"
    IGNORED = "ignored"


@dataclass
class GatewayEvent:
    kind: GatewayEventKind
    event_id: str
    raw_type: str
    external_payment_id: str | None = None
    reason: str | None = None


class PaymentGateway(ABC):
    """Common interface for the card and wallet gateways."""

    name: GatewayName

    @abstractmethod
    async def charge(
        self,
        amount: Decimal,
        job_id: str,
        customer_id: str,
        description: str,
        idempotency_key: str,
    ) -> ChargeResult:
        """Open a payment for `amount`. Does not move funds into escrow."""

    @abstractmethod
    async def capture(self, external_payment_id: str, idempotency_key: str) -> CaptureResult:
        """Collect an authorized payment."""

    @abstractmethod
    async def void(self, external_payment_id: str) -> bool:
        """Best-effort cancellation of a payment that will never be used."""

    @abstractmethod
    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        """Verify a webhook delivery and map it to a GatewayEvent.

        Raises SignatureVerificationFailed when the delivery is not authentic.
        """

    @staticmethod
    def _check_amount(amount: Decimal) -> None:
        if amount is None or amount <= 0:
            raise ValidationError("Charge amount must be positive")

    @staticmethod
    def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
        return {k.lower(): v for k, v in headers.items()}
