"""Card gateway backed by Stripe PaymentIntents.

Intents use automatic capture, so a card payment is captured by the time
Stripe reports `payment_intent.succeeded`. `capture` therefore only reads
the intent back and reports whether the funds are in.
"""

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from decimal import Decimal
from typing import Any

import stripe

from app.config import settings
from app.errors import SignatureVerificationFailed
from app.gateways.base import (
    CaptureResult,
    ChargeResult,
    GatewayEvent,
    GatewayEventKind,
    PaymentGateway,
)
from app.models.transaction import GatewayName

logger = logging.getLogger(__name__)

_EVENT_KIND_MAP = {
    "payment_intent.succeeded": GatewayEventKind.CONFIRMED,
    "payment_intent.payment_failed": GatewayEventKind.FAILED,
    "payment_intent.canceled": GatewayEventKind.FAILED,
    "charge.refunded": GatewayEventKind.REFUNDED,
}

# Intent states from which the payment can still complete.
_PENDING_INTENT_STATES = {"processing", "requires_action", "requires_confirmation", "requires_capture"}


def _to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


class StripeGateway(PaymentGateway):
    name = GatewayName.STRIPE

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        currency: str | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )
        self.currency = currency or settings.currency

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking Stripe SDK call off the event loop, bounded by the gateway timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs),
            timeout=settings.gateway_timeout_seconds,
        )

    async def charge(
        self,
        amount: Decimal,
        job_id: str,
        customer_id: str,
        description: str,
        idempotency_key: str,
    ) -> ChargeResult:
        self._check_amount(amount)
        try:
            intent = await self._call(
                stripe.PaymentIntent.create,
                amount=_to_cents(amount),
                currency=self.currency,
                description=description,
                metadata={"job_id": job_id, "customer_id": customer_id},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            logger.warning("Stripe declined charge for job %s: %s", job_id, e.user_message or e)
            return ChargeResult(success=False, error_message=str(e.user_message or e))
        except stripe.StripeError as e:
            logger.error("Stripe error creating intent for job %s: %s", job_id, e)
            return ChargeResult(success=False, error_message=str(e.user_message or e))
        except TimeoutError:
            logger.error("Stripe timed out creating intent for job %s", job_id)
            return ChargeResult(success=False, error_message="Card gateway timed out")

        logger.info("Stripe intent %s created for job %s, amount %s", intent.id, job_id, amount)
        return ChargeResult(
            success=True,
            external_payment_id=intent.id,
            redirect_or_client_secret=intent.client_secret,
        )

    async def capture(self, external_payment_id: str, idempotency_key: str) -> CaptureResult:
        try:
            intent = await self._call(stripe.PaymentIntent.retrieve, external_payment_id)
        except stripe.StripeError as e:
            logger.error("Stripe error retrieving intent %s: %s", external_payment_id, e)
            return CaptureResult(success=False, error_message=str(e), retryable=True)
        except TimeoutError:
            return CaptureResult(success=False, error_message="Card gateway timed out", retryable=True)

        if intent.status == "succeeded":
            return CaptureResult(
                success=True,
                captured_amount=Decimal(intent.amount_received) / 100,
            )
        return CaptureResult(
            success=False,
            error_message=f"Payment intent is {intent.status}",
            retryable=intent.status in _PENDING_INTENT_STATES,
        )

    async def void(self, external_payment_id: str) -> bool:
        try:
            await self._call(stripe.PaymentIntent.cancel, external_payment_id)
        except (stripe.StripeError, TimeoutError):
            logger.exception("Failed to cancel Stripe intent %s", external_payment_id)
            return False
        return True

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        signature = self._lower_headers(headers).get("stripe-signature")
        if not signature or not self.webhook_secret:
            raise SignatureVerificationFailed("Missing Stripe signature")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, settings.stripe_webhook_tolerance_seconds
            )
        except UnicodeDecodeError as e:
            raise SignatureVerificationFailed("Stripe payload is not valid UTF-8") from e
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationFailed(f"Invalid Stripe signature: {e}") from e

        try:
            event = json.loads(body)
            event_type = event["type"]
            obj = event["data"]["object"]
        except (ValueError, KeyError, TypeError) as e:
            raise SignatureVerificationFailed("Malformed Stripe event") from e

        kind = _EVENT_KIND_MAP.get(event_type, GatewayEventKind.IGNORED)
        if event_type == "charge.refunded":
            external_id = obj.get("payment_intent")
            # Stripe sends charge.refunded for partial refunds too; only a full refund unwinds escrow.
            if not obj.get("refunded"):
                logger.warning(
                    "Partial refund on intent %s (%s of %s cents), not refunding escrow",
                    external_id, obj.get("amount_refunded"), obj.get("amount"),
                )
                kind = GatewayEventKind.IGNORED
        else:
            external_id = obj.get("id")

        reason = None
        if kind is GatewayEventKind.FAILED:
            last_error = obj.get("last_payment_error") or {}
            reason = last_error.get("message") or obj.get("cancellation_reason") or event_type

        return GatewayEvent(
            kind=kind,
            event_id=event.get("id", ""),
            raw_type=event_type,
            external_payment_id=external_id,
            reason=reason,
        )
