"""Wallet gateway backed by PayPal Orders v2.

PayPal is two-phase: `charge` creates an order and returns the approval
URL, the payer approves it on PayPal, and only `capture` moves the money.
Capture is triggered either by the payer's return to the frontend or by
the CHECKOUT.ORDER.APPROVED webhook, whichever arrives first.
"""

import json
import logging
import time
from collections.abc import Mapping
from decimal import Decimal

import httpx

from app.config import settings
from app.errors import GatewayError, SignatureVerificationFailed
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
    "CHECKOUT.ORDER.APPROVED": GatewayEventKind.AUTHORIZED,
    "PAYMENT.CAPTURE.COMPLETED": GatewayEventKind.CONFIRMED,
    "PAYMENT.CAPTURE.DENIED": GatewayEventKind.FAILED,
    "PAYMENT.CAPTURE.DECLINED": GatewayEventKind.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": GatewayEventKind.REFUNDED,
}

# Capture errors that will never succeed on retry.
_TERMINAL_CAPTURE_ISSUES = {
    "INSTRUMENT_DECLINED",
    "PAYER_ACTION_REQUIRED",
    "ORDER_EXPIRED",
    "TRANSACTION_REFUSED",
    "PAYEE_ACCOUNT_RESTRICTED",
}

_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _issue(response: httpx.Response) -> str | None:
    try:
        details = response.json().get("details") or []
    except ValueError:
        return None
    return details[0].get("issue") if details else None


class PayPalGateway(PaymentGateway):
    name = GatewayName.PAYPAL

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        webhook_id: str | None = None,
    ) -> None:
        self.client = client or httpx.AsyncClient(
            base_url=settings.paypal_api_url, timeout=settings.gateway_timeout_seconds
        )
        self.client_id = client_id if client_id is not None else settings.paypal_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.paypal_client_secret
        )
        self.webhook_id = webhook_id if webhook_id is not None else settings.paypal_webhook_id
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        response = await self.client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        response.raise_for_status()
        body = response.json()
        self._token = body["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return self._token

    async def _auth_headers(self, request_id: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {await self._access_token()}"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def charge(
        self,
        amount: Decimal,
        job_id: str,
        customer_id: str,
        description: str,
        idempotency_key: str,
    ) -> ChargeResult:
        self._check_amount(amount)
        order = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": job_id,
                    "custom_id": customer_id,
                    "description": description[:127],
                    "amount": {
                        "currency_code": settings.currency.upper(),
                        "value": f"{amount:.2f}",
                    },
                }
            ],
            "application_context": {
                "user_action": "PAY_NOW",
                "return_url": f"{settings.frontend_url}/payments/success?jobId={job_id}",
                "cancel_url": f"{settings.frontend_url}/payments/cancel",
            },
        }
        try:
            response = await self.client.post(
                "/v2/checkout/orders",
                json=order,
                headers=await self._auth_headers(idempotency_key),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("PayPal rejected order for job %s: %s", job_id, e.response.text)
            return ChargeResult(
                success=False,
                error_message=f"PayPal error: {_issue(e.response) or e.response.status_code}",
            )
        except httpx.HTTPError as e:
            logger.error("PayPal unreachable creating order for job %s: %s", job_id, e)
            return ChargeResult(success=False, error_message="Wallet gateway unavailable")

        body = response.json()
        approve_url = next(
            (link["href"] for link in body.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info("PayPal order %s created for job %s, amount %s", body["id"], job_id, amount)
        return ChargeResult(
            success=True,
            external_payment_id=body["id"],
            redirect_or_client_secret=approve_url,
        )

    async def capture(self, external_payment_id: str, idempotency_key: str) -> CaptureResult:
        try:
            response = await self.client.post(
                f"/v2/checkout/orders/{external_payment_id}/capture",
                json={},
                headers=await self._auth_headers(idempotency_key),
            )
        except httpx.HTTPError as e:
            logger.error("PayPal unreachable capturing order %s: %s", external_payment_id, e)
            return CaptureResult(success=False, error_message="Wallet gateway unavailable", retryable=True)

        if response.status_code == 422:
            issue = _issue(response)
            if issue == "ORDER_ALREADY_CAPTURED":
                return CaptureResult(success=True)
            return CaptureResult(
                success=False,
                error_message=f"PayPal capture refused: {issue}",
                retryable=issue not in _TERMINAL_CAPTURE_ISSUES,
            )
        if response.is_error:
            return CaptureResult(
                success=False,
                error_message=f"PayPal capture error: HTTP {response.status_code}",
                retryable=response.status_code >= 500,
            )

        body = response.json()
        if body.get("status") != "COMPLETED":
            return CaptureResult(
                success=False,
                error_message=f"PayPal order is {body.get('status')}",
                retryable=body.get("status") in ("APPROVED", "SAVED", "PAYER_ACTION_REQUIRED"),
            )

        captured = None
        try:
            value = body["purchase_units"][0]["payments"]["captures"][0]["amount"]["value"]
            captured = Decimal(value)
        except (KeyError, IndexError):
            pass
        return CaptureResult(success=True, captured_amount=captured)

    async def void(self, external_payment_id: str) -> bool:
        # Uncaptured CAPTURE-intent orders cannot be voided; they expire unapproved.
        logger.info("PayPal order %s abandoned, left to expire", external_payment_id)
        return True

    async def _capture_fully_refunded(self, resource: dict) -> bool:
        """Whether the capture behind a refund event has been refunded in full.

        PAYMENT.CAPTURE.REFUNDED carries the refund, not the capture, and is
        sent for partial refunds as well; the capture's own status decides.
        """
        if resource.get("status") in ("REFUNDED", "PARTIALLY_REFUNDED"):
            return resource["status"] == "REFUNDED"

        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        capture_id = related.get("capture_id")
        if not capture_id:
            up = next((link["href"] for link in resource.get("links", []) if link.get("rel") == "up"), None)
            capture_id = up.rstrip("/").rsplit("/", 1)[-1] if up else None
        if not capture_id:
            logger.warning("PayPal refund %s names no capture", resource.get("id"))
            return False

        try:
            response = await self.client.get(
                f"/v2/payments/captures/{capture_id}", headers=await self._auth_headers()
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            # Non-2xx to the webhook makes PayPal redeliver it later.
            raise GatewayError(f"Could not read PayPal capture {capture_id}: {e}") from e
        return response.json().get("status") == "REFUNDED"

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        lowered = self._lower_headers(headers)
        missing = [h for h in _SIGNATURE_HEADERS.values() if not lowered.get(h)]
        if missing or not self.webhook_id:
            raise SignatureVerificationFailed("Missing PayPal transmission headers")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise SignatureVerificationFailed("Malformed PayPal event") from e

        verification = {key: lowered[header] for key, header in _SIGNATURE_HEADERS.items()}
        verification["webhook_id"] = self.webhook_id
        verification["webhook_event"] = event
        try:
            response = await self.client.post(
                "/v1/notifications/verify-webhook-signature",
                json=verification,
                headers=await self._auth_headers(),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SignatureVerificationFailed(f"PayPal signature check failed: {e}") from e
        if response.json().get("verification_status") != "SUCCESS":
            raise SignatureVerificationFailed("PayPal signature rejected")

        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        kind = _EVENT_KIND_MAP.get(event_type, GatewayEventKind.IGNORED)
        if event_type.startswith("CHECKOUT.ORDER."):
            external_id = resource.get("id")
        else:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            external_id = related.get("order_id")

        if kind is GatewayEventKind.REFUNDED and not await self._capture_fully_refunded(resource):
            logger.warning("Partial refund on PayPal order %s, not refunding escrow", external_id)
            kind = GatewayEventKind.IGNORED

        reason = None
        if kind is GatewayEventKind.FAILED:
            reason = (resource.get("status_details") or {}).get("reason") or event_type

        return GatewayEvent(
            kind=kind,
            event_id=event.get("id", ""),
            raw_type=event_type,
            external_payment_id=external_id,
            reason=reason,
        )
