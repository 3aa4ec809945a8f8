"""Typed escrow failures.

Services raise these instead of HTTP errors so the state machine can be
driven from webhooks and background workers as well as from requests.
`app.main` maps them onto JSON responses.
"""

from typing import Any


class EscrowError(Exception):
    status_code = 400
    code = "escrow_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(EscrowError):
    status_code = 422
    code = "validation_error"


class NotFound(EscrowError):
    status_code = 404
    code = "not_found"


class GatewayError(EscrowError):
    """The payment gateway declined or could not be reached. No state changed."""
    status_code = 502
    code = "gateway_error"


class InvalidTransition(EscrowError):
    status_code = 409
    code = "invalid_transition"


class NotAuthorized(EscrowError):
    status_code = 403
    code = "not_authorized"


class SignatureVerificationFailed(EscrowError):
    status_code = 400
    code = "signature_verification_failed"


class AlreadyProcessed(EscrowError):
    """The requested transition was already applied. Callers treat this as success."""
    status_code = 200
    code = "already_processed"

    def __init__(self, message: str, job: Any = None, transaction: Any = None) -> None:
        super().__init__(message)
        self.job = job
        self.transaction = transaction
