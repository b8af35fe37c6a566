"""
Error taxonomy for the payment reconciliation subsystem.

Every error carries the HTTP status it maps to, a stable ``error_code`` and a
``context`` dict with the identifiers needed to investigate or resend manually.
The mapping to an HTTP response happens once, in the exception handlers
registered by ``invoicepay.main`` (and in the webhook dispatcher, which turns
errors into explicit outcomes so that every branch is audited).
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    status_code = 500
    error_code = "payment_error"
    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }


# Inbound authentication

class AuthenticationError(PaymentError):
    status_code = 401
    error_code = "authentication_error"


class MissingSignature(AuthenticationError):
    error_code = "missing_signature"


class MalformedHeader(AuthenticationError):
    error_code = "malformed_signature_header"


class SignatureMismatch(AuthenticationError):
    error_code = "signature_mismatch"


# Input and resolution

class MalformedInputError(PaymentError):
    status_code = 400
    error_code = "malformed_input"


class ResolutionError(PaymentError):
    status_code = 404
    error_code = "invoice_not_found"


class InvoiceStateError(PaymentError):
    status_code = 409
    error_code = "invalid_invoice_state"


class CredentialsError(PaymentError):
    status_code = 400
    error_code = "credentials_unavailable"


class PersistenceError(PaymentError):
    """The decision was valid but could not be stored; the sender should retry."""

    status_code = 503
    error_code = "persistence_error"
    retryable = True


# Outbound gateways

class GatewayError(PaymentError):
    status_code = 502
    error_code = "gateway_error"


class GatewayTransportError(GatewayError):
    """Connection failure or timeout. The customer may try again."""

    status_code = 503
    error_code = "gateway_transport_error"
    retryable = True


class GatewayDeclinedError(GatewayError):
    """Business decline, terminal for this attempt."""

    status_code = 402
    error_code = "payment_declined"

    def __init__(self, message: str, response_code: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.response_code = response_code

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["code"] = self.response_code
        return payload


class GatewayPermissionError(GatewayError):
    status_code = 403
    error_code = "gateway_permission_denied"


class GatewayResponseError(GatewayError, MalformedInputError):
    """Gateway answered, but without the fields its contract requires."""

    status_code = 502
    error_code = "gateway_malformed_response"
