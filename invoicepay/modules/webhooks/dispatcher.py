"""
Webhook dispatcher for both payment rails.

Each handler turns one inbound request into a ``WebhookOutcome`` (HTTP status,
body, audit status) instead of raising, and records exactly one audit entry
per request whatever branch was taken.

Status policy:
    401  signature failure (card rail)
    400  unparseable body or missing correlation key
    503  the event was valid but could not be applied; the sender should retry
    200  everything else, including "invoice not found", once logged
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import json
import logging

from sqlalchemy.orm import Session

from invoicepay.common.exceptions import (
    AuthenticationError,
    CredentialsError,
    GatewayError,
    MalformedInputError,
    PaymentError,
    PersistenceError,
    ResolutionError,
)
from invoicepay.core.config import settings
from invoicepay.modules.invoices.crud import InvoiceStore
from invoicepay.modules.invoices.models import Invoice, PaymentMethod
from invoicepay.modules.payments import signature
from invoicepay.modules.payments.reconciliation import (
    InvoiceReceipt,
    PaymentEvent,
    PaymentEventType,
    ReconciliationResult,
    ReconciliationService,
)
from invoicepay.modules.payments.service import PaymentService
from invoicepay.modules.webhooks.audit import (
    AuditEntry,
    STATUS_ERROR,
    STATUS_PROCESSED,
    STATUS_RECEIVED,
    WebhookAuditLog,
)

logger = logging.getLogger(__name__)

RAIL_CARD = "card"
RAIL_CRYPTO = "crypto"

CARD_SALE = "transaction.sale"
CARD_REFUND = "transaction.refund"
CARD_VOID = "transaction.void"

SALE_APPROVED_RESPONSE_CODE = "100"
SALE_APPROVED_RESPONSE = "1"


@dataclass
class WebhookOutcome:
    status_code: int
    body: Dict[str, Any]
    audit_status: str
    invoice_id: Optional[Any] = None
    merchant_id: Optional[Any] = None
    receipt: Optional[InvoiceReceipt] = None

    @property
    def message(self) -> Optional[str]:
        return self.body.get("message") or self.body.get("error")


@dataclass
class _RequestContext:
    rail: str
    event_type: Optional[str] = None
    payload: Any = None
    invoice_id: Optional[Any] = None
    merchant_id: Optional[Any] = None


def _error_outcome(exc: PaymentError, ctx: _RequestContext) -> WebhookOutcome:
    if isinstance(exc, AuthenticationError):
        return WebhookOutcome(401, {"error": exc.message}, STATUS_ERROR)
    if isinstance(exc, (PersistenceError, GatewayError)):
        # checked before MalformedInputError: a malformed gateway answer is still retryable here
        return WebhookOutcome(
            503, {"status": "error", "message": exc.message, "retryable": True}, STATUS_ERROR,
            invoice_id=ctx.invoice_id, merchant_id=ctx.merchant_id,
        )
    if isinstance(exc, MalformedInputError):
        return WebhookOutcome(400, {"error": exc.message}, STATUS_ERROR,
                              invoice_id=ctx.invoice_id, merchant_id=ctx.merchant_id)
    if isinstance(exc, (ResolutionError, CredentialsError)):
        body = {"status": "error", "message": exc.message}
        if ctx.rail == RAIL_CRYPTO:
            body = {"success": False, "message": exc.message}
        return WebhookOutcome(200, body, STATUS_ERROR, invoice_id=ctx.invoice_id, merchant_id=ctx.merchant_id)
    return WebhookOutcome(200, {"status": "error", "message": exc.message}, STATUS_ERROR,
                          invoice_id=ctx.invoice_id, merchant_id=ctx.merchant_id)


def _parse_json_object(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedInputError("Invalid webhook - unable to parse JSON body") from e
    if not isinstance(payload, dict):
        raise MalformedInputError("Invalid webhook - JSON body must be an object")
    return payload


def _string_field(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    return str(value)


class WebhookDispatcher:
    def __init__(self, db: Session, audit_log: WebhookAuditLog, payment_service: PaymentService,
                 signing_key: Optional[str] = None):
        self.db = db
        self.store = InvoiceStore(db)
        self.reconciliation = ReconciliationService(db)
        self.audit_log = audit_log
        self.payment_service = payment_service
        self.signing_key = signing_key if signing_key is not None else settings.CARD_WEBHOOK_SIGNING_KEY

    def _finish(self, ctx: _RequestContext, outcome: WebhookOutcome) -> WebhookOutcome:
        if outcome.invoice_id is None:
            outcome.invoice_id = ctx.invoice_id
        if outcome.merchant_id is None:
            outcome.merchant_id = ctx.merchant_id
        self.audit_log.record(AuditEntry.build(
            rail=ctx.rail,
            event_type=ctx.event_type,
            status=outcome.audit_status,
            payload=ctx.payload,
            invoice_id=outcome.invoice_id,
            merchant_id=outcome.merchant_id,
            message=outcome.message,
        ))
        log = logger.info if outcome.status_code < 400 else logger.warning
        log(
            f"{ctx.rail} webhook {ctx.event_type or 'unknown'} -> HTTP {outcome.status_code} "
            f"({outcome.audit_status}) invoice={outcome.invoice_id}: {outcome.message}"
        )
        return outcome

    def _resolved(self, ctx: _RequestContext, invoice: Invoice) -> None:
        ctx.invoice_id = invoice.id
        ctx.merchant_id = invoice.merchant_id

    # Card rail

    def handle_card(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        ctx = _RequestContext(rail=RAIL_CARD)
        try:
            outcome = self._process_card(raw_body, signature_header, ctx)
        except PaymentError as e:
            outcome = _error_outcome(e, ctx)
        except Exception:
            self._finish(ctx, WebhookOutcome(500, {"status": "error", "message": "Internal error"}, STATUS_ERROR))
            raise
        return self._finish(ctx, outcome)

    def _process_card(self, raw_body: bytes, signature_header: Optional[str],
                      ctx: _RequestContext) -> WebhookOutcome:
        try:
            signature.verify(raw_body, signature_header, self.signing_key)
        except AuthenticationError:
            # unverified input is kept for debugging only
            ctx.payload = raw_body.decode("utf-8", errors="replace")
            raise

        payload = _parse_json_object(raw_body)
        ctx.payload = payload
        ctx.event_type = _string_field(payload, "type")
        if ctx.event_type is None:
            raise MalformedInputError("Invalid webhook - missing 'type'")

        handled = (CARD_SALE, CARD_REFUND, CARD_VOID)
        data = payload.get("data")
        if ctx.event_type in handled and not isinstance(data, dict):
            raise MalformedInputError("Invalid webhook - missing 'data'")

        if ctx.event_type == CARD_SALE:
            return self._card_sale(data, ctx)
        if ctx.event_type == CARD_REFUND:
            return self._card_reversal(data, ctx, PaymentEventType.REFUNDED)
        if ctx.event_type == CARD_VOID:
            return self._card_reversal(data, ctx, PaymentEventType.VOIDED)

        logger.info(f"Unhandled card webhook type: {ctx.event_type}")
        return WebhookOutcome(
            200,
            {"status": "ignored", "message": f"Webhook received, but no handler for type: {ctx.event_type}"},
            STATUS_RECEIVED,
        )

    def _card_sale(self, data: Dict[str, Any], ctx: _RequestContext) -> WebhookOutcome:
        order_id = _string_field(data, "orderid")
        if order_id is None:
            raise MalformedInputError("Missing orderid in webhook")

        invoice = self.store.resolve_order_reference(order_id)
        if invoice is None:
            raise ResolutionError("Invoice not found", context={"orderid": order_id})
        self._resolved(ctx, invoice)

        approved = (
            _string_field(data, "response_code") == SALE_APPROVED_RESPONSE_CODE
            and _string_field(data, "response") == SALE_APPROVED_RESPONSE
        )
        if approved:
            event = PaymentEvent(
                PaymentEventType.SALE_SUCCEEDED,
                transaction_id=_string_field(data, "transactionid"),
                payment_method=PaymentMethod.CREDIT_CARD,
            )
        else:
            event = PaymentEvent(PaymentEventType.SALE_FAILED, detail=_string_field(data, "responsetext"))

        result = self.reconciliation.apply(invoice.id, event)
        if not approved:
            message = "Transaction failure recorded"
        elif result.transition.is_noop:
            message = f"Invoice already {result.status.value}"
        else:
            message = "Invoice updated to paid"
        return self._reconciled(result, message)

    def _card_reversal(self, data: Dict[str, Any], ctx: _RequestContext,
                       event_type: PaymentEventType) -> WebhookOutcome:
        transaction_id = _string_field(data, "transactionid")
        order_id = _string_field(data, "orderid")
        if transaction_id is None and order_id is None:
            raise MalformedInputError("Missing transactionid in webhook")

        invoice = self.store.get_by_transaction_id(transaction_id) if transaction_id else None
        if invoice is None and order_id:
            invoice = self.store.resolve_order_reference(order_id)
        if invoice is None:
            raise ResolutionError("Invoice not found", context={"transactionid": transaction_id})
        self._resolved(ctx, invoice)

        result = self.reconciliation.apply(invoice.id, PaymentEvent(event_type, transaction_id=transaction_id))
        if result.transition.is_noop:
            message = f"Invoice left as {result.status.value}"
        else:
            message = f"Invoice updated to {result.status.value}"
        return self._reconciled(result, message)

    def _reconciled(self, result: ReconciliationResult, message: str) -> WebhookOutcome:
        return WebhookOutcome(
            200,
            {"status": "success", "message": message},
            STATUS_PROCESSED,
            invoice_id=result.invoice_id,
            merchant_id=result.merchant_id,
            receipt=result.receipt if result.newly_paid else None,
        )

    # Crypto rail

    def handle_crypto(self, raw_body: bytes) -> WebhookOutcome:
        """
        Crypto callbacks are unsigned, so their body is never trusted for the
        transition: ``trackingId`` only selects the invoice, and the status
        comes from the authenticated provider status check.
        """
        ctx = _RequestContext(rail=RAIL_CRYPTO, event_type="payment.status")
        try:
            outcome = self._process_crypto(raw_body, ctx)
        except PaymentError as e:
            outcome = _error_outcome(e, ctx)
        except Exception:
            self._finish(ctx, WebhookOutcome(500, {"success": False, "message": "Internal error"}, STATUS_ERROR))
            raise
        return self._finish(ctx, outcome)

    def _process_crypto(self, raw_body: bytes, ctx: _RequestContext) -> WebhookOutcome:
        payload = _parse_json_object(raw_body)
        ctx.payload = payload

        tracking_id = _string_field(payload, "trackingId")
        if tracking_id is None:
            raise MalformedInputError("Tracking ID not found in webhook")

        invoice = self.store.get_by_tracking_id(tracking_id)
        if invoice is None:
            raise ResolutionError("Invoice not found for this payment", context={"tracking_id": tracking_id})
        self._resolved(ctx, invoice)

        confirmation = self.payment_service.confirm_crypto_payment(
            invoice, source="webhook", reported_status=_string_field(payload, "status")
        )

        result = confirmation.result
        return WebhookOutcome(
            200,
            {
                "success": True,
                "message": "Payment verified successfully",
                "payment": confirmation.status.raw,
                "invoice": {"id": confirmation.gateway_invoice_id, "amount": str(confirmation.total)},
            },
            STATUS_PROCESSED,
            receipt=result.receipt if result is not None and result.newly_paid else None,
        )
