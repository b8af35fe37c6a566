from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from invoicepay.common.exceptions import (
    GatewayDeclinedError,
    InvoiceStateError,
    MalformedInputError,
    PaymentError,
    PersistenceError,
    ResolutionError,
)
from invoicepay.modules.invoices.crud import InvoiceStore
from invoicepay.modules.invoices.models import Invoice, InvoiceStatus, PaymentMethod
from invoicepay.modules.merchants.service import CredentialService
from invoicepay.modules.payments.gateway.card import BillingDetails, CardGatewayClient, CardSaleRequest, SaleResult
from invoicepay.modules.payments.gateway.crypto import CryptoGatewayClient, PaymentStatus
from invoicepay.modules.payments.reconciliation import (
    PaymentEvent,
    PaymentEventType,
    ReconciliationResult,
    ReconciliationService,
)
from invoicepay.modules.payments.schemas import CardPaymentRequest, CryptoPaymentRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardPaymentOutcome:
    """
    ``result`` is None when the sale was approved but the invoice could not
    be updated; the ``transaction.sale`` webhook settles it later.
    """
    sale: SaleResult
    invoice_id: UUID
    result: Optional[ReconciliationResult] = None

    @property
    def status(self) -> str:
        return self.result.status.value if self.result is not None else "processing"


@dataclass(frozen=True)
class CryptoPaymentOutcome:
    tracking_id: str
    payment_url: Optional[str]
    has_existing_payment: bool
    status: Optional[PaymentStatus] = None
    result: Optional[ReconciliationResult] = None


@dataclass(frozen=True)
class CryptoConfirmation:
    invoice_id: UUID
    gateway_invoice_id: str
    total: Decimal
    status: PaymentStatus
    result: Optional[ReconciliationResult] = None


def _not_payable_message(invoice: Invoice) -> str:
    if invoice.status == InvoiceStatus.PAID:
        return "This invoice has already been paid."
    return f"This invoice cannot be paid (status: {invoice.status.value})."


class PaymentService:
    """Customer-facing payment flows for both rails."""

    def __init__(self, db: Session, card_gateway: Optional[CardGatewayClient] = None,
                 crypto_gateway: Optional[CryptoGatewayClient] = None):
        self.db = db
        self.store = InvoiceStore(db)
        self.credentials = CredentialService(db)
        self.reconciliation = ReconciliationService(db)
        self.card_gateway = card_gateway or CardGatewayClient()
        self.crypto_gateway = crypto_gateway or CryptoGatewayClient()

    def _check_amount(self, invoice: Invoice, amount: Decimal) -> None:
        if Decimal(amount).quantize(Decimal("0.01")) != Decimal(invoice.total).quantize(Decimal("0.01")):
            logger.warning(
                f"Payment amount {amount} does not match total {invoice.total} for invoice {invoice.id}"
            )
            raise MalformedInputError(
                "Payment amount does not match the invoice total",
                context={"invoice_id": str(invoice.id)},
            )

    def process_card_payment(self, data: CardPaymentRequest) -> CardPaymentOutcome:
        invoice = self.store.get_by_gateway_invoice_id(data.invoice_id)
        if invoice is None:
            logger.error(f"Invoice not found for gateway invoice id {data.invoice_id}")
            raise ResolutionError("Invoice not found", context={"gateway_invoice_id": data.invoice_id})

        logger.info(
            f"Found invoice {invoice.id} for card payment: status={invoice.status.value} total={invoice.total}"
        )
        if not invoice.is_payable:
            raise InvoiceStateError(_not_payable_message(invoice), context={"invoice_id": str(invoice.id)})
        self._check_amount(invoice, data.amount)

        invoice_id = invoice.id
        credentials = self.credentials.card_credentials(invoice.merchant_id)
        sale_request = CardSaleRequest(
            payment_token=data.token,
            amount=invoice.total,
            order_id=invoice.gateway_invoice_id,
            tax=invoice.tax_amount,
            customer_id=invoice.client_email,
            billing=BillingDetails(
                first_name=data.first_name,
                last_name=data.last_name,
                address=data.address,
                city=data.city,
                state=data.state,
                zip=data.zip,
                phone=data.phone,
            ),
        )

        try:
            sale = self.card_gateway.submit_sale(credentials, sale_request)
        except GatewayDeclinedError as e:
            try:
                self.reconciliation.apply(
                    invoice_id,
                    PaymentEvent(PaymentEventType.SALE_FAILED, source="card sale", detail=e.message),
                )
            except PersistenceError as persistence_error:
                logger.error(
                    f"Could not record declined card sale for invoice {invoice_id}: {persistence_error.message}"
                )
            raise

        # The card is charged from here on: never answer with a retryable error
        try:
            result = self.reconciliation.apply(
                invoice_id,
                PaymentEvent(
                    PaymentEventType.SALE_SUCCEEDED,
                    transaction_id=sale.transaction_id,
                    payment_method=PaymentMethod.CREDIT_CARD,
                    source="card sale",
                ),
            )
        except PersistenceError as e:
            logger.error(
                f"Card sale {sale.transaction_id} approved for invoice {invoice_id} but the invoice "
                f"could not be updated, leaving it to the sale webhook: {e.message}"
            )
            return CardPaymentOutcome(sale=sale, invoice_id=invoice_id)
        return CardPaymentOutcome(sale=sale, invoice_id=invoice_id, result=result)

    def create_crypto_payment(self, data: CryptoPaymentRequest) -> CryptoPaymentOutcome:
        """
        Start a crypto payment for an invoice.

        An invoice that already carries a tracking id is never sent to the
        provider again: its existing payment is re-queried instead.
        """
        invoice = self.store.get_by_id(data.invoice_id)
        if invoice is None or invoice.payment_token != data.token:
            raise ResolutionError("Invoice not found", context={"invoice_id": str(data.invoice_id)})

        if invoice.crypto_tracking_id:
            confirmation = self.confirm_crypto_payment(invoice, source="crypto create")
            logger.info(
                f"Invoice {invoice.id} already has crypto payment {invoice.crypto_tracking_id}, "
                f"status {confirmation.status.status_code}"
            )
            return CryptoPaymentOutcome(
                tracking_id=invoice.crypto_tracking_id,
                payment_url=invoice.crypto_payment_url,
                has_existing_payment=True,
                status=confirmation.status,
                result=confirmation.result,
            )

        if not invoice.is_payable:
            raise InvoiceStateError(_not_payable_message(invoice), context={"invoice_id": str(invoice.id)})
        self._check_amount(invoice, data.amount)

        invoice_id = invoice.id
        reference = invoice.gateway_invoice_id
        credentials = self.credentials.crypto_credentials(invoice.merchant_id)
        created = self.crypto_gateway.create_payment(
            credentials,
            amount=invoice.total,
            currency=invoice.currency,
            reference=reference,
            description=f"Invoice payment for {reference}",
        )

        if not self.store.attach_tracking_id(invoice_id, created.tracking_id, created.payment_url):
            self.db.expire_all()
            invoice = self.store.get_by_id(invoice_id)
            logger.warning(
                f"Invoice {invoice_id} got crypto payment {invoice.crypto_tracking_id} from a concurrent request; "
                f"provider payment {created.tracking_id} is orphaned"
            )
            return CryptoPaymentOutcome(
                tracking_id=invoice.crypto_tracking_id,
                payment_url=invoice.crypto_payment_url,
                has_existing_payment=True,
            )

        logger.info(f"Crypto payment {created.tracking_id} initiated for invoice {invoice_id}")
        return CryptoPaymentOutcome(
            tracking_id=created.tracking_id,
            payment_url=created.payment_url,
            has_existing_payment=False,
        )

    def confirm_crypto_payment(self, invoice: Invoice, source: str,
                               reported_status: Optional[str] = None) -> CryptoConfirmation:
        """
        Ask the provider for the payment status and reconcile when completed.

        Shared by the crypto webhook, the verify endpoint, the create endpoint
        and the poller. ``reported_status`` is what the caller claims the
        payment is; only the provider's answer is acted on.
        """
        invoice_id = invoice.id
        gateway_invoice_id = invoice.gateway_invoice_id
        total = invoice.total
        tracking_id = invoice.crypto_tracking_id
        credentials = self.credentials.crypto_credentials(invoice.merchant_id)
        status = self.crypto_gateway.check_status(credentials, tracking_id)
        if reported_status and reported_status != status.status_code:
            logger.warning(
                f"Crypto {source} for {tracking_id} reported status {reported_status}, "
                f"provider confirmed {status.status_code}"
            )

        result = None
        if status.is_completed:
            result = self.reconciliation.apply(
                invoice_id,
                PaymentEvent(
                    PaymentEventType.CRYPTO_COMPLETED,
                    transaction_id=status.transaction_id,
                    payment_method=PaymentMethod.CRYPTO,
                    source=source,
                ),
            )
        return CryptoConfirmation(
            invoice_id=invoice_id,
            gateway_invoice_id=gateway_invoice_id,
            total=total,
            status=status,
            result=result,
        )

    def verify_crypto_payment(self, tracking_id: str, source: str = "verify",
                              reported_status: Optional[str] = None) -> CryptoConfirmation:
        invoice = self.store.get_by_tracking_id(tracking_id)
        if invoice is None:
            raise ResolutionError("Invoice not found for this payment", context={"tracking_id": tracking_id})
        return self.confirm_crypto_payment(invoice, source=source, reported_status=reported_status)


def poll_pending_crypto_payments(db: Session, crypto_gateway: CryptoGatewayClient, notifier,
                                 batch_size: int = 100) -> Dict[str, int]:
    """
    Confirm payable invoices that are waiting on a crypto payment.

    Each run takes the ``batch_size`` invoices checked least recently (never
    checked first), so abandoned payments cannot keep newer ones from being
    polled. Completions go through the same reconciliation path as the
    webhook, so a payment confirmed by both is only applied and notified once.
    """
    service = PaymentService(db, crypto_gateway=crypto_gateway)
    pending = [
        (invoice.id, invoice.crypto_tracking_id)
        for invoice in service.store.list_pending_crypto(limit=batch_size)
    ]
    summary = {"checked": 0, "paid": 0, "failed": 0}

    for invoice_id, tracking_id in pending:
        summary["checked"] += 1
        try:
            confirmation = service.verify_crypto_payment(tracking_id, source="poll")
        except PaymentError as e:
            summary["failed"] += 1
            logger.error(f"Polling crypto payment {tracking_id} for invoice {invoice_id} failed: {e.message}")
            continue
        finally:
            _mark_checked(service.store, invoice_id)

        if confirmation.result is not None and confirmation.result.newly_paid:
            summary["paid"] += 1
            notifier.notify_paid(confirmation.result.receipt)

    logger.info(f"Crypto payment poll finished: {summary}")
    return summary


def _mark_checked(store: InvoiceStore, invoice_id: UUID) -> None:
    try:
        store.mark_crypto_checked(invoice_id)
    except SQLAlchemyError as e:
        store.db.rollback()
        logger.error(f"Could not record crypto poll time for invoice {invoice_id}: {e}")
