"""
Reconciliation engine: the invoice payment state machine.

``decide`` is a pure function from (current status, payment event) to a
``Transition``. ``ReconciliationService.apply`` runs it against a freshly read
row and persists the result with a version compare-and-swap, so a webhook, the
manual verify endpoint and the crypto poller can race on the same invoice and
still produce at most one transition to ``paid``.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID
import enum
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from invoicepay.common.exceptions import InvoiceStateError, PersistenceError, ResolutionError
from invoicepay.core.config import settings
from invoicepay.modules.invoices.crud import InvoiceStore
from invoicepay.modules.invoices.models import Invoice, InvoiceStatus, PaymentMethod

logger = logging.getLogger(__name__)


class PaymentEventType(enum.Enum):
    SALE_SUCCEEDED = "sale_succeeded"
    SALE_FAILED = "sale_failed"
    REFUNDED = "refunded"
    VOIDED = "voided"
    CRYPTO_COMPLETED = "crypto_completed"


@dataclass(frozen=True)
class PaymentEvent:
    type: PaymentEventType
    transaction_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    source: str = "webhook"
    detail: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    new_status: InvoiceStatus
    should_notify: bool = False
    is_noop: bool = False
    reason: str = ""
    anomaly: bool = False


_SUCCESS_EVENTS = (PaymentEventType.SALE_SUCCEEDED, PaymentEventType.CRYPTO_COMPLETED)
_REVERSAL_TARGETS = {
    PaymentEventType.REFUNDED: InvoiceStatus.REFUNDED,
    PaymentEventType.VOIDED: InvoiceStatus.VOIDED,
}


def _noop(current: InvoiceStatus, reason: str, anomaly: bool = False) -> Transition:
    return Transition(new_status=current, is_noop=True, reason=reason, anomaly=anomaly)


def decide(current: InvoiceStatus, event: PaymentEvent) -> Transition:
    """Compute the next status for ``current`` given ``event``."""
    if event.type in _SUCCESS_EVENTS:
        if current == InvoiceStatus.PAID:
            return _noop(current, "already paid")
        if current in (InvoiceStatus.REFUNDED, InvoiceStatus.VOIDED, InvoiceStatus.CLOSED):
            return _noop(current, f"payment success received for {current.value} invoice", anomaly=True)
        return Transition(new_status=InvoiceStatus.PAID, should_notify=True, reason="payment succeeded")

    if event.type == PaymentEventType.SALE_FAILED:
        return _noop(current, "sale failed, invoice remains payable")

    target = _REVERSAL_TARGETS.get(event.type)
    if target is not None:
        if current == InvoiceStatus.CLOSED:
            return _noop(current, f"{target.value} received for closed invoice", anomaly=True)
        if current == target:
            return _noop(current, f"already {target.value}")
        return Transition(new_status=target, reason=f"payment {target.value}")

    raise ValueError(f"Unsupported payment event: {event.type}")


def decide_close(current: InvoiceStatus) -> Transition:
    """Operator close: allowed from every non-paid status."""
    if current == InvoiceStatus.PAID:
        raise InvoiceStateError("Paid invoices cannot be closed")
    if current == InvoiceStatus.CLOSED:
        return _noop(current, "already closed")
    return Transition(new_status=InvoiceStatus.CLOSED, reason="closed by operator")


@dataclass(frozen=True)
class InvoiceReceipt:
    """Detached snapshot of a paid invoice, safe to use after the session closes."""
    invoice_id: UUID
    merchant_id: UUID
    gateway_invoice_id: str
    client_email: str
    client_name: str
    merchant_email: Optional[str]
    merchant_name: Optional[str]
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    transaction_id: Optional[str]
    payment_method: Optional[str]
    payment_date: Optional[datetime]

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> "InvoiceReceipt":
        merchant = invoice.merchant
        client_name = " ".join(p for p in (invoice.client_first_name, invoice.client_last_name) if p)
        return cls(
            invoice_id=invoice.id,
            merchant_id=invoice.merchant_id,
            gateway_invoice_id=invoice.gateway_invoice_id,
            client_email=invoice.client_email,
            client_name=client_name,
            merchant_email=merchant.email if merchant else None,
            merchant_name=merchant.name if merchant else None,
            currency=invoice.currency,
            subtotal=invoice.subtotal,
            tax_amount=invoice.tax_amount,
            total=invoice.total,
            transaction_id=invoice.transaction_id,
            payment_method=invoice.payment_method.value if invoice.payment_method else None,
            payment_date=invoice.payment_date,
        )


@dataclass(frozen=True)
class ReconciliationResult:
    invoice_id: UUID
    merchant_id: UUID
    previous_status: InvoiceStatus
    transition: Transition
    receipt: Optional[InvoiceReceipt] = None

    @property
    def status(self) -> InvoiceStatus:
        return self.transition.new_status

    @property
    def newly_paid(self) -> bool:
        return not self.transition.is_noop and self.transition.should_notify


class ReconciliationService:
    """
    Single write path for invoice payment status.

    The caller's session must not hold pending changes: each attempt commits
    or rolls back the whole transaction.
    """

    def __init__(self, db: Session, max_attempts: Optional[int] = None):
        self.db = db
        self.store = InvoiceStore(db)
        self.max_attempts = max_attempts or settings.RECONCILIATION_MAX_ATTEMPTS

    def apply(self, invoice_id: UUID, event: PaymentEvent) -> ReconciliationResult:
        return self._run(
            invoice_id,
            lambda current: decide(current, event),
            lambda invoice, transition: self._values_for_event(invoice, transition, event),
            label=f"{event.type.value} via {event.source}",
        )

    def close(self, invoice_id: UUID) -> ReconciliationResult:
        return self._run(
            invoice_id,
            decide_close,
            lambda invoice, transition: {"status": transition.new_status},
            label="operator close",
        )

    def _values_for_event(self, invoice: Invoice, transition: Transition, event: PaymentEvent) -> dict:
        values = {"status": transition.new_status}
        if transition.new_status == InvoiceStatus.PAID:
            if event.transaction_id:
                values["transaction_id"] = event.transaction_id
            if event.payment_method is not None:
                values["payment_method"] = event.payment_method
            # payment_date is written once, on the first transition into paid
            if invoice.payment_date is None:
                values["payment_date"] = datetime.now(timezone.utc)
        return values

    def _run(
        self,
        invoice_id: UUID,
        decider: Callable[[InvoiceStatus], Transition],
        values_for: Callable[[Invoice, Transition], dict],
        label: str,
    ) -> ReconciliationResult:
        for attempt in range(1, self.max_attempts + 1):
            try:
                invoice = self.store.get_for_update(invoice_id)
                if invoice is None:
                    self.db.rollback()
                    raise ResolutionError("Invoice not found", context={"invoice_id": str(invoice_id)})

                previous = invoice.status
                merchant_id = invoice.merchant_id
                try:
                    transition = decider(previous)
                except InvoiceStateError:
                    self.db.rollback()
                    raise

                if transition.is_noop:
                    self.db.rollback()
                    log = logger.warning if transition.anomaly else logger.info
                    log(f"Invoice {invoice_id}: {label} is a no-op ({transition.reason}), status {previous.value}")
                    return ReconciliationResult(invoice_id, merchant_id, previous, transition)

                values = values_for(invoice, transition)
                if not self.store.compare_and_set(invoice_id, invoice.version, values):
                    self.db.rollback()
                    logger.warning(
                        f"Invoice {invoice_id}: concurrent update detected on attempt {attempt} for {label}, re-reading"
                    )
                    continue

                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Invoice {invoice_id}: failed to persist {label}: {str(e)}")
                raise PersistenceError(
                    "Payment event could not be stored, please retry",
                    context={"invoice_id": str(invoice_id)},
                ) from e

            logger.info(
                f"Invoice {invoice_id}: {previous.value} -> {transition.new_status.value} ({label})"
            )
            receipt = None
            if transition.should_notify:
                self.db.expire_all()
                receipt = InvoiceReceipt.from_invoice(self.store.get_by_id(invoice_id))
            return ReconciliationResult(invoice_id, merchant_id, previous, transition, receipt)

        logger.error(f"Invoice {invoice_id}: gave up on {label} after {self.max_attempts} attempts")
        raise PersistenceError(
            "Payment event could not be stored after concurrent updates, please retry",
            context={"invoice_id": str(invoice_id)},
        )
