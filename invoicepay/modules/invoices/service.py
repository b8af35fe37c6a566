from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from invoicepay.common.exceptions import ResolutionError
from invoicepay.modules.auth.schemas import AuthContext
from invoicepay.modules.invoices.crud import InvoiceStore
from invoicepay.modules.invoices.models import Invoice, InvoiceStatus
from invoicepay.modules.invoices.schemas import PaymentLinkOut
from invoicepay.modules.payments.reconciliation import ReconciliationResult, ReconciliationService

logger = logging.getLogger(__name__)


class InvoiceService:
    """Lectura de facturas y acciones de operador."""

    def __init__(self, db: Session):
        self.db = db
        self.store = InvoiceStore(db)

    def get_payment_link(self, payment_token: str) -> PaymentLinkOut:
        """
        Resolve a customer payment link. Only payable invoices are exposed; a
        paid, closed or unknown token answers 404 alike.
        """
        invoice = self.store.get_by_payment_token(payment_token)
        if invoice is None or not invoice.is_payable:
            raise ResolutionError("Invoice not found or already paid")

        link = PaymentLinkOut.model_validate(invoice)
        link.merchant_name = invoice.merchant.name if invoice.merchant else None
        return link

    def _get_owned(self, invoice_id: UUID, auth_context: AuthContext) -> Invoice:
        invoice = self.store.get_by_id(invoice_id)
        if invoice is None or (not auth_context.is_admin and invoice.merchant_id != auth_context.merchant_id):
            raise ResolutionError("Invoice not found", context={"invoice_id": str(invoice_id)})
        return invoice

    def get_invoice(self, invoice_id: UUID, auth_context: AuthContext) -> Invoice:
        return self._get_owned(invoice_id, auth_context)

    def list_invoices(self, auth_context: AuthContext, status: Optional[InvoiceStatus] = None) -> List[Invoice]:
        return self.store.list_for_merchant(auth_context.merchant_id, status)

    def close_invoice(self, invoice_id: UUID, auth_context: AuthContext) -> ReconciliationResult:
        self._get_owned(invoice_id, auth_context)
        result = ReconciliationService(self.db).close(invoice_id)
        logger.info(f"Invoice {invoice_id} close requested by merchant {auth_context.merchant_id}: {result.status.value}")
        return result
