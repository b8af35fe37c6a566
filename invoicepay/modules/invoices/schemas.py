from pydantic import BaseModel, ConfigDict
from typing import List, Optional
from uuid import UUID
from datetime import date, datetime
from decimal import Decimal

from invoicepay.modules.invoices.models import InvoiceStatus, PaymentMethod


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    merchant_id: UUID
    gateway_invoice_id: str
    client_email: str
    client_first_name: Optional[str] = None
    client_last_name: Optional[str] = None
    currency: str
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    status: InvoiceStatus
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    crypto_tracking_id: Optional[str] = None
    invoice_date: date
    due_date: Optional[date] = None
    payment_date: Optional[datetime] = None


class InvoiceList(BaseModel):
    items: List[InvoiceOut]
    total: int


class PaymentLinkOut(BaseModel):
    """Lo que ve el cliente al abrir el enlace de pago."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    gateway_invoice_id: str
    client_email: str
    client_first_name: Optional[str] = None
    client_last_name: Optional[str] = None
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    status: InvoiceStatus
    invoice_date: date
    due_date: Optional[date] = None
    crypto_payment_url: Optional[str] = None
    merchant_name: Optional[str] = None


class InvoiceCloseResponse(BaseModel):
    success: bool = True
    message: str
    invoice_id: UUID
    status: InvoiceStatus
