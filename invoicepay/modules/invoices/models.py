from invoicepay.database.database import Base
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Enum, Date, Uuid
from sqlalchemy.orm import relationship
from datetime import date
from invoicepay.common.mixins import TimestampMixin, UUIDPrimaryKeyMixin
import enum


class InvoiceStatus(enum.Enum):
    SENT = "sent"            # Enviada, pendiente de pago
    PAID = "paid"            # Pagada (terminal en el flujo normal)
    OVERDUE = "overdue"      # Vencida, todavía pagable
    REFUNDED = "refunded"    # Reembolsada por el procesador
    VOIDED = "voided"        # Anulada por el procesador
    CLOSED = "closed"        # Cerrada por el operador, final


class PaymentMethod(enum.Enum):
    CREDIT_CARD = "credit_card"
    CRYPTO = "crypto"


PAYABLE_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.OVERDUE)


class Invoice(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "invoices"

    merchant_id = Column(Uuid(as_uuid=True), ForeignKey("merchants.id"), nullable=False, index=True)

    # External references
    gateway_invoice_id = Column(String(100), nullable=False, index=True)
    payment_token = Column(String(64), nullable=False, unique=True)

    # Customer
    client_email = Column(String(255), nullable=False)
    client_first_name = Column(String(100), nullable=True)
    client_last_name = Column(String(100), nullable=True)

    # Money
    currency = Column(String(3), nullable=False, default="USD")
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(5, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total = Column(Numeric(15, 2), nullable=False, default=0)

    status = Column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.SENT)

    # Payment linkage
    payment_method = Column(Enum(PaymentMethod), nullable=True)
    transaction_id = Column(String(100), nullable=True, index=True)
    crypto_tracking_id = Column(String(100), nullable=True, index=True)
    crypto_payment_url = Column(String(500), nullable=True)
    # Set by the crypto poller after each status check
    crypto_last_checked_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Dates
    invoice_date = Column(Date, nullable=False, default=date.today)
    due_date = Column(Date, nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)

    # Bumped on every reconciliation write
    version = Column(Integer, nullable=False, default=1)

    merchant = relationship("Merchant", back_populates="invoices")

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_STATUSES
