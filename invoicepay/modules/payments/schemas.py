from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional
from uuid import UUID
from decimal import Decimal


class CardPaymentRequest(BaseModel):
    """Payload del formulario de pago con tarjeta (token de tokenización del procesador)."""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    token: str = Field(..., min_length=1)
    invoice_id: str = Field(..., alias="invoiceId", min_length=1)
    amount: Decimal = Field(..., gt=0)
    first_name: str = Field(..., alias="firstName", min_length=1)
    last_name: str = Field(..., alias="lastName", min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)


class CardPaymentResponse(BaseModel):
    success: bool = True
    message: str
    transaction_id: str
    invoice_id: UUID
    status: str


class CryptoPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    token: str = Field(..., min_length=1)
    invoice_id: UUID = Field(..., alias="invoiceId")
    amount: Decimal = Field(..., ge=Decimal("0.01"))


class CryptoPaymentData(BaseModel):
    trackingId: str
    paymentUrl: Optional[str] = None


class CryptoPaymentResponse(BaseModel):
    success: bool = True
    message: str
    has_existing_payment: bool = False
    payment_data: CryptoPaymentData
    payment_status: Optional[Dict[str, Any]] = None


class CryptoVerifyRequest(BaseModel):
    trackingId: str = Field(..., min_length=1)
    status: Optional[str] = None


class InvoiceAmount(BaseModel):
    id: str
    amount: Decimal


class CryptoVerifyResponse(BaseModel):
    """Same shape as the crypto webhook response."""
    success: bool = True
    message: str
    payment: Dict[str, Any]
    invoice: InvoiceAmount
