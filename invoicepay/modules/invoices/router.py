"""
Router de facturas: enlace de pago público y acciones de operador.
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional
from uuid import UUID

from invoicepay.dependencies.dbDependecies import db_dependency
from invoicepay.modules.auth.dependencies import AuthDependencies
from invoicepay.modules.auth.schemas import AuthContext
from invoicepay.modules.invoices.models import InvoiceStatus
from invoicepay.modules.invoices.schemas import InvoiceOut, InvoiceList, PaymentLinkOut, InvoiceCloseResponse
from invoicepay.modules.invoices.service import InvoiceService

router = APIRouter(
    prefix="/invoices",
    tags=["Invoices"],
    responses={404: {"description": "Not found"}}
)

payment_link_router = APIRouter(
    prefix="/pay",
    tags=["Payment links"],
)


@payment_link_router.get("/{payment_token}", response_model=PaymentLinkOut)
def get_payment_link(payment_token: str, db: db_dependency):
    """Página de pago del cliente (token de capacidad, sin login)."""
    return InvoiceService(db).get_payment_link(payment_token)


@router.get("/", response_model=InvoiceList)
def list_invoices(
    db: db_dependency,
    status: Optional[InvoiceStatus] = Query(None, description="Filtrar por estado"),
    auth_context: AuthContext = Depends(AuthDependencies.get_auth_context),
):
    """Facturas del merchant autenticado."""
    invoices = InvoiceService(db).list_invoices(auth_context, status)
    return InvoiceList(items=[InvoiceOut.model_validate(i) for i in invoices], total=len(invoices))


@router.get("/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: UUID,
    db: db_dependency,
    auth_context: AuthContext = Depends(AuthDependencies.get_auth_context),
):
    return InvoiceService(db).get_invoice(invoice_id, auth_context)


@router.post("/{invoice_id}/close", response_model=InvoiceCloseResponse)
def close_invoice(
    invoice_id: UUID,
    db: db_dependency,
    auth_context: AuthContext = Depends(AuthDependencies.get_auth_context),
):
    """
    Cerrar una factura. Permitido desde cualquier estado excepto ``paid``
    (409). Usa la misma ruta de escritura serializada que la conciliación.
    """
    result = InvoiceService(db).close_invoice(invoice_id, auth_context)
    message = "Invoice already closed" if result.transition.is_noop else "Invoice closed"
    return InvoiceCloseResponse(message=message, invoice_id=result.invoice_id, status=result.status)
