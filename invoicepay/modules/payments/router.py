"""
Router de pagos para el portal del cliente.

Los endpoints son síncronos (``def``): las llamadas a los procesadores son
bloqueantes y FastAPI las ejecuta en su threadpool.
"""

from fastapi import APIRouter, BackgroundTasks, Depends

from invoicepay.modules.notifications.service import PaymentNotifier, get_payment_notifier
from invoicepay.modules.payments.dependencies import payment_service_dependency
from invoicepay.modules.payments.schemas import (
    CardPaymentRequest, CardPaymentResponse,
    CryptoPaymentRequest, CryptoPaymentResponse, CryptoPaymentData,
    CryptoVerifyRequest, CryptoVerifyResponse, InvoiceAmount,
)

router = APIRouter(
    prefix="/payments",
    tags=["Payments"],
)


@router.post("/card", response_model=CardPaymentResponse)
def process_card_payment(
    payment_data: CardPaymentRequest,
    background_tasks: BackgroundTasks,
    payment_service: payment_service_dependency,
    notifier: PaymentNotifier = Depends(get_payment_notifier),
):
    """
    Procesar un pago con tarjeta para una factura.

    - **token**: token de pago generado por la tokenización del procesador
    - **invoiceId**: identificador de la factura en el gateway
    - **amount**: debe coincidir con el total de la factura
    """
    outcome = payment_service.process_card_payment(payment_data)
    if outcome.result is None:
        return CardPaymentResponse(
            message="Payment processed successfully, invoice confirmation pending",
            transaction_id=outcome.sale.transaction_id,
            invoice_id=outcome.invoice_id,
            status=outcome.status,
        )
    if outcome.result.newly_paid:
        background_tasks.add_task(notifier.notify_paid, outcome.result.receipt)

    return CardPaymentResponse(
        message="Payment processed successfully",
        transaction_id=outcome.sale.transaction_id,
        invoice_id=outcome.invoice_id,
        status=outcome.status,
    )


@router.post("/crypto", response_model=CryptoPaymentResponse)
def create_crypto_payment(
    payment_data: CryptoPaymentRequest,
    background_tasks: BackgroundTasks,
    payment_service: payment_service_dependency,
    notifier: PaymentNotifier = Depends(get_payment_notifier),
):
    """Iniciar (o recuperar) el pago en cripto de una factura."""
    outcome = payment_service.create_crypto_payment(payment_data)
    if outcome.result is not None and outcome.result.newly_paid:
        background_tasks.add_task(notifier.notify_paid, outcome.result.receipt)

    return CryptoPaymentResponse(
        message="Retrieved existing payment status" if outcome.has_existing_payment else "Crypto payment initiated",
        has_existing_payment=outcome.has_existing_payment,
        payment_data=CryptoPaymentData(trackingId=outcome.tracking_id, paymentUrl=outcome.payment_url),
        payment_status=outcome.status.raw if outcome.status else None,
    )


@router.post("/crypto/verify", response_model=CryptoVerifyResponse)
def verify_crypto_payment(
    verify_data: CryptoVerifyRequest,
    background_tasks: BackgroundTasks,
    payment_service: payment_service_dependency,
    notifier: PaymentNotifier = Depends(get_payment_notifier),
):
    """Verificar el estado de un pago en cripto contra el proveedor."""
    confirmation = payment_service.verify_crypto_payment(verify_data.trackingId, reported_status=verify_data.status)
    if confirmation.result is not None and confirmation.result.newly_paid:
        background_tasks.add_task(notifier.notify_paid, confirmation.result.receipt)

    return CryptoVerifyResponse(
        message="Payment verified successfully",
        payment=confirmation.status.raw,
        invoice=InvoiceAmount(id=confirmation.gateway_invoice_id, amount=confirmation.total),
    )
