"""
Webhooks entrantes de los dos rieles de pago y lectura del historial reciente.

Los webhooks no usan autenticación de operador: el riel de tarjeta se verifica
por firma HMAC y el riel cripto se confirma contra la API del proveedor.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from invoicepay.dependencies.dbDependecies import db_dependency
from invoicepay.modules.auth.dependencies import AuthDependencies
from invoicepay.modules.auth.schemas import AuthContext
from invoicepay.modules.notifications.service import PaymentNotifier, get_payment_notifier
from invoicepay.modules.payments.dependencies import payment_service_dependency
from invoicepay.modules.payments.signature import SIGNATURE_HEADER
from invoicepay.modules.webhooks.audit import WebhookAuditLog, get_webhook_audit_log
from invoicepay.modules.webhooks.dispatcher import WebhookDispatcher, WebhookOutcome
from invoicepay.modules.webhooks.schemas import AuditClearResponse, AuditEntryList

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


def get_webhook_dispatcher(
    db: db_dependency,
    payment_service: payment_service_dependency,
    audit_log: WebhookAuditLog = Depends(get_webhook_audit_log),
) -> WebhookDispatcher:
    return WebhookDispatcher(db, audit_log, payment_service)


def _respond(outcome: WebhookOutcome, background_tasks: BackgroundTasks, notifier: PaymentNotifier) -> JSONResponse:
    if outcome.receipt is not None:
        background_tasks.add_task(notifier.notify_paid, outcome.receipt)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body, background=background_tasks)


@router.post("/card")
async def card_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
    notifier: PaymentNotifier = Depends(get_payment_notifier),
):
    """
    Webhook firmado del procesador de tarjetas (``transaction.sale``,
    ``transaction.refund``, ``transaction.void``).
    """
    # raw bytes: the signature covers the exact body
    raw_body = await request.body()
    outcome = await run_in_threadpool(dispatcher.handle_card, raw_body, request.headers.get(SIGNATURE_HEADER))
    return _respond(outcome, background_tasks, notifier)


@router.post("/crypto")
async def crypto_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
    notifier: PaymentNotifier = Depends(get_payment_notifier),
):
    """Callback del proveedor cripto con ``trackingId`` y ``status`` opcional."""
    raw_body = await request.body()
    outcome = await run_in_threadpool(dispatcher.handle_crypto, raw_body)
    return _respond(outcome, background_tasks, notifier)


@router.get("/recent", response_model=AuditEntryList)
async def list_recent_webhooks(
    merchant_id: Optional[UUID] = Query(None, description="Solo administradores: filtrar por merchant"),
    audit_log: WebhookAuditLog = Depends(get_webhook_audit_log),
    auth_context: AuthContext = Depends(AuthDependencies.get_auth_context),
):
    """
    Historial reciente de webhooks.

    Los merchants solo ven sus propias entradas; los administradores ven todas
    o filtran con ``merchant_id``.
    """
    if auth_context.is_admin:
        scope = merchant_id
    else:
        scope = auth_context.merchant_id
    entries = await run_in_threadpool(audit_log.list_recent, str(scope) if scope else None)
    return AuditEntryList(count=len(entries), entries=entries)


@router.delete("/recent", response_model=AuditClearResponse)
async def clear_recent_webhooks(
    audit_log: WebhookAuditLog = Depends(get_webhook_audit_log),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin()),
):
    """Vaciar el historial de webhooks (solo administradores)."""
    await run_in_threadpool(audit_log.clear)
    return AuditClearResponse(message="Webhook audit log cleared")
