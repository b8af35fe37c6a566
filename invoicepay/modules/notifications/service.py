"""
Post-payment notifications: customer receipt, merchant notification and a
live event on the Redis pub/sub channel.

Runs after the invoice is already committed as paid, so nothing here raises;
every failure is logged with the invoice id and recipient for manual resend.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import json
import logging

import redis
from fastapi import Request

from invoicepay.core.config import settings
from invoicepay.core.redis import get_redis_client
from invoicepay.modules.email.service import EmailService, email_service
from invoicepay.modules.payments.reconciliation import InvoiceReceipt

logger = logging.getLogger(__name__)

CUSTOMER_RECEIPT_TEMPLATE = "payment_receipt.html"
MERCHANT_RECEIPT_TEMPLATE = "merchant_payment_receipt.html"


@dataclass(frozen=True)
class NotificationResult:
    customer_receipt_sent: bool
    merchant_notification_sent: bool


def _template_context(receipt: InvoiceReceipt) -> Dict[str, Any]:
    return {
        "invoice_number": receipt.gateway_invoice_id,
        "client_name": receipt.client_name,
        "client_email": receipt.client_email,
        "merchant_name": receipt.merchant_name,
        "currency": receipt.currency,
        "subtotal": receipt.subtotal,
        "tax_amount": receipt.tax_amount,
        "total": receipt.total,
        "payment_method": receipt.payment_method or "",
        "transaction_id": receipt.transaction_id,
        "payment_date": receipt.payment_date.strftime("%Y-%m-%d %H:%M:%S") if receipt.payment_date else None,
    }


class LiveEventBroadcaster:
    """Publishes payment events for connected dashboards."""

    def __init__(self, redis_client: Optional[redis.Redis] = None, channel: Optional[str] = None):
        self._redis = redis_client
        self.channel = channel or settings.LIVE_EVENTS_CHANNEL

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    def publish_payment(self, receipt: InvoiceReceipt) -> bool:
        event = {
            "event": "payment.notification",
            "invoice_id": str(receipt.invoice_id),
            "merchant_id": str(receipt.merchant_id),
            "gateway_invoice_id": receipt.gateway_invoice_id,
            "client_email": receipt.client_email,
            "amount": str(receipt.total),
            "transaction_id": receipt.transaction_id,
            "status": "success",
            "payment_date": receipt.payment_date.isoformat() if receipt.payment_date else None,
        }
        try:
            self.redis.publish(self.channel, json.dumps(event))
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to broadcast payment event for invoice {receipt.invoice_id}: {str(e)}")
            return False


class PaymentNotifier:
    """Notification dispatcher for newly paid invoices."""

    def __init__(self, mailer: Optional[EmailService] = None,
                 broadcaster: Optional[LiveEventBroadcaster] = None):
        self.mailer = mailer or email_service
        self.broadcaster = broadcaster or LiveEventBroadcaster()

    def notify_paid(self, receipt: InvoiceReceipt) -> NotificationResult:
        context = _template_context(receipt)

        customer_sent = self._send(
            receipt,
            recipient=receipt.client_email,
            subject=f"Payment receipt for invoice {receipt.gateway_invoice_id}",
            template=CUSTOMER_RECEIPT_TEMPLATE,
            context=context,
        )

        if receipt.merchant_email:
            merchant_sent = self._send(
                receipt,
                recipient=receipt.merchant_email,
                subject=f"Invoice {receipt.gateway_invoice_id} has been paid",
                template=MERCHANT_RECEIPT_TEMPLATE,
                context=context,
            )
        else:
            logger.error(f"No merchant email on file for invoice {receipt.invoice_id}, merchant notification skipped")
            merchant_sent = False

        self.broadcaster.publish_payment(receipt)

        result = NotificationResult(customer_receipt_sent=customer_sent, merchant_notification_sent=merchant_sent)
        logger.info(
            f"Payment notifications for invoice {receipt.invoice_id}: "
            f"customer={result.customer_receipt_sent} merchant={result.merchant_notification_sent}"
        )
        return result

    def _send(self, receipt: InvoiceReceipt, recipient: str, subject: str,
              template: str, context: Dict[str, Any]) -> bool:
        try:
            sent = self.mailer.send_template_email(
                to_emails=[recipient], subject=subject, template_name=template, context=context
            )
        except Exception as e:
            logger.error(f"Error sending {template} for invoice {receipt.invoice_id} to {recipient}: {str(e)}")
            return False

        if not sent:
            logger.error(f"Failed to send {template} for invoice {receipt.invoice_id} to {recipient}")
        return bool(sent)


def get_payment_notifier(request: Request) -> PaymentNotifier:
    return request.app.state.payment_notifier
