"""
Tests para las notificaciones posteriores al pago
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import redis

from invoicepay.modules.email.service import EmailService
from invoicepay.modules.notifications.service import (
    CUSTOMER_RECEIPT_TEMPLATE,
    MERCHANT_RECEIPT_TEMPLATE,
    LiveEventBroadcaster,
    PaymentNotifier,
)
from invoicepay.modules.payments.reconciliation import InvoiceReceipt


def make_receipt(**overrides) -> InvoiceReceipt:
    values = dict(
        invoice_id=uuid4(),
        merchant_id=uuid4(),
        gateway_invoice_id="INV-77",
        client_email="client@example.com",
        client_name="Ada Lovelace",
        merchant_email="billing@acme.test",
        merchant_name="Acme Consulting",
        currency="USD",
        subtotal=Decimal("100.00"),
        tax_amount=Decimal("5.00"),
        total=Decimal("105.00"),
        transaction_id="T1",
        payment_method="credit_card",
        payment_date=datetime(2026, 3, 14, 15, 9, 26, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return InvoiceReceipt(**values)


def make_notifier(send_results=None):
    mailer = MagicMock()
    if send_results is not None:
        mailer.send_template_email.side_effect = send_results
    else:
        mailer.send_template_email.return_value = True
    broadcaster = MagicMock()
    return PaymentNotifier(mailer=mailer, broadcaster=broadcaster), mailer, broadcaster


class TestPaymentNotifier:

    def test_sends_customer_and_merchant_and_broadcasts(self):
        notifier, mailer, broadcaster = make_notifier()
        receipt = make_receipt()

        result = notifier.notify_paid(receipt)

        assert result.customer_receipt_sent is True
        assert result.merchant_notification_sent is True
        customer_call, merchant_call = mailer.send_template_email.call_args_list
        assert customer_call.kwargs["to_emails"] == ["client@example.com"]
        assert customer_call.kwargs["template_name"] == CUSTOMER_RECEIPT_TEMPLATE
        assert merchant_call.kwargs["to_emails"] == ["billing@acme.test"]
        assert merchant_call.kwargs["template_name"] == MERCHANT_RECEIPT_TEMPLATE
        assert customer_call.kwargs["context"]["total"] == Decimal("105.00")
        broadcaster.publish_payment.assert_called_once_with(receipt)

    def test_customer_failure_does_not_block_merchant(self, caplog):
        notifier, mailer, _ = make_notifier(send_results=[False, True])
        receipt = make_receipt()

        result = notifier.notify_paid(receipt)

        assert result.customer_receipt_sent is False
        assert result.merchant_notification_sent is True
        assert str(receipt.invoice_id) in caplog.text
        assert "client@example.com" in caplog.text

    def test_mailer_exception_is_contained(self, caplog):
        notifier, _, broadcaster = make_notifier(send_results=[RuntimeError("smtp exploded"), True])

        result = notifier.notify_paid(make_receipt())

        assert result.customer_receipt_sent is False
        assert result.merchant_notification_sent is True
        assert "smtp exploded" in caplog.text
        broadcaster.publish_payment.assert_called_once()

    def test_missing_merchant_email(self, caplog):
        notifier, mailer, _ = make_notifier()
        receipt = make_receipt(merchant_email=None)

        result = notifier.notify_paid(receipt)

        assert result.customer_receipt_sent is True
        assert result.merchant_notification_sent is False
        assert mailer.send_template_email.call_count == 1
        assert str(receipt.invoice_id) in caplog.text


class TestLiveEventBroadcaster:

    def test_publishes_payment_event(self):
        client = MagicMock()
        receipt = make_receipt()

        assert LiveEventBroadcaster(redis_client=client, channel="payments").publish_payment(receipt) is True

        channel, message = client.publish.call_args.args
        event = json.loads(message)
        assert channel == "payments"
        assert event["event"] == "payment.notification"
        assert event["invoice_id"] == str(receipt.invoice_id)
        assert event["amount"] == "105.00"

    def test_redis_failure_is_tolerated(self, caplog):
        client = MagicMock()
        client.publish.side_effect = redis.ConnectionError("redis down")
        receipt = make_receipt()

        assert LiveEventBroadcaster(redis_client=client).publish_payment(receipt) is False
        assert str(receipt.invoice_id) in caplog.text


class TestReceiptTemplates:

    def test_customer_receipt_renders(self):
        html = EmailService().render_template(CUSTOMER_RECEIPT_TEMPLATE, {
            "invoice_number": "INV-77",
            "client_name": "Ada Lovelace",
            "merchant_name": "Acme <Consulting>",
            "currency": "USD",
            "subtotal": Decimal("100.00"),
            "tax_amount": Decimal("5.00"),
            "total": Decimal("105.00"),
            "payment_method": "credit_card",
            "transaction_id": "T1",
            "payment_date": "2026-03-14 15:09:26",
        })

        assert "INV-77" in html
        assert "105.00 USD" in html
        assert "Acme &lt;Consulting&gt;" in html
