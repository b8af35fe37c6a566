"""
Tests para los webhooks entrantes y el historial de auditoría
"""

import json
from unittest.mock import MagicMock

import httpx
import redis
from sqlalchemy.exc import OperationalError

from invoicepay.modules.invoices.crud import InvoiceStore
from invoicepay.modules.invoices.models import InvoiceStatus, PaymentMethod
from invoicepay.modules.payments.signature import sign
from invoicepay.modules.webhooks.audit import (
    AuditEntry,
    InMemoryAuditStore,
    RedisAuditStore,
    STATUS_ERROR,
    STATUS_PROCESSED,
    STATUS_RECEIVED,
    WebhookAuditLog,
)
from invoicepay.testing import SIGNING_KEY, auth_headers, crypto_handler, sale_webhook, signed_card_webhook


def post_card(client, payload, **kwargs):
    body, headers = signed_card_webhook(payload, **kwargs)
    return client.post("/webhooks/card", content=body, headers=headers)


def post_crypto(client, payload):
    return client.post("/webhooks/crypto", content=json.dumps(payload).encode("utf-8"),
                       headers={"Content-Type": "application/json"})


def refund_webhook(transaction_id=None, order_id=None, event_type="transaction.refund"):
    data = {}
    if transaction_id:
        data["transactionid"] = transaction_id
    if order_id:
        data["orderid"] = order_id
    return {"type": event_type, "data": data}


# ===== WEBHOOK DE TARJETA =====

class TestCardSaleWebhook:

    def test_approved_sale_marks_invoice_paid(self, client, db_session, invoice_factory, notifier, audit_log):
        invoice = invoice_factory(gateway_invoice_id="INV-77")

        response = post_card(client, sale_webhook("INV-77-1700000000-abc", event_id="evt_1"))

        assert response.status_code == 200
        assert response.json() == {"status": "success", "message": "Invoice updated to paid"}
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.transaction_id == "T1"
        assert invoice.payment_method == PaymentMethod.CREDIT_CARD
        assert invoice.payment_date is not None

        assert len(notifier.receipts) == 1
        assert notifier.receipts[0].invoice_id == invoice.id

        [entry] = audit_log.list_recent()
        assert entry["id"] == "evt_1"
        assert entry["type"] == "transaction.sale"
        assert entry["rail"] == "card"
        assert entry["status"] == STATUS_PROCESSED
        assert entry["invoice_id"] == str(invoice.id)
        assert entry["merchant_id"] == str(invoice.merchant_id)

    def test_replayed_sale_is_idempotent(self, client, db_session, invoice_factory, notifier, audit_log):
        invoice = invoice_factory(gateway_invoice_id="INV-77")
        payload = sale_webhook("INV-77-1700000000-abc")

        first = post_card(client, payload)
        db_session.refresh(invoice)
        paid_at = invoice.payment_date

        replays = [post_card(client, payload) for _ in range(2)]

        assert first.json()["message"] == "Invoice updated to paid"
        assert all(r.status_code == 200 for r in replays)
        assert all(r.json()["message"] == "Invoice already paid" for r in replays)
        db_session.refresh(invoice)
        assert invoice.payment_date == paid_at
        assert invoice.version == 2
        assert len(notifier.receipts) == 1
        assert len(audit_log.list_recent()) == 3

    def test_declined_sale_is_recorded_without_transition(self, client, db_session, invoice_factory, notifier):
        invoice = invoice_factory(gateway_invoice_id="INV-77")

        response = post_card(client, sale_webhook("INV-77", response_code="200", response="2"))

        assert response.status_code == 200
        assert response.json()["message"] == "Transaction failure recorded"
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT
        assert notifier.receipts == []

    def test_success_on_closed_invoice_does_not_reopen(self, client, db_session, invoice_factory, notifier):
        invoice = invoice_factory(gateway_invoice_id="INV-77", status=InvoiceStatus.CLOSED)

        response = post_card(client, sale_webhook("INV-77"))

        assert response.status_code == 200
        assert response.json()["message"] == "Invoice already closed"
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.CLOSED
        assert notifier.receipts == []

    def test_longest_matching_prefix_wins(self, client, db_session, invoice_factory):
        short = invoice_factory(gateway_invoice_id="INV-1")
        longer = invoice_factory(gateway_invoice_id="INV-1-A")

        post_card(client, sale_webhook("INV-1-A-99"))

        db_session.refresh(short)
        db_session.refresh(longer)
        assert longer.status == InvoiceStatus.PAID
        assert short.status == InvoiceStatus.SENT

    def test_unknown_invoice_is_acknowledged(self, client, db_session, merchant, notifier, audit_log):
        response = post_card(client, sale_webhook("INV-DOES-NOT-EXIST"))

        assert response.status_code == 200
        assert response.json() == {"status": "error", "message": "Invoice not found"}
        [entry] = audit_log.list_recent()
        assert entry["status"] == STATUS_ERROR
        assert entry["invoice_id"] is None
        assert notifier.receipts == []

    def test_missing_orderid(self, client, db_session, audit_log):
        payload = sale_webhook("INV-77")
        del payload["data"]["orderid"]

        response = post_card(client, payload)

        assert response.status_code == 400
        assert audit_log.list_recent()[0]["status"] == STATUS_ERROR

    def test_missing_data(self, client, db_session):
        response = post_card(client, {"type": "transaction.sale"})
        assert response.status_code == 400

    def test_missing_type(self, client, db_session):
        response = post_card(client, {"data": {"orderid": "INV-77"}})
        assert response.status_code == 400

    def test_unparseable_body(self, client, db_session, audit_log):
        body = b"{not json"
        headers = {"Webhook-Signature": sign(body, "nonce-1", SIGNING_KEY)}

        response = client.post("/webhooks/card", content=body, headers=headers)

        assert response.status_code == 400
        assert audit_log.list_recent()[0]["status"] == STATUS_ERROR

    def test_unknown_type_is_ignored(self, client, db_session, audit_log):
        response = post_card(client, {"type": "recurring.subscription.add", "event_id": "evt_sub"})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        [entry] = audit_log.list_recent()
        assert entry["status"] == STATUS_RECEIVED
        assert entry["type"] == "recurring.subscription.add"

    def test_persistence_failure_asks_for_retry(self, client, db_session, invoice_factory, audit_log,
                                                notifier, monkeypatch):
        invoice = invoice_factory(gateway_invoice_id="INV-77")

        def broken(self, invoice_id, expected_version, values):
            raise OperationalError("UPDATE invoices", {}, Exception("connection reset"))

        monkeypatch.setattr(InvoiceStore, "compare_and_set", broken)

        response = post_card(client, sale_webhook("INV-77"))

        assert response.status_code == 503
        assert response.json()["retryable"] is True
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT
        assert notifier.receipts == []
        [entry] = audit_log.list_recent()
        assert entry["status"] == STATUS_ERROR
        assert entry["invoice_id"] == str(invoice.id)


class TestCardWebhookAuthentication:

    def test_forged_signature(self, client, db_session, invoice_factory, notifier, audit_log):
        invoice = invoice_factory(gateway_invoice_id="INV-77")

        response = post_card(client, sale_webhook("INV-77"), secret="attacker-secret")

        assert response.status_code == 401
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT
        assert notifier.receipts == []
        [entry] = audit_log.list_recent()
        assert entry["status"] == STATUS_ERROR
        assert entry["invoice_id"] is None

    def test_missing_signature(self, client, db_session, invoice_factory):
        invoice_factory(gateway_invoice_id="INV-77")
        body = json.dumps(sale_webhook("INV-77")).encode("utf-8")

        response = client.post("/webhooks/card", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 401

    def test_malformed_signature_header(self, client, db_session):
        body = json.dumps(sale_webhook("INV-77")).encode("utf-8")

        response = client.post("/webhooks/card", content=body, headers={"Webhook-Signature": "v1=deadbeef"})

        assert response.status_code == 401

    def test_body_altered_after_signing(self, client, db_session, invoice_factory):
        invoice = invoice_factory(gateway_invoice_id="INV-77")
        body, headers = signed_card_webhook(sale_webhook("INV-77", response_code="200", response="2"))
        tampered = body.replace(b'"response_code": "200"', b'"response_code": "100"').replace(
            b'"response": "2"', b'"response": "1"'
        )

        response = client.post("/webhooks/card", content=tampered, headers=headers)

        assert response.status_code == 401
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT


class TestCardReversalWebhooks:

    def test_refund_by_transaction_id(self, client, db_session, invoice_factory):
        invoice = invoice_factory(status=InvoiceStatus.PAID, transaction_id="T-REF")

        response = post_card(client, refund_webhook(transaction_id="T-REF"))

        assert response.status_code == 200
        assert response.json()["message"] == "Invoice updated to refunded"
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.REFUNDED

    def test_void_falls_back_to_orderid(self, client, db_session, invoice_factory):
        invoice = invoice_factory(gateway_invoice_id="INV-88", status=InvoiceStatus.PAID)

        response = post_card(client, refund_webhook(transaction_id="T-UNKNOWN", order_id="INV-88-1",
                                                    event_type="transaction.void"))

        assert response.status_code == 200
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.VOIDED

    def test_refund_on_closed_invoice_is_ignored(self, client, db_session, invoice_factory):
        invoice = invoice_factory(status=InvoiceStatus.CLOSED, transaction_id="T-REF")

        response = post_card(client, refund_webhook(transaction_id="T-REF"))

        assert response.status_code == 200
        assert response.json()["message"] == "Invoice left as closed"
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.CLOSED

    def test_refund_without_correlation_key(self, client, db_session):
        response = post_card(client, refund_webhook())
        assert response.status_code == 400


# ===== WEBHOOK CRIPTO =====

class TestCryptoWebhook:

    def test_completed_payment_is_confirmed_with_provider(self, client, db_session, invoice_factory,
                                                          crypto_gateway, notifier, audit_log):
        invoice = invoice_factory(gateway_invoice_id="INV-C1", crypto_tracking_id="TRK-1")
        crypto_gateway.handler = crypto_handler(status_code="completed", transaction_id="0xabc")

        response = post_crypto(client, {"trackingId": "TRK-1", "status": "completed"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Payment verified successfully"
        assert body["payment"]["status_code"] == "completed"
        assert body["invoice"]["id"] == "INV-C1"
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.transaction_id == "0xabc"
        assert invoice.payment_method == PaymentMethod.CRYPTO
        assert len(notifier.receipts) == 1
        assert audit_log.list_recent()[0]["status"] == STATUS_PROCESSED

    def test_body_status_is_not_trusted(self, client, db_session, invoice_factory, crypto_gateway, notifier):
        invoice = invoice_factory(crypto_tracking_id="TRK-1")
        crypto_gateway.handler = crypto_handler(status_code="pending", transaction_id=None)

        response = post_crypto(client, {"trackingId": "TRK-1", "status": "completed"})

        assert response.status_code == 200
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT
        assert notifier.receipts == []

    def test_webhook_and_verify_notify_once(self, client, db_session, invoice_factory, crypto_gateway, notifier):
        invoice_factory(crypto_tracking_id="TRK-1")
        crypto_gateway.handler = crypto_handler(status_code="completed", transaction_id="0xabc")

        post_crypto(client, {"trackingId": "TRK-1"})
        client.post("/payments/crypto/verify", json={"trackingId": "TRK-1"})
        post_crypto(client, {"trackingId": "TRK-1"})

        assert len(notifier.receipts) == 1

    def test_unknown_tracking_id(self, client, db_session, audit_log):
        response = post_crypto(client, {"trackingId": "TRK-404"})

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert audit_log.list_recent()[0]["status"] == STATUS_ERROR

    def test_missing_tracking_id(self, client, db_session):
        response = post_crypto(client, {"status": "completed"})
        assert response.status_code == 400

    def test_provider_unreachable_asks_for_retry(self, client, db_session, invoice_factory, crypto_gateway,
                                                 audit_log):
        invoice = invoice_factory(crypto_tracking_id="TRK-1")

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        crypto_gateway.handler = handler

        response = post_crypto(client, {"trackingId": "TRK-1"})

        assert response.status_code == 503
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT
        [entry] = audit_log.list_recent()
        assert entry["status"] == STATUS_ERROR
        assert entry["invoice_id"] == str(invoice.id)


# ===== HISTORIAL DE AUDITORÍA =====

class TestRecentWebhooksEndpoint:

    def test_merchant_sees_only_own_entries(self, client, db_session, merchant, other_merchant, audit_log):
        audit_log.record(AuditEntry.build("card", "transaction.sale", STATUS_PROCESSED, merchant_id=merchant.id))
        audit_log.record(AuditEntry.build("card", "transaction.sale", STATUS_PROCESSED,
                                          merchant_id=other_merchant.id))
        audit_log.record(AuditEntry.build("card", None, STATUS_ERROR))

        response = client.get("/webhooks/recent", headers=auth_headers(merchant))

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["entries"][0]["merchant_id"] == str(merchant.id)

    def test_admin_sees_everything_or_filters(self, client, db_session, merchant, admin_merchant, audit_log):
        audit_log.record(AuditEntry.build("card", "transaction.sale", STATUS_PROCESSED, merchant_id=merchant.id))
        audit_log.record(AuditEntry.build("card", None, STATUS_ERROR))

        everything = client.get("/webhooks/recent", headers=auth_headers(admin_merchant))
        filtered = client.get("/webhooks/recent", params={"merchant_id": str(merchant.id)},
                              headers=auth_headers(admin_merchant))

        assert everything.json()["count"] == 2
        assert filtered.json()["count"] == 1

    def test_requires_authentication(self, client, db_session):
        response = client.get("/webhooks/recent")
        assert response.status_code in (401, 403)

    def test_clear_requires_admin(self, client, db_session, merchant, admin_merchant, audit_log):
        audit_log.record(AuditEntry.build("card", "transaction.sale", STATUS_PROCESSED, merchant_id=merchant.id))

        forbidden = client.delete("/webhooks/recent", headers=auth_headers(merchant))
        assert forbidden.status_code == 403
        assert len(audit_log.list_recent()) == 1

        cleared = client.delete("/webhooks/recent", headers=auth_headers(admin_merchant))
        assert cleared.status_code == 200
        assert audit_log.list_recent() == []


class TestAuditLog:

    def test_ring_buffer_keeps_newest_first(self):
        log = WebhookAuditLog(InMemoryAuditStore(capacity=3))
        for n in range(5):
            log.record(AuditEntry.build("card", "transaction.sale", STATUS_PROCESSED, payload={"event_id": f"e{n}"}))

        assert [e["id"] for e in log.list_recent()] == ["e4", "e3", "e2"]

    def test_entry_id_falls_back_to_generated(self):
        entry = AuditEntry.build("crypto", "payment.status", STATUS_RECEIVED, payload={"trackingId": "TRK-1"})
        assert len(entry.id) == 32

    def test_store_failure_never_propagates(self, caplog):
        store = MagicMock()
        store.push.side_effect = redis.ConnectionError("redis down")
        log = WebhookAuditLog(store)

        log.record(AuditEntry.build("card", "transaction.sale", STATUS_PROCESSED, payload={"event_id": "e1"}))

        assert "e1" in caplog.text

    def test_redis_store_caps_and_expires(self):
        client = MagicMock()
        pipe = client.pipeline.return_value
        store = RedisAuditStore(client, key="audit", capacity=50, ttl_seconds=600)

        store.push({"id": "e1", "status": STATUS_PROCESSED})

        pipe.lpush.assert_called_once_with("audit", json.dumps({"id": "e1", "status": STATUS_PROCESSED}))
        pipe.ltrim.assert_called_once_with("audit", 0, 49)
        pipe.expire.assert_called_once_with("audit", 600)
        pipe.execute.assert_called_once()

    def test_redis_store_skips_unreadable_entries(self):
        client = MagicMock()
        client.lrange.return_value = [b'{"id": "e2"}', b"garbage", b'{"id": "e1"}']
        store = RedisAuditStore(client, key="audit", capacity=50, ttl_seconds=600)

        assert [e["id"] for e in store.all()] == ["e2", "e1"]
