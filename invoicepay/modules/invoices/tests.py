"""
Tests para facturas: enlace de pago, consulta, cierre y resolución de referencias
"""

from uuid import uuid4

from invoicepay.modules.invoices.crud import InvoiceStore
from invoicepay.modules.invoices.models import InvoiceStatus
from invoicepay.testing import auth_headers


class TestPaymentLink:

    def test_payable_invoice(self, client, invoice_factory, merchant):
        invoice = invoice_factory(crypto_payment_url="https://pay.crypto.test/TRK-1")

        response = client.get(f"/pay/{invoice.payment_token}")

        assert response.status_code == 200
        body = response.json()
        assert body["gateway_invoice_id"] == invoice.gateway_invoice_id
        assert body["status"] == "sent"
        assert body["merchant_name"] == merchant.name
        assert body["crypto_payment_url"] == "https://pay.crypto.test/TRK-1"

    def test_overdue_invoice_is_still_payable(self, client, invoice_factory):
        invoice = invoice_factory(status=InvoiceStatus.OVERDUE)
        assert client.get(f"/pay/{invoice.payment_token}").status_code == 200

    def test_paid_invoice_is_hidden(self, client, invoice_factory):
        invoice = invoice_factory(status=InvoiceStatus.PAID)

        response = client.get(f"/pay/{invoice.payment_token}")

        assert response.status_code == 404
        assert response.json()["message"] == "Invoice not found or already paid"

    def test_unknown_token(self, client, db_session):
        assert client.get("/pay/does-not-exist").status_code == 404


class TestInvoiceQueries:

    def test_list_is_scoped_to_merchant(self, client, invoice_factory, merchant, other_merchant):
        mine = invoice_factory()
        invoice_factory(merchant_id=other_merchant.id)

        response = client.get("/invoices/", headers=auth_headers(merchant))

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == str(mine.id)

    def test_list_filters_by_status(self, client, invoice_factory, merchant):
        invoice_factory(status=InvoiceStatus.PAID)
        invoice_factory()

        response = client.get("/invoices/", params={"status": "paid"}, headers=auth_headers(merchant))

        assert response.json()["total"] == 1
        assert response.json()["items"][0]["status"] == "paid"

    def test_other_merchants_invoice_is_not_found(self, client, invoice_factory, other_merchant):
        invoice = invoice_factory()

        response = client.get(f"/invoices/{invoice.id}", headers=auth_headers(other_merchant))

        assert response.status_code == 404

    def test_invalid_token(self, client, db_session):
        response = client.get("/invoices/", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


class TestCloseInvoice:

    def test_close_sent_invoice(self, client, db_session, invoice_factory, merchant):
        invoice = invoice_factory()

        response = client.post(f"/invoices/{invoice.id}/close", headers=auth_headers(merchant))

        assert response.status_code == 200
        assert response.json()["message"] == "Invoice closed"
        assert response.json()["status"] == "closed"
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.CLOSED
        assert invoice.version == 2

    def test_close_is_idempotent(self, client, invoice_factory, merchant):
        invoice = invoice_factory(status=InvoiceStatus.CLOSED)

        response = client.post(f"/invoices/{invoice.id}/close", headers=auth_headers(merchant))

        assert response.status_code == 200
        assert response.json()["message"] == "Invoice already closed"

    def test_paid_invoice_cannot_be_closed(self, client, db_session, invoice_factory, merchant):
        invoice = invoice_factory(status=InvoiceStatus.PAID)

        response = client.post(f"/invoices/{invoice.id}/close", headers=auth_headers(merchant))

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_invoice_state"
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID

    def test_other_merchant_cannot_close(self, client, db_session, invoice_factory, other_merchant):
        invoice = invoice_factory()

        response = client.post(f"/invoices/{invoice.id}/close", headers=auth_headers(other_merchant))

        assert response.status_code == 404
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT

    def test_admin_can_close_any_invoice(self, client, invoice_factory, admin_merchant):
        invoice = invoice_factory(status=InvoiceStatus.REFUNDED)

        response = client.post(f"/invoices/{invoice.id}/close", headers=auth_headers(admin_merchant))

        assert response.status_code == 200
        assert response.json()["status"] == "closed"

    def test_unknown_invoice(self, client, merchant):
        response = client.post(f"/invoices/{uuid4()}/close", headers=auth_headers(merchant))
        assert response.status_code == 404


class TestOrderReferenceResolution:

    def test_exact_match(self, db_session, invoice_factory):
        invoice = invoice_factory(gateway_invoice_id="INV-42")
        assert InvoiceStore(db_session).resolve_order_reference("INV-42").id == invoice.id

    def test_suffixes_are_stripped(self, db_session, invoice_factory):
        invoice = invoice_factory(gateway_invoice_id="INV-42")
        found = InvoiceStore(db_session).resolve_order_reference("INV-42-1700000000-x9")
        assert found.id == invoice.id

    def test_no_match(self, db_session, invoice_factory):
        invoice_factory(gateway_invoice_id="INV-42")
        assert InvoiceStore(db_session).resolve_order_reference("INV-4") is None
        assert InvoiceStore(db_session).resolve_order_reference("ORDER") is None

    def test_pending_crypto_excludes_paid(self, db_session, invoice_factory):
        pending = invoice_factory(crypto_tracking_id="TRK-1")
        invoice_factory(crypto_tracking_id="TRK-2", status=InvoiceStatus.PAID)
        invoice_factory()

        assert [i.id for i in InvoiceStore(db_session).list_pending_crypto()] == [pending.id]

    def test_pending_crypto_least_recently_checked_first(self, db_session, invoice_factory):
        checked = invoice_factory(crypto_tracking_id="TRK-1")
        never_checked = invoice_factory(crypto_tracking_id="TRK-2")
        store = InvoiceStore(db_session)

        store.mark_crypto_checked(checked.id)

        assert [i.id for i in store.list_pending_crypto(limit=1)] == [never_checked.id]
        store.mark_crypto_checked(never_checked.id)
        assert [i.id for i in store.list_pending_crypto(limit=1)] == [checked.id]
        db_session.refresh(checked)
        assert checked.crypto_last_checked_at is not None
        assert checked.version == 1

    def test_tracking_id_is_attached_once(self, db_session, invoice_factory):
        invoice = invoice_factory()
        store = InvoiceStore(db_session)

        assert store.attach_tracking_id(invoice.id, "TRK-1", "https://pay/1") is True
        assert store.attach_tracking_id(invoice.id, "TRK-2", "https://pay/2") is False

        db_session.refresh(invoice)
        assert invoice.crypto_tracking_id == "TRK-1"
