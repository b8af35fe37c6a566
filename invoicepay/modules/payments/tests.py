"""
Tests para el módulo de pagos

Cubren:
- Verificación de firmas de webhooks (HMAC-SHA256 con nonce)
- Reglas de la máquina de estados de conciliación
- Idempotencia y concurrencia de la escritura en la factura
- Clientes de los gateways de tarjeta y cripto (httpx.MockTransport)
- Endpoints de pago y el sondeo de pagos cripto pendientes
"""

import hmac
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from invoicepay.common.exceptions import (
    AuthenticationError,
    GatewayDeclinedError,
    GatewayError,
    GatewayPermissionError,
    GatewayResponseError,
    GatewayTransportError,
    InvoiceStateError,
    MalformedHeader,
    MalformedInputError,
    MissingSignature,
    PersistenceError,
    ResolutionError,
    SignatureMismatch,
)
from invoicepay.core.config import Settings
from invoicepay.database.database import Base
from invoicepay.modules.invoices.crud import InvoiceStore
from invoicepay.modules.invoices.models import Invoice, InvoiceStatus, PaymentMethod
from invoicepay.modules.merchants.models import Merchant
from invoicepay.modules.merchants.service import CardCredentials, CryptoCredentials
from invoicepay.modules.payments import signature, tasks
from invoicepay.modules.payments.gateway.card import BillingDetails, CardSaleRequest
from invoicepay.modules.payments.reconciliation import (
    PaymentEvent,
    PaymentEventType,
    ReconciliationService,
    decide,
    decide_close,
)
from invoicepay.modules.payments.service import poll_pending_crypto_payments
from invoicepay.testing import TestingSessionLocal, crypto_handler, sale_webhook, signed_card_webhook

SECRET = "shared-secret"
BODY = b'{"type":"transaction.sale","data":{"orderid":"INV-77-1"}}'

CARD_CREDENTIALS = CardCredentials(public_key="pub_test", security_key="sk_live_secret")
CRYPTO_CREDENTIALS = CryptoCredentials(
    provider_merchant_id="M-100", terminal_id="T-200", username="acme-terminal", password="crypto-password"
)


def _flip_bit(data: bytes, index: int) -> bytes:
    mutated = bytearray(data)
    mutated[index] ^= 0x01
    return bytes(mutated)


def _sale_request(**overrides) -> CardSaleRequest:
    values = dict(
        payment_token="tok_abc",
        amount=Decimal("105.00"),
        order_id="INV-77",
        tax=Decimal("5.00"),
        customer_id="client@example.com",
        billing=BillingDetails(
            first_name="Ada", last_name="Lovelace", address="1 Main St", city="Austin",
            state="TX", zip="73301", phone="5125550100",
        ),
    )
    values.update(overrides)
    return CardSaleRequest(**values)


def _card_payment_body(invoice, **overrides) -> dict:
    body = {
        "token": "tok_abc",
        "invoiceId": invoice.gateway_invoice_id,
        "amount": "105.00",
        "firstName": "Ada",
        "lastName": "Lovelace",
        "address": "1 Main St",
        "city": "Austin",
        "state": "TX",
        "zip": "73301",
        "phone": "5125550100",
    }
    body.update(overrides)
    return body


def _form_response(text: str):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=text)
    return handler


APPROVED = "response=1&responsetext=SUCCESS&authcode=123456&transactionid=T-900&response_code=100"
DECLINED = "response=2&responsetext=DECLINE&authcode=&transactionid=T-901&response_code=200"


# ===== FIRMAS =====

class TestSignatureVerification:

    def test_valid_signature_returns_nonce(self):
        header = signature.sign(BODY, "nonce-42", SECRET)
        assert signature.verify(BODY, header, SECRET) == "nonce-42"

    def test_signature_is_hmac_over_nonce_dot_body(self):
        expected = hmac.new(SECRET.encode(), b"nonce-42." + BODY, "sha256").hexdigest()
        assert signature.sign(BODY, "nonce-42", SECRET) == f"t=nonce-42,s={expected}"

    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header(self, header):
        with pytest.raises(MissingSignature):
            signature.verify(BODY, header, SECRET)

    @pytest.mark.parametrize("header", [
        "s=abc,t=nonce",
        "t=nonce",
        "t=nonce,s=abc,v=1",
        "t=,s=abc",
        "sha256=abc",
    ])
    def test_malformed_header(self, header):
        with pytest.raises(MalformedHeader):
            signature.verify(BODY, header, SECRET)

    def test_wrong_secret_is_rejected(self):
        header = signature.sign(BODY, "nonce-42", "another-secret")
        with pytest.raises(SignatureMismatch):
            signature.verify(BODY, header, SECRET)

    @pytest.mark.parametrize("index", [0, 10, len(BODY) - 1])
    def test_single_bit_body_mutation_fails(self, index):
        header = signature.sign(BODY, "nonce-42", SECRET)
        with pytest.raises(SignatureMismatch):
            signature.verify(_flip_bit(BODY, index), header, SECRET)

    @pytest.mark.parametrize("index", [0, 3, 6])
    def test_single_bit_nonce_mutation_fails(self, index):
        nonce = "nonce-42"
        sig = signature.compute_signature(BODY, nonce, SECRET)
        mutated = _flip_bit(nonce.encode(), index).decode()
        with pytest.raises(AuthenticationError):
            signature.verify(BODY, f"t={mutated},s={sig}", SECRET)

    @pytest.mark.parametrize("index", [0, 31, 63])
    def test_single_bit_signature_mutation_fails(self, index):
        sig = signature.compute_signature(BODY, "nonce-42", SECRET)
        mutated = _flip_bit(sig.encode(), index).decode()
        with pytest.raises(AuthenticationError):
            signature.verify(BODY, f"t=nonce-42,s={mutated}", SECRET)

    def test_uppercase_signature_is_not_normalised(self):
        sig = signature.compute_signature(BODY, "nonce-42", SECRET)
        with pytest.raises(SignatureMismatch):
            signature.verify(BODY, f"t=nonce-42,s={sig.upper()}", SECRET)

    def test_empty_secret_never_verifies(self):
        header = signature.sign(BODY, "nonce-42", "")
        with pytest.raises(SignatureMismatch):
            signature.verify(BODY, header, "")

    def test_comparison_uses_compare_digest(self, monkeypatch):
        calls = []
        original = hmac.compare_digest

        def spy(a, b):
            calls.append((a, b))
            return original(a, b)

        monkeypatch.setattr(signature.hmac, "compare_digest", spy)
        wrong = "0" * 64
        with pytest.raises(SignatureMismatch):
            signature.verify(BODY, f"t=nonce-42,s={wrong}", SECRET)
        signature.verify(BODY, signature.sign(BODY, "nonce-42", SECRET), SECRET)

        assert len(calls) == 2
        assert all(isinstance(a, bytes) and isinstance(b, bytes) for a, b in calls)


# ===== REGLAS DE CONCILIACIÓN =====

SALE_OK = PaymentEvent(PaymentEventType.SALE_SUCCEEDED, transaction_id="T1")
CRYPTO_OK = PaymentEvent(PaymentEventType.CRYPTO_COMPLETED, transaction_id="0xabc")
SALE_FAILED = PaymentEvent(PaymentEventType.SALE_FAILED)
REFUND = PaymentEvent(PaymentEventType.REFUNDED, transaction_id="T1")
VOID = PaymentEvent(PaymentEventType.VOIDED, transaction_id="T1")


class TestDecide:

    @pytest.mark.parametrize("event", [SALE_OK, CRYPTO_OK])
    @pytest.mark.parametrize("current", [InvoiceStatus.SENT, InvoiceStatus.OVERDUE])
    def test_success_on_payable_invoice_pays_and_notifies(self, current, event):
        transition = decide(current, event)
        assert transition.new_status == InvoiceStatus.PAID
        assert transition.should_notify is True
        assert transition.is_noop is False

    @pytest.mark.parametrize("event", [SALE_OK, CRYPTO_OK])
    def test_success_on_paid_invoice_is_noop(self, event):
        transition = decide(InvoiceStatus.PAID, event)
        assert transition.is_noop is True
        assert transition.should_notify is False
        assert transition.anomaly is False

    @pytest.mark.parametrize("current", [InvoiceStatus.REFUNDED, InvoiceStatus.VOIDED, InvoiceStatus.CLOSED])
    def test_success_on_final_invoice_is_anomalous_noop(self, current):
        transition = decide(current, SALE_OK)
        assert transition.is_noop is True
        assert transition.anomaly is True
        assert transition.new_status == current

    @pytest.mark.parametrize("current", list(InvoiceStatus))
    def test_sale_failed_never_changes_status(self, current):
        transition = decide(current, SALE_FAILED)
        assert transition.is_noop is True
        assert transition.new_status == current

    @pytest.mark.parametrize("event,target", [
        (REFUND, InvoiceStatus.REFUNDED),
        (VOID, InvoiceStatus.VOIDED),
    ])
    @pytest.mark.parametrize("current", [InvoiceStatus.SENT, InvoiceStatus.PAID, InvoiceStatus.OVERDUE])
    def test_reversal_applies(self, current, event, target):
        transition = decide(current, event)
        assert transition.new_status == target
        assert transition.is_noop is False
        assert transition.should_notify is False

    @pytest.mark.parametrize("event", [REFUND, VOID])
    def test_reversal_on_closed_invoice_is_noop(self, event):
        transition = decide(InvoiceStatus.CLOSED, event)
        assert transition.is_noop is True
        assert transition.anomaly is True
        assert transition.new_status == InvoiceStatus.CLOSED

    def test_repeated_refund_is_noop(self):
        assert decide(InvoiceStatus.REFUNDED, REFUND).is_noop is True

    @pytest.mark.parametrize("current", [
        InvoiceStatus.SENT, InvoiceStatus.OVERDUE, InvoiceStatus.REFUNDED, InvoiceStatus.VOIDED,
    ])
    def test_close_from_non_paid(self, current):
        assert decide_close(current).new_status == InvoiceStatus.CLOSED

    def test_close_paid_invoice_is_rejected(self):
        with pytest.raises(InvoiceStateError):
            decide_close(InvoiceStatus.PAID)


# ===== SERVICIO DE CONCILIACIÓN =====

class TestReconciliationService:

    def test_sale_success_marks_paid(self, db_session, invoice_factory, merchant):
        invoice = invoice_factory()
        result = ReconciliationService(db_session).apply(invoice.id, PaymentEvent(
            PaymentEventType.SALE_SUCCEEDED, transaction_id="T1", payment_method=PaymentMethod.CREDIT_CARD,
        ))

        assert result.newly_paid is True
        assert result.previous_status == InvoiceStatus.SENT
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.transaction_id == "T1"
        assert invoice.payment_method == PaymentMethod.CREDIT_CARD
        assert invoice.payment_date is not None
        assert invoice.version == 2

        receipt = result.receipt
        assert receipt.invoice_id == invoice.id
        assert receipt.total == Decimal("105.00")
        assert receipt.merchant_email == merchant.email
        assert receipt.client_name == "Ada Lovelace"

    @pytest.mark.parametrize("repeats", [1, 2, 5])
    def test_repeated_success_transitions_once(self, db_session, invoice_factory, repeats):
        invoice = invoice_factory()
        service = ReconciliationService(db_session)

        first = service.apply(invoice.id, SALE_OK)
        db_session.refresh(invoice)
        payment_date = invoice.payment_date

        replays = [service.apply(invoice.id, SALE_OK) for _ in range(repeats)]

        assert first.newly_paid is True
        assert all(r.transition.is_noop and not r.newly_paid and r.receipt is None for r in replays)
        db_session.refresh(invoice)
        assert invoice.payment_date == payment_date
        assert invoice.version == 2

    def test_refund_on_closed_invoice_does_not_write(self, db_session, invoice_factory):
        invoice = invoice_factory(status=InvoiceStatus.CLOSED)
        result = ReconciliationService(db_session).apply(invoice.id, REFUND)

        assert result.transition.is_noop is True
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.CLOSED
        assert invoice.version == 1

    def test_refund_keeps_payment_date(self, db_session, invoice_factory):
        invoice = invoice_factory()
        service = ReconciliationService(db_session)
        service.apply(invoice.id, SALE_OK)
        db_session.refresh(invoice)
        paid_at = invoice.payment_date

        result = service.apply(invoice.id, REFUND)

        assert result.status == InvoiceStatus.REFUNDED
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.REFUNDED
        assert invoice.payment_date == paid_at

    def test_close_goes_through_same_write_path(self, db_session, invoice_factory):
        invoice = invoice_factory(status=InvoiceStatus.OVERDUE)
        result = ReconciliationService(db_session).close(invoice.id)

        assert result.status == InvoiceStatus.CLOSED
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.CLOSED
        assert invoice.version == 2

    def test_close_paid_invoice_raises(self, db_session, invoice_factory):
        invoice = invoice_factory(status=InvoiceStatus.PAID)
        with pytest.raises(InvoiceStateError):
            ReconciliationService(db_session).close(invoice.id)

    def test_unknown_invoice(self, db_session):
        with pytest.raises(ResolutionError):
            ReconciliationService(db_session).apply(uuid4(), SALE_OK)

    def test_lost_compare_and_set_exhausts_attempts(self, db_session, invoice_factory, monkeypatch):
        invoice = invoice_factory()
        service = ReconciliationService(db_session, max_attempts=3)
        attempts = []

        def always_lose(invoice_id, expected_version, values):
            attempts.append(expected_version)
            return False

        monkeypatch.setattr(service.store, "compare_and_set", always_lose)

        with pytest.raises(PersistenceError) as exc_info:
            service.apply(invoice.id, SALE_OK)

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503
        assert len(attempts) == 3
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT

    def test_store_failure_is_persistence_error(self, db_session, invoice_factory, monkeypatch):
        invoice = invoice_factory()
        service = ReconciliationService(db_session)

        def broken(invoice_id, expected_version, values):
            raise OperationalError("UPDATE invoices", {}, Exception("database is locked"))

        monkeypatch.setattr(service.store, "compare_and_set", broken)

        with pytest.raises(PersistenceError):
            service.apply(invoice.id, SALE_OK)
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT


def test_concurrent_success_events_write_paid_once(tmp_path):
    """Webhook and poller confirm the same invoice with interleaved read/write."""
    file_engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(bind=file_engine)
    SessionFactory = sessionmaker(bind=file_engine, autoflush=False)

    setup = SessionFactory()
    owner = Merchant(name="Race Shop", email="race@acme.test")
    setup.add(owner)
    setup.commit()
    invoice = Invoice(
        merchant_id=owner.id, gateway_invoice_id="INV-RACE", payment_token="race-token",
        client_email="client@example.com", subtotal=Decimal("100.00"), tax_amount=Decimal("5.00"),
        total=Decimal("105.00"), status=InvoiceStatus.SENT,
    )
    setup.add(invoice)
    setup.commit()
    invoice_id = invoice.id
    setup.close()

    session_a, session_b = SessionFactory(), SessionFactory()
    webhook = ReconciliationService(session_a)
    poller = ReconciliationService(session_b)
    results = {}
    read_for_update = poller.store.get_for_update

    def read_then_let_webhook_win(target_id):
        row = read_for_update(target_id)
        if "webhook" not in results:
            results["webhook"] = webhook.apply(target_id, SALE_OK)
        return row

    poller.store.get_for_update = read_then_let_webhook_win
    results["poller"] = poller.apply(invoice_id, CRYPTO_OK)

    assert results["webhook"].newly_paid is True
    assert results["poller"].transition.is_noop is True
    assert results["poller"].newly_paid is False

    check = SessionFactory()
    stored = check.query(Invoice).filter(Invoice.id == invoice_id).first()
    assert stored.status == InvoiceStatus.PAID
    assert stored.version == 2
    assert stored.transaction_id == "T1"

    for session in (session_a, session_b, check):
        session.close()
    file_engine.dispose()


# ===== GATEWAY DE TARJETA =====

class TestCardGatewayClient:

    def test_approved_sale(self, card_client, card_gateway):
        card_gateway.handler = _form_response(APPROVED)

        result = card_client.submit_sale(CARD_CREDENTIALS, _sale_request())

        assert result.transaction_id == "T-900"
        assert result.response_code == "100"
        sent = dict(httpx.QueryParams(card_gateway.requests[0].content.decode()))
        assert sent["security_key"] == "sk_live_secret"
        assert sent["type"] == "sale"
        assert sent["payment_token"] == "tok_abc"
        assert sent["amount"] == "105.00"
        assert sent["tax"] == "5.00"
        assert sent["orderid"] == "INV-77"
        assert sent["currency"] == "USD"
        assert sent["customer_id"] == "client@example.com"
        assert sent["address1"] == "1 Main St"

    def test_decline_carries_processor_reason(self, card_client, card_gateway):
        card_gateway.handler = _form_response(DECLINED)

        with pytest.raises(GatewayDeclinedError) as exc_info:
            card_client.submit_sale(CARD_CREDENTIALS, _sale_request())

        assert exc_info.value.message == "DECLINE"
        assert exc_info.value.response_code == "200"
        assert exc_info.value.retryable is False

    @pytest.mark.parametrize("error", [httpx.ConnectError, httpx.ReadTimeout])
    def test_transport_failure_is_distinct_from_decline(self, card_client, card_gateway, error):
        def handler(request):
            raise error("gateway unreachable", request=request)

        card_gateway.handler = handler

        with pytest.raises(GatewayTransportError) as exc_info:
            card_client.submit_sale(CARD_CREDENTIALS, _sale_request())
        assert exc_info.value.retryable is True

    def test_missing_response_field(self, card_client, card_gateway):
        card_gateway.handler = _form_response("responsetext=SUCCESS&transactionid=T-1")

        with pytest.raises(GatewayResponseError) as exc_info:
            card_client.submit_sale(CARD_CREDENTIALS, _sale_request())
        assert isinstance(exc_info.value, MalformedInputError)

    def test_approval_without_transaction_id(self, card_client, card_gateway):
        card_gateway.handler = _form_response("response=1&responsetext=SUCCESS&response_code=100")

        with pytest.raises(GatewayResponseError):
            card_client.submit_sale(CARD_CREDENTIALS, _sale_request())

    def test_security_key_is_not_logged(self, card_client, card_gateway, caplog):
        card_gateway.handler = _form_response(APPROVED)

        with caplog.at_level("INFO", logger="invoicepay.modules.payments.gateway.card"):
            card_client.submit_sale(CARD_CREDENTIALS, _sale_request())

        assert "sk_live_secret" not in caplog.text
        assert "[REDACTED]" in caplog.text

    def test_credentials_repr_hides_secret(self):
        assert "sk_live_secret" not in repr(CARD_CREDENTIALS)
        assert "crypto-password" not in repr(CRYPTO_CREDENTIALS)


# ===== GATEWAY CRIPTO =====

class TestCryptoGatewayClient:

    def test_create_payment(self, crypto_client, crypto_gateway):
        crypto_gateway.handler = crypto_handler(tracking_id="TRK-9")

        created = crypto_client.create_payment(
            CRYPTO_CREDENTIALS, Decimal("105.00"), "USD", "INV-77", "Invoice payment for INV-77"
        )

        assert created.tracking_id == "TRK-9"
        assert created.payment_url == "https://pay.crypto.test/TRK-9"

        auth, create = crypto_gateway.requests
        form = dict(httpx.QueryParams(auth.content.decode()))
        assert form["grant_type"] == "password"
        assert form["client_id"] == "bead-terminal"
        assert form["username"] == "acme-terminal"
        assert form["password"] == "crypto-password"
        assert form["scope"] == "openid profile email"

        assert create.headers["Authorization"] == "Bearer token-123"
        assert create.headers["api-version"] == "0.2"
        payload = json.loads(create.content)
        assert payload["merchantId"] == "M-100"
        assert payload["terminalId"] == "T-200"
        assert payload["requestedAmount"] == 105.0
        assert payload["paymentUrlType"] == "web"
        assert payload["reference"] == "INV-77"

    def test_forbidden_terminal_has_actionable_message(self, crypto_client, crypto_gateway):
        crypto_gateway.handler = crypto_handler(create_status=403)

        with pytest.raises(GatewayPermissionError) as exc_info:
            crypto_client.create_payment(CRYPTO_CREDENTIALS, Decimal("105.00"), "USD", "INV-77", "x")

        assert "Terminal ID: T-200" in exc_info.value.message
        assert "Invoice Id: INV-77" in exc_info.value.message
        assert exc_info.value.status_code == 403

    def test_check_status_completed(self, crypto_client, crypto_gateway):
        crypto_gateway.handler = crypto_handler(status_code="completed", transaction_id="0xfeed")

        status = crypto_client.check_status(CRYPTO_CREDENTIALS, "TRK-1")

        assert status.is_completed is True
        assert status.transaction_id == "0xfeed"
        assert crypto_gateway.requests[-1].url.path == "/api/payments/TRK-1"

    def test_completed_without_transaction_id_is_malformed(self, crypto_client, crypto_gateway):
        crypto_gateway.handler = crypto_handler(status_code="completed", transaction_id=None)

        with pytest.raises(GatewayResponseError):
            crypto_client.check_status(CRYPTO_CREDENTIALS, "TRK-1")

    def test_pending_without_transaction_id_is_fine(self, crypto_client, crypto_gateway):
        crypto_gateway.handler = crypto_handler(status_code="pending", transaction_id=None)

        status = crypto_client.check_status(CRYPTO_CREDENTIALS, "TRK-1")
        assert status.is_completed is False

    def test_token_is_fetched_for_every_call(self, crypto_client, crypto_gateway):
        crypto_gateway.handler = crypto_handler(status_code="pending", transaction_id=None)

        crypto_client.check_status(CRYPTO_CREDENTIALS, "TRK-1")
        crypto_client.check_status(CRYPTO_CREDENTIALS, "TRK-1")

        auth_calls = [r for r in crypto_gateway.requests if r.url.host == "auth.crypto.test"]
        assert len(auth_calls) == 2

    def test_rejected_credentials(self, crypto_client, crypto_gateway):
        crypto_gateway.handler = lambda request: httpx.Response(401, json={"error": "invalid_grant"})

        with pytest.raises(GatewayError):
            crypto_client.check_status(CRYPTO_CREDENTIALS, "TRK-1")

    def test_provider_unreachable(self, crypto_client, crypto_gateway):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        crypto_gateway.handler = handler

        with pytest.raises(GatewayTransportError):
            crypto_client.check_status(CRYPTO_CREDENTIALS, "TRK-1")


class TestGatewaySettings:

    def test_timeout_ceiling(self):
        with pytest.raises(ValidationError):
            Settings(GATEWAY_TIMEOUT_SECONDS=45)

    def test_tls_override_rejected_in_production(self):
        with pytest.raises(ValidationError):
            Settings(ENVIRONMENT="production", GATEWAY_INSECURE_SKIP_TLS_VERIFY=True)

    def test_tls_verification_is_default(self):
        assert Settings().gateway_tls_verify is True


# ===== ENDPOINTS DE PAGO =====

class TestCardPaymentEndpoint:

    def test_card_payment_marks_invoice_paid(self, client, db_session, invoice_factory, card_gateway, notifier):
        invoice = invoice_factory()
        card_gateway.handler = _form_response(APPROVED)

        response = client.post("/payments/card", json=_card_payment_body(invoice))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["transaction_id"] == "T-900"
        assert body["status"] == "paid"
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.transaction_id == "T-900"
        assert len(notifier.receipts) == 1

    def test_amount_must_match_total(self, client, invoice_factory, card_gateway):
        invoice = invoice_factory()

        response = client.post("/payments/card", json=_card_payment_body(invoice, amount="100.00"))

        assert response.status_code == 400
        assert response.json()["error"] == "malformed_input"
        assert card_gateway.requests == []

    def test_decline_leaves_invoice_payable(self, client, db_session, invoice_factory, card_gateway, notifier):
        invoice = invoice_factory()
        card_gateway.handler = _form_response(DECLINED)

        response = client.post("/payments/card", json=_card_payment_body(invoice))

        assert response.status_code == 402
        assert response.json()["message"] == "DECLINE"
        assert response.json()["code"] == "200"
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT
        assert notifier.receipts == []

    def test_approved_sale_is_not_retryable_when_invoice_update_fails(self, client, db_session, invoice_factory,
                                                                       card_gateway, notifier, monkeypatch):
        invoice = invoice_factory()
        card_gateway.handler = _form_response(APPROVED)
        monkeypatch.setattr(InvoiceStore, "compare_and_set", lambda self, invoice_id, expected_version, values: False)

        response = client.post("/payments/card", json=_card_payment_body(invoice))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["transaction_id"] == "T-900"
        assert body["invoice_id"] == str(invoice.id)
        assert body["status"] == "processing"
        assert "retryable" not in body
        assert len(card_gateway.requests) == 1
        assert notifier.receipts == []
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT

        # The processor's sale webhook settles the invoice once writes succeed again
        monkeypatch.undo()
        webhook_body, headers = signed_card_webhook(sale_webhook(invoice.gateway_invoice_id, transaction_id="T-900"))
        settled = client.post("/webhooks/card", content=webhook_body, headers=headers)

        assert settled.status_code == 200
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.transaction_id == "T-900"
        assert len(card_gateway.requests) == 1
        assert len(notifier.receipts) == 1

    def test_decline_is_reported_when_recording_it_fails(self, client, invoice_factory, card_gateway, monkeypatch):
        invoice = invoice_factory()
        card_gateway.handler = _form_response(DECLINED)

        def broken(self, invoice_id):
            raise OperationalError("SELECT invoices", {}, Exception("database is locked"))

        monkeypatch.setattr(InvoiceStore, "get_for_update", broken)

        response = client.post("/payments/card", json=_card_payment_body(invoice))

        assert response.status_code == 402
        assert response.json()["message"] == "DECLINE"

    def test_transport_failure_is_retryable(self, client, invoice_factory, card_gateway):
        invoice = invoice_factory()

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        card_gateway.handler = handler

        response = client.post("/payments/card", json=_card_payment_body(invoice))

        assert response.status_code == 503
        assert response.json()["retryable"] is True

    def test_paid_invoice_is_rejected(self, client, invoice_factory, card_gateway):
        invoice = invoice_factory(status=InvoiceStatus.PAID)

        response = client.post("/payments/card", json=_card_payment_body(invoice))

        assert response.status_code == 409
        assert response.json()["message"] == "This invoice has already been paid."
        assert card_gateway.requests == []

    def test_unknown_invoice(self, client, invoice_factory, card_gateway):
        invoice = invoice_factory()

        response = client.post("/payments/card", json=_card_payment_body(invoice, invoiceId="INV-NOPE"))

        assert response.status_code == 404
        assert card_gateway.requests == []

    def test_missing_billing_field(self, client, invoice_factory):
        invoice = invoice_factory()
        body = _card_payment_body(invoice)
        del body["zip"]

        response = client.post("/payments/card", json=body)
        assert response.status_code == 422


class TestCryptoPaymentEndpoints:

    def test_create_stores_tracking_id(self, client, db_session, invoice_factory, crypto_gateway):
        invoice = invoice_factory()
        crypto_gateway.handler = crypto_handler(tracking_id="TRK-NEW")

        response = client.post("/payments/crypto", json={
            "token": invoice.payment_token, "invoiceId": str(invoice.id), "amount": "105.00",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["has_existing_payment"] is False
        assert body["payment_data"]["trackingId"] == "TRK-NEW"
        assert body["payment_data"]["paymentUrl"] == "https://pay.crypto.test/TRK-NEW"
        db_session.refresh(invoice)
        assert invoice.crypto_tracking_id == "TRK-NEW"
        assert invoice.payment_method == PaymentMethod.CRYPTO
        assert invoice.status == InvoiceStatus.SENT

    def test_existing_tracking_id_is_requeried_not_recreated(self, client, db_session, invoice_factory,
                                                             crypto_gateway):
        invoice = invoice_factory(crypto_tracking_id="TRK-EXISTING", crypto_payment_url="https://pay/old")
        crypto_gateway.handler = crypto_handler(status_code="pending", transaction_id=None)

        response = client.post("/payments/crypto", json={
            "token": invoice.payment_token, "invoiceId": str(invoice.id), "amount": "105.00",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["has_existing_payment"] is True
        assert body["payment_data"]["trackingId"] == "TRK-EXISTING"
        assert body["payment_data"]["paymentUrl"] == "https://pay/old"
        creations = [r for r in crypto_gateway.requests
                     if r.method == "POST" and r.url.path.endswith("/payments/crypto")]
        assert creations == []
        assert any(r.url.path.endswith("/payments/TRK-EXISTING") for r in crypto_gateway.requests)

    def test_wrong_payment_token(self, client, invoice_factory, crypto_gateway):
        invoice = invoice_factory()

        response = client.post("/payments/crypto", json={
            "token": "not-the-token", "invoiceId": str(invoice.id), "amount": "105.00",
        })

        assert response.status_code == 404
        assert crypto_gateway.requests == []

    def test_terminal_without_permission(self, client, invoice_factory, crypto_gateway):
        invoice = invoice_factory()
        crypto_gateway.handler = crypto_handler(create_status=403)

        response = client.post("/payments/crypto", json={
            "token": invoice.payment_token, "invoiceId": str(invoice.id), "amount": "105.00",
        })

        assert response.status_code == 403
        assert "T-200" in response.json()["message"]
        assert invoice.gateway_invoice_id in response.json()["message"]

    def test_verify_completed_payment(self, client, db_session, invoice_factory, crypto_gateway, notifier):
        invoice = invoice_factory(crypto_tracking_id="TRK-1", payment_method=PaymentMethod.CRYPTO)
        crypto_gateway.handler = crypto_handler(status_code="completed", transaction_id="0xabc")

        response = client.post("/payments/crypto/verify", json={"trackingId": "TRK-1"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["payment"]["status_code"] == "completed"
        assert body["invoice"]["id"] == invoice.gateway_invoice_id
        assert Decimal(str(body["invoice"]["amount"])) == Decimal("105.00")
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.transaction_id == "0xabc"
        assert len(notifier.receipts) == 1

        again = client.post("/payments/crypto/verify", json={"trackingId": "TRK-1"})
        assert again.status_code == 200
        assert len(notifier.receipts) == 1

    def test_verify_unknown_tracking_id(self, client, db_session, crypto_gateway):
        response = client.post("/payments/crypto/verify", json={"trackingId": "TRK-404"})
        assert response.status_code == 404

    def test_verify_trusts_provider_over_reported_status(self, client, db_session, invoice_factory, crypto_gateway,
                                                         notifier, caplog):
        invoice = invoice_factory(crypto_tracking_id="TRK-1", payment_method=PaymentMethod.CRYPTO)
        crypto_gateway.handler = crypto_handler(status_code="pending", transaction_id=None)

        response = client.post("/payments/crypto/verify", json={"trackingId": "TRK-1", "status": "completed"})

        assert response.status_code == 200
        assert response.json()["payment"]["status_code"] == "pending"
        assert "TRK-1 reported status completed, provider confirmed pending" in caplog.text
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT
        assert notifier.receipts == []


def test_poll_confirms_pending_crypto_payments(db_session, invoice_factory, crypto_client, crypto_gateway,
                                               notifier):
    first = invoice_factory(crypto_tracking_id="TRK-A")
    second = invoice_factory(crypto_tracking_id="TRK-B")
    invoice_factory()
    crypto_gateway.handler = crypto_handler(status_code="completed", transaction_id="0xabc")

    summary = poll_pending_crypto_payments(db_session, crypto_client, notifier)

    assert summary == {"checked": 2, "paid": 2, "failed": 0}
    assert {r.invoice_id for r in notifier.receipts} == {first.id, second.id}

    again = poll_pending_crypto_payments(db_session, crypto_client, notifier)
    assert again == {"checked": 0, "paid": 0, "failed": 0}
    assert len(notifier.receipts) == 2


def test_poll_keeps_going_after_a_failure(db_session, invoice_factory, crypto_client, crypto_gateway, notifier):
    invoice_factory(crypto_tracking_id="TRK-DOWN")
    invoice_factory(crypto_tracking_id="TRK-OK")

    def handler(request):
        if request.url.path.endswith("/payments/TRK-DOWN"):
            return httpx.Response(502, text="bad gateway")
        return crypto_handler(status_code="completed", transaction_id="0xabc")(request)

    crypto_gateway.handler = handler

    summary = poll_pending_crypto_payments(db_session, crypto_client, notifier)

    assert summary == {"checked": 2, "paid": 1, "failed": 1}


def test_celery_task_polls_with_its_own_session(db_session, invoice_factory, crypto_client, crypto_gateway,
                                                notifier, monkeypatch):
    invoice = invoice_factory(crypto_tracking_id="TRK-A")
    crypto_gateway.handler = crypto_handler(status_code="completed", transaction_id="0xabc")
    monkeypatch.setattr(tasks, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(tasks, "CryptoGatewayClient", lambda: crypto_client)
    monkeypatch.setattr(tasks, "PaymentNotifier", lambda: notifier)

    summary = tasks.poll_pending_crypto_payments_task()

    assert summary == {"checked": 1, "paid": 1, "failed": 0}
    db_session.refresh(invoice)
    assert invoice.status == InvoiceStatus.PAID


def test_poll_reaches_invoices_behind_a_full_batch_of_pending_ones(db_session, invoice_factory, crypto_client,
                                                                    crypto_gateway, notifier):
    opened = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for i in range(100):
        invoice_factory(crypto_tracking_id=f"TRK-WAITING-{i}", created_at=opened + timedelta(minutes=i))
    fresh = invoice_factory(crypto_tracking_id="TRK-FRESH", created_at=opened + timedelta(days=30))
    crypto_gateway.handler = crypto_handler(
        status_code="pending", transaction_id="0xabc", statuses={"TRK-FRESH": "completed"}
    )

    first = poll_pending_crypto_payments(db_session, crypto_client, notifier)

    assert first == {"checked": 100, "paid": 0, "failed": 0}
    db_session.refresh(fresh)
    assert fresh.status == InvoiceStatus.SENT

    second = poll_pending_crypto_payments(db_session, crypto_client, notifier)

    assert second["paid"] == 1
    db_session.refresh(fresh)
    assert fresh.status == InvoiceStatus.PAID
    assert [r.invoice_id for r in notifier.receipts] == [fresh.id]


def test_poll_records_check_time_even_when_the_provider_fails(db_session, invoice_factory, crypto_client,
                                                              crypto_gateway, notifier):
    invoice = invoice_factory(crypto_tracking_id="TRK-DOWN")
    crypto_gateway.handler = crypto_handler(status_http=502)

    summary = poll_pending_crypto_payments(db_session, crypto_client, notifier)

    assert summary == {"checked": 1, "paid": 0, "failed": 1}
    db_session.refresh(invoice)
    assert invoice.crypto_last_checked_at is not None
    assert invoice.version == 1
