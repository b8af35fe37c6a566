"""
Shared pytest fixtures: SQLite database, merchants with credentials, invoices,
mocked gateways and a TestClient wired to them.
"""
import os

# Settings are read at import time
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WEBHOOK_AUDIT_BACKEND"] = "memory"
os.environ["CARD_WEBHOOK_SIGNING_KEY"] = "test-webhook-signing-key"
os.environ["CREDENTIALS_ENCRYPTION_KEY"] = "YWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWE="
os.environ["APP_SECRET_STRING"] = "test-app-secret"

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from invoicepay.database.database import Base, get_db
from invoicepay.main import app
from invoicepay.modules.invoices.models import Invoice, InvoiceStatus
from invoicepay.modules.merchants.models import (
    Merchant, CardGatewayCredential, CryptoGatewayCredential, CryptoOnboardingStatus,
)
from invoicepay.modules.notifications.service import get_payment_notifier
from invoicepay.modules.payments.dependencies import get_card_gateway, get_crypto_gateway
from invoicepay.modules.payments.gateway.card import CardGatewayClient
from invoicepay.modules.payments.gateway.crypto import CryptoGatewayClient
from invoicepay.modules.webhooks.audit import InMemoryAuditStore, WebhookAuditLog, get_webhook_audit_log
from invoicepay.testing import (
    CARD_GATEWAY_URL, CRYPTO_API_URL, CRYPTO_AUTH_URL, MockGateway, RecordingNotifier, TestingSessionLocal, engine,
)


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _create_merchant(db_session, **overrides) -> Merchant:
    values = {"name": "Acme Consulting", "email": f"billing-{uuid4().hex[:8]}@acme.test", "is_admin": False}
    values.update(overrides)
    merchant = Merchant(**values)
    db_session.add(merchant)
    db_session.commit()
    db_session.refresh(merchant)
    return merchant


@pytest.fixture
def merchant(db_session):
    merchant = _create_merchant(db_session)

    card = CardGatewayCredential(merchant_id=merchant.id, public_key="pub_test")
    card.set_private_key("sk_live_secret")
    crypto = CryptoGatewayCredential(
        merchant_id=merchant.id,
        provider_merchant_id="M-100",
        terminal_id="T-200",
        username="acme-terminal",
        onboarding_status=CryptoOnboardingStatus.APPROVED,
    )
    crypto.set_password("crypto-password")
    db_session.add_all([card, crypto])
    db_session.commit()
    db_session.refresh(merchant)
    return merchant


@pytest.fixture
def other_merchant(db_session):
    return _create_merchant(db_session, name="Other Shop")


@pytest.fixture
def admin_merchant(db_session):
    return _create_merchant(db_session, name="Platform Admin", is_admin=True)


@pytest.fixture
def invoice_factory(db_session, merchant):
    def create(**overrides) -> Invoice:
        values = {
            "merchant_id": merchant.id,
            "gateway_invoice_id": f"INV-{uuid4().hex[:6]}",
            "payment_token": uuid4().hex,
            "client_email": "client@example.com",
            "client_first_name": "Ada",
            "client_last_name": "Lovelace",
            "currency": "USD",
            "subtotal": Decimal("100.00"),
            "tax_rate": Decimal("5.00"),
            "tax_amount": Decimal("5.00"),
            "total": Decimal("105.00"),
            "status": InvoiceStatus.SENT,
        }
        values.update(overrides)
        invoice = Invoice(**values)
        db_session.add(invoice)
        db_session.commit()
        db_session.refresh(invoice)
        return invoice

    return create


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit_log():
    return WebhookAuditLog(InMemoryAuditStore(capacity=50))


@pytest.fixture
def card_gateway():
    return MockGateway()


@pytest.fixture
def crypto_gateway():
    return MockGateway()


@pytest.fixture
def card_client(card_gateway):
    return CardGatewayClient(url=CARD_GATEWAY_URL, timeout=5, transport=card_gateway.transport())


@pytest.fixture
def crypto_client(crypto_gateway):
    return CryptoGatewayClient(
        api_url=CRYPTO_API_URL, auth_url=CRYPTO_AUTH_URL, timeout=5, transport=crypto_gateway.transport()
    )


@pytest.fixture
def client(db_session, notifier, audit_log, card_client, crypto_client):
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_notifier] = lambda: notifier
    app.dependency_overrides[get_webhook_audit_log] = lambda: audit_log
    app.dependency_overrides[get_card_gateway] = lambda: card_client
    app.dependency_overrides[get_crypto_gateway] = lambda: crypto_client
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
