"""
Tests para las credenciales de pago de los merchants
"""

from decimal import Decimal

import pytest

from invoicepay.common.exceptions import CredentialsError
from invoicepay.modules.invoices.models import Invoice
from invoicepay.modules.merchants.models import CardGatewayCredential, CryptoGatewayCredential
from invoicepay.modules.merchants.service import CredentialService


def test_secrets_are_encrypted_at_rest(db_session, merchant):
    card = db_session.query(CardGatewayCredential).filter_by(merchant_id=merchant.id).first()
    crypto = db_session.query(CryptoGatewayCredential).filter_by(merchant_id=merchant.id).first()

    assert "sk_live_secret" not in card.private_key_encrypted
    assert "crypto-password" not in crypto.password_encrypted


def test_credentials_are_decrypted_for_a_call(db_session, merchant):
    service = CredentialService(db_session)

    card = service.card_credentials(merchant.id)
    crypto = service.crypto_credentials(merchant.id)

    assert card.security_key == "sk_live_secret"
    assert card.public_key == "pub_test"
    assert crypto.password == "crypto-password"
    assert crypto.terminal_id == "T-200"
    assert "sk_live_secret" not in repr(card)
    assert "crypto-password" not in repr(crypto)


def test_missing_credentials(db_session, other_merchant):
    service = CredentialService(db_session)

    with pytest.raises(CredentialsError):
        service.card_credentials(other_merchant.id)
    with pytest.raises(CredentialsError):
        service.crypto_credentials(other_merchant.id)


def test_tampered_secret_cannot_be_decrypted(db_session, merchant):
    card = db_session.query(CardGatewayCredential).filter_by(merchant_id=merchant.id).first()
    card.private_key_encrypted = card.private_key_encrypted[:-4] + "AAAA"
    db_session.commit()

    with pytest.raises(CredentialsError):
        CredentialService(db_session).card_credentials(merchant.id)


def test_card_payment_without_credentials_is_reported(client, db_session, other_merchant):
    invoice = Invoice(
        merchant_id=other_merchant.id, gateway_invoice_id="INV-NOCRED", payment_token="nocred-token",
        client_email="client@example.com", total=Decimal("10.00"),
    )
    db_session.add(invoice)
    db_session.commit()

    response = client.post("/payments/card", json={
        "token": "tok", "invoiceId": "INV-NOCRED", "amount": "10.00", "firstName": "A", "lastName": "B",
        "address": "1 Main St", "city": "Austin", "state": "TX", "zip": "73301", "phone": "5125550100",
    })

    assert response.status_code == 400
    assert response.json()["message"] == "No API private key found for this account."
