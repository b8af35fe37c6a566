"""
Test helpers shared by the module test suites: an in-memory database,
stand-ins for the notifier and the payment processors, access tokens and
signed webhook payloads.

Settings are read at import time, so ``conftest.py`` prepares the test
environment before this module is imported.
"""
import json
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import httpx
import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from invoicepay.core.config import settings
from invoicepay.modules.merchants.models import Merchant
from invoicepay.modules.notifications.service import NotificationResult
from invoicepay.modules.payments.signature import sign

SIGNING_KEY = "test-webhook-signing-key"
CARD_GATEWAY_URL = "https://gateway.test/api/transact.php"
CRYPTO_API_URL = "https://crypto.test/api"
CRYPTO_AUTH_URL = "https://auth.crypto.test/token"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class RecordingNotifier:
    """Stands in for PaymentNotifier; remembers every receipt."""

    def __init__(self):
        self.receipts = []

    def notify_paid(self, receipt):
        self.receipts.append(receipt)
        return NotificationResult(customer_receipt_sent=True, merchant_notification_sent=True)


class MockGateway:
    """Collects outbound requests and answers them with ``handler``."""

    def __init__(self):
        self.requests = []
        self.handler = None

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is None:
            raise AssertionError(f"Unexpected gateway call: {request.method} {request.url}")
        return self.handler(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)


def crypto_handler(status_code="completed", transaction_id="0xabc", tracking_id="TRK-1",
                   create_status=200, status_http=200, statuses=None):
    """
    Answer auth, creation and status calls the way the crypto provider does.

    ``statuses`` maps tracking ids to a status code and overrides
    ``status_code`` for those payments.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.crypto.test":
            return httpx.Response(200, json={"access_token": "token-123", "expires_in": 300})
        if request.method == "POST" and request.url.path.endswith("/payments/crypto"):
            if create_status != 200:
                return httpx.Response(create_status, json={"message": "Forbidden"})
            return httpx.Response(200, json={
                "trackingId": tracking_id,
                "paymentUrls": [{"url": f"https://pay.crypto.test/{tracking_id}"}],
            })
        if request.method == "GET" and "/payments/" in request.url.path:
            requested = request.url.path.rstrip("/").rsplit("/", 1)[-1]
            body = {"status_code": (statuses or {}).get(requested, status_code)}
            if transaction_id:
                body["transaction_id"] = transaction_id
            return httpx.Response(status_http, json=body)
        return httpx.Response(404)

    return handler


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Token de acceso con la misma forma que los emitidos por el proveedor de identidad"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.APP_SECRET_STRING, algorithm=settings.ALGORITHM)


def auth_headers(merchant: Merchant) -> dict:
    token = create_access_token({"sub": str(merchant.id)})
    return {"Authorization": f"Bearer {token}"}


def signed_card_webhook(payload: dict, secret: str = SIGNING_KEY, nonce: str = "nonce-1"):
    """Body bytes plus headers exactly as the card processor sends them."""
    body = json.dumps(payload).encode("utf-8")
    headers = {"Webhook-Signature": sign(body, nonce, secret), "Content-Type": "application/json"}
    return body, headers


def sale_webhook(order_id: str, transaction_id: str = "T1", response_code: str = "100", response: str = "1",
                 event_id: str = None) -> dict:
    payload = {
        "event_id": event_id or uuid4().hex,
        "type": "transaction.sale",
        "data": {
            "orderid": order_id,
            "transactionid": transaction_id,
            "response_code": response_code,
            "response": response,
            "responsetext": "SUCCESS" if response == "1" else "DECLINE",
        },
    }
    return payload
