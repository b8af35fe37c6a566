"""
Crypto rail: payment creation and status checks against the settlement provider.

Every call authenticates with the merchant's credential bundle (OAuth2 password
grant) and discards the bearer token when it returns.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

import httpx

from invoicepay.core.config import settings
from invoicepay.common.exceptions import (
    GatewayError,
    GatewayPermissionError,
    GatewayResponseError,
    GatewayTransportError,
)
from invoicepay.modules.merchants.service import CryptoCredentials

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"


@dataclass(frozen=True)
class PaymentCreated:
    tracking_id: str
    payment_urls: List[str]
    raw: Dict[str, Any] = field(repr=False, default_factory=dict)

    @property
    def payment_url(self) -> Optional[str]:
        return self.payment_urls[0] if self.payment_urls else None


@dataclass(frozen=True)
class PaymentStatus:
    tracking_id: str
    status_code: str
    transaction_id: Optional[str]
    raw: Dict[str, Any] = field(repr=False, default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status_code == STATUS_COMPLETED


def _json(response: httpx.Response, operation: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise GatewayResponseError(f"Crypto provider returned a non-JSON body for {operation}") from e
    if not isinstance(data, dict):
        raise GatewayResponseError(f"Crypto provider returned an unexpected body for {operation}")
    return data


class CryptoGatewayClient:
    def __init__(self, api_url: Optional[str] = None, auth_url: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        self.api_url = (api_url or settings.CRYPTO_API_URL).rstrip("/")
        self.auth_url = auth_url or settings.CRYPTO_AUTH_URL
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, verify=settings.gateway_tls_verify,
                            transport=self.transport)

    def _send(self, client: httpx.Client, method: str, url: str, operation: str, **kwargs) -> httpx.Response:
        try:
            return client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"Crypto provider transport error during {operation}: {str(e)}")
            raise GatewayTransportError(
                "Could not reach the crypto payment provider, please try again"
            ) from e

    def authenticate(self, client: httpx.Client, credentials: CryptoCredentials) -> str:
        """Obtain a bearer token for one call. The token is never stored."""
        response = self._send(
            client, "POST", self.auth_url, "authentication",
            data={
                "grant_type": "password",
                "client_id": settings.CRYPTO_CLIENT_ID,
                "username": credentials.username,
                "password": credentials.password,
                "scope": "openid profile email",
            },
            headers={"Accept": "application/json"},
        )
        if response.status_code >= 500:
            raise GatewayTransportError("Crypto provider authentication is unavailable, please try again")
        if response.status_code >= 400:
            logger.error(
                f"Crypto provider authentication failed for terminal {credentials.terminal_id}: "
                f"HTTP {response.status_code}"
            )
            raise GatewayError(
                "Failed to authenticate with the crypto payment provider",
                context={"terminal_id": credentials.terminal_id, "http_status": response.status_code},
            )

        token = _json(response, "authentication").get("access_token")
        if not token:
            raise GatewayResponseError("Access token not found in authentication response")
        logger.info(f"Authenticated with crypto provider for terminal {credentials.terminal_id}")
        return token

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "api-version": settings.CRYPTO_API_VERSION,
            "Accept": "application/json",
        }

    def create_payment(self, credentials: CryptoCredentials, amount: Decimal, currency: str,
                       reference: str, description: str) -> PaymentCreated:
        payload = {
            "merchantId": credentials.provider_merchant_id,
            "terminalId": credentials.terminal_id,
            # the provider expects a JSON number here
            "requestedAmount": float(amount),
            "paymentUrlType": "web",
            "reference": reference,
            "redirectUrl": settings.CRYPTO_REDIRECT_URL,
        }
        logger.info(f"Creating crypto payment for reference {reference} ({amount} {currency}): {description}")

        with self._client() as client:
            token = self.authenticate(client, credentials)
            response = self._send(
                client, "POST", f"{self.api_url}/payments/crypto", "payment creation",
                json=payload, headers=self._headers(token),
            )

        if response.status_code == 403:
            logger.error(
                f"Crypto provider refused payment creation for terminal {credentials.terminal_id}, "
                f"invoice {reference}"
            )
            raise GatewayPermissionError(
                "The crypto payment system returned a 403 Forbidden error. This typically means the "
                "terminal doesn't have permission to process crypto payments. Please contact support "
                f"and provide these details: Terminal ID: {credentials.terminal_id}, Invoice Id: {reference}",
                context={"terminal_id": credentials.terminal_id, "invoice_id": reference},
            )
        if response.status_code >= 500:
            raise GatewayTransportError("The crypto payment provider is unavailable, please try again")
        if response.status_code >= 400:
            message = _error_message(response)
            logger.error(f"Failed to create crypto payment for {reference}: HTTP {response.status_code} {message}")
            raise GatewayError(f"Failed to create crypto payment: {message}", context={"reference": reference})

        data = _json(response, "payment creation")
        tracking_id = data.get("trackingId")
        if not tracking_id:
            raise GatewayResponseError("Crypto payment response is missing 'trackingId'")
        urls = [entry["url"] for entry in data.get("paymentUrls") or [] if isinstance(entry, dict) and entry.get("url")]

        logger.info(f"Created crypto payment {tracking_id} for reference {reference}")
        return PaymentCreated(tracking_id=tracking_id, payment_urls=urls, raw=data)

    def check_status(self, credentials: CryptoCredentials, tracking_id: str) -> PaymentStatus:
        with self._client() as client:
            token = self.authenticate(client, credentials)
            response = self._send(
                client, "GET", f"{self.api_url}/payments/{tracking_id}", "status check",
                headers=self._headers(token),
            )

        if response.status_code >= 500:
            raise GatewayTransportError("The crypto payment provider is unavailable, please try again")
        if response.status_code >= 400:
            message = _error_message(response)
            logger.error(f"Failed to check crypto payment {tracking_id}: HTTP {response.status_code} {message}")
            raise GatewayError(f"Failed to check payment status: {message}", context={"tracking_id": tracking_id})

        data = _json(response, "status check")
        status_code = data.get("status_code")
        if not status_code:
            raise GatewayResponseError("Crypto payment status response is missing 'status_code'")
        transaction_id = data.get("transaction_id")
        if status_code == STATUS_COMPLETED and not transaction_id:
            raise GatewayResponseError("Completed crypto payment is missing 'transaction_id'")

        logger.info(f"Crypto payment {tracking_id} status: {status_code}")
        return PaymentStatus(tracking_id=tracking_id, status_code=status_code,
                             transaction_id=transaction_id, raw=data)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"API returned {response.status_code}"
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.text
