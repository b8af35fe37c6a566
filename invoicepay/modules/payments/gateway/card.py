"""
Card rail: synchronous sale submission against the processor's transact API.

Request and response bodies are both form-urlencoded key/value pairs.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional
import logging

import httpx

from invoicepay.core.config import settings
from invoicepay.common.exceptions import (
    GatewayDeclinedError,
    GatewayResponseError,
    GatewayTransportError,
)
from invoicepay.modules.merchants.service import CardCredentials

logger = logging.getLogger(__name__)

APPROVED = "1"


@dataclass(frozen=True)
class BillingDetails:
    first_name: str
    last_name: str
    address: str
    city: str
    state: str
    zip: str
    phone: str


@dataclass(frozen=True)
class CardSaleRequest:
    payment_token: str = field(repr=False)
    amount: Decimal
    order_id: str
    tax: Decimal
    customer_id: str
    billing: BillingDetails
    currency: str = "USD"


@dataclass(frozen=True)
class SaleResult:
    transaction_id: str
    response_code: Optional[str]
    response_text: Optional[str]
    raw: Dict[str, str] = field(repr=False, default_factory=dict)


def _money(value: Decimal) -> str:
    return f"{Decimal(value):.2f}"


class CardGatewayClient:
    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.url = url or settings.CARD_GATEWAY_URL
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self.transport = transport

    def _build_payload(self, credentials: CardCredentials, request: CardSaleRequest) -> Dict[str, str]:
        billing = request.billing
        return {
            "security_key": credentials.security_key,
            "type": "sale",
            "payment_token": request.payment_token,
            "amount": _money(request.amount),
            "orderid": request.order_id,
            "first_name": billing.first_name,
            "last_name": billing.last_name,
            "address1": billing.address,
            "city": billing.city,
            "state": billing.state,
            "zip": billing.zip,
            "phone": billing.phone,
            "currency": request.currency,
            "tax": _money(request.tax),
            "customer_id": request.customer_id,
        }

    def submit_sale(self, credentials: CardCredentials, request: CardSaleRequest) -> SaleResult:
        """
        Submit a sale.

        Raises:
            GatewayTransportError: connection failure, timeout or 5xx from the processor
            GatewayDeclinedError: the processor answered and did not approve
            GatewayResponseError: the answer lacks ``response`` or, on approval, ``transactionid``
        """
        payload = self._build_payload(credentials, request)
        log_payload = {**payload, "security_key": "[REDACTED]", "payment_token": "[REDACTED]"}
        logger.info(f"Submitting card sale for order {request.order_id}: {log_payload}")

        try:
            with httpx.Client(timeout=self.timeout, verify=settings.gateway_tls_verify,
                              transport=self.transport) as client:
                response = client.post(
                    self.url,
                    data=payload,
                    headers={"Accept": "application/x-www-form-urlencoded"},
                )
        except httpx.TransportError as e:
            logger.error(f"Card gateway transport error for order {request.order_id}: {str(e)}")
            raise GatewayTransportError(
                "Could not reach the card processor, please try again",
                context={"order_id": request.order_id},
            ) from e

        if response.status_code >= 500:
            logger.error(f"Card gateway returned HTTP {response.status_code} for order {request.order_id}")
            raise GatewayTransportError(
                "The card processor is unavailable, please try again",
                context={"order_id": request.order_id, "http_status": response.status_code},
            )

        data = dict(httpx.QueryParams(response.text))
        logger.info(
            f"Card gateway answered order {request.order_id}: response={data.get('response')} "
            f"response_code={data.get('response_code')} transactionid={data.get('transactionid')}"
        )

        outcome = data.get("response")
        if not outcome:
            raise GatewayResponseError(
                "Card processor response is missing the 'response' field",
                context={"order_id": request.order_id},
            )

        if outcome != APPROVED:
            raise GatewayDeclinedError(
                data.get("responsetext") or "Payment processing failed",
                response_code=data.get("response_code") or outcome,
                context={"order_id": request.order_id},
            )

        transaction_id = data.get("transactionid")
        if not transaction_id:
            raise GatewayResponseError(
                "Card processor approved the sale without a transaction id",
                context={"order_id": request.order_id},
            )

        return SaleResult(
            transaction_id=transaction_id,
            response_code=data.get("response_code"),
            response_text=data.get("responsetext"),
            raw=data,
        )
