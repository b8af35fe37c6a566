from .card import CardGatewayClient, CardSaleRequest, BillingDetails, SaleResult
from .crypto import CryptoGatewayClient, PaymentCreated, PaymentStatus

__all__ = [
    "CardGatewayClient", "CardSaleRequest", "BillingDetails", "SaleResult",
    "CryptoGatewayClient", "PaymentCreated", "PaymentStatus",
]
