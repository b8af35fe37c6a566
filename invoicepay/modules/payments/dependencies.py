from typing import Annotated
from fastapi import Depends

from invoicepay.dependencies.dbDependecies import db_dependency
from invoicepay.modules.payments.gateway.card import CardGatewayClient
from invoicepay.modules.payments.gateway.crypto import CryptoGatewayClient
from invoicepay.modules.payments.service import PaymentService


def get_card_gateway() -> CardGatewayClient:
    return CardGatewayClient()


def get_crypto_gateway() -> CryptoGatewayClient:
    return CryptoGatewayClient()


def get_payment_service(
    db: db_dependency,
    card_gateway: CardGatewayClient = Depends(get_card_gateway),
    crypto_gateway: CryptoGatewayClient = Depends(get_crypto_gateway),
) -> PaymentService:
    return PaymentService(db, card_gateway=card_gateway, crypto_gateway=crypto_gateway)


payment_service_dependency = Annotated[PaymentService, Depends(get_payment_service)]
