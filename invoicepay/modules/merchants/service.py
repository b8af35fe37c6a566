from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from invoicepay.common.exceptions import CredentialsError
from invoicepay.modules.merchants.models import CardGatewayCredential, CryptoGatewayCredential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardCredentials:
    public_key: Optional[str]
    security_key: str = field(repr=False)


@dataclass(frozen=True)
class CryptoCredentials:
    provider_merchant_id: str
    terminal_id: str
    username: str
    password: str = field(repr=False)


class CredentialService:
    """
    Loads merchant payment credentials and decrypts them for a single outbound call.

    The returned value objects are meant to be discarded once the call that
    needed them returns; nothing here caches decrypted material.
    """

    def __init__(self, db: Session):
        self.db = db

    def card_credentials(self, merchant_id: UUID) -> CardCredentials:
        credential = self.db.query(CardGatewayCredential).filter(
            CardGatewayCredential.merchant_id == merchant_id
        ).first()

        if not credential or not credential.private_key_encrypted:
            logger.error(f"No card gateway private key found for merchant {merchant_id}")
            raise CredentialsError(
                "No API private key found for this account.",
                context={"merchant_id": str(merchant_id)},
            )

        return CardCredentials(
            public_key=credential.public_key,
            security_key=credential.get_private_key(),
        )

    def crypto_credentials(self, merchant_id: UUID) -> CryptoCredentials:
        credential = self.db.query(CryptoGatewayCredential).filter(
            CryptoGatewayCredential.merchant_id == merchant_id
        ).first()

        if not credential:
            logger.error(f"No crypto gateway credentials found for merchant {merchant_id}")
            raise CredentialsError(
                "No crypto payment credentials found for this account.",
                context={"merchant_id": str(merchant_id)},
            )

        return CryptoCredentials(
            provider_merchant_id=credential.provider_merchant_id,
            terminal_id=credential.terminal_id,
            username=credential.username,
            password=credential.get_password(),
        )
