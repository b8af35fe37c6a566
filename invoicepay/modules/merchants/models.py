from invoicepay.database.database import Base
from sqlalchemy import Column, String, Boolean, ForeignKey, Text, Enum, Uuid
from sqlalchemy.orm import relationship
from invoicepay.common.mixins import TimestampMixin, UUIDPrimaryKeyMixin
from invoicepay.common.encryption import encrypt_secret, decrypt_secret
import enum


class CryptoOnboardingStatus(enum.Enum):
    NEEDS_INFO = "NEEDS_INFO"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Merchant(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Invoice owner. Account management lives outside this service."""
    __tablename__ = "merchants"

    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    card_credential = relationship("CardGatewayCredential", back_populates="merchant", uselist=False)
    crypto_credential = relationship("CryptoGatewayCredential", back_populates="merchant", uselist=False)
    invoices = relationship("Invoice", back_populates="merchant")


class CardGatewayCredential(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Card rail API key pair; the private (security) key is encrypted at rest."""
    __tablename__ = "card_gateway_credentials"

    merchant_id = Column(Uuid(as_uuid=True), ForeignKey("merchants.id"), nullable=False, unique=True)
    public_key = Column(String(255), nullable=True)
    private_key_encrypted = Column(Text, nullable=False)

    merchant = relationship("Merchant", back_populates="card_credential")

    def set_private_key(self, value: str) -> None:
        self.private_key_encrypted = encrypt_secret(value)

    def get_private_key(self) -> str:
        return decrypt_secret(self.private_key_encrypted)


class CryptoGatewayCredential(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Crypto rail credential bundle; the password is encrypted at rest."""
    __tablename__ = "crypto_gateway_credentials"

    merchant_id = Column(Uuid(as_uuid=True), ForeignKey("merchants.id"), nullable=False, unique=True)
    provider_merchant_id = Column(String(100), nullable=False)
    terminal_id = Column(String(100), nullable=False)
    username = Column(String(255), nullable=False)
    password_encrypted = Column(Text, nullable=False)
    onboarding_status = Column(Enum(CryptoOnboardingStatus), nullable=False, default=CryptoOnboardingStatus.NEEDS_INFO)

    merchant = relationship("Merchant", back_populates="crypto_credential")

    def set_password(self, value: str) -> None:
        self.password_encrypted = encrypt_secret(value)

    def get_password(self) -> str:
        return decrypt_secret(self.password_encrypted)
