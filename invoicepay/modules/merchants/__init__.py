"""
Merchants module - invoice owners and their per-rail payment credentials.

Secrets (card security key, crypto password) are Fernet-encrypted at rest and
only decrypted by CredentialService for the duration of one outbound call.
"""

from .models import Merchant, CardGatewayCredential, CryptoGatewayCredential, CryptoOnboardingStatus
from .service import CredentialService, CardCredentials, CryptoCredentials

__all__ = [
    "Merchant", "CardGatewayCredential", "CryptoGatewayCredential", "CryptoOnboardingStatus",
    "CredentialService", "CardCredentials", "CryptoCredentials",
]
