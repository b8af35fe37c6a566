"""
Symmetric encryption for merchant secrets at rest (Fernet).
"""
from cryptography.fernet import Fernet, InvalidToken

from invoicepay.common.exceptions import CredentialsError
from invoicepay.core.config import settings


def _get_fernet() -> Fernet:
    key = settings.CREDENTIALS_ENCRYPTION_KEY
    if not key:
        raise CredentialsError("CREDENTIALS_ENCRYPTION_KEY is not configured")
    try:
        return Fernet(key.encode("ascii"))
    except ValueError as e:
        raise CredentialsError("CREDENTIALS_ENCRYPTION_KEY is not a valid Fernet key") from e


def encrypt_secret(plaintext: str) -> str:
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str) -> str:
    try:
        return _get_fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise CredentialsError("Stored secret could not be decrypted") from e
