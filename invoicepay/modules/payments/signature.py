"""
Card-rail webhook signatures.

Header format: ``t=<nonce>,s=<hex hmac-sha256>``, where the signature is
computed over ``nonce + "." + raw_body`` with the merchant-wide signing key.
There is no timestamp tolerance: a validly signed old payload still verifies,
and replays are absorbed by reconciliation idempotency.
"""
import hashlib
import hmac
import re
from typing import Optional, Union

from invoicepay.common.exceptions import MissingSignature, MalformedHeader, SignatureMismatch

SIGNATURE_HEADER = "Webhook-Signature"

_HEADER_PATTERN = re.compile(r"t=(?P<nonce>[^,]+),s=(?P<signature>[^,]+)")


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_signature(raw_body: bytes, nonce: str, secret: Union[str, bytes]) -> str:
    message = nonce.encode("utf-8") + b"." + raw_body
    return hmac.new(_as_bytes(secret), message, hashlib.sha256).hexdigest()


def sign(raw_body: bytes, nonce: str, secret: Union[str, bytes]) -> str:
    """Build a header value; used by tests and local tooling."""
    return f"t={nonce},s={compute_signature(raw_body, nonce, secret)}"


def verify(raw_body: bytes, header_value: Optional[str], secret: Union[str, bytes]) -> str:
    """
    Verify a webhook signature header and return its nonce.

    Raises:
        MissingSignature: header absent or empty
        MalformedHeader: header does not match ``t=<nonce>,s=<signature>`` exactly
        SignatureMismatch: signature does not match the body, or no key is configured
    """
    if not header_value:
        raise MissingSignature("Missing webhook signature")

    match = _HEADER_PATTERN.fullmatch(header_value.strip())
    if match is None:
        raise MalformedHeader("Malformed webhook signature header")

    nonce = match.group("nonce")
    if not secret:
        # never verify against an empty key
        raise SignatureMismatch("Webhook signing key is not configured")
    expected = compute_signature(raw_body, nonce, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), match.group("signature").encode("utf-8")):
        raise SignatureMismatch("Invalid webhook signature", context={"nonce": nonce})

    return nonce
