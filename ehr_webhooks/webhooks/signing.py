"""
HMAC-SHA256 payload signing for webhook deliveries.

Receivers verify a delivery by recomputing the HMAC of the raw request body
with their shared secret and comparing it to the X-Webhook-Signature header,
which carries the digest as "sha256=<hex>".
"""

import hashlib
import hmac
import secrets
from typing import Union

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="
SECRET_BYTES = 32


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def sign_payload(payload: Union[str, bytes], secret: str) -> str:
    """
    Generate the HMAC-SHA256 signature for a payload.

    Args:
        payload: Raw request body
        secret: Endpoint signing secret

    Returns:
        Lowercase hex-encoded digest
    """
    return hmac.new(
        _as_bytes(secret),
        _as_bytes(payload),
        hashlib.sha256,
    ).hexdigest()


def format_signature_header(signature: str) -> str:
    """Render a hex digest as the X-Webhook-Signature header value."""
    return f"{SIGNATURE_PREFIX}{signature}"


def verify_signature(payload: Union[str, bytes], secret: str, signature: str) -> bool:
    """
    Verify a payload signature in constant time.

    Accepts either the bare hex digest or the "sha256=<hex>" header form.

    Args:
        payload: Raw request body as received
        secret: Endpoint signing secret
        signature: Candidate signature

    Returns:
        True if the signature matches
    """
    if not signature:
        return False
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def generate_secret() -> str:
    """Generate a random signing secret (64 hex characters)."""
    return secrets.token_hex(SECRET_BYTES)
