"""Webhook signature verification.

The provider signs the raw request body with HMAC-SHA256 and sends the hex
digest in a header. Verification must run on the exact transmitted bytes,
before any JSON decoding.
"""

import hashlib
import hmac


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of raw_body keyed with secret."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_hex: str | None, secret: str | None) -> bool:
    """Return True only if signature_hex is the HMAC of raw_body under secret.

    Never raises. A missing secret, a missing or non-hex signature, and a
    mismatch all return False.
    """
    if not secret or not signature_hex:
        return False

    candidate = signature_hex.strip().lower()
    try:
        supplied = bytes.fromhex(candidate)
    except ValueError:
        return False

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, supplied)
