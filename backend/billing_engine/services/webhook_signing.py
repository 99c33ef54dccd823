"""HMAC-SHA256 signing shared by outbound notifications and inbound verification."""

import hashlib
import hmac


def generate_hmac_signature(payload_bytes: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a webhook payload.

    Args:
        payload_bytes: The raw payload bytes to sign.
        secret: The secret key for HMAC generation.

    Returns:
        Hex-encoded HMAC-SHA256 signature.
    """
    return hmac.new(
        secret.encode("utf-8"),
        payload_bytes,
        hashlib.sha256,
    ).hexdigest()


def verify_hmac_signature(payload_bytes: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a hex signature, with or without a ``sha256=`` prefix."""
    if not secret or not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256=") :]
    expected = generate_hmac_signature(payload_bytes, secret)
    return hmac.compare_digest(expected, signature)
