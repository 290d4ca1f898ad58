"""HMAC-SHA256 signing helpers for outbound and inbound signed payloads."""

import hashlib
import hmac


def generate_hmac_signature(payload_bytes: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a payload.

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


def verify_hmac_signature(payload_bytes: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of a hex signature, optionally ``sha256=``-prefixed."""
    if not secret or not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[7:]
    return hmac.compare_digest(generate_hmac_signature(payload_bytes, secret), signature)
