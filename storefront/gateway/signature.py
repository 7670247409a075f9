"""
HMAC-SHA256 signatures, as Razorpay computes them.

Checkout verification signs   razorpay_order_id + '|' + razorpay_payment_id
Webhook verification signs    the raw request body, byte for byte
Both are keyed with a shared secret and hex encoded.
"""

import hashlib
import hmac


def _to_bytes(value, name: str) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    raise TypeError(f"{name} must be str or bytes, got {type(value).__name__}")


def payment_correlation_string(razorpay_order_id: str, razorpay_payment_id: str) -> str:
    return f"{razorpay_order_id}|{razorpay_payment_id}"


def generate_signature(message: str | bytes, secret: str | bytes) -> str:
    """Hex HMAC-SHA256 of ``message`` keyed with ``secret``."""
    key = _to_bytes(secret, "secret")
    if not key:
        raise ValueError("Signing secret is not configured")
    return hmac.new(
        key=key,
        msg=_to_bytes(message, "message"),
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(message: str | bytes, signature: str | None, secret: str | bytes) -> bool:
    """
    True only if ``signature`` is the HMAC of ``message`` under ``secret``.

    A wrong, empty or garbled signature is simply False. A missing secret or a
    message that is not str/bytes is a programming error and raises.
    """
    expected = generate_signature(message, secret)
    if not isinstance(signature, str) or not signature:
        return False
    try:
        claimed = signature.strip().encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("ascii"), claimed)
