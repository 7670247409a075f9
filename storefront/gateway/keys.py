"""
Identifier helpers for receipts.
"""

import datetime
import secrets


def generate_receipt_id() -> str:
    """Order receipt sent to Razorpay as ``receipt`` (max 40 chars)."""
    return f"RCPT-{datetime.datetime.now(datetime.timezone.utc):%Y%m%d}-{secrets.token_hex(6)}"


def generate_payment_receipt(payment_id: int) -> str:
    """Customer-facing receipt number for a settled payment."""
    return f"RCPT-{secrets.token_hex(4).upper()}-{payment_id:06d}"
