"""
Razorpay Service — wraps the official Razorpay Python SDK.

Flow:
  1. Client calls POST /payments/create-order → we call rzp.order.create() → get rzp_order_id
  2. Frontend opens Razorpay Checkout.js with rzp_order_id + key_id
  3. Customer pays → frontend posts razorpay_payment_id, razorpay_order_id,
     razorpay_signature to POST /payments/verify
  4. Razorpay independently POSTs webhooks to /payments/webhook
  Steps 3 and 4 race; the reconciliation service makes them converge.

The client is an ordinary object built once at startup from config and handed
to the routes through the ``get_gateway`` dependency. Tests swap it out.
"""

import logging

import razorpay
import requests
from fastapi import Request
from razorpay.errors import BadRequestError, GatewayError, ServerError

from .. import config
from ..errors import GatewayRejected, GatewayUnavailable, RecordNotFound
from .signature import payment_correlation_string, verify_signature

logger = logging.getLogger(__name__)


class RazorpayGateway:
    """Authenticated Razorpay client with every remote call bounded by ``timeout``."""

    def __init__(self, key_id: str, key_secret: str, timeout: float = 10.0, client=None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> razorpay.Client:
        if self._client is None:
            if not self.is_configured():
                raise GatewayUnavailable(
                    "Razorpay keys not configured. "
                    "Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET in your .env file."
                )
            self._client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return self._client

    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _call(self, what: str, fn, *args, not_found_ok: bool = False, **kwargs) -> dict:
        try:
            return fn(*args, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            logger.warning("Razorpay %s timed out after %ss", what, self.timeout)
            raise GatewayUnavailable(f"Payment gateway timed out during {what}")
        except requests.exceptions.RequestException as exc:
            logger.warning("Razorpay %s failed: %s", what, exc)
            raise GatewayUnavailable(f"Payment gateway unreachable during {what}")
        except (ServerError, GatewayError) as exc:
            logger.warning("Razorpay %s returned a server error: %s", what, exc)
            raise GatewayUnavailable(f"Payment gateway error during {what}")
        except BadRequestError as exc:
            if not_found_ok:
                raise RecordNotFound(str(exc) or f"{what}: not found at gateway")
            logger.info("Razorpay rejected %s: %s", what, exc)
            raise GatewayRejected(str(exc) or None)

    # ── Orders ─────────────────────────────────────────────────────────────────

    def create_order(self, amount_paise: int, currency: str, receipt: str, notes: dict | None = None) -> dict:
        """
        Creates a Razorpay order (the handle Checkout.js needs).

        Returns the Razorpay order dict: id, amount, currency, status, receipt, ...
        """
        order_data = {
            "amount":   amount_paise,
            "currency": currency,
            "receipt":  receipt,
            "payment_capture": 1,   # Auto-capture payment (no manual capture needed)
        }
        if notes:
            order_data["notes"] = notes
        return self._call("order creation", self.client.order.create, data=order_data)

    # ── Signature ──────────────────────────────────────────────────────────────

    def verify_payment_signature(self, razorpay_order_id: str, razorpay_payment_id: str, signature: str) -> bool:
        """Checkout signature: HMAC(order_id|payment_id) keyed with the key secret."""
        return verify_signature(
            payment_correlation_string(razorpay_order_id, razorpay_payment_id),
            signature,
            self.key_secret,
        )

    # ── Payments ───────────────────────────────────────────────────────────────

    def fetch_payment(self, payment_id: str) -> dict:
        """Authoritative payment details (amount, method, status, ...)."""
        return self._call("payment fetch", self.client.payment.fetch, payment_id, not_found_ok=True)

    # ── Refunds ────────────────────────────────────────────────────────────────

    def create_refund(self, razorpay_payment_id: str, amount_paise: int | None = None, notes: dict | None = None) -> dict:
        """
        Issues a refund on a Razorpay payment.

        amount_paise=None refunds whatever is left on the payment.
        """
        data: dict = {}
        if amount_paise:
            data["amount"] = amount_paise
        if notes:
            data["notes"] = notes
        return self._call("refund creation", self.client.payment.refund, razorpay_payment_id, data)

    def fetch_refund(self, refund_id: str) -> dict:
        return self._call("refund fetch", self.client.refund.fetch, refund_id, not_found_ok=True)


def build_gateway() -> RazorpayGateway:
    return RazorpayGateway(
        key_id=config.RAZORPAY_KEY_ID,
        key_secret=config.RAZORPAY_KEY_SECRET,
        timeout=config.GATEWAY_TIMEOUT_SECONDS,
    )


def get_gateway(request: Request) -> RazorpayGateway:
    """FastAPI dependency: the gateway client built at startup."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = request.app.state.gateway = build_gateway()
    return gateway
