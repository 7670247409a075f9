"""
Storefront Schemas — Pydantic I/O models for all endpoints.

Amounts are integers in paise everywhere (₹1 = 100).
"""

from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from .models import OrderStatus


# ─── User / Auth ──────────────────────────────────────────────────────────────

class UserOut(BaseModel):
    id: int
    name: Optional[str]
    email: str
    role: str

    class Config:
        from_attributes = True


# ─── Orders ───────────────────────────────────────────────────────────────────

class OrderItemIn(BaseModel):
    name: str
    quantity: int = Field(gt=0)
    unit_price: int = Field(gt=0)        # in paise
    product_ref: Optional[str] = None


class OrderItemOut(OrderItemIn):
    id: int

    class Config:
        from_attributes = True


class ShippingAddress(BaseModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: Optional[str] = "India"


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(min_length=1)
    shipping_address: ShippingAddress
    tax: int = Field(default=0, ge=0)
    shipping_fee: int = Field(default=0, ge=0)
    discount: int = Field(default=0, ge=0)
    currency: Optional[str] = "INR"
    notes: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v):
        return (v or "INR").upper()


class OrderNotesUpdate(BaseModel):
    notes: Optional[str] = None


class OrderOut(BaseModel):
    id: int
    user_id: int
    subtotal: int
    tax: int
    shipping_fee: int
    discount: int
    total_amount: int
    currency: str
    street: Optional[str]
    city: Optional[str]
    state: Optional[str]
    zip_code: Optional[str]
    country: Optional[str]
    notes: Optional[str]
    receipt: str
    razorpay_order_id: Optional[str]
    status: str
    winning_payment_id: Optional[int]
    refund_status: Optional[str]
    refund_amount: Optional[int]
    refund_reason: Optional[str]
    items: List[OrderItemOut] = []
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderStatusOut(BaseModel):
    order_id: int
    status: str
    refund_status: Optional[str]
    winning_payment_id: Optional[int]
    payment_status: Optional[str]


class FulfilmentUpdate(BaseModel):
    status: OrderStatus


# ─── Payments ─────────────────────────────────────────────────────────────────

class CreatePaymentOrderRequest(BaseModel):
    order_id: int


class CreatePaymentOrderOut(BaseModel):
    """Everything the checkout page needs to open Razorpay Checkout."""
    razorpay_order_id: str
    amount: int
    currency: str
    key_id: str
    order_id: int
    payment_id: int
    receipt: str


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(validation_alias=AliasChoices("razorpay_order_id", "gatewayOrderId"))
    razorpay_payment_id: str = Field(validation_alias=AliasChoices("razorpay_payment_id", "gatewayPaymentId"))
    razorpay_signature: str = Field(validation_alias=AliasChoices("razorpay_signature", "signature"))


class RefundOut(BaseModel):
    id: int
    razorpay_refund_id: str
    amount: int
    status: str
    notes: Optional[str]
    created_at: datetime
    processed_at: Optional[datetime]

    class Config:
        from_attributes = True


class PaymentOut(BaseModel):
    id: int
    order_id: int
    razorpay_order_id: str
    razorpay_payment_id: Optional[str]
    amount: int
    currency: str
    method: Optional[str]
    status: str
    email: Optional[str]
    contact: Optional[str]
    card_last4: Optional[str]
    card_network: Optional[str]
    vpa: Optional[str]
    wallet: Optional[str]
    bank: Optional[str]
    error_code: Optional[str]
    error_description: Optional[str]
    amount_refunded: int
    refund_state: str
    is_flagged: bool
    flag_reason: Optional[str]
    resolution_note: Optional[str] = None
    created_at: datetime
    authorized_at: Optional[datetime]
    captured_at: Optional[datetime]
    failed_at: Optional[datetime]
    refunds: List[RefundOut] = []

    class Config:
        from_attributes = True


class VerifyPaymentOut(BaseModel):
    success: bool
    message: str
    outcome: str
    order: OrderOut
    payment: PaymentOut


class PaymentReceipt(BaseModel):
    receipt_number: str
    order_id: int
    razorpay_payment_id: str
    amount: int
    amount_refunded: int
    currency: str
    method: Optional[str]
    status: str
    paid_at: Optional[datetime]
    items: List[OrderItemOut]


class RefundCreate(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)    # in paise; full refundable amount if omitted
    reason: Optional[str] = None


class RefundRequestOut(BaseModel):
    razorpay_refund_id: str
    amount: int
    status: Optional[str]
    payment: PaymentOut


class GatewayRefundOut(BaseModel):
    razorpay_refund_id: str
    razorpay_payment_id: str
    amount: int
    currency: str
    status: Optional[str]            # as the gateway reports it now
    local_status: str
    notes: Optional[str]


class GatewayPaymentOut(BaseModel):
    """A payment we only know about from the gateway (no local record)."""
    razorpay_payment_id: str
    razorpay_order_id: Optional[str]
    amount: int
    currency: str
    status: Optional[str]
    method: Optional[str]


class PaymentLookupOut(BaseModel):
    source: str                      # local | gateway
    payment: Optional[PaymentOut] = None
    gateway_payment: Optional[GatewayPaymentOut] = None


# ─── Webhooks ─────────────────────────────────────────────────────────────────

class WebhookAck(BaseModel):
    status: str = "ok"
    outcome: str


class WebhookEventOut(BaseModel):
    id: int
    event_key: str
    event: str
    entity_id: Optional[str]
    razorpay_payment_id: Optional[str]
    outcome: str
    detail: Optional[str]
    received_at: datetime
    processed_at: Optional[datetime]

    class Config:
        from_attributes = True


# ─── Admin ────────────────────────────────────────────────────────────────────

class ResolveFlagRequest(BaseModel):
    note: Optional[str] = None


class AdminStats(BaseModel):
    total_orders: int
    orders_by_status: dict
    total_payments: int
    payments_by_status: dict
    flagged_payments: int
    captured_amount: int
    refunded_amount: int
    unmatched_events: int
