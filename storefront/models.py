"""
Storefront — Database Models
Covers: Users, Orders (+ items), Payments, Refunds, Webhook events, Notifications

All amounts are integers in paise (₹1 = 100 paise).
"""

from sqlalchemy import (
    Column, Integer, String, Boolean,
    DateTime, ForeignKey, Text, BigInteger
)
from sqlalchemy.orm import relationship
from .database import Base
import datetime
import enum


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp (SQLite drops tzinfo anyway)."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# ─── Enums ────────────────────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    ADMIN = "admin"
    USER = "user"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL_PAYMENT_STATUSES = {PaymentStatus.FAILED, PaymentStatus.REFUNDED}


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    UPI = "upi"
    EMI = "emi"
    OTHER = "other"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookOutcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"


# ─── User ─────────────────────────────────────────────────────────────────────

class User(Base):
    """Customer or admin. Accounts are provisioned by the identity service."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String)
    email = Column(String, unique=True, index=True)
    role = Column(String, default=UserRole.USER.value)
    created_at = Column(DateTime, default=utcnow)

    orders = relationship("Order", back_populates="owner")


# ─── Order ────────────────────────────────────────────────────────────────────

class Order(Base):
    """
    Created at checkout (status=pending). Its status is never written by hand
    by the payment flows: the projector derives it from the payment attempts.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)

    subtotal = Column(BigInteger, default=0)
    tax = Column(BigInteger, default=0)
    shipping_fee = Column(BigInteger, default=0)
    discount = Column(BigInteger, default=0)
    total_amount = Column(BigInteger, nullable=False)
    currency = Column(String, default="INR")

    # Shipping address
    street = Column(String)
    city = Column(String)
    state = Column(String)
    zip_code = Column(String)
    country = Column(String, default="India")

    notes = Column(Text, nullable=True)
    receipt = Column(String, unique=True, index=True)      # RCPT-xxxx
    razorpay_order_id = Column(String, unique=True, index=True, nullable=True)

    status = Column(String, default=OrderStatus.PENDING.value, nullable=False)
    winning_payment_id = Column(Integer, nullable=True)    # payments.id of the successful attempt

    # Refund sub-state (set once a refund is initiated)
    refund_status = Column(String, nullable=True)          # pending | processed | failed
    refund_amount = Column(BigInteger, nullable=True)
    refund_reason = Column(String, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship(
        "Payment",
        back_populates="order",
        order_by="Payment.id",             # creation order
    )

    __mapper_args__ = {"version_id_col": version}


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(BigInteger, nullable=False)        # in paise
    product_ref = Column(String, nullable=True)

    order = relationship("Order", back_populates="items")


# ─── Payment ──────────────────────────────────────────────────────────────────

class Payment(Base):
    """
    One payment attempt against an order, correlated with the gateway by
    razorpay_order_id (known at creation) and razorpay_payment_id (known once
    the customer actually pays).
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)

    razorpay_order_id = Column(String, index=True, nullable=False)
    razorpay_payment_id = Column(String, unique=True, index=True, nullable=True)
    razorpay_signature = Column(String, nullable=True)

    amount = Column(BigInteger, nullable=False)            # in paise
    currency = Column(String, default="INR")
    method = Column(String, nullable=True)                 # card | netbanking | wallet | upi | emi | other
    status = Column(String, default=PaymentStatus.CREATED.value, nullable=False)

    # Payer info
    email = Column(String, nullable=True)
    contact = Column(String, nullable=True)

    # Method-specific details
    card_last4 = Column(String, nullable=True)
    card_network = Column(String, nullable=True)           # Visa, MasterCard, RuPay
    card_type = Column(String, nullable=True)              # credit | debit | prepaid
    card_issuer = Column(String, nullable=True)
    vpa = Column(String, nullable=True)                    # UPI VPA
    wallet = Column(String, nullable=True)
    bank = Column(String, nullable=True)

    # Failure details
    error_code = Column(String, nullable=True)
    error_description = Column(String, nullable=True)
    error_source = Column(String, nullable=True)
    error_step = Column(String, nullable=True)
    error_reason = Column(String, nullable=True)

    receipt = Column(String, nullable=True)

    # Manual reconciliation
    is_flagged = Column(Boolean, default=False)
    flag_reason = Column(String, nullable=True)
    resolution_note = Column(Text, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    authorized_at = Column(DateTime, nullable=True)
    captured_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="payments")
    refunds = relationship(
        "Refund",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="Refund.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def processed_refund_total(self) -> int:
        return sum(r.amount or 0 for r in self.refunds if r.status == RefundStatus.PROCESSED)

    @property
    def amount_refunded(self) -> int:
        """Processed refunds, never reported above the captured amount."""
        return min(self.processed_refund_total, self.amount or 0)

    @property
    def refundable_amount(self) -> int:
        pending = sum(r.amount or 0 for r in self.refunds if r.status == RefundStatus.PENDING)
        return max((self.amount or 0) - self.processed_refund_total - pending, 0)

    @property
    def refund_state(self) -> str:
        if self.status == PaymentStatus.REFUNDED:
            return "full"
        if self.amount_refunded > 0:
            return "partial"
        return "none"

    def flag(self, reason: str) -> None:
        """Mark for operator review; reasons accumulate, comma separated."""
        reasons = [r for r in (self.flag_reason or "").split(",") if r]
        if reason not in reasons:
            reasons.append(reason)
        self.is_flagged = True
        self.flag_reason = ",".join(reasons)


# ─── Refund ───────────────────────────────────────────────────────────────────

class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), index=True)
    razorpay_refund_id = Column(String, unique=True, index=True, nullable=False)
    amount = Column(BigInteger, nullable=False)            # in paise
    status = Column(String, default=RefundStatus.PENDING.value)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    payment = relationship("Payment", back_populates="refunds")


# ─── Webhook Event ────────────────────────────────────────────────────────────

class WebhookEvent(Base):
    """Every authenticated inbound gateway event, keyed for de-duplication."""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_key = Column(String, unique=True, index=True, nullable=False)
    event = Column(String, nullable=False)                 # payment.captured, refund.processed, ...
    entity_id = Column(String, nullable=True)
    razorpay_payment_id = Column(String, index=True, nullable=True)
    razorpay_order_id = Column(String, nullable=True)
    payload = Column(Text)                                 # raw JSON body
    outcome = Column(String, nullable=False)
    detail = Column(String, nullable=True)
    received_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)


# ─── Notification Log ─────────────────────────────────────────────────────────

class NotificationLog(Base):
    """Audit log of every order-status notification we dispatched."""
    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True)
    event_type = Column(String)
    payload = Column(Text)             # JSON string
    target_url = Column(String)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    success = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
