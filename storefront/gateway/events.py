"""
Inbound Razorpay webhook envelopes.

    {"event": "payment.captured",
     "payload": {"payment": {"entity": {...}}},
     "created_at": 1700000000}

The ``event`` name alone decides which entity is read from the payload, so
nothing downstream ever has to guess whether it got a payment or a refund.
"""

import enum
import json
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from ..errors import MalformedEvent


class EventKind(str, enum.Enum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUND_CREATED = "refund_created"
    REFUND_PROCESSED = "refund_processed"
    REFUND_FAILED = "refund_failed"


PAYMENT_EVENTS = {
    "payment.authorized": EventKind.AUTHORIZED,
    "payment.captured":   EventKind.CAPTURED,
    "payment.failed":     EventKind.FAILED,
}

REFUND_EVENTS = {
    "refund.created":   EventKind.REFUND_CREATED,
    "refund.processed": EventKind.REFUND_PROCESSED,
    "refund.failed":    EventKind.REFUND_FAILED,
}


# ─── Entities ─────────────────────────────────────────────────────────────────

class CardDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    last4: Optional[str] = None
    network: Optional[str] = None
    type: Optional[str] = None
    issuer: Optional[str] = None
    international: Optional[bool] = None
    emi: Optional[bool] = None


class PaymentEntity(BaseModel):
    """Razorpay payment entity (webhook payload or GET /payments/:id)."""
    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: Optional[str] = None
    amount: int                                   # paise
    currency: str = "INR"
    status: Optional[str] = None                  # created | authorized | captured | refunded | failed
    method: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    card: Optional[CardDetails] = None
    vpa: Optional[str] = None
    wallet: Optional[str] = None
    bank: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    error_source: Optional[str] = None
    error_step: Optional[str] = None
    error_reason: Optional[str] = None
    created_at: Optional[int] = None


class RefundEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    payment_id: str
    amount: int                                   # paise
    currency: str = "INR"
    status: Optional[str] = None                  # pending | processed | failed
    created_at: Optional[int] = None


# ─── Decoded events ───────────────────────────────────────────────────────────

class PaymentEvent(BaseModel):
    event: str
    kind: EventKind
    entity: PaymentEntity
    created_at: Optional[int] = None

    @property
    def entity_id(self) -> str:
        return self.entity.id

    @property
    def razorpay_payment_id(self) -> str:
        return self.entity.id


class RefundEvent(BaseModel):
    event: str
    kind: EventKind
    entity: RefundEntity
    created_at: Optional[int] = None

    @property
    def entity_id(self) -> str:
        return self.entity.id

    @property
    def razorpay_payment_id(self) -> str:
        return self.entity.payment_id


class IgnoredEvent(BaseModel):
    """An authentic event we have no use for (order.paid, dispute.*, ...)."""
    event: str
    created_at: Optional[int] = None

    @property
    def entity_id(self) -> None:
        return None

    @property
    def razorpay_payment_id(self) -> None:
        return None


GatewayEvent = Union[PaymentEvent, RefundEvent, IgnoredEvent]


def event_key(event: GatewayEvent, delivery_id: str | None = None) -> str:
    """
    De-duplication key. Razorpay re-sends the same x-razorpay-event-id on
    retries; without it, the event name + entity id identifies the fact.
    """
    if delivery_id:
        return delivery_id
    if event.entity_id:
        return f"{event.event}:{event.entity_id}"
    return f"{event.event}:{event.created_at}"


def _entity(payload: dict, name: str) -> dict:
    try:
        entity = payload[name]["entity"]
    except (KeyError, TypeError):
        raise MalformedEvent(f"payload.{name}.entity is missing")
    if not isinstance(entity, dict):
        raise MalformedEvent(f"payload.{name}.entity is not an object")
    return entity


def decode_event(raw_body: bytes | str) -> GatewayEvent:
    """Parse a raw webhook body into exactly one of the event types above."""
    try:
        envelope = json.loads(raw_body)
    except (ValueError, TypeError):
        raise MalformedEvent("Webhook body is not valid JSON")

    if not isinstance(envelope, dict) or not isinstance(envelope.get("event"), str):
        raise MalformedEvent("Webhook body has no event name")

    name = envelope["event"]
    created_at = envelope.get("created_at")
    if not isinstance(created_at, int):
        created_at = None
    payload = envelope.get("payload") or {}

    try:
        if name in PAYMENT_EVENTS:
            return PaymentEvent(
                event=name,
                kind=PAYMENT_EVENTS[name],
                entity=PaymentEntity.model_validate(_entity(payload, "payment")),
                created_at=created_at,
            )
        if name in REFUND_EVENTS:
            return RefundEvent(
                event=name,
                kind=REFUND_EVENTS[name],
                entity=RefundEntity.model_validate(_entity(payload, "refund")),
                created_at=created_at,
            )
    except ValidationError as exc:
        raise MalformedEvent(f"Invalid {name} entity: {exc.error_count()} error(s)")

    return IgnoredEvent(event=name, created_at=created_at)
