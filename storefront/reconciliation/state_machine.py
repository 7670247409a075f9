"""
Payment state machine.

    created ──► authorized ──► captured ──► refunded
       │            │             ▲
       │            └──► failed   │ (created ► captured is accepted: auto-capture
       └──────────────► failed    │  may report capture before authorization)

``failed`` and ``refunded`` are terminal. Events only ever move a payment
forward; an event that is already reflected (or is behind the current state)
is a duplicate and changes nothing. An event that contradicts what was already
committed is a conflict: it is not applied and the payment is flagged for an
operator.

Events reaching this module are already authenticated.
"""

import enum
from dataclasses import dataclass
from typing import Optional, Union

from ..gateway.events import EventKind, PaymentEntity, RefundEntity
from ..models import Payment, PaymentMethod, PaymentStatus, Refund, RefundStatus, utcnow


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"


@dataclass
class TransitionResult:
    payment: Payment
    outcome: Outcome
    status_changed: bool = False
    detail: Optional[str] = None


PAYMENT_KINDS = {EventKind.AUTHORIZED, EventKind.CAPTURED, EventKind.FAILED}
REFUND_KINDS = {EventKind.REFUND_CREATED, EventKind.REFUND_PROCESSED, EventKind.REFUND_FAILED}

_PAYMENT_TARGET = {
    EventKind.AUTHORIZED: PaymentStatus.AUTHORIZED,
    EventKind.CAPTURED:   PaymentStatus.CAPTURED,
    EventKind.FAILED:     PaymentStatus.FAILED,
}

_REFUND_TARGET = {
    EventKind.REFUND_CREATED:   RefundStatus.PENDING,
    EventKind.REFUND_PROCESSED: RefundStatus.PROCESSED,
    EventKind.REFUND_FAILED:    RefundStatus.FAILED,
}

# Position along the success path.
_RANK = {
    PaymentStatus.CREATED:    0,
    PaymentStatus.AUTHORIZED: 1,
    PaymentStatus.CAPTURED:   2,
    PaymentStatus.REFUNDED:   3,
}

_KNOWN_METHODS = {m.value for m in PaymentMethod}


def apply_event(
    payment: Payment,
    kind: EventKind,
    data: Union[PaymentEntity, RefundEntity],
) -> TransitionResult:
    """Apply one verified gateway fact to ``payment`` in place."""
    kind = EventKind(kind)
    if kind in PAYMENT_KINDS:
        return _apply_payment_event(payment, kind, data)
    return _apply_refund_event(payment, kind, data)


# ─── Payment lifecycle ────────────────────────────────────────────────────────

def _apply_payment_event(payment: Payment, kind: EventKind, entity: PaymentEntity) -> TransitionResult:
    current = PaymentStatus(payment.status or PaymentStatus.CREATED.value)
    target = _PAYMENT_TARGET[kind]

    if current == PaymentStatus.FAILED:
        # authorized -> failed is legal, so a late authorized is stale.
        if target in (PaymentStatus.FAILED, PaymentStatus.AUTHORIZED):
            return TransitionResult(payment, Outcome.DUPLICATE)
        return _conflict(payment, f"{target.value}_after_failed")

    if target == PaymentStatus.FAILED:
        if current in (PaymentStatus.CAPTURED, PaymentStatus.REFUNDED):
            return _conflict(payment, f"failed_after_{current.value}")
    elif _RANK[target] <= _RANK[current]:
        return TransitionResult(payment, Outcome.DUPLICATE)

    _copy_payment_details(payment, entity)
    payment.status = target.value
    now = utcnow()
    if target == PaymentStatus.AUTHORIZED:
        payment.authorized_at = now
    elif target == PaymentStatus.CAPTURED:
        payment.authorized_at = payment.authorized_at or now
        payment.captured_at = now
        # Refunds may have been reported before the capture reached us.
        _settle_refunds(payment)
    else:
        payment.failed_at = now

    return TransitionResult(payment, Outcome.APPLIED, status_changed=True)


def _copy_payment_details(payment: Payment, entity: PaymentEntity) -> None:
    if entity.amount:
        payment.amount = entity.amount
    if entity.currency:
        payment.currency = entity.currency.upper()
    if entity.method:
        payment.method = entity.method if entity.method in _KNOWN_METHODS else PaymentMethod.OTHER.value

    payment.email = entity.email or payment.email
    payment.contact = entity.contact or payment.contact

    if entity.card:
        payment.card_last4 = entity.card.last4
        payment.card_network = entity.card.network
        payment.card_type = entity.card.type
        payment.card_issuer = entity.card.issuer
    if entity.vpa:
        payment.vpa = entity.vpa
    if entity.wallet:
        payment.wallet = entity.wallet
    if entity.bank:
        payment.bank = entity.bank

    if entity.error_code:
        payment.error_code = entity.error_code
        payment.error_description = entity.error_description
        payment.error_source = entity.error_source
        payment.error_step = entity.error_step
        payment.error_reason = entity.error_reason


# ─── Refunds ──────────────────────────────────────────────────────────────────

def _apply_refund_event(payment: Payment, kind: EventKind, entity: RefundEntity) -> TransitionResult:
    if payment.status == PaymentStatus.FAILED:
        return _conflict(payment, "refund_on_failed_payment")

    target = _REFUND_TARGET[kind]
    refund = find_refund(payment, entity.id)

    if refund is None:
        refund = Refund(
            razorpay_refund_id=entity.id,
            amount=entity.amount,
            status=target.value,
            created_at=utcnow(),
        )
        if target == RefundStatus.PROCESSED:
            refund.processed_at = utcnow()
        payment.refunds.append(refund)
    else:
        current = RefundStatus(refund.status)
        if current == target or target == RefundStatus.PENDING:
            return TransitionResult(payment, Outcome.DUPLICATE)
        if current != RefundStatus.PENDING:
            return _conflict(payment, f"refund_{target.value}_after_{current.value}")
        refund.status = target.value
        if entity.amount:
            refund.amount = entity.amount
        if target == RefundStatus.PROCESSED:
            refund.processed_at = utcnow()

    status_before = payment.status
    _settle_refunds(payment)
    return TransitionResult(payment, Outcome.APPLIED, status_changed=payment.status != status_before)


def find_refund(payment: Payment, razorpay_refund_id: str) -> Optional[Refund]:
    for refund in payment.refunds:
        if refund.razorpay_refund_id == razorpay_refund_id:
            return refund
    return None


def _settle_refunds(payment: Payment) -> None:
    """Derive refunded / partially refunded from the processed sub-records."""
    total = payment.processed_refund_total
    captured = payment.amount or 0
    if total > captured:
        payment.flag("refund_exceeds_capture")
    if payment.status == PaymentStatus.CAPTURED and total > 0 and total >= captured:
        payment.status = PaymentStatus.REFUNDED.value


def _conflict(payment: Payment, reason: str) -> TransitionResult:
    payment.flag(reason)
    return TransitionResult(payment, Outcome.CONFLICT, detail=reason)
