"""
Reconciliation entry points.

Two independent channels report the same payments:

  * the customer's browser, right after checkout   → verify_payment()
  * Razorpay webhooks, at least once, in any order → handle_webhook()

Both authenticate first, then, holding the lock for the gateway payment id,
feed the fact into the state machine, re-project the order, and commit in one
transaction. Whichever arrives first does the work; the other is a no-op.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..errors import (
    ConcurrentModification,
    ConflictingTransition,
    GatewayUnavailable,
    InvalidRequest,
    MalformedEvent,
    RecordNotFound,
    SignatureInvalid,
)
from ..gateway.events import (
    EventKind,
    IgnoredEvent,
    PaymentEntity,
    PaymentEvent,
    RefundEntity,
    decode_event,
    event_key,
)
from ..gateway.razorpay_service import RazorpayGateway
from ..gateway.signature import verify_signature
from ..locks import payment_lock
from ..models import (
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    User,
    UserRole,
    WebhookEvent,
    WebhookOutcome,
    utcnow,
)
from .projector import apply_projection, project
from .state_machine import Outcome, apply_event, find_refund

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

# Gateway payment status → event fed in by the verify path.
_VERIFY_KINDS = {
    "authorized": EventKind.AUTHORIZED,
    "captured":   EventKind.CAPTURED,
    "refunded":   EventKind.CAPTURED,   # refunds arrive as their own events
    "failed":     EventKind.FAILED,
}

_REFUND_KINDS = {
    "pending":   EventKind.REFUND_CREATED,
    "processed": EventKind.REFUND_PROCESSED,
    "failed":    EventKind.REFUND_FAILED,
}


@dataclass
class ReconcileResult:
    outcome: str
    payment: Optional[Payment] = None
    order: Optional[Order] = None
    order_status_changed: bool = False
    detail: Optional[str] = None


# ─── Transaction plumbing ─────────────────────────────────────────────────────

def _run_serialized(db: Session, key: str, work: Callable[[], ReconcileResult]) -> ReconcileResult:
    """
    Run ``work`` under the payment lock and commit. A stale version (another
    process got there first) rolls back and re-runs from a fresh read.
    """
    for attempt in range(1, MAX_ATTEMPTS + 1):
        with payment_lock(key):
            db.expire_all()
            try:
                result = work()
                db.commit()
                return result
            except (StaleDataError, IntegrityError) as exc:
                db.rollback()
                logger.warning(
                    "Concurrent update while reconciling %s (attempt %d/%d): %s",
                    key, attempt, MAX_ATTEMPTS, exc.__class__.__name__,
                )
            except Exception:
                db.rollback()
                raise
    raise ConcurrentModification(f"Gave up reconciling {key} after {MAX_ATTEMPTS} attempts")


def _reproject(db: Session, payment: Payment) -> bool:
    """Recompute the order from all its attempts. Returns True if its status moved."""
    db.flush()
    order = payment.order
    previous = order.status
    projection = project(order, order.payments)

    for issue in projection.issues:
        if issue == "multiple_captures":
            for other in order.payments:
                if other is not projection.winning_payment and other.status in (
                    PaymentStatus.CAPTURED, PaymentStatus.REFUNDED
                ):
                    other.flag(issue)
        elif projection.winning_payment is not None:
            projection.winning_payment.flag(issue)
        logger.error("Order %s needs review: %s", order.id, issue)

    changed = apply_projection(order, projection)
    if changed:
        logger.info("Order %s: %s → %s", order.id, previous, order.status)
    return changed


def _locate_payment(db: Session, entity: PaymentEntity, razorpay_order_id: Optional[str]) -> Optional[Payment]:
    """
    Find the attempt for a gateway payment id, binding it to the open
    ``created`` attempt of its gateway order on first sight, or opening a
    new attempt if the customer retried on the same gateway order.
    """
    payment = db.query(Payment).filter(Payment.razorpay_payment_id == entity.id).first()
    if payment is not None:
        return payment

    razorpay_order_id = razorpay_order_id or entity.order_id
    if not razorpay_order_id:
        return None
    order = db.query(Order).filter(Order.razorpay_order_id == razorpay_order_id).first()
    if order is None:
        return None

    handle = (
        db.query(Payment)
        .filter(
            Payment.razorpay_order_id == razorpay_order_id,
            Payment.razorpay_payment_id.is_(None),
            Payment.status == PaymentStatus.CREATED.value,
        )
        .order_by(Payment.id)
        .first()
    )
    if handle is not None:
        handle.razorpay_payment_id = entity.id
        return handle

    payment = Payment(
        order=order,
        user_id=order.user_id,
        razorpay_order_id=razorpay_order_id,
        razorpay_payment_id=entity.id,
        amount=entity.amount,
        currency=(entity.currency or order.currency).upper(),
        status=PaymentStatus.CREATED.value,
    )
    db.add(payment)
    return payment


def _replay_unmatched(db: Session, payment: Payment) -> None:
    """Apply events that arrived before this gateway payment id was known locally."""
    waiting = (
        db.query(WebhookEvent)
        .filter(
            WebhookEvent.razorpay_payment_id == payment.razorpay_payment_id,
            WebhookEvent.outcome == WebhookOutcome.UNMATCHED.value,
        )
        .order_by(WebhookEvent.id)
        .all()
    )
    for record in waiting:
        try:
            event = decode_event(record.payload)
        except MalformedEvent as exc:
            record.outcome = WebhookOutcome.IGNORED.value
            record.detail = exc.message
            continue
        result = apply_event(payment, event.kind, event.entity)
        record.outcome = result.outcome.value
        record.detail = result.detail or "replayed"
        record.processed_at = utcnow()
        logger.info("Replayed %s for %s: %s", record.event, payment.razorpay_payment_id, result.outcome.value)


# ─── Payment attempts ─────────────────────────────────────────────────────────

def create_payment_attempt(db: Session, gateway: RazorpayGateway, order: Order) -> Payment:
    """Get (or reuse) the gateway order handle for ``order`` and open a ``created`` attempt."""
    if order.status != OrderStatus.PENDING.value:
        raise InvalidRequest(f"Cannot pay an order with status '{order.status}'")

    if order.razorpay_order_id:
        for attempt in order.payments:
            if attempt.status == PaymentStatus.CREATED.value and attempt.razorpay_payment_id is None:
                return attempt
    else:
        rzp_order = gateway.create_order(
            amount_paise=order.total_amount,
            currency=order.currency,
            receipt=order.receipt,
            notes={"order_id": str(order.id), "user_id": str(order.user_id)},
        )
        order.razorpay_order_id = rzp_order["id"]
        logger.info("Razorpay order %s created for order %s", rzp_order["id"], order.id)

    payment = Payment(
        order=order,
        user_id=order.user_id,
        razorpay_order_id=order.razorpay_order_id,
        amount=order.total_amount,
        currency=order.currency,
        status=PaymentStatus.CREATED.value,
    )
    db.add(payment)
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConcurrentModification("Order was modified concurrently, please retry")
    db.refresh(payment)
    return payment


# ─── Client verify path ───────────────────────────────────────────────────────

def verify_payment(
    db: Session,
    gateway: RazorpayGateway,
    user: User,
    razorpay_order_id: str,
    razorpay_payment_id: str,
    signature: str,
) -> ReconcileResult:
    if not gateway.verify_payment_signature(razorpay_order_id, razorpay_payment_id, signature):
        logger.warning("Payment verification failed: %s (order %s)", razorpay_payment_id, razorpay_order_id)
        raise SignatureInvalid()

    order = db.query(Order).filter(Order.razorpay_order_id == razorpay_order_id).first()
    if order is None or (order.user_id != user.id and user.role != UserRole.ADMIN.value):
        raise RecordNotFound("Order not found")

    details = gateway.fetch_payment(razorpay_payment_id)
    try:
        entity = PaymentEntity.model_validate(details)
    except ValidationError:
        logger.error("Unexpected payment payload from Razorpay for %s", razorpay_payment_id)
        raise GatewayUnavailable("Unexpected response from payment gateway")

    if entity.id != razorpay_payment_id or (entity.order_id and entity.order_id != razorpay_order_id):
        logger.warning("Payment %s does not belong to order %s", razorpay_payment_id, razorpay_order_id)
        raise SignatureInvalid("Payment does not belong to this order")

    kind = _VERIFY_KINDS.get(entity.status or "")

    def work() -> ReconcileResult:
        payment = _locate_payment(db, entity, razorpay_order_id)
        payment.razorpay_signature = signature
        if kind is None:
            # Gateway still reports 'created': nothing to apply yet, the webhook will follow.
            return ReconcileResult(Outcome.DUPLICATE.value, payment, payment.order, detail=entity.status)
        result = apply_event(payment, kind, entity)
        _replay_unmatched(db, payment)
        changed = _reproject(db, payment)
        return ReconcileResult(result.outcome.value, payment, payment.order, changed, result.detail)

    result = _run_serialized(db, razorpay_payment_id, work)
    logger.info("Payment %s verified: %s (%s)", razorpay_payment_id, result.payment.status, result.outcome)

    if result.outcome == Outcome.CONFLICT.value:
        raise ConflictingTransition(f"Payment {razorpay_payment_id} requires manual reconciliation: {result.detail}")
    return result


# ─── Webhook path ─────────────────────────────────────────────────────────────

def handle_webhook(
    db: Session,
    raw_body: bytes,
    signature: Optional[str],
    secret: str,
    delivery_id: Optional[str] = None,
) -> ReconcileResult:
    """
    Authenticate, decode, de-duplicate and apply one webhook delivery.

    Anything past the signature check is acknowledged: duplicates, unknown
    events, malformed bodies and conflicts would not get better with retries.
    """
    if not signature:
        raise SignatureInvalid("Missing Razorpay signature")
    if not verify_signature(raw_body, signature, secret):
        logger.warning("Rejected webhook with invalid signature (delivery %s)", delivery_id)
        raise SignatureInvalid("Invalid webhook signature")

    try:
        event = decode_event(raw_body)
    except MalformedEvent as exc:
        logger.error("Malformed webhook acknowledged without processing: %s", exc.message)
        return ReconcileResult(WebhookOutcome.IGNORED.value, detail=exc.message)

    key = event_key(event, delivery_id)
    payload = raw_body.decode("utf-8", errors="replace")

    if isinstance(event, IgnoredEvent):
        logger.info("Unhandled webhook event: %s", event.event)
        return _record_ignored(db, event, key, payload)

    def work() -> ReconcileResult:
        if db.query(WebhookEvent.id).filter(WebhookEvent.event_key == key).first():
            logger.info("Duplicate webhook %s ignored", key)
            return ReconcileResult(WebhookOutcome.DUPLICATE.value, detail=key)

        result = _apply_gateway_event(db, event)
        db.add(WebhookEvent(
            event_key=key,
            event=event.event,
            entity_id=event.entity_id,
            razorpay_payment_id=event.razorpay_payment_id,
            razorpay_order_id=event.entity.order_id if isinstance(event, PaymentEvent) else None,
            payload=payload,
            outcome=result.outcome,
            detail=result.detail,
            processed_at=None if result.outcome == WebhookOutcome.UNMATCHED.value else utcnow(),
        ))
        return result

    result = _run_serialized(db, event.razorpay_payment_id, work)
    if result.outcome == Outcome.CONFLICT.value:
        logger.error("Conflicting %s for %s flagged for review: %s", event.event, event.razorpay_payment_id, result.detail)
    elif result.outcome == WebhookOutcome.UNMATCHED.value:
        logger.warning("%s for unknown payment %s stored for replay", event.event, event.razorpay_payment_id)
    else:
        logger.info("Webhook %s for %s: %s", event.event, event.razorpay_payment_id, result.outcome)
    return result


def _apply_gateway_event(db: Session, event) -> ReconcileResult:
    if isinstance(event, PaymentEvent):
        payment = _locate_payment(db, event.entity, event.entity.order_id)
    else:
        payment = db.query(Payment).filter(Payment.razorpay_payment_id == event.entity.payment_id).first()

    if payment is None:
        return ReconcileResult(WebhookOutcome.UNMATCHED.value, detail=f"no local record for {event.razorpay_payment_id}")

    result = apply_event(payment, event.kind, event.entity)
    if isinstance(event, PaymentEvent):
        _replay_unmatched(db, payment)
    changed = _reproject(db, payment)
    return ReconcileResult(result.outcome.value, payment, payment.order, changed, result.detail)


def _record_ignored(db: Session, event: IgnoredEvent, key: str, payload: str) -> ReconcileResult:
    if db.query(WebhookEvent.id).filter(WebhookEvent.event_key == key).first():
        return ReconcileResult(WebhookOutcome.DUPLICATE.value, detail=key)
    db.add(WebhookEvent(
        event_key=key,
        event=event.event,
        payload=payload,
        outcome=WebhookOutcome.IGNORED.value,
        processed_at=utcnow(),
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return ReconcileResult(WebhookOutcome.DUPLICATE.value, detail=key)
    return ReconcileResult(WebhookOutcome.IGNORED.value, detail=event.event)


# ─── Refunds ──────────────────────────────────────────────────────────────────

def request_refund(
    db: Session,
    gateway: RazorpayGateway,
    payment: Payment,
    amount: Optional[int] = None,
    reason: Optional[str] = None,
) -> tuple[RefundEntity, ReconcileResult]:
    """
    Ask the gateway to refund (part of) a captured payment and record the
    refund it reports. The lock is held across the gateway call so two
    requests cannot both spend the same refundable balance.
    """
    key = payment.razorpay_payment_id
    if not key:
        raise InvalidRequest("Payment has not been completed")
    reason = reason or "Customer requested refund"

    with payment_lock(key):
        db.expire_all()
        if payment.status != PaymentStatus.CAPTURED.value:
            raise InvalidRequest(f"Cannot refund payment with status '{payment.status}'")

        refundable = payment.refundable_amount
        amount = amount or refundable
        if amount <= 0 or amount > refundable:
            raise InvalidRequest(f"Refund amount {amount} exceeds refundable amount {refundable}")

        data = gateway.create_refund(
            key,
            amount_paise=amount,
            notes={"reason": reason, "order_id": str(payment.order_id)},
        )
        try:
            entity = RefundEntity.model_validate(data)
        except ValidationError:
            logger.error("Refund for %s created but the gateway response was unreadable: %r", key, data)
            raise GatewayUnavailable("Unexpected response from payment gateway")
        logger.info("Refund %s of %s paise requested on %s", entity.id, entity.amount, key)

        try:
            result = apply_event(payment, _REFUND_KINDS.get(entity.status or "", EventKind.REFUND_CREATED), entity)
            refund = find_refund(payment, entity.id)
            if refund is not None and not refund.notes:
                refund.notes = reason
            payment.order.refund_reason = reason
            changed = _reproject(db, payment)
            db.commit()
        except (StaleDataError, IntegrityError):
            db.rollback()
            # The refund exists at the gateway; its webhook will record it.
            logger.warning("Refund %s not recorded locally yet, waiting for its webhook", entity.id)
            return entity, ReconcileResult(WebhookOutcome.UNMATCHED.value, detail=entity.id)

    return entity, ReconcileResult(result.outcome.value, payment, payment.order, changed, result.detail)


# ─── Orders ───────────────────────────────────────────────────────────────────

def cancel_order(db: Session, order: Order) -> Order:
    """User cancellation, allowed only while no attempt has succeeded."""
    successful = {PaymentStatus.AUTHORIZED.value, PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value}
    if any(p.status in successful for p in order.payments):
        raise InvalidRequest("Cannot cancel an order that already has a successful payment")
    if order.status != OrderStatus.PENDING.value:
        raise InvalidRequest(f"Cannot cancel order with status: {order.status}")

    order.status = OrderStatus.CANCELLED.value
    commit_order(db, order)
    return order


_FULFILMENT_FLOW = {
    OrderStatus.PROCESSING.value: OrderStatus.SHIPPED.value,
    OrderStatus.SHIPPED.value: OrderStatus.DELIVERED.value,
}


def advance_fulfilment(db: Session, order: Order, new_status: str) -> Order:
    """Admin-driven shipping updates: processing → shipped → delivered."""
    if _FULFILMENT_FLOW.get(order.status) != new_status:
        raise InvalidRequest(f"Cannot move order from '{order.status}' to '{new_status}'")
    order.status = new_status
    commit_order(db, order)
    return order


def reproject_order(db: Session, order: Order) -> bool:
    """Recompute an order from its attempts (operator tool after manual fixes)."""
    if not order.payments:
        return False
    changed = _reproject(db, order.payments[0])
    commit_order(db, order)
    return changed


def commit_order(db: Session, order: Order) -> None:
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConcurrentModification("Order was modified concurrently, please retry")
    db.refresh(order)
