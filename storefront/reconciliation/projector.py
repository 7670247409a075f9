"""
Order status projector.

The order status is a function of its payment attempts, recomputed from the
full history after every reconciliation step instead of being patched by each
caller. Re-running it on the same history always gives the same answer.

    first captured/refunded attempt is the winner; later ones are reported
    winner refunded               → cancelled, refund processed   (terminal)
    winner captured               → processing (or shipped/delivered if already there)
    only created/authorized/failed → pending, retry allowed (cancelled if the user cancelled)
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from ..models import Order, OrderStatus, Payment, PaymentStatus, RefundStatus

FULFILMENT_STATUSES = {OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value}


@dataclass
class Projection:
    status: str
    winning_payment: Optional[Payment] = None
    refund_status: Optional[str] = None
    refund_amount: Optional[int] = None
    issues: List[str] = field(default_factory=list)


def project(order: Order, payments: Iterable[Payment]) -> Projection:
    attempts = sorted(payments, key=lambda p: p.id or 0)

    succeeded = [p for p in attempts if p.status in (PaymentStatus.CAPTURED, PaymentStatus.REFUNDED)]
    if not succeeded:
        # Nothing succeeded (yet). A user cancellation sticks; otherwise allow a retry.
        if order.status == OrderStatus.CANCELLED.value:
            return Projection(status=OrderStatus.CANCELLED.value)
        return Projection(status=OrderStatus.PENDING.value)

    # First success by creation order wins; a later refunded duplicate does not move it.
    winner = succeeded[0]
    issues = ["multiple_captures"] if len(succeeded) > 1 else []

    if winner.status == PaymentStatus.REFUNDED:
        return Projection(
            status=OrderStatus.CANCELLED.value,
            winning_payment=winner,
            refund_status=RefundStatus.PROCESSED.value,
            refund_amount=winner.amount_refunded,
            issues=issues,
        )

    refund_status, refund_amount = _refund_substate(winner)
    if winner.amount != order.total_amount:
        issues.append("amount_mismatch")
        status = OrderStatus.PENDING.value
    elif order.status in FULFILMENT_STATUSES:
        status = order.status
    else:
        if order.status == OrderStatus.CANCELLED.value and not order.refund_status:
            issues.append("captured_after_cancellation")
        status = OrderStatus.PROCESSING.value

    return Projection(
        status=status,
        winning_payment=winner,
        refund_status=refund_status,
        refund_amount=refund_amount,
        issues=issues,
    )


def _refund_substate(payment: Payment):
    statuses = {r.status for r in payment.refunds}
    if not statuses:
        return None, None
    if RefundStatus.PENDING.value in statuses:
        return RefundStatus.PENDING.value, payment.amount_refunded
    if RefundStatus.PROCESSED.value in statuses:
        return RefundStatus.PROCESSED.value, payment.amount_refunded
    return RefundStatus.FAILED.value, 0


def apply_projection(order: Order, projection: Projection) -> bool:
    """Write the projection onto ``order``. Returns True if its status changed."""
    changed = order.status != projection.status
    order.status = projection.status
    order.winning_payment_id = projection.winning_payment.id if projection.winning_payment else None
    order.refund_status = projection.refund_status
    order.refund_amount = projection.refund_amount
    return changed
