"""
/admin  — Operator dashboard for payment reconciliation.
Only accessible by users with role = "admin".
Covers: stats, flagged payments, webhook log, fulfilment updates.
"""

import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..database import get_db
from .. import models, schemas
from ..auth.router import require_admin
from ..gateway.notifications import schedule_status_notification
from ..reconciliation import service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


def _get_order(db: Session, order_id: int) -> models.Order:
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


# ─────────────────────────────────────────────────────────────────────────────
# OVERVIEW
# ─────────────────────────────────────────────────────────────────────────────

@router.get(
    "/stats",
    response_model=schemas.AdminStats,
    summary="Order and payment statistics",
)
def stats(
    db: Session = Depends(get_db),
    _: models.User = Depends(require_admin),
):
    orders_by_status = dict(
        db.query(models.Order.status, func.count(models.Order.id)).group_by(models.Order.status).all()
    )
    payments_by_status = dict(
        db.query(models.Payment.status, func.count(models.Payment.id)).group_by(models.Payment.status).all()
    )
    captured_amount = (
        db.query(func.coalesce(func.sum(models.Payment.amount), 0))
        .filter(models.Payment.status.in_([
            models.PaymentStatus.CAPTURED.value, models.PaymentStatus.REFUNDED.value,
        ]))
        .scalar()
    )
    refunded_amount = (
        db.query(func.coalesce(func.sum(models.Refund.amount), 0))
        .filter(models.Refund.status == models.RefundStatus.PROCESSED.value)
        .scalar()
    )
    return schemas.AdminStats(
        total_orders=sum(orders_by_status.values()),
        orders_by_status=orders_by_status,
        total_payments=sum(payments_by_status.values()),
        payments_by_status=payments_by_status,
        flagged_payments=db.query(models.Payment).filter(models.Payment.is_flagged.is_(True)).count(),
        captured_amount=captured_amount,
        refunded_amount=refunded_amount,
        unmatched_events=db.query(models.WebhookEvent).filter(
            models.WebhookEvent.outcome == models.WebhookOutcome.UNMATCHED.value
        ).count(),
    )


# ─────────────────────────────────────────────────────────────────────────────
# MANUAL RECONCILIATION
# ─────────────────────────────────────────────────────────────────────────────

@router.get(
    "/payments/flagged",
    response_model=List[schemas.PaymentOut],
    summary="Payments needing manual reconciliation",
)
def flagged_payments(
    db: Session = Depends(get_db),
    _: models.User = Depends(require_admin),
):
    return (
        db.query(models.Payment)
        .filter(models.Payment.is_flagged.is_(True))
        .order_by(models.Payment.id.desc())
        .limit(100)
        .all()
    )


@router.post(
    "/payments/{payment_id}/resolve",
    response_model=schemas.PaymentOut,
    summary="Clear a payment's review flag",
)
def resolve_flag(
    payment_id: int,
    payload: schemas.ResolveFlagRequest,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    payment = db.query(models.Payment).filter(models.Payment.id == payment_id).first()
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    if not payment.is_flagged:
        raise HTTPException(status_code=400, detail="Payment is not flagged")

    logger.info("Admin %s resolved flag on payment %s (%s): %s",
                admin.email, payment.id, payment.flag_reason, payload.note or "-")
    payment.is_flagged = False
    payment.resolution_note = f"{payment.flag_reason}: {payload.note}" if payload.note else payment.flag_reason
    payment.flag_reason = None
    service.commit_order(db, payment.order)
    db.refresh(payment)
    return payment


@router.get(
    "/webhooks",
    response_model=List[schemas.WebhookEventOut],
    summary="Inbound webhook log",
)
def webhook_events(
    outcome: str | None = Query(None, description="applied | duplicate | conflict | ignored | unmatched"),
    db: Session = Depends(get_db),
    _: models.User = Depends(require_admin),
):
    query = db.query(models.WebhookEvent)
    if outcome:
        query = query.filter(models.WebhookEvent.outcome == outcome)
    return query.order_by(models.WebhookEvent.id.desc()).limit(100).all()


# ─────────────────────────────────────────────────────────────────────────────
# ORDERS
# ─────────────────────────────────────────────────────────────────────────────

@router.put(
    "/orders/{order_id}/status",
    response_model=schemas.OrderOut,
    summary="Advance fulfilment",
    description="processing → shipped → delivered. Payment-driven statuses cannot be set here.",
)
def update_order_status(
    order_id: int,
    payload: schemas.FulfilmentUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    _: models.User = Depends(require_admin),
):
    order = _get_order(db, order_id)
    service.advance_fulfilment(db, order, payload.status.value)
    schedule_status_notification(background_tasks, order)
    return order


@router.post(
    "/orders/{order_id}/reproject",
    response_model=schemas.OrderOut,
    summary="Recompute an order's status from its payments",
)
def reproject_order(
    order_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    _: models.User = Depends(require_admin),
):
    order = _get_order(db, order_id)
    if service.reproject_order(db, order):
        schedule_status_notification(background_tasks, order)
    return order
