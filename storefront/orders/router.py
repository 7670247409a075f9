"""
/orders — customer orders.

Orders are created 'pending'. After that their status belongs to the payment
reconciliation (see storefront.reconciliation.projector); the only status a
customer can set directly is 'cancelled', and only before any payment succeeded.
"""

import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import config, models, schemas
from ..auth.router import get_current_user
from ..database import get_db
from ..gateway.keys import generate_receipt_id
from ..gateway.notifications import schedule_status_notification
from ..reconciliation import service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _get_owned_order(db: Session, order_id: int, user: models.User) -> models.Order:
    order = db.query(models.Order).filter(
        models.Order.id == order_id,
        models.Order.user_id == user.id,
    ).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.post(
    "",
    response_model=schemas.OrderOut,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
)
def create_order(
    payload: schemas.OrderCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    if payload.currency != config.SUPPORTED_CURRENCY:
        raise HTTPException(status_code=400, detail=f"Unsupported currency. Use {config.SUPPORTED_CURRENCY}")

    subtotal = sum(item.quantity * item.unit_price for item in payload.items)
    total = subtotal + payload.tax + payload.shipping_fee - payload.discount
    if total <= 0:
        raise HTTPException(status_code=400, detail="Order total must be greater than 0 paise")

    address = payload.shipping_address
    order = models.Order(
        user_id=current_user.id,
        subtotal=subtotal,
        tax=payload.tax,
        shipping_fee=payload.shipping_fee,
        discount=payload.discount,
        total_amount=total,
        currency=payload.currency,
        street=address.street,
        city=address.city,
        state=address.state,
        zip_code=address.zip_code,
        country=address.country,
        notes=payload.notes,
        receipt=generate_receipt_id(),
        status=models.OrderStatus.PENDING.value,
        items=[
            models.OrderItem(
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                product_ref=item.product_ref,
            )
            for item in payload.items
        ],
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("Order %s placed by user %s for %s paise", order.id, current_user.id, total)
    return order


@router.get("", response_model=List[schemas.OrderOut], summary="List my orders")
def list_orders(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return (
        db.query(models.Order)
        .filter(models.Order.user_id == current_user.id)
        .order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .limit(100)
        .all()
    )


@router.get("/{order_id}", response_model=schemas.OrderOut, summary="Fetch an order")
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return _get_owned_order(db, order_id, current_user)


@router.get(
    "/{order_id}/status",
    response_model=schemas.OrderStatusOut,
    summary="Poll order status",
    description="Lightweight endpoint the checkout page polls while waiting for the webhook.",
)
def get_order_status(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    order = _get_owned_order(db, order_id, current_user)
    latest = order.payments[-1] if order.payments else None
    return {
        "order_id": order.id,
        "status": order.status,
        "refund_status": order.refund_status,
        "winning_payment_id": order.winning_payment_id,
        "payment_status": latest.status if latest else None,
    }


@router.patch("/{order_id}", response_model=schemas.OrderOut, summary="Update order notes")
def update_order(
    order_id: int,
    payload: schemas.OrderNotesUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    order = _get_owned_order(db, order_id, current_user)
    order.notes = payload.notes
    service.commit_order(db, order)
    return order


@router.patch("/{order_id}/cancel", response_model=schemas.OrderOut, summary="Cancel an unpaid order")
def cancel_order(
    order_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    order = _get_owned_order(db, order_id, current_user)
    service.cancel_order(db, order)
    logger.info("Order %s cancelled by user %s", order.id, current_user.id)
    schedule_status_notification(background_tasks, order)
    return order
