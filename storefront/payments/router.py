"""
/payments — Razorpay checkout, verification, webhooks and refunds.

Flow:
  1. POST /payments/create-order  → Razorpay order + a 'created' payment attempt
  2. Customer pays in Razorpay Checkout (browser)
  3. POST /payments/verify        → browser reports back with the signature
  4. POST /payments/webhook       → Razorpay reports the same payment (and refunds)

Steps 3 and 4 race; the reconciliation service makes the order of arrival
irrelevant.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from starlette.concurrency import run_in_threadpool

from .. import config, models, schemas
from ..auth.router import get_current_user
from ..database import get_db
from ..errors import ConcurrentModification, GatewayUnavailable, RecordNotFound
from ..gateway.events import PaymentEntity
from ..gateway.keys import generate_payment_receipt
from ..gateway.notifications import schedule_status_notification
from ..gateway.razorpay_service import RazorpayGateway, get_gateway
from ..ratelimit import limiter
from ..reconciliation import service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _is_admin(user: models.User) -> bool:
    return user.role == models.UserRole.ADMIN.value


def _get_payment(db: Session, razorpay_payment_id: str, user: models.User) -> Optional[models.Payment]:
    query = db.query(models.Payment).filter(models.Payment.razorpay_payment_id == razorpay_payment_id)
    if not _is_admin(user):
        query = query.filter(models.Payment.user_id == user.id)
    return query.first()


# ─────────────────────────────────────────────────────────────────────────────
# CHECKOUT
# ─────────────────────────────────────────────────────────────────────────────

@router.post(
    "/create-order",
    response_model=schemas.CreatePaymentOrderOut,
    status_code=status.HTTP_201_CREATED,
    summary="Start a payment for an order",
    description=(
        "**Step 1 of checkout flow.**\n\n"
        "Creates (or reuses) the Razorpay order for a pending order and returns "
        "what Razorpay Checkout needs: `razorpay_order_id`, `amount` (paise), `currency` and `key_id`."
    ),
)
@limiter.limit(config.CREATE_ORDER_RATE_LIMIT)
def create_payment_order(
    request: Request,
    payload: schemas.CreatePaymentOrderRequest,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
    current_user: models.User = Depends(get_current_user),
):
    order = db.query(models.Order).filter(
        models.Order.id == payload.order_id,
        models.Order.user_id == current_user.id,
    ).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    payment = service.create_payment_attempt(db, gateway, order)
    return schemas.CreatePaymentOrderOut(
        razorpay_order_id=payment.razorpay_order_id,
        amount=payment.amount,
        currency=payment.currency,
        key_id=gateway.key_id,
        order_id=order.id,
        payment_id=payment.id,
        receipt=order.receipt,
    )


@router.post(
    "/verify",
    response_model=schemas.VerifyPaymentOut,
    summary="Verify a completed checkout",
    description=(
        "**Step 3 of checkout flow.**\n\n"
        "Called by the browser with the values Razorpay Checkout returned. "
        "The signature is checked, the payment is fetched from Razorpay and the order updated."
    ),
)
@limiter.limit(config.VERIFY_RATE_LIMIT)
def verify_payment(
    request: Request,
    payload: schemas.VerifyPaymentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
    current_user: models.User = Depends(get_current_user),
):
    result = service.verify_payment(
        db,
        gateway,
        current_user,
        payload.razorpay_order_id,
        payload.razorpay_payment_id,
        payload.razorpay_signature,
    )
    if result.order_status_changed:
        schedule_status_notification(background_tasks, result.order)

    return {
        "success": True,
        "message": "Payment verified successfully",
        "outcome": result.outcome,
        "order": result.order,
        "payment": result.payment,
    }


# ─────────────────────────────────────────────────────────────────────────────
# WEBHOOK (Razorpay → us)
# ─────────────────────────────────────────────────────────────────────────────

@router.post(
    "/webhook",
    response_model=schemas.WebhookAck,
    summary="Razorpay webhook receiver",
    description=(
        "Authenticated with `X-Razorpay-Signature` over the raw request body. "
        "Every authentic delivery is acknowledged with 200, including duplicates "
        "and events we do not handle, so Razorpay stops retrying."
    ),
)
async def razorpay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
):
    secret = config.RAZORPAY_WEBHOOK_SECRET
    if not secret:
        logger.error("RAZORPAY_WEBHOOK_SECRET is not set; cannot authenticate webhooks")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    raw_body = await request.body()
    try:
        result = await run_in_threadpool(
            service.handle_webhook, db, raw_body, x_razorpay_signature, secret, x_razorpay_event_id
        )
    except ConcurrentModification as exc:
        # Non-2xx makes Razorpay redeliver later.
        return JSONResponse(status_code=503, content={"detail": exc.message, "code": exc.code})

    if result.order_status_changed:
        schedule_status_notification(background_tasks, result.order)
    return {"status": "ok", "outcome": result.outcome}


# ─────────────────────────────────────────────────────────────────────────────
# PAYMENTS
# ─────────────────────────────────────────────────────────────────────────────

@router.get(
    "",
    response_model=List[schemas.PaymentOut],
    summary="List my payments",
)
def list_payments(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return (
        db.query(models.Payment)
        .filter(models.Payment.user_id == current_user.id)
        .order_by(models.Payment.created_at.desc(), models.Payment.id.desc())
        .limit(100)
        .all()
    )


@router.get(
    "/refunds/{refund_id}",
    response_model=schemas.GatewayRefundOut,
    summary="Refund status",
    description="Live status from Razorpay alongside what we have recorded locally.",
)
def get_refund(
    refund_id: str,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
    current_user: models.User = Depends(get_current_user),
):
    query = (
        db.query(models.Refund)
        .join(models.Payment, models.Refund.payment_id == models.Payment.id)
        .filter(models.Refund.razorpay_refund_id == refund_id)
    )
    if not _is_admin(current_user):
        query = query.filter(models.Payment.user_id == current_user.id)
    refund = query.first()
    if not refund:
        raise HTTPException(status_code=404, detail="Refund not found")

    remote = gateway.fetch_refund(refund_id)
    if remote.get("status") and remote["status"] != refund.status:
        logger.info("Refund %s is %s at Razorpay, %s locally", refund_id, remote["status"], refund.status)

    return {
        "razorpay_refund_id": refund.razorpay_refund_id,
        "razorpay_payment_id": refund.payment.razorpay_payment_id,
        "amount": remote.get("amount", refund.amount),
        "currency": remote.get("currency", refund.payment.currency),
        "status": remote.get("status"),
        "local_status": refund.status,
        "notes": refund.notes,
    }


@router.get(
    "/{payment_id}",
    response_model=schemas.PaymentLookupOut,
    summary="Fetch a payment",
    description=(
        "Local record by Razorpay payment id; falls back to a live Razorpay lookup. "
        "Customers only see live payments made against their own orders."
    ),
)
def get_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
    current_user: models.User = Depends(get_current_user),
):
    payment = _get_payment(db, payment_id, current_user)
    if payment:
        return {"source": "local", "payment": payment}

    try:
        entity = PaymentEntity.model_validate(gateway.fetch_payment(payment_id))
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Payment not found")
    except ValidationError:
        logger.error("Unexpected payment payload from Razorpay for %s", payment_id)
        raise GatewayUnavailable("Unexpected response from payment gateway")

    if not _is_admin(current_user):
        owned = entity.order_id and db.query(models.Order.id).filter(
            models.Order.user_id == current_user.id,
            models.Order.razorpay_order_id == entity.order_id,
        ).first()
        if not owned:
            raise HTTPException(status_code=404, detail="Payment not found")

    return {
        "source": "gateway",
        "gateway_payment": {
            "razorpay_payment_id": entity.id,
            "razorpay_order_id": entity.order_id,
            "amount": entity.amount,
            "currency": entity.currency,
            "status": entity.status,
            "method": entity.method,
        },
    }


@router.get(
    "/{payment_id}/receipt",
    response_model=schemas.PaymentReceipt,
    summary="Payment receipt",
)
def get_receipt(
    payment_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    payment = _get_payment(db, payment_id, current_user)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    if payment.status not in {models.PaymentStatus.CAPTURED.value, models.PaymentStatus.REFUNDED.value}:
        raise HTTPException(status_code=400, detail=f"No receipt for payment with status '{payment.status}'")

    if not payment.receipt:
        payment.receipt = generate_payment_receipt(payment.id)
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            raise ConcurrentModification()
        db.refresh(payment)

    return {
        "receipt_number": payment.receipt,
        "order_id": payment.order_id,
        "razorpay_payment_id": payment.razorpay_payment_id,
        "amount": payment.amount,
        "amount_refunded": payment.amount_refunded,
        "currency": payment.currency,
        "method": payment.method,
        "status": payment.status,
        "paid_at": payment.captured_at,
        "items": payment.order.items,
    }


# ─────────────────────────────────────────────────────────────────────────────
# REFUNDS
# ─────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{payment_id}/refund",
    response_model=schemas.RefundRequestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Issue a refund",
    description=(
        "Refund a captured payment fully or partially through Razorpay. "
        "Leave `amount` empty to refund everything still refundable."
    ),
)
def create_refund(
    payment_id: str,
    payload: schemas.RefundCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
    current_user: models.User = Depends(get_current_user),
):
    payment = _get_payment(db, payment_id, current_user)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    refund, result = service.request_refund(db, gateway, payment, payload.amount, payload.reason)
    if result.order_status_changed:
        schedule_status_notification(background_tasks, result.order)

    db.refresh(payment)
    return {
        "razorpay_refund_id": refund.id,
        "amount": refund.amount,
        "status": refund.status,
        "payment": payment,
    }
