"""
Order-status notifications — signed events POSTed to ORDER_NOTIFY_URL
(the mailer / fulfilment service). Runs as a background task after the
reconciliation transaction committed, and only when the order status changed.
"""

import datetime
import json
import logging

import httpx

from .. import config, models
from ..database import SessionLocal
from .signature import generate_signature

logger = logging.getLogger(__name__)


def dispatch_order_notification(order_id: int, event_type: str, data: dict) -> None:
    """
    Fires a POST request to ORDER_NOTIFY_URL with a signed payload.
    Logs the result in NotificationLog.
    Best-effort: errors are logged, not raised.
    """
    target_url = config.ORDER_NOTIFY_URL
    if not target_url:
        return

    payload = {
        "event": event_type,
        "created_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "payload": data,
    }
    payload_str = json.dumps(payload, default=str)

    headers = {
        "Content-Type": "application/json",
        "X-Storefront-Event": event_type,
    }
    if config.NOTIFY_SIGNING_SECRET:
        headers["X-Storefront-Signature"] = generate_signature(payload_str, config.NOTIFY_SIGNING_SECRET)

    log = models.NotificationLog(
        order_id=order_id,
        event_type=event_type,
        payload=payload_str,
        target_url=target_url,
    )

    try:
        with httpx.Client(timeout=5.0) as client:
            resp = client.post(target_url, content=payload_str, headers=headers)
            log.response_status = resp.status_code
            log.response_body = resp.text[:500]
            log.success = 200 <= resp.status_code < 300
    except httpx.HTTPError as exc:
        logger.warning("Order notification %s for order %s failed: %s", event_type, order_id, exc)
        log.response_body = str(exc)[:500]
        log.success = False

    db = SessionLocal()
    try:
        db.add(log)
        db.commit()
    finally:
        db.close()


def schedule_status_notification(background_tasks, order: models.Order) -> None:
    """Queue ``order.<status>`` to run after the response is sent."""
    background_tasks.add_task(
        dispatch_order_notification,
        order.id,
        f"order.{order.status}",
        {
            "order_id": order.id,
            "status": order.status,
            "total_amount": order.total_amount,
            "currency": order.currency,
            "razorpay_order_id": order.razorpay_order_id,
            "refund_status": order.refund_status,
            "refund_amount": order.refund_amount,
        },
    )
