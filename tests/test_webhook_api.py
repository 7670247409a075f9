from storefront import config, models
from storefront.gateway.signature import generate_signature

from conftest import ORDER_TOTAL, payment_entity, refund_entity, webhook_body


def reload(db, model, **filters):
    db.expire_all()
    return db.query(model).filter_by(**filters).one()


def test_captured_webhook_marks_order_processing(checkout, send_webhook, db):
    order = checkout()

    resp = send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")), event_id="evt_1")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "outcome": "applied"}
    assert reload(db, models.Payment, razorpay_payment_id="pay_XYZ").status == "captured"
    assert reload(db, models.Order, id=order["id"]).status == "processing"
    event = reload(db, models.WebhookEvent, event_key="evt_1")
    assert event.outcome == "applied"
    assert event.processed_at is not None


def test_duplicate_delivery_is_a_no_op(checkout, send_webhook, db, mocker):
    checkout()
    notify = mocker.patch("storefront.gateway.notifications.dispatch_order_notification")
    body = webhook_body("payment.captured", payment_entity("pay_XYZ"))

    first = send_webhook(body, event_id="evt_dup")
    second = send_webhook(body, event_id="evt_dup")

    assert first.json()["outcome"] == "applied"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    payment = reload(db, models.Payment, razorpay_payment_id="pay_XYZ")
    assert payment.status == "captured"
    assert payment.refunds == []
    assert db.query(models.WebhookEvent).count() == 1
    assert notify.call_count == 1


def test_redelivery_with_new_event_id_is_still_idempotent(checkout, send_webhook, db):
    checkout()
    body = webhook_body("payment.captured", payment_entity("pay_XYZ"))

    send_webhook(body, event_id="evt_a")
    again = send_webhook(body, event_id="evt_b")

    assert again.json()["outcome"] == "duplicate"
    assert reload(db, models.Payment, razorpay_payment_id="pay_XYZ").status == "captured"


def test_without_event_id_dedupes_on_event_and_entity(checkout, send_webhook, db):
    checkout()
    body = webhook_body("payment.captured", payment_entity("pay_XYZ"))

    send_webhook(body)
    second = send_webhook(body)

    assert second.json()["outcome"] == "duplicate"
    assert db.query(models.WebhookEvent).filter_by(event_key="payment.captured:pay_XYZ").count() == 1


def test_full_refund_cancels_order(checkout, send_webhook, db):
    order = checkout()
    send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")))

    resp = send_webhook(webhook_body("refund.processed", refund_entity("rfnd_1", "pay_XYZ", ORDER_TOTAL)))

    assert resp.json()["outcome"] == "applied"
    payment = reload(db, models.Payment, razorpay_payment_id="pay_XYZ")
    assert payment.status == "refunded"
    assert [r.razorpay_refund_id for r in payment.refunds] == ["rfnd_1"]
    order_row = reload(db, models.Order, id=order["id"])
    assert order_row.status == "cancelled"
    assert order_row.refund_status == "processed"
    assert order_row.refund_amount == ORDER_TOTAL


def test_partial_refunds_then_full(checkout, send_webhook, db):
    order = checkout()
    send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")))

    send_webhook(webhook_body("refund.processed", refund_entity("rfnd_1", "pay_XYZ", 40000)))
    assert reload(db, models.Payment, razorpay_payment_id="pay_XYZ").status == "captured"
    assert reload(db, models.Order, id=order["id"]).status == "processing"

    send_webhook(webhook_body("refund.processed", refund_entity("rfnd_2", "pay_XYZ", 60000)))
    assert reload(db, models.Payment, razorpay_payment_id="pay_XYZ").status == "refunded"
    assert reload(db, models.Order, id=order["id"]).status == "cancelled"


def test_refund_created_then_processed_keeps_single_record(checkout, send_webhook, db):
    checkout()
    send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")))

    send_webhook(webhook_body("refund.created", refund_entity("rfnd_1", "pay_XYZ", ORDER_TOTAL, "pending")))
    send_webhook(webhook_body("refund.processed", refund_entity("rfnd_1", "pay_XYZ", ORDER_TOTAL)))

    assert db.query(models.Refund).count() == 1
    assert reload(db, models.Refund, razorpay_refund_id="rfnd_1").status == "processed"


def test_bad_signature_is_rejected_and_not_recorded(checkout, send_webhook, db):
    order = checkout()
    body = webhook_body("payment.captured", payment_entity("pay_XYZ"))

    resp = send_webhook(body, signature=generate_signature(body, "wrong_secret"))

    assert resp.status_code == 400
    assert db.query(models.WebhookEvent).count() == 0
    assert reload(db, models.Order, id=order["id"]).status == "pending"


def test_tampered_body_is_rejected(checkout, client, db):
    checkout()
    body = webhook_body("payment.captured", payment_entity("pay_XYZ"))
    signature = generate_signature(body, "whsec_test")
    tampered = body.replace(b'"amount": 100000', b'"amount": 1')

    resp = client.post("/payments/webhook", content=tampered, headers={"X-Razorpay-Signature": signature})

    assert resp.status_code == 400
    assert db.query(models.WebhookEvent).count() == 0


def test_missing_signature_is_rejected(client):
    resp = client.post("/payments/webhook", content=b'{"event": "payment.captured"}')
    assert resp.status_code == 400


def test_missing_webhook_secret_is_server_error(client, monkeypatch):
    monkeypatch.setattr(config, "RAZORPAY_WEBHOOK_SECRET", "")
    resp = client.post("/payments/webhook", content=b"{}", headers={"X-Razorpay-Signature": "abc"})
    assert resp.status_code == 500


def test_malformed_but_authentic_body_is_acknowledged(send_webhook, db):
    resp = send_webhook(b'{"event": "payment.captured", "payload": {}}')

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"
    assert db.query(models.WebhookEvent).count() == 0


def test_unhandled_event_is_acknowledged_and_logged(send_webhook, db):
    body = b'{"event": "order.paid", "payload": {"order": {"entity": {"id": "order_TEST001"}}}}'

    resp = send_webhook(body, event_id="evt_order_paid")

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"
    assert reload(db, models.WebhookEvent, event_key="evt_order_paid").outcome == "ignored"
    assert send_webhook(body, event_id="evt_order_paid").json()["outcome"] == "duplicate"


def test_webhook_beats_verify(checkout, send_webhook, verify, db):
    order = checkout()

    send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")))
    resp = verify(payment_entity("pay_XYZ"))

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "duplicate"
    assert reload(db, models.Order, id=order["id"]).status == "processing"
    assert db.query(models.Payment).filter_by(order_id=order["id"]).count() == 1


def test_out_of_order_authorized_after_captured(checkout, send_webhook, db):
    checkout()

    send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")))
    late = send_webhook(webhook_body("payment.authorized", payment_entity("pay_XYZ", status="authorized")))

    assert late.json()["outcome"] == "duplicate"
    assert reload(db, models.Payment, razorpay_payment_id="pay_XYZ").status == "captured"


def test_failed_after_captured_is_flagged_but_acknowledged(checkout, send_webhook, db):
    order = checkout()
    send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")))

    resp = send_webhook(webhook_body("payment.failed", payment_entity("pay_XYZ", status="failed")))

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "conflict"
    payment = reload(db, models.Payment, razorpay_payment_id="pay_XYZ")
    assert payment.status == "captured"
    assert payment.is_flagged
    assert reload(db, models.Order, id=order["id"]).status == "processing"


def test_refund_before_payment_is_replayed(checkout, send_webhook, db):
    order = checkout()

    early = send_webhook(webhook_body("refund.processed", refund_entity("rfnd_1", "pay_XYZ", ORDER_TOTAL)))
    assert early.status_code == 200
    assert early.json()["outcome"] == "unmatched"

    send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")))

    assert reload(db, models.Payment, razorpay_payment_id="pay_XYZ").status == "refunded"
    assert reload(db, models.Order, id=order["id"]).status == "cancelled"
    assert reload(db, models.WebhookEvent, event="refund.processed").outcome == "applied"


def test_payment_for_unknown_order_is_stored_unmatched(send_webhook, db):
    resp = send_webhook(webhook_body("payment.captured", payment_entity("pay_ORPHAN", order_id="order_NOPE")))

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "unmatched"
    assert db.query(models.Payment).count() == 0
    assert reload(db, models.WebhookEvent, razorpay_payment_id="pay_ORPHAN").outcome == "unmatched"


def test_second_capture_on_same_order_is_flagged(checkout, send_webhook, db):
    order = checkout()

    send_webhook(webhook_body("payment.captured", payment_entity("pay_ONE")))
    send_webhook(webhook_body("payment.captured", payment_entity("pay_TWO")))

    db.expire_all()
    payments = db.query(models.Payment).filter_by(order_id=order["id"]).order_by(models.Payment.id).all()
    assert [p.status for p in payments] == ["captured", "captured"]
    assert not payments[0].is_flagged
    assert "multiple_captures" in payments[1].flag_reason
    assert reload(db, models.Order, id=order["id"]).winning_payment_id == payments[0].id


def test_refunding_duplicate_capture_keeps_order_processing(checkout, send_webhook, db):
    order = checkout()

    send_webhook(webhook_body("payment.captured", payment_entity("pay_ONE")))
    send_webhook(webhook_body("payment.captured", payment_entity("pay_TWO")))
    send_webhook(webhook_body("refund.processed", refund_entity("rfnd_DUP", "pay_TWO", ORDER_TOTAL)))

    first = reload(db, models.Payment, razorpay_payment_id="pay_ONE")
    second = reload(db, models.Payment, razorpay_payment_id="pay_TWO")
    assert first.status == "captured"
    assert second.status == "refunded"
    stored = reload(db, models.Order, id=order["id"])
    assert stored.status == "processing"
    assert stored.winning_payment_id == first.id
    assert stored.refund_status is None


def test_stale_version_is_retried(checkout, send_webhook, db, mocker):
    from sqlalchemy.orm.exc import StaleDataError
    from storefront.reconciliation import service

    checkout()
    real = service._apply_gateway_event
    calls = {"n": 0}

    def flaky(session, event):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StaleDataError("simulated concurrent update")
        return real(session, event)

    mocker.patch.object(service, "_apply_gateway_event", side_effect=flaky)

    resp = send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")))

    assert resp.json()["outcome"] == "applied"
    assert calls["n"] == 2


def test_persistent_contention_returns_503(checkout, send_webhook, db, mocker):
    from sqlalchemy.orm.exc import StaleDataError
    from storefront.reconciliation import service

    checkout()
    mocker.patch.object(service, "_apply_gateway_event", side_effect=StaleDataError("busy"))

    resp = send_webhook(webhook_body("payment.captured", payment_entity("pay_XYZ")))

    assert resp.status_code == 503
    assert db.query(models.WebhookEvent).count() == 0
