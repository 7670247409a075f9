from storefront import models

from conftest import ORDER_BODY, ORDER_TOTAL, bearer, payment_entity, webhook_body


def test_create_order_computes_total(client, headers):
    body = dict(ORDER_BODY, tax=1800, shipping_fee=4000, discount=800, notes="Gift wrap")

    resp = client.post("/orders", json=body, headers=headers)

    assert resp.status_code == 201
    data = resp.json()
    assert data["subtotal"] == ORDER_TOTAL
    assert data["total_amount"] == ORDER_TOTAL + 1800 + 4000 - 800
    assert data["status"] == "pending"
    assert data["currency"] == "INR"
    assert data["receipt"].startswith("RCPT-")
    assert len(data["items"]) == 2


def test_order_total_must_be_positive(client, headers):
    body = dict(ORDER_BODY, discount=ORDER_TOTAL)
    resp = client.post("/orders", json=body, headers=headers)
    assert resp.status_code == 400


def test_only_inr_is_supported(client, headers):
    resp = client.post("/orders", json=dict(ORDER_BODY, currency="usd"), headers=headers)
    assert resp.status_code == 400


def test_empty_order_is_rejected(client, headers):
    resp = client.post("/orders", json=dict(ORDER_BODY, items=[]), headers=headers)
    assert resp.status_code == 422


def test_requires_authentication(client):
    assert client.get("/orders").status_code == 401
    assert client.get("/orders", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401
    assert client.get("/orders", headers={"Authorization": "Basic Zm9vOmJhcg=="}).status_code == 401


def test_openapi_advertises_plain_bearer_auth(client):
    schemes = client.get("/openapi.json").json()["components"]["securitySchemes"]

    assert list(schemes) == ["HTTPBearer"]
    assert schemes["HTTPBearer"]["type"] == "http"
    assert schemes["HTTPBearer"]["scheme"] == "bearer"


def test_orders_are_private(client, headers, other_user):
    order = client.post("/orders", json=ORDER_BODY, headers=headers).json()

    assert client.get(f"/orders/{order['id']}", headers=bearer(other_user)).status_code == 404
    assert client.get("/orders", headers=bearer(other_user)).json() == []
    assert [o["id"] for o in client.get("/orders", headers=headers).json()] == [order["id"]]


def test_update_notes(client, headers):
    order = client.post("/orders", json=ORDER_BODY, headers=headers).json()

    resp = client.patch(f"/orders/{order['id']}", json={"notes": "Leave at the gate"}, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["notes"] == "Leave at the gate"


def test_status_endpoint_reports_latest_attempt(client, headers, checkout, send_webhook):
    order = checkout()
    before = client.get(f"/orders/{order['id']}/status", headers=headers).json()
    assert before == {
        "order_id": order["id"], "status": "pending", "refund_status": None,
        "winning_payment_id": None, "payment_status": "created",
    }

    send_webhook(webhook_body("payment.captured", payment_entity("pay_S1")))

    after = client.get(f"/orders/{order['id']}/status", headers=headers).json()
    assert after["status"] == "processing"
    assert after["payment_status"] == "captured"


def test_cancel_unpaid_order(client, headers, checkout):
    order = checkout()

    resp = client.patch(f"/orders/{order['id']}/cancel", headers=headers)

    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"


def test_cannot_cancel_after_payment(client, headers, checkout, verify):
    order = checkout()
    verify(payment_entity("pay_K1"))

    resp = client.patch(f"/orders/{order['id']}/cancel", headers=headers)

    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"


def test_cannot_cancel_with_authorized_payment(client, headers, checkout, send_webhook):
    order = checkout()
    send_webhook(webhook_body("payment.authorized", payment_entity("pay_K2", status="authorized")))

    resp = client.patch(f"/orders/{order['id']}/cancel", headers=headers)

    assert resp.status_code == 400


def test_cancelled_order_cannot_start_payment(client, headers, checkout):
    order = checkout()
    client.patch(f"/orders/{order['id']}/cancel", headers=headers)

    resp = client.post("/payments/create-order", json={"order_id": order["id"]}, headers=headers)

    assert resp.status_code == 400


def test_capture_after_cancellation_is_flagged(client, headers, checkout, send_webhook, db):
    order = checkout()
    client.patch(f"/orders/{order['id']}/cancel", headers=headers)

    send_webhook(webhook_body("payment.captured", payment_entity("pay_K3")))

    db.expire_all()
    payment = db.query(models.Payment).filter_by(razorpay_payment_id="pay_K3").one()
    assert "captured_after_cancellation" in payment.flag_reason
    assert db.get(models.Order, order["id"]).status == "processing"


def test_me(client, headers, user):
    resp = client.get("/auth/me", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["email"] == user.email
    assert resp.json()["role"] == "user"
