import json
import os

# Must be set before storefront is imported: the engine is built at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["REDIS_URL"] = ""
os.environ["ORDER_NOTIFY_URL"] = ""

import pytest
from fastapi.testclient import TestClient

from storefront import locks, models
from storefront.auth.utils import create_access_token
from storefront.database import Base, SessionLocal, engine
from storefront.gateway.razorpay_service import RazorpayGateway, get_gateway
from storefront.gateway.signature import generate_signature
from storefront.main import app as fastapi_app
from storefront.ratelimit import limiter

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_secret"
WEBHOOK_SECRET = "whsec_test"
RZP_ORDER_ID = "order_TEST001"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    locks.reset()
    limiter.reset()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway(mocker):
    # Real wrapper (signatures, error mapping) over a mocked Razorpay SDK client.
    sdk = mocker.Mock()
    sdk.order.create.return_value = {
        "id": RZP_ORDER_ID, "entity": "order", "amount": 0, "currency": "INR", "status": "created",
    }
    return RazorpayGateway(KEY_ID, KEY_SECRET, timeout=5, client=sdk)


@pytest.fixture
def client(gateway):
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def _make_user(db, email, role):
    user = models.User(name=email.split("@")[0], email=email, role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _make_user(db, "buyer@example.com", models.UserRole.USER.value)


@pytest.fixture
def other_user(db):
    return _make_user(db, "someone@example.com", models.UserRole.USER.value)


@pytest.fixture
def admin(db):
    return _make_user(db, "ops@example.com", models.UserRole.ADMIN.value)


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}


@pytest.fixture
def headers(user):
    return bearer(user)


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


ORDER_BODY = {
    "items": [
        {"name": "Terracotta mug", "quantity": 2, "unit_price": 25000},
        {"name": "Glaze sampler", "quantity": 1, "unit_price": 50000},
    ],
    "shipping_address": {
        "street": "12 MG Road", "city": "Bengaluru", "state": "KA", "zip_code": "560001",
    },
}
ORDER_TOTAL = 100000


@pytest.fixture
def checkout(client, headers):
    """Place an order and open a payment attempt. Returns the order JSON."""
    def _checkout(auth=None):
        auth = auth or headers
        order = client.post("/orders", json=ORDER_BODY, headers=auth)
        assert order.status_code == 201, order.text
        started = client.post("/payments/create-order", json={"order_id": order.json()["id"]}, headers=auth)
        assert started.status_code == 201, started.text
        return client.get(f"/orders/{order.json()['id']}", headers=auth).json()
    return _checkout


def payment_entity(payment_id, status="captured", amount=ORDER_TOTAL, order_id=RZP_ORDER_ID, **extra):
    entity = {
        "id": payment_id,
        "entity": "payment",
        "order_id": order_id,
        "amount": amount,
        "currency": "INR",
        "status": status,
        "method": "upi",
        "vpa": "buyer@okicici",
        "email": "buyer@example.com",
        "contact": "+919900000000",
    }
    entity.update(extra)
    return entity


def refund_entity(refund_id, payment_id, amount, status="processed"):
    return {
        "id": refund_id,
        "entity": "refund",
        "payment_id": payment_id,
        "amount": amount,
        "currency": "INR",
        "status": status,
    }


def webhook_body(event, entity):
    kind = "refund" if event.startswith("refund.") else "payment"
    return json.dumps({
        "entity": "event",
        "event": event,
        "contains": [kind],
        "payload": {kind: {"entity": entity}},
        "created_at": 1700000000,
    }).encode()


@pytest.fixture
def send_webhook(client):
    def _send(body, event_id=None, secret=WEBHOOK_SECRET, signature=None):
        hdrs = {
            "Content-Type": "application/json",
            "X-Razorpay-Signature": signature or generate_signature(body, secret),
        }
        if event_id:
            hdrs["X-Razorpay-Event-Id"] = event_id
        return client.post("/payments/webhook", content=body, headers=hdrs)
    return _send


@pytest.fixture
def verify(client, headers, gateway):
    """POST /payments/verify with a valid checkout signature; the gateway reports ``entity``."""
    def _verify(entity, auth=None, signature=None):
        gateway.client.payment.fetch.return_value = entity
        body = {
            "razorpay_order_id": entity["order_id"],
            "razorpay_payment_id": entity["id"],
            "razorpay_signature": signature or generate_signature(
                f"{entity['order_id']}|{entity['id']}", KEY_SECRET
            ),
        }
        return client.post("/payments/verify", json=body, headers=auth or headers)
    return _verify
