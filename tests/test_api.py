import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from storefront import crud, models
from storefront.main import app, get_order_assembler, get_payment_service, get_reconciler
from storefront.orders import OrderAssembler
from storefront.payments import PaymentService
from storefront.webhooks import WebhookReconciler

from conftest import GIFT_PRODUCT_ID, sign

CHECKOUT = {
    "phone": "081-234-5678",
    "email": "somchai@example.com",
    "customer_name": "Somchai Jaidee",
    "address_line": "99/1 Sukhumvit Rd",
    "province": "Bangkok",
    "district": "Khlong Toei",
    "subdistrict": "Khlong Tan",
    "postal_code": "10110",
    "cart_items": [{"product_id": 1, "quantity": 2, "unit_price": "600"}],
}


class SilentDispatcher:
    def __init__(self):
        self.calls = []

    async def send_payment_success_sms(self, phone, order_number):
        self.calls.append((phone, order_number))
        return {"ErrorCode": 0}


def token(role="admin"):
    claims = {"sub": "1", "email": "ops@example.com", "role": role}
    return jwt.encode(claims, "test-jwt-secret", algorithm="HS256")


@pytest.fixture
def client(db, settings, gateway_settings):
    app.dependency_overrides[get_order_assembler] = lambda: OrderAssembler(settings)
    app.dependency_overrides[get_payment_service] = lambda: PaymentService(settings)
    reconciler = WebhookReconciler(gateway_settings, SilentDispatcher())
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def order_id(client):
    response = client.post("/orders", json=CHECKOUT)
    assert response.status_code == 201
    return response.json()["orderId"]


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_create_order(client):
    response = client.post("/orders", json=CHECKOUT)

    assert response.status_code == 201
    body = response.json()
    assert body["orderNumber"].startswith("ORD-")
    assert Decimal(str(body["totalAmount"])) == Decimal("1200")
    assert isinstance(body["orderId"], int)


def test_create_order_missing_field(client, db):
    payload = dict(CHECKOUT, email="")

    response = client.post("/orders", json=payload)

    assert response.status_code == 400
    assert "email" in response.json()["detail"]
    assert db.query(models.Order).count() == 0


def test_create_order_inactive_product(client):
    payload = dict(CHECKOUT, cart_items=[{"product_id": 3, "quantity": 1}])

    response = client.post("/orders", json=payload)

    assert response.status_code == 400


def test_read_order(client, order_id):
    response = client.get(f"/orders/{order_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["payment_status"] == "pending"
    assert [item["product_id"] for item in body["items"]] == [1, GIFT_PRODUCT_ID]


def test_read_unknown_order(client):
    assert client.get("/orders/999").status_code == 404


def test_timeline_requires_admin(client, order_id):
    anonymous = client.get(f"/orders/{order_id}/timeline")
    customer = client.get(
        f"/orders/{order_id}/timeline",
        headers={"Authorization": f"Bearer {token(role='customer')}"},
    )
    admin = client.get(
        f"/orders/{order_id}/timeline",
        headers={"Authorization": f"Bearer {token()}"},
    )

    assert anonymous.status_code in (401, 403)
    assert customer.status_code == 403
    assert admin.status_code == 200
    assert [event["event_type"] for event in admin.json()] == ["created"]


def test_create_payment_in_fallback_mode(client, order_id, db):
    response = client.post("/payments/create", json={"orderId": order_id, "method": "qr"})

    assert response.status_code == 200
    body = response.json()
    assert body["fallback"] is True
    assert body["paymentUrl"].startswith("#fallback-")
    assert body["transactionId"].startswith("MOCK-")
    assert body["fallbackReason"] == "unconfigured"
    assert "payment_url" not in body
    assert db.query(models.Payment).filter(models.Payment.order_id == order_id).count() == 1


@pytest.mark.parametrize("payload,status_code", [
    ({"method": "qr"}, 400),
    ({"orderId": 1}, 400),
    ({"orderId": 1, "method": "cash"}, 400),
    ({"orderId": 999, "method": "qr"}, 404),
])
def test_create_payment_rejects_bad_requests(client, order_id, payload, status_code):
    assert client.post("/payments/create", json=payload).status_code == status_code


def test_create_payment_names_missing_order_id(client):
    response = client.post("/payments/create", json={"method": "qr"})

    assert response.json()["detail"] == "Missing required field: orderId"


def test_create_payment_for_paid_order(client, order_id, db):
    order = crud.get_order(db, order_id)
    order.payment_status = "paid"
    db.commit()

    response = client.post("/payments/create", json={"orderId": order_id, "method": "card"})

    assert response.status_code == 400


def webhook(client, body, signature=None, gateway="moneyspace"):
    if signature is None:
        signature = sign(body)
    return client.post(
        f"/payments/{gateway}/webhook",
        content=body,
        headers={"Content-Type": "application/json", f"X-{gateway.capitalize()}-Signature": signature},
    )


def test_webhook_marks_order_paid(client, order_id, db):
    order_number = crud.get_order(db, order_id).order_number
    body = json.dumps({"order_id": order_number, "status": "success", "transaction_id": "TXN1"}).encode()

    response = webhook(client, body)

    assert response.status_code == 200
    assert response.json()["success"] is True
    db.expire_all()
    assert crud.get_order(db, order_id).payment_status == "paid"


def test_webhook_on_alternate_gateway_path(client, order_id, db):
    order_number = crud.get_order(db, order_id).order_number
    body = json.dumps({"invoiceNo": order_number, "status": "success", "id": "TX9"}).encode()

    response = webhook(client, body, gateway="moneyspec")

    assert response.status_code == 200


def test_webhook_bad_signature(client, order_id, db):
    order_number = crud.get_order(db, order_id).order_number
    body = json.dumps({"order_id": order_number, "status": "success"}).encode()

    response = webhook(client, body, signature="0" * 64)

    assert response.status_code == 401
    db.expire_all()
    assert crud.get_order(db, order_id).payment_status == "pending"


def test_webhook_unknown_order(client):
    body = json.dumps({"order_id": "ORD-19990101-00000", "status": "success"}).encode()

    assert webhook(client, body).status_code == 404


def test_webhook_malformed_body(client):
    assert webhook(client, b"[]").status_code == 400


def test_webhook_without_order_reference(client):
    body = json.dumps({"status": "success", "transaction_id": "TXN1"}).encode()

    response = webhook(client, body)

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_webhook_unknown_gateway(client):
    assert webhook(client, b"{}", gateway="paypal").status_code == 404
