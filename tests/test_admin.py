import httpx
import pytest

from conftest import ADDRESS, add_coupon, add_product, auth_headers, make_user
from fragransia.deps import get_shipping_client
from fragransia.shipping import ShiprocketClient


@pytest.fixture
def order(client, store, customer_headers):
    add_product(store, "oud", price=1000, inventory=5)
    resp = client.post(
        "/api/orders",
        json={"items": [{"productId": "oud", "quantity": 2}], "shippingAddress": ADDRESS, "paymentMethod": "cod"},
        headers=customer_headers,
    )
    return resp.json()["order"]


@pytest.fixture
def shiprocket(app):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/auth/login"):
            return httpx.Response(200, json={"token": "t"})
        if request.url.path.endswith("/orders/create/adhoc"):
            return httpx.Response(200, json={
                "order_id": 555, "shipment_id": 777, "awb_code": "AWB777", "courier_name": "Delhivery", "status": "NEW",
            })
        if request.url.path.endswith("/orders/cancel/shipment/awbs"):
            return httpx.Response(200, json={"message": "cancelled"})
        if request.url.path.endswith("/courier/generate/label"):
            return httpx.Response(200, json={"label_created": 1, "label_url": "https://labels.example.com/777.pdf"})
        if request.url.path.endswith("/settings/company/pickup"):
            return httpx.Response(200, json={"data": {"shipping_address": [{"pickup_location": "Primary"}]}})
        return httpx.Response(404)

    client = ShiprocketClient("ops@example.com", "pw", transport=httpx.MockTransport(handler))
    app.dependency_overrides[get_shipping_client] = lambda: client
    return requests


# -------------------------------
# Coupons
# -------------------------------
def test_coupon_crud(client, store, admin_headers):
    created = client.post(
        "/api/admin/coupons",
        json={"code": "diwali20", "type": "percentage", "value": 20, "maxDiscount": 500},
        headers=admin_headers,
    )
    assert created.status_code == 201
    assert created.json()["coupon"]["code"] == "DIWALI20"

    duplicate = client.post(
        "/api/admin/coupons", json={"code": "DIWALI20", "type": "fixed", "value": 100}, headers=admin_headers,
    )
    assert duplicate.status_code == 409

    updated = client.put("/api/admin/coupons/diwali20", json={"value": 25, "usedCount": 99}, headers=admin_headers)
    assert updated.json()["coupon"]["value"] == 25
    assert store.get("coupons", "DIWALI20")["usedCount"] == 0

    assert client.get("/api/admin/coupons", headers=admin_headers).json()["count"] == 1
    assert client.delete("/api/admin/coupons/DIWALI20", headers=admin_headers).status_code == 200
    assert client.delete("/api/admin/coupons/DIWALI20", headers=admin_headers).status_code == 404


def test_malformed_coupon_is_a_validation_error(client, admin_headers):
    resp = client.post("/api/admin/coupons", json={"code": "BAD", "type": "mystery"}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Validation failed"

    missing = client.post("/api/admin/coupons", json={"type": "fixed", "value": 10}, headers=admin_headers)
    assert missing.status_code == 400


def test_coupon_admin_requires_admin_role(client, store, settings):
    staff = auth_headers(make_user(store, role="staff"), settings)
    assert client.get("/api/admin/coupons", headers=staff).status_code == 403


def test_coupon_endpoints(client, store, customer, customer_headers, admin_headers):
    add_coupon(store, "SAVE5", value=5)
    applied = client.post("/api/coupons/apply", json={"couponCode": "save5", "orderAmount": 2000})
    assert applied.status_code == 200
    assert applied.json()["orderSummary"] == {"originalAmount": 2000, "discountAmount": 100, "finalAmount": 1900}

    unknown = client.post("/api/coupons/apply", json={"couponCode": "NOPE", "orderAmount": 2000})
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "not_found"

    used = client.post(
        "/api/coupons/use",
        json={"couponCode": "SAVE5", "orderId": "order-1", "discountAmount": 100},
        headers=customer_headers,
    )
    assert used.status_code == 200
    assert used.json()["usage"]["userId"] == customer["uid"]

    stats = client.get("/api/coupons/stats/SAVE5", headers=admin_headers).json()
    assert stats["usage"]["totalUsage"] == 1

    available = client.get("/api/coupons/available", params={"orderAmount": 500}).json()
    assert available["count"] == 1


def test_apply_rejects_oversized_cart_line(client, store):
    add_coupon(store, "B2G1", type="buy2get1", value=0)
    resp = client.post(
        "/api/coupons/apply",
        json={"couponCode": "B2G1", "orderAmount": 10, "cartItems": [{"price": 10, "quantity": 10 ** 12}]},
    )
    assert resp.status_code == 400


def test_per_user_checks_use_the_signed_in_user(client, store, settings, customer, customer_headers, admin_headers):
    add_coupon(store, "ONCE", userUsageLimit=1)
    client.post(
        "/api/coupons/use",
        json={"couponCode": "ONCE", "orderId": "order-1", "discountAmount": 10},
        headers=customer_headers,
    )
    about_customer = {"couponCode": "ONCE", "orderAmount": 500, "userId": customer["uid"]}

    # anonymous callers get no per-user answer
    assert client.post("/api/coupons/validate", json=about_customer).json()["valid"] is True
    # another customer is checked as themselves
    other = auth_headers(make_user(store), settings)
    assert client.post("/api/coupons/validate", json=about_customer, headers=other).json()["valid"] is True
    assert client.post("/api/coupons/apply", json=about_customer, headers=other).status_code == 200

    assert client.post("/api/coupons/validate", json=about_customer, headers=customer_headers).json()["valid"] is False
    assert client.post("/api/coupons/validate", json=about_customer, headers=admin_headers).json()["valid"] is False
    mine = client.post("/api/coupons/apply", json={"couponCode": "ONCE", "orderAmount": 500}, headers=customer_headers)
    assert mine.status_code == 400
    assert mine.json()["code"] == "user_usage_limit_exceeded"


def test_customers_cannot_redeem_for_others(client, store, customer_headers):
    add_coupon(store, "SAVE5")
    resp = client.post(
        "/api/coupons/use",
        json={"couponCode": "SAVE5", "orderId": "order-1", "discountAmount": 10, "userId": "someone-else"},
        headers=customer_headers,
    )
    assert resp.status_code == 403


# -------------------------------
# Orders
# -------------------------------
def test_delivered_cod_order_is_marked_paid(client, order, store, admin_headers):
    resp = client.put(f"/api/admin/orders/{order['id']}/status", json={"status": "delivered"}, headers=admin_headers)
    assert resp.status_code == 200
    stored = store.get("orders", order["id"])
    assert stored["status"] == "delivered"
    assert stored["paymentStatus"] == "completed"


def test_admin_cancel_restocks(client, order, store, admin_headers):
    resp = client.put(
        f"/api/admin/orders/{order['id']}/status", json={"status": "cancelled", "note": "fraud"}, headers=admin_headers,
    )
    assert resp.status_code == 200
    assert store.get("products", "oud")["inventory"] == 5


def test_ship_order(client, order, store, admin_headers, shiprocket):
    resp = client.post(f"/api/admin/orders/{order['id']}/ship", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["shipment"]["awbCode"] == "AWB777"

    stored = store.get("orders", order["id"])
    assert stored["status"] == "shipped"
    assert stored["shipment"]["shipmentId"] == 777

    again = client.post(f"/api/admin/orders/{order['id']}/ship", headers=admin_headers)
    assert again.status_code == 409

    label = client.post(f"/api/admin/orders/{order['id']}/label", headers=admin_headers).json()
    assert label["labelUrl"] == "https://labels.example.com/777.pdf"
    pickups = client.get("/api/admin/shipping/pickup-locations", headers=admin_headers).json()
    assert pickups["locations"] == [{"pickup_location": "Primary"}]

    cancelled = client.post(f"/api/admin/orders/{order['id']}/cancel-shipment", headers=admin_headers)
    assert cancelled.status_code == 200
    assert store.get("orders", order["id"])["shipment"]["status"] == "cancelled"


def test_unpaid_prepaid_order_cannot_ship(client, store, customer_headers, admin_headers, shiprocket):
    add_product(store, "rose", inventory=5)
    order = client.post(
        "/api/orders",
        json={"items": [{"productId": "rose", "quantity": 1}], "shippingAddress": ADDRESS},
        headers=customer_headers,
    ).json()["order"]
    resp = client.post(f"/api/admin/orders/{order['id']}/ship", headers=admin_headers)
    assert resp.status_code == 400
    assert shiprocket == []


def test_dashboard_stats(client, order, admin_headers):
    stats = client.get("/api/admin/stats", headers=admin_headers).json()["stats"]
    assert stats["totalOrders"] == 1
    assert stats["ordersByStatus"] == {"pending": 1}
    assert stats["lowStockProducts"] == [{"id": "oud", "name": "Perfume oud", "inventory": 3}]


# -------------------------------
# Products and users
# -------------------------------
def test_product_lifecycle(client, store, admin_headers):
    created = client.post(
        "/api/admin/products",
        json={"name": "Amber Nights", "price": 2499, "category": "unisex", "inventory": 20},
        headers=admin_headers,
    )
    assert created.status_code == 201
    product_id = created.json()["product"]["id"]
    assert client.get(f"/api/products/{product_id}").status_code == 200

    client.put(f"/api/admin/products/{product_id}", json={"price": 1999}, headers=admin_headers)
    assert store.get("products", product_id)["price"] == 1999

    inv = client.post(
        "/api/admin/products/inventory",
        json={"productId": product_id, "quantity": 5, "operation": "subtract"},
        headers=admin_headers,
    ).json()
    assert (inv["previousQuantity"], inv["newQuantity"]) == (20, 15)

    client.delete(f"/api/admin/products/{product_id}", headers=admin_headers)
    assert client.get(f"/api/products/{product_id}").status_code == 404


def test_admin_cannot_demote_self(client, admin, admin_headers, customer):
    resp = client.put(f"/api/admin/users/{admin['uid']}", json={"role": "customer"}, headers=admin_headers)
    assert resp.status_code == 400

    promoted = client.put(f"/api/admin/users/{customer['uid']}", json={"role": "staff"}, headers=admin_headers)
    assert promoted.json()["user"]["role"] == "staff"
