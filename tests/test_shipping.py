import asyncio
import json

import httpx
import pytest

from conftest import ADDRESS
from fragransia.config import Settings
from fragransia.shipping import ShippingError, ShiprocketClient, build_shipment_payload
from fragransia.store import utcnow

RATES = {
    "data": {
        "available_courier_companies": [
            {"courier_name": "Delhivery", "rate": 72.5, "estimated_delivery_days": "4", "etd": "Oct 24"},
            {"courier_name": "Bluedart", "rate": 110.0, "estimated_delivery_days": "2", "etd": "Oct 22"},
        ]
    }
}


class FakeShiprocket:
    """Records calls and answers like the Shiprocket API."""

    def __init__(self, expire_first_token=False):
        self.logins = 0
        self.calls = []
        self.expire_first_token = expire_first_token

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/auth/login"):
            self.logins += 1
            return httpx.Response(200, json={"token": f"token-{self.logins}"})
        self.calls.append((request.method, path, request.headers.get("authorization")))
        if self.expire_first_token and request.headers.get("authorization") == "Bearer token-1":
            return httpx.Response(401, json={"message": "Token has expired"})
        if path.endswith("/courier/serviceability/"):
            if request.url.params.get("delivery_postcode") == "999999":
                return httpx.Response(422, json={"message": "Invalid pincode"})
            return httpx.Response(200, json=RATES)
        if path.endswith("/orders/create/adhoc"):
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "order_id": 1001, "shipment_id": 2002, "awb_code": "AWB123", "courier_name": "Delhivery",
                "status": "NEW", "echo": body["order_id"],
            })
        return httpx.Response(404, json={"message": "not found"})


def _client(fake, email="ops@example.com"):
    return ShiprocketClient(email, "pw", transport=httpx.MockTransport(fake))


def test_token_is_cached_between_calls():
    fake = FakeShiprocket()
    client = _client(fake)
    rates = asyncio.run(client.get_rates("560001"))
    asyncio.run(client.get_rates("400001"))
    assert [r["courier_name"] for r in rates] == ["Delhivery", "Bluedart"]
    assert fake.logins == 1
    assert all(auth == "Bearer token-1" for _, _, auth in fake.calls)


def test_reauthenticates_once_on_401():
    fake = FakeShiprocket(expire_first_token=True)
    rates = asyncio.run(_client(fake).get_rates("560001"))
    assert len(rates) == 2
    assert fake.logins == 2


def test_http_error_becomes_shipping_error():
    with pytest.raises(ShippingError) as exc:
        asyncio.run(_client(FakeShiprocket()).get_rates("999999"))
    assert exc.value.status_code == 422


def test_missing_credentials():
    with pytest.raises(ShippingError):
        asyncio.run(_client(FakeShiprocket(), email=None).get_rates("560001"))


def test_serviceability_swallows_provider_errors():
    client = _client(FakeShiprocket())
    assert asyncio.run(client.check_serviceability("560001")) is True
    assert asyncio.run(client.check_serviceability("999999")) is False


def test_create_shipment():
    order = {
        "orderNumber": "FRG000007",
        "email": "asha@example.com",
        "shippingAddress": ADDRESS,
        "items": [{"productId": "oud", "name": "Oud", "price": 1000, "quantity": 2, "weight": 0.4}],
        "orderSummary": {"finalTotal": 2410},
        "paymentMethod": "cod",
        "createdAt": utcnow(),
    }
    payload = build_shipment_payload(order, Settings())
    assert payload["billing_customer_name"] == "Asha"
    assert payload["billing_last_name"] == "Rao"
    assert payload["payment_method"] == "COD"
    assert payload["weight"] == pytest.approx(0.8)
    assert payload["order_items"][0]["units"] == 2
    assert payload["shipping_is_billing"] is True
    assert "shipping_address" not in payload

    result = asyncio.run(_client(FakeShiprocket()).create_shipment(payload))
    assert result["awb_code"] == "AWB123"
    assert result["echo"] == "FRG000007"


def test_shipment_payload_with_separate_billing_address():
    order = {
        "orderNumber": "FRG000008",
        "shippingAddress": ADDRESS,
        "billingAddress": {**ADDRESS, "name": "Ravi Menon", "city": "Kochi"},
        "items": [{"productId": "oud", "price": 1000, "quantity": 1}],
        "orderSummary": {"finalTotal": 1299, "giftWrapCharge": 50},
    }
    payload = build_shipment_payload(order, Settings())
    assert payload["shipping_is_billing"] is False
    assert (payload["billing_customer_name"], payload["billing_city"]) == ("Ravi", "Kochi")
    assert (payload["shipping_customer_name"], payload["shipping_city"]) == ("Asha", "Bengaluru")
    assert payload["giftwrap_charges"] == 50


def test_delivery_estimate_endpoint(app, client):
    from fragransia.deps import get_shipping_client

    shipping = _client(FakeShiprocket())
    app.dependency_overrides[get_shipping_client] = lambda: shipping
    resp = client.get("/api/orders/delivery/560001")
    assert resp.status_code == 200
    body = resp.json()
    assert body["serviceable"] is True
    assert body["estimatedDays"] == 2

    assert client.get("/api/orders/delivery/56").status_code == 400


def test_delivery_estimate_provider_failure_is_502(app, client):
    from fragransia.deps import get_shipping_client

    shipping = _client(FakeShiprocket())
    app.dependency_overrides[get_shipping_client] = lambda: shipping
    resp = client.get("/api/orders/delivery/999999")
    assert resp.status_code == 502
    assert resp.json()["success"] is False
