import uuid
from datetime import timedelta
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from fragransia.app import create_app
from fragransia.cache import clear_cache
from fragransia.config import Settings
from fragransia.coupons import COUPONS
from fragransia.notifications import Notifier
from fragransia.security import USERS, get_identity_verifier, hash_password, issue_token
from fragransia.store import MemoryStore, utcnow

ADDRESS = {
    "name": "Asha Rao",
    "phone": "9876543210",
    "address1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}


class FakeGateway:
    key_id = "rzp_test_key"

    def __init__(self):
        self.orders = []
        self.refunds = []

    def create_order(self, amount, currency="INR", receipt=None, notes=None):
        order = {"id": f"order_{len(self.orders) + 1}", "amount": int(round(amount * 100)), "currency": currency,
                 "receipt": receipt, "notes": notes or {}}
        self.orders.append(order)
        return order

    def refund(self, payment_id, amount=None, notes=None):
        refund = {"id": f"rfnd_{len(self.refunds) + 1}", "payment_id": payment_id, "status": "processed"}
        self.refunds.append(refund)
        return refund


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        store_backend="memory",
        jwt_secret_key="test-secret",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        razorpay_webhook_secret="whsec_test",
        webhook_api_key="hook-key",
        whatsapp_verify_token="verify-me",
        sensitive_rate_limit=1000,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(settings, store, gateway):
    app = create_app(settings, store=store)
    app.state.payment_gateway = gateway
    app.state.notifier = Notifier(settings)
    app.dependency_overrides[get_identity_verifier] = lambda: (
        lambda token: {"uid": token, "email": f"{token}@example.com", "email_verified": True}
    )
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def _fresh_cache():
    clear_cache()
    yield
    clear_cache()


def make_user(store, role: str = "customer", **fields) -> Dict[str, Any]:
    uid = uuid.uuid4().hex
    user = {
        "uid": uid,
        "email": f"{uid[:8]}@example.com",
        "firstName": "Test",
        "lastName": "User",
        "role": role,
        "isActive": True,
        "passwordHash": hash_password("secret123"),
        "addresses": [],
        "wishlist": [],
        "createdAt": utcnow(),
        **fields,
    }
    store.create(USERS, user, doc_id=uid)
    return user


def auth_headers(user, settings) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user, settings)}"}


@pytest.fixture
def customer(store):
    return make_user(store)


@pytest.fixture
def admin(store):
    return make_user(store, role="admin")


@pytest.fixture
def customer_headers(customer, settings):
    return auth_headers(customer, settings)


@pytest.fixture
def admin_headers(admin, settings):
    return auth_headers(admin, settings)


def add_product(store, product_id: str, price: float = 1000, inventory: int = 10, **fields) -> Dict[str, Any]:
    product = {
        "name": f"Perfume {product_id}",
        "description": "Eau de parfum",
        "price": price,
        "category": "unisex",
        "brand": "Fragransia",
        "images": [f"https://cdn.example.com/{product_id}.jpg"],
        "inventory": inventory,
        "soldCount": 0,
        "isActive": True,
        "isFeatured": False,
        "rating": 0,
        "reviewCount": 0,
        "createdAt": utcnow(),
        **fields,
    }
    store.create("products", product, doc_id=product_id)
    return {"id": product_id, **product}


def add_coupon(store, code: str, **fields) -> Dict[str, Any]:
    now = utcnow()
    coupon = {
        "type": "percentage",
        "value": 10,
        "minOrderAmount": 0,
        "usageLimit": None,
        "usedCount": 0,
        "userUsageLimit": None,
        "startDate": now - timedelta(days=1),
        "expiryDate": now + timedelta(days=30),
        "isActive": True,
        "createdAt": now,
        **fields,
    }
    store.create(COUPONS, coupon, doc_id=code)
    return coupon
