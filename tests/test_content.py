from datetime import timedelta

from conftest import add_product
from fragransia.routes.content import select_popups
from fragransia.store import utcnow


def _popup(popup_id, **fields):
    return {"id": popup_id, "isActive": True, "priority": 0, **fields}


def test_select_popups_by_targeting():
    now = utcnow()
    popups = [
        _popup("everyone", priority=1),
        _popup("mobile-only", priority=5, targeting={"devices": ["mobile"]}),
        _popup("checkout", triggers={"pages": ["checkout"]}),
        _popup("expired", endDate=now - timedelta(hours=1)),
        _popup("upcoming", startDate=now + timedelta(hours=1)),
        _popup("new-visitors", targeting={"newVisitors": True}),
        _popup("disabled", isActive=False),
    ]
    desktop_home = [p["id"] for p in select_popups(popups, "desktop", "home", returning=True, now=now)]
    assert desktop_home == ["everyone"]

    mobile_checkout = [p["id"] for p in select_popups(popups, "mobile", "checkout", returning=False, now=now)]
    assert mobile_checkout == ["mobile-only", "everyone", "checkout", "new-visitors"]


def test_active_popups_endpoint(client, store):
    store.create("popups", {"title": "Sale", "isActive": True, "priority": 2, "triggers": {"pages": ["all_pages"]}})
    resp = client.get("/api/content/popups/active", params={"device": "tablet"})
    assert resp.json()["count"] == 1
    assert client.get("/api/content/popups/active", params={"device": "watch"}).status_code == 400


def test_pages_publish_flow(client, admin_headers):
    page = {"title": "About us", "slug": "about-us", "content": "<p>Hi</p>", "status": "draft"}
    assert client.put("/api/admin/pages/about-us", json=page, headers=admin_headers).json()["created"] is True
    assert client.get("/api/content/pages/about-us").status_code == 404

    client.put("/api/admin/pages/about-us", json={**page, "status": "published"}, headers=admin_headers)
    resp = client.get("/api/content/pages/about-us")
    assert resp.status_code == 200
    assert resp.json()["page"]["title"] == "About us"

    mismatch = client.put("/api/admin/pages/contact", json=page, headers=admin_headers)
    assert mismatch.status_code == 400


# -------------------------------
# Webhooks
# -------------------------------
def test_whatsapp_verification(client):
    ok = client.get(
        "/api/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
    )
    assert ok.status_code == 200
    assert ok.text == "12345"

    bad = client.get("/api/webhooks/whatsapp", params={"hub.mode": "subscribe", "hub.verify_token": "nope"})
    assert bad.status_code == 403
    assert client.get("/api/webhooks/whatsapp").status_code == 400


def test_whatsapp_messages_are_recorded(client, store):
    payload = {"entry": [{"changes": [{"value": {
        "messages": [{"id": "wamid.1", "from": "919876543210", "type": "text", "text": {"body": "Where is my order?"}}],
        "statuses": [{"id": "wamid.0", "recipient_id": "919876543210", "status": "delivered"}],
    }}]}]}
    resp = client.post("/api/webhooks/whatsapp", json=payload, headers={"X-API-Key": "hook-key"})
    assert resp.json()["processed"] == 2
    assert len(store.query("whatsappMessages")) == 2


def test_webhooks_require_api_key(client):
    assert client.post("/api/webhooks/email", json=[]).status_code == 401
    assert client.post("/api/webhooks/email", json=[], headers={"X-API-Key": "wrong"}).status_code == 401


def test_email_events_update_tracking(client, store):
    events = [
        {"sg_message_id": "m1", "email": "a@example.com", "event": "delivered", "timestamp": 1700000000},
        {"sg_message_id": "m1", "email": "a@example.com", "event": "open", "timestamp": 1700000100},
        {"email": "no-id@example.com", "event": "bounce"},
    ]
    resp = client.post("/api/webhooks/email", params={"apiKey": "hook-key"}, json=events)
    assert resp.json()["processed"] == 2
    assert store.get("emailTracking", "m1")["status"] == "open"

    not_a_list = client.post("/api/webhooks/email", params={"apiKey": "hook-key"}, json={"event": "open"})
    assert not_a_list.status_code == 400


def test_inventory_webhook(client, store):
    add_product(store, "oud", inventory=4)
    resp = client.post(
        "/api/webhooks/inventory",
        json={"productId": "oud", "quantity": 10, "operation": "subtract"},
        headers={"X-API-Key": "hook-key"},
    )
    assert resp.json()["newQuantity"] == 0
    assert store.get("products", "oud")["inventory"] == 0


def test_health_and_index(client):
    health = client.get("/api/health").json()
    assert health["status"] == "OK"
    assert health["environment"] == "test"
    assert "/api/coupons" in client.get("/api").json()["endpoints"]
