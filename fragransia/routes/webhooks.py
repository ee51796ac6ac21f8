import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from ..cache import clear_cache_pattern
from ..config import Settings
from ..deps import get_app_settings, get_store
from ..logger import get_logger
from ..payments import handle_webhook_event, verify_webhook_signature
from ..schemas import InventoryAdjust
from ..security import require_webhook_key
from ..store import DocumentStore, to_datetime, utcnow

logger = get_logger("routes.webhooks")

PRODUCTS = "products"
EMAIL_TRACKING = "emailTracking"
WHATSAPP_MESSAGES = "whatsappMessages"

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


# -------------------------------
# Razorpay
# -------------------------------
@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    body = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    if not verify_webhook_signature(body, signature, settings.razorpay_webhook_secret):
        logger.warning("Rejected Razorpay webhook with invalid signature")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    logger.info("Razorpay webhook received: %s", event.get("event"))
    try:
        handled = handle_webhook_event(store, event.get("event", ""), event.get("payload") or {})
    except (KeyError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid webhook payload: {e}")
    return {"success": True, "handled": handled, "message": "Webhook processed successfully"}


# -------------------------------
# WhatsApp Cloud API
# -------------------------------
@router.get("/whatsapp", response_class=PlainTextResponse)
async def whatsapp_verify(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: str = Query("", alias="hub.challenge"),
    settings: Settings = Depends(get_app_settings),
):
    if not mode or not token:
        raise HTTPException(status_code=400, detail="Missing verification parameters")
    if mode != "subscribe" or not settings.whatsapp_verify_token or token != settings.whatsapp_verify_token:
        raise HTTPException(status_code=403, detail="Verification failed")
    logger.info("WhatsApp webhook verified")
    return challenge


def _whatsapp_messages(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    messages = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for msg in value.get("messages") or []:
                messages.append({
                    "messageId": msg.get("id"),
                    "from": msg.get("from"),
                    "type": msg.get("type"),
                    "text": (msg.get("text") or {}).get("body"),
                    "timestamp": msg.get("timestamp"),
                })
            for status in value.get("statuses") or []:
                messages.append({
                    "messageId": status.get("id"),
                    "to": status.get("recipient_id"),
                    "type": "status",
                    "status": status.get("status"),
                    "timestamp": status.get("timestamp"),
                })
    return messages


@router.post("/whatsapp", dependencies=[Depends(require_webhook_key)])
async def whatsapp_webhook(request: Request, store: DocumentStore = Depends(get_store)):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    messages = _whatsapp_messages(payload)
    for msg in messages:
        store.create(WHATSAPP_MESSAGES, {**msg, "receivedAt": utcnow()})
    logger.info("WhatsApp webhook: %d message(s) recorded", len(messages))
    return {"success": True, "message": "Webhook processed successfully", "processed": len(messages)}


# -------------------------------
# Email delivery events
# -------------------------------
@router.post("/email", dependencies=[Depends(require_webhook_key)])
async def email_webhook(request: Request, store: DocumentStore = Depends(get_store)):
    try:
        events = await request.json()
    except ValueError:
        events = None
    if not isinstance(events, list):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    processed = 0
    for event in events:
        message_id = event.get("sg_message_id") or event.get("messageId")
        if not message_id:
            continue
        occurred = to_datetime(event.get("timestamp")) or utcnow()
        store.set(EMAIL_TRACKING, message_id, {
            "messageId": message_id,
            "email": event.get("email"),
            "status": event.get("event"),
            "reason": event.get("reason"),
            "lastEventAt": occurred,
            "updatedAt": utcnow(),
        }, merge=True)
        processed += 1
    return {"success": True, "message": "Email webhook processed successfully", "processed": processed}


# -------------------------------
# Inventory
# -------------------------------
def adjust_inventory(store: DocumentStore, body: InventoryAdjust) -> Dict[str, Any]:
    product = store.get(PRODUCTS, body.product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    previous = int(product.get("inventory", 0))
    if body.operation == "add":
        new_quantity = previous + body.quantity
    elif body.operation == "subtract":
        new_quantity = max(0, previous - body.quantity)
    else:
        new_quantity = max(0, body.quantity)
    store.update(PRODUCTS, body.product_id, {"inventory": new_quantity, "updatedAt": utcnow()})
    clear_cache_pattern("products")
    logger.info(
        "Inventory %s on %s: %d -> %d (%s)",
        body.operation, body.product_id, previous, new_quantity, body.reason or "no reason",
    )
    return {"previousQuantity": previous, "newQuantity": new_quantity}


@router.post("/inventory", dependencies=[Depends(require_webhook_key)])
async def inventory_webhook(body: InventoryAdjust, store: DocumentStore = Depends(get_store)):
    result = adjust_inventory(store, body)
    return {"success": True, "message": "Inventory updated successfully", **result}
