"""
Razorpay integration: order creation, refunds, signature checks and
webhook event handling.
"""
import hashlib
import hmac
from typing import Any, Dict, Optional, Union

import razorpay

from .logger import get_logger
from .store import DocumentStore, utcnow

logger = get_logger("payments")

ORDERS = "orders"
PAYMENTS = "payments"
REFUNDS = "refunds"
TRANSACTIONS = "transactions"


# -------------------------------
# Signatures
# -------------------------------
def _hmac_hex(secret: str, message: Union[str, bytes]) -> str:
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    razorpay_order_id: str,
    razorpay_payment_id: str,
    signature: str,
    secret: Optional[str],
) -> bool:
    """Checkout signature: HMAC-SHA256 of "order_id|payment_id" with the key secret."""
    if not secret or not signature:
        return False
    expected = _hmac_hex(secret, f"{razorpay_order_id}|{razorpay_payment_id}")
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(_hmac_hex(secret, body), signature)


def to_paise(amount: float) -> int:
    return int(round(amount * 100))


# -------------------------------
# Gateway client
# -------------------------------
class RazorpayGateway:
    def __init__(self, key_id: Optional[str], key_secret: Optional[str]):
        self.key_id = key_id
        self.key_secret = key_secret
        self._client = None

    @property
    def client(self) -> razorpay.Client:
        if self._client is None:
            if not self.key_id or not self.key_secret:
                raise RuntimeError("Razorpay is not configured (RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET)")
            self._client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return self._client

    def create_order(
        self,
        amount: float,
        currency: str = "INR",
        receipt: Optional[str] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        order = self.client.order.create({
            "amount": to_paise(amount),
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
            "notes": notes or {},
        })
        logger.info("Razorpay order %s created for receipt %s", order.get("id"), receipt)
        return order

    def refund(
        self,
        payment_id: str,
        amount: Optional[float] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {"notes": notes or {}}
        if amount is not None:
            data["amount"] = to_paise(amount)
        refund = self.client.payment.refund(payment_id, data)
        logger.info("Razorpay refund %s issued for payment %s", refund.get("id"), payment_id)
        return refund


# -------------------------------
# Webhook events
# -------------------------------
def _order_id_for(entity: Dict[str, Any], store: DocumentStore) -> Optional[str]:
    notes = entity.get("notes") or {}
    if isinstance(notes, dict) and notes.get("orderId"):
        return notes["orderId"]
    rzp_order_id = entity.get("order_id") or entity.get("id")
    if not rzp_order_id:
        return None
    matches = store.query(ORDERS, {"razorpayOrderId": rzp_order_id}, limit=1)
    return matches[0]["id"] if matches else None


def handle_payment_captured(store: DocumentStore, payment: Dict[str, Any]) -> None:
    now = utcnow()
    store.set(TRANSACTIONS, payment["id"], {
        "paymentId": payment["id"],
        "razorpayOrderId": payment.get("order_id"),
        "amount": payment.get("amount", 0) / 100,
        "currency": payment.get("currency"),
        "method": payment.get("method"),
        "status": "captured",
        "capturedAt": now,
    }, merge=True)
    order_id = _order_id_for(payment, store)
    if order_id:
        store.set(ORDERS, order_id, {
            "paymentStatus": "completed",
            "status": "confirmed",
            "razorpayPaymentId": payment["id"],
            "updatedAt": now,
        }, merge=True)
    logger.info("Payment captured: %s (order %s)", payment["id"], order_id)


def handle_payment_failed(store: DocumentStore, payment: Dict[str, Any]) -> None:
    now = utcnow()
    store.set(TRANSACTIONS, payment["id"], {
        "paymentId": payment["id"],
        "razorpayOrderId": payment.get("order_id"),
        "status": "failed",
        "errorCode": payment.get("error_code"),
        "errorDescription": payment.get("error_description"),
        "failedAt": now,
    }, merge=True)
    order_id = _order_id_for(payment, store)
    if order_id:
        store.set(ORDERS, order_id, {
            "paymentStatus": "failed",
            "paymentError": {
                "code": payment.get("error_code"),
                "description": payment.get("error_description"),
            },
            "updatedAt": now,
        }, merge=True)
    logger.warning("Payment failed: %s (order %s)", payment["id"], order_id)


def handle_order_paid(store: DocumentStore, rzp_order: Dict[str, Any]) -> None:
    order_id = _order_id_for(rzp_order, store)
    if order_id:
        store.set(ORDERS, order_id, {
            "paymentStatus": "completed",
            "status": "confirmed",
            "paidAt": utcnow(),
            "updatedAt": utcnow(),
        }, merge=True)
    logger.info("Razorpay order paid: %s (order %s)", rzp_order.get("id"), order_id)


def handle_refund_created(store: DocumentStore, refund: Dict[str, Any]) -> None:
    store.set(REFUNDS, refund["id"], {
        "refundId": refund["id"],
        "paymentId": refund.get("payment_id"),
        "amount": refund.get("amount", 0) / 100,
        "status": "created",
        "createdAt": utcnow(),
    }, merge=True)
    logger.info("Refund created: %s for payment %s", refund["id"], refund.get("payment_id"))


def handle_refund_processed(store: DocumentStore, refund: Dict[str, Any]) -> None:
    now = utcnow()
    store.set(REFUNDS, refund["id"], {
        "refundId": refund["id"],
        "paymentId": refund.get("payment_id"),
        "status": "processed",
        "processedAt": now,
    }, merge=True)
    matches = store.query(ORDERS, {"razorpayPaymentId": refund.get("payment_id")}, limit=1)
    if matches:
        store.set(ORDERS, matches[0]["id"], {"paymentStatus": "refunded", "updatedAt": now}, merge=True)
    logger.info("Refund processed: %s", refund["id"])


WEBHOOK_HANDLERS = {
    "payment.captured": ("payment", handle_payment_captured),
    "payment.failed": ("payment", handle_payment_failed),
    "order.paid": ("order", handle_order_paid),
    "refund.created": ("refund", handle_refund_created),
    "refund.processed": ("refund", handle_refund_processed),
}


def handle_webhook_event(store: DocumentStore, event: str, payload: Dict[str, Any]) -> bool:
    """Dispatch a Razorpay webhook event; returns False for events that are ignored."""
    if event not in WEBHOOK_HANDLERS:
        logger.info("Unhandled Razorpay webhook event: %s", event)
        return False
    entity_name, handler = WEBHOOK_HANDLERS[event]
    entity = ((payload or {}).get(entity_name) or {}).get("entity")
    if not entity:
        raise ValueError(f"Webhook payload missing {entity_name}.entity")
    handler(store, entity)
    return True
