from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from ..config import Settings
from ..deps import get_app_settings, get_notifier, get_payment_gateway, get_store
from ..logger import get_logger
from ..notifications import Notifier
from ..payments import PAYMENTS, REFUNDS, RazorpayGateway, verify_payment_signature
from ..schemas import PaymentFailure, PaymentOrderCreate, PaymentVerify, RefundRequest
from ..security import ensure_owner, get_admin_user, get_current_user, sensitive_operation_limit
from ..store import DocumentStore, utcnow
from ..views import paginate, ts_to_iso

logger = get_logger("routes.payments")

ORDERS = "orders"

router = APIRouter(prefix="/api/payments", tags=["payments"])


def _owned_order(store: DocumentStore, order_id: str, user: dict) -> dict:
    order = store.get(ORDERS, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    ensure_owner(user, order.get("userId"))
    return order


@router.post("/create-order")
async def create_payment_order(
    body: PaymentOrderCreate,
    store: DocumentStore = Depends(get_store),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(get_current_user),
):
    order = _owned_order(store, body.order_id, current_user)
    if order.get("paymentStatus") == "completed":
        raise HTTPException(status_code=400, detail="Order already paid")
    if order.get("status") == "cancelled":
        raise HTTPException(status_code=400, detail="Order has been cancelled")

    amount = float((order.get("orderSummary") or {}).get("finalTotal", 0))
    rzp_order = gateway.create_order(
        amount,
        currency=body.currency,
        receipt=order.get("orderNumber") or body.order_id,
        notes={"orderId": body.order_id, "userId": current_user["uid"]},
    )
    store.update(ORDERS, body.order_id, {"razorpayOrderId": rzp_order["id"], "updatedAt": utcnow()})
    return {"success": True, "razorpayOrder": rzp_order, "key": gateway.key_id}


@router.post("/verify", dependencies=[Depends(sensitive_operation_limit("payment_verify"))])
async def verify_payment(
    body: PaymentVerify,
    background_tasks: BackgroundTasks,
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    notifier: Notifier = Depends(get_notifier),
    current_user: dict = Depends(get_current_user),
):
    if not verify_payment_signature(
        body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature, settings.razorpay_key_secret,
    ):
        logger.warning("Invalid payment signature for order %s", body.order_id)
        raise HTTPException(status_code=400, detail="Payment verification failed: invalid signature")

    order = _owned_order(store, body.order_id, current_user)
    if order.get("paymentStatus") == "completed":
        raise HTTPException(status_code=400, detail="Order already paid")
    # The signed gateway order must be the one issued for this order by /create-order
    if not order.get("razorpayOrderId") or order["razorpayOrderId"] != body.razorpay_order_id:
        raise HTTPException(status_code=400, detail="Payment does not belong to this order")

    now = utcnow()
    store.update(ORDERS, body.order_id, {
        "paymentStatus": "completed",
        "status": "confirmed",
        "razorpayPaymentId": body.razorpay_payment_id,
        "paymentVerifiedAt": now,
        "updatedAt": now,
    })
    amount = float((order.get("orderSummary") or {}).get("finalTotal", 0))
    store.create(PAYMENTS, {
        "orderId": body.order_id,
        "userId": current_user["uid"],
        "razorpayOrderId": body.razorpay_order_id,
        "razorpayPaymentId": body.razorpay_payment_id,
        "amount": amount,
        "currency": settings.currency,
        "status": "success",
        "method": "razorpay",
        "createdAt": now,
    })
    logger.info("Payment %s verified for order %s", body.razorpay_payment_id, body.order_id)
    background_tasks.add_task(
        notifier.notify_payment_confirmed, {**order, "id": body.order_id}, current_user.get("email"), body.razorpay_payment_id,
    )
    return {
        "success": True,
        "message": "Payment verified successfully",
        "orderId": body.order_id,
        "paymentId": body.razorpay_payment_id,
    }


@router.post("/failure")
async def payment_failure(
    body: PaymentFailure,
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    current_user: dict = Depends(get_current_user),
):
    order = _owned_order(store, body.order_id, current_user)
    now = utcnow()
    store.update(ORDERS, body.order_id, {
        "paymentStatus": "failed",
        "paymentError": body.error,
        "paymentFailedAt": now,
        "updatedAt": now,
    })
    store.create(PAYMENTS, {
        "orderId": body.order_id,
        "userId": current_user["uid"],
        "amount": float((order.get("orderSummary") or {}).get("finalTotal", 0)),
        "currency": settings.currency,
        "status": "failed",
        "method": "razorpay",
        "error": body.error,
        "createdAt": now,
    })
    logger.warning("Payment failed for order %s: %s", body.order_id, body.error.get("description"))
    return {"success": True, "message": "Payment failure recorded", "orderId": body.order_id}


@router.get("/history")
async def payment_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    payments = store.query(PAYMENTS, {"userId": current_user["uid"]}, order_by="createdAt", descending=True)
    views = [{**p, "createdAt": ts_to_iso(p.get("createdAt"))} for p in payments]
    return {"success": True, **paginate(views, page, limit, "payments")}


@router.post("/refund")
async def refund_payment(
    body: RefundRequest,
    background_tasks: BackgroundTasks,
    store: DocumentStore = Depends(get_store),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
    current_user: dict = Depends(get_admin_user),
):
    payment = store.get(PAYMENTS, body.payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    if payment.get("status") != "success":
        raise HTTPException(status_code=400, detail="Only successful payments can be refunded")
    amount = body.amount or float(payment.get("amount", 0))
    if amount > float(payment.get("amount", 0)):
        raise HTTPException(status_code=400, detail="Refund amount exceeds payment amount")

    refund = gateway.refund(
        payment["razorpayPaymentId"], amount, notes={"reason": body.reason, "orderId": payment.get("orderId")},
    )
    now = utcnow()
    store.set(REFUNDS, refund["id"], {
        "refundId": refund["id"],
        "paymentId": payment["razorpayPaymentId"],
        "orderId": payment.get("orderId"),
        "amount": amount,
        "reason": body.reason,
        "status": refund.get("status", "created"),
        "processedBy": current_user["uid"],
        "createdAt": now,
    }, merge=True)
    store.update(PAYMENTS, body.payment_id, {"status": "refunded", "refundId": refund["id"], "refundedAt": now})
    if payment.get("orderId"):
        store.set(ORDERS, payment["orderId"], {"paymentStatus": "refunded", "updatedAt": now}, merge=True)

    owner = store.get("users", payment.get("userId")) if payment.get("userId") else None
    background_tasks.add_task(notifier.notify_refund, (owner or {}).get("email"), payment["razorpayPaymentId"], amount)
    logger.info("Refund %s issued for payment %s by %s", refund["id"], body.payment_id, current_user["uid"])
    return {"success": True, "message": "Refund initiated", "refund": {"id": refund["id"], "amount": amount}}
