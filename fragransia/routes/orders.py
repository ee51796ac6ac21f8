import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path

from .. import coupons
from ..cache import clear_cache_pattern
from ..deps import get_notifier, get_shipping_client, get_store
from ..logger import get_logger
from ..notifications import Notifier
from ..schemas import CartLine, OrderCreate
from ..security import ensure_owner, get_current_user
from ..shipping import ShiprocketClient
from ..store import DocumentStore, Transaction, utcnow
from ..views import ts_to_iso

logger = get_logger("routes.orders")

ORDERS = "orders"
PRODUCTS = "products"
COUNTERS = "counters"

GST_RATE = 0.18
GIFT_WRAP_CHARGE = 50.0
CANCELLABLE = ("pending", "confirmed")

router = APIRouter(prefix="/api/orders", tags=["orders"])


class OrderRejected(ValueError):
    """Stock or availability problem detected inside the order transaction."""


# -------------------------------
# Placement (single transaction)
# -------------------------------
def place_order_txn(
    txn: Transaction,
    order_id: str,
    user: Dict[str, Any],
    order_data: OrderCreate,
) -> Dict[str, Any]:
    now = utcnow()

    # READS
    product_docs = [txn.get(PRODUCTS, item.product_id) for item in order_data.items]
    counter = txn.get(COUNTERS, ORDERS)
    redemption = None
    if order_data.coupon_code:
        redemption = coupons.read_redemption(txn, order_data.coupon_code, user["uid"], order_id)

    # Validate against authoritative product data
    requested: Dict[str, int] = {}
    for item in order_data.items:
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

    items: List[Dict[str, Any]] = []
    stock: Dict[str, Dict[str, Any]] = {}
    for item, product in zip(order_data.items, product_docs):
        if product is None or not product.get("isActive", True):
            raise OrderRejected(f"Product {item.product_id} unavailable")
        inventory = int(product.get("inventory", 0))
        if inventory < requested[item.product_id]:
            raise OrderRejected(f"Only {inventory} left for {product.get('name', item.product_id)}")
        stock[item.product_id] = product
        price = float(product.get("price", 0))
        items.append({
            "productId": item.product_id,
            "name": product.get("name"),
            "image": (product.get("images") or [None])[0],
            "sku": product.get("sku"),
            "weight": product.get("weight", 0.5),
            "price": price,
            "quantity": item.quantity,
            "size": item.size,
            "subtotal": coupons.round_money(price * item.quantity),
        })

    subtotal = coupons.round_money(sum(i["subtotal"] for i in items))
    discount = 0.0
    if redemption is not None:
        coupons.check_eligibility(redemption.coupon, subtotal, now, redemption.user_usage)
        lines = [CartLine(product_id=i["productId"], name=i["name"], price=i["price"], quantity=i["quantity"]) for i in items]
        discount = coupons.quote(redemption.coupon, subtotal, lines).discount_amount

    gift_wrap_charge = GIFT_WRAP_CHARGE if order_data.gift_wrap else 0.0
    taxable = max(0.0, subtotal - discount) + gift_wrap_charge
    tax = coupons.round_money(taxable * GST_RATE)
    shipping = coupons.SHIPPING_COST
    final_total = coupons.round_money(taxable + tax + shipping)

    sequence = int((counter or {}).get("value", 0)) + 1
    order = {
        "orderNumber": f"FRG{sequence:06d}",
        "userId": user["uid"],
        "email": user.get("email"),
        "items": items,
        "shippingAddress": order_data.shipping_address.to_document(),
        "billingAddress": (order_data.billing_address or order_data.shipping_address).to_document(),
        "orderSummary": {
            "subtotal": subtotal,
            "discount": discount,
            "giftWrapCharge": gift_wrap_charge,
            "shipping": shipping,
            "tax": tax,
            "finalTotal": final_total,
        },
        "couponCode": redemption.coupon.code if redemption else None,
        "giftWrap": order_data.gift_wrap,
        "status": "pending",
        "paymentStatus": "pending",
        "paymentMethod": order_data.payment_method,
        "notes": order_data.notes or "",
        "statusHistory": [{"status": "pending", "at": now}],
        "createdAt": now,
        "updatedAt": now,
    }

    # WRITES
    txn.set(COUNTERS, ORDERS, {"value": sequence})
    txn.create(ORDERS, order, doc_id=order_id)
    for product_id, qty in requested.items():
        product = stock[product_id]
        txn.update(PRODUCTS, product_id, {
            "inventory": int(product.get("inventory", 0)) - qty,
            "soldCount": int(product.get("soldCount", 0)) + qty,
            "updatedAt": now,
        })
    if redemption is not None:
        coupons.write_redemption(txn, redemption, discount, now)

    return {"id": order_id, **order}


def order_to_view(o: Dict[str, Any]) -> Dict[str, Any]:
    return {
        **{k: v for k, v in o.items() if k not in ("createdAt", "updatedAt", "statusHistory")},
        "createdAt": ts_to_iso(o.get("createdAt")),
        "updatedAt": ts_to_iso(o.get("updatedAt")),
        "statusHistory": [
            {**h, "at": ts_to_iso(h.get("at"))} for h in o.get("statusHistory") or []
        ],
    }


@router.post("", status_code=201)
async def create_order(
    order_data: OrderCreate,
    background_tasks: BackgroundTasks,
    store: DocumentStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
    current_user: dict = Depends(get_current_user),
):
    order_id = uuid.uuid4().hex[:20]
    try:
        order = store.run_transaction(lambda txn: place_order_txn(txn, order_id, current_user, order_data))
    except OrderRejected as e:
        raise HTTPException(status_code=409, detail=str(e))

    clear_cache_pattern("products")
    logger.info("Order %s placed by %s (total %.2f)", order["orderNumber"], current_user["uid"], order["orderSummary"]["finalTotal"])
    background_tasks.add_task(notifier.notify_order_placed, order, current_user.get("email"))
    return {"success": True, "message": "Order placed successfully", "order": order_to_view(order)}


# -------------------------------
# Reads
# -------------------------------
@router.get("")
async def list_my_orders(
    status: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    filters = {"userId": current_user["uid"]}
    if status:
        filters["status"] = status
    orders = store.query(ORDERS, filters, order_by="createdAt", descending=True)
    return {"success": True, "orders": [order_to_view(o) for o in orders], "count": len(orders)}


@router.get("/delivery/{pincode}")
async def delivery_estimate(
    pincode: str = Path(..., pattern=r"^\d{6}$"),
    cod: bool = False,
    shipping: ShiprocketClient = Depends(get_shipping_client),
):
    rates = await shipping.get_rates(pincode, cod=cod)
    couriers = [
        {
            "courierName": r.get("courier_name"),
            "rate": r.get("rate"),
            "estimatedDeliveryDays": r.get("estimated_delivery_days"),
            "etd": r.get("etd"),
        }
        for r in rates
    ]
    fastest = min((int(c["estimatedDeliveryDays"]) for c in couriers if str(c["estimatedDeliveryDays"] or "").isdigit()), default=None)
    return {
        "success": True,
        "pincode": pincode,
        "serviceable": bool(couriers),
        "estimatedDays": fastest,
        "couriers": couriers,
    }


def _load_order(store: DocumentStore, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = store.get(ORDERS, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    ensure_owner(user, order.get("userId"))
    return order


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    return {"success": True, "order": order_to_view(_load_order(store, order_id, current_user))}


@router.get("/{order_id}/track")
async def track_order(
    order_id: str,
    store: DocumentStore = Depends(get_store),
    shipping: ShiprocketClient = Depends(get_shipping_client),
    current_user: dict = Depends(get_current_user),
):
    order = _load_order(store, order_id, current_user)
    awb = (order.get("shipment") or {}).get("awbCode")
    if not awb:
        raise HTTPException(status_code=404, detail="Shipment has not been created for this order yet")
    tracking = await shipping.track_shipment(awb)
    return {"success": True, "orderId": order_id, "awbCode": awb, "tracking": tracking}


# -------------------------------
# Cancellation
# -------------------------------
def cancel_order_txn(txn: Transaction, order_id: str, user: Dict[str, Any], reason: str) -> Dict[str, Any]:
    order = txn.get(ORDERS, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    ensure_owner(user, order.get("userId"))
    if order.get("status") not in CANCELLABLE:
        raise HTTPException(status_code=400, detail=f"Order cannot be cancelled in status '{order.get('status')}'")
    restock: Dict[str, int] = {}
    for item in order.get("items") or []:
        restock[item["productId"]] = restock.get(item["productId"], 0) + int(item["quantity"])
    products = {pid: txn.get(PRODUCTS, pid) for pid in restock}

    now = utcnow()
    for pid, qty in restock.items():
        product = products[pid]
        if product is None:
            continue
        txn.update(PRODUCTS, pid, {
            "inventory": int(product.get("inventory", 0)) + qty,
            "soldCount": max(0, int(product.get("soldCount", 0)) - qty),
        })
    history = list(order.get("statusHistory") or []) + [{"status": "cancelled", "at": now, "note": reason}]
    txn.update(ORDERS, order_id, {
        "status": "cancelled",
        "cancelledAt": now,
        "cancelReason": reason,
        "statusHistory": history,
        "updatedAt": now,
    })
    return {**order, "status": "cancelled", "cancelledAt": now, "statusHistory": history, "updatedAt": now}


@router.put("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    reason: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    order = store.run_transaction(
        lambda txn: cancel_order_txn(txn, order_id, current_user, reason or "Cancelled by customer")
    )
    clear_cache_pattern("products")
    logger.info("Order %s cancelled by %s", order_id, current_user["uid"])
    return {"success": True, "message": "Order cancelled successfully", "order": order_to_view(order)}
