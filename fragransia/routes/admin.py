import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query

from .. import coupons
from ..cache import clear_cache_pattern, get_cache, set_cache
from ..config import Settings
from ..deps import get_app_settings, get_notifier, get_shipping_client, get_store
from ..logger import get_logger
from ..notifications import Notifier
from ..schemas import (
    InventoryAdjust,
    OrderStatusUpdate,
    PageUpsert,
    PopupUpsert,
    ProductCreate,
    ProductUpdate,
    ReviewModeration,
    ShipmentCreate,
    UserAdminUpdate,
)
from ..security import USERS, get_admin_user, get_staff_user, public_user
from ..shipping import ShiprocketClient, build_shipment_payload
from ..store import DocumentStore, utcnow
from ..views import paginate, product_to_view, ts_to_iso
from .content import PAGES, POPUPS
from .orders import CANCELLABLE, ORDERS, PRODUCTS, cancel_order_txn, order_to_view
from .reviews import REVIEWS, refresh_product_rating, review_to_view
from .webhooks import adjust_inventory

logger = get_logger("routes.admin")

LOW_STOCK_THRESHOLD = 10

router = APIRouter(prefix="/api/admin", tags=["admin"])


# -------------------------------
# Dashboard
# -------------------------------
@router.get("/stats")
async def dashboard_stats(
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    cached = get_cache("stats_dashboard", "stats")
    if cached is not None:
        return {"success": True, "stats": cached}

    orders = store.query(ORDERS, order_by="createdAt", descending=True)
    products = store.query(PRODUCTS)
    paid = [o for o in orders if o.get("paymentStatus") == "completed"]
    status_counts: Dict[str, int] = {}
    for o in orders:
        status_counts[o.get("status", "pending")] = status_counts.get(o.get("status", "pending"), 0) + 1

    stats = {
        "totalOrders": len(orders),
        "totalRevenue": coupons.round_money(sum(float((o.get("orderSummary") or {}).get("finalTotal", 0)) for o in paid)),
        "ordersByStatus": status_counts,
        "totalProducts": len([p for p in products if p.get("isActive", True)]),
        "lowStockProducts": [
            {"id": p["id"], "name": p.get("name"), "inventory": p.get("inventory", 0)}
            for p in products
            if p.get("isActive", True) and int(p.get("inventory", 0)) < LOW_STOCK_THRESHOLD
        ],
        "totalUsers": len(store.query(USERS)),
        "activeCoupons": len(store.query(coupons.COUPONS, {"isActive": True})),
        "pendingReviews": len(store.query(REVIEWS, {"status": "pending"})),
        "recentOrders": [order_to_view(o) for o in orders[:5]],
    }
    set_cache("stats_dashboard", stats)
    return {"success": True, "stats": stats}


# -------------------------------
# Orders
# -------------------------------
@router.get("/orders")
async def list_orders(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    filters = {"status": status} if status else None
    orders = store.query(ORDERS, filters, order_by="createdAt", descending=True)
    return {"success": True, **paginate([order_to_view(o) for o in orders], page, limit, "orders")}


@router.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    order = store.get(ORDERS, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    if body.status == "cancelled":
        if order.get("status") not in CANCELLABLE:
            raise HTTPException(status_code=400, detail=f"Order cannot be cancelled in status '{order.get('status')}'")
        order = store.run_transaction(
            lambda txn: cancel_order_txn(txn, order_id, current_user, body.note or "Cancelled by admin")
        )
        clear_cache_pattern("products")
    else:
        now = utcnow()
        history = list(order.get("statusHistory") or []) + [
            {"status": body.status, "at": now, "note": body.note, "by": current_user["uid"]}
        ]
        updates: Dict[str, Any] = {"status": body.status, "statusHistory": history, "updatedAt": now}
        if body.status == "delivered":
            updates["deliveredAt"] = now
            if order.get("paymentMethod") == "cod":
                updates["paymentStatus"] = "completed"
        store.update(ORDERS, order_id, updates)
        order = {**order, **updates}

    clear_cache_pattern("stats")
    logger.info("Order %s status -> %s by %s", order_id, body.status, current_user["uid"])
    return {"success": True, "message": "Order status updated", "order": order_to_view(order)}


@router.post("/orders/{order_id}/ship")
async def create_shipment(
    order_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[ShipmentCreate] = None,
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    shipping: ShiprocketClient = Depends(get_shipping_client),
    notifier: Notifier = Depends(get_notifier),
    current_user: dict = Depends(get_staff_user),
):
    order = store.get(ORDERS, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.get("status") == "cancelled":
        raise HTTPException(status_code=400, detail="Cannot ship a cancelled order")
    if (order.get("shipment") or {}).get("shipmentId"):
        raise HTTPException(status_code=409, detail="Shipment already created for this order")
    if order.get("paymentMethod") != "cod" and order.get("paymentStatus") != "completed":
        raise HTTPException(status_code=400, detail="Order has not been paid")

    body = body or ShipmentCreate()
    payload = build_shipment_payload(order, settings, body.length, body.breadth, body.height, body.weight)
    result = await shipping.create_shipment(payload)

    now = utcnow()
    shipment = {
        "shiprocketOrderId": result.get("order_id"),
        "shipmentId": result.get("shipment_id"),
        "awbCode": result.get("awb_code"),
        "courierName": result.get("courier_name"),
        "status": result.get("status", "created"),
        "createdAt": now,
    }
    history = list(order.get("statusHistory") or []) + [{"status": "shipped", "at": now, "by": current_user["uid"]}]
    store.update(ORDERS, order_id, {"shipment": shipment, "status": "shipped", "statusHistory": history, "updatedAt": now})
    order = {**order, "shipment": shipment, "status": "shipped", "statusHistory": history}
    background_tasks.add_task(notifier.notify_shipped, order, order.get("email"), shipment["awbCode"])
    return {"success": True, "message": "Shipment created", "shipment": {**shipment, "createdAt": ts_to_iso(now)}}


@router.post("/orders/{order_id}/cancel-shipment")
async def cancel_shipment(
    order_id: str,
    store: DocumentStore = Depends(get_store),
    shipping: ShiprocketClient = Depends(get_shipping_client),
    current_user: dict = Depends(get_staff_user),
):
    order = store.get(ORDERS, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    shipment = order.get("shipment") or {}
    if not shipment.get("awbCode"):
        raise HTTPException(status_code=400, detail="Order has no shipment to cancel")

    await shipping.cancel_shipment(shipment["awbCode"])
    now = utcnow()
    store.update(ORDERS, order_id, {
        "shipment": {**shipment, "status": "cancelled", "cancelledAt": now},
        "status": "processing",
        "updatedAt": now,
    })
    return {"success": True, "message": "Shipment cancelled"}


@router.post("/orders/{order_id}/label")
async def shipment_label(
    order_id: str,
    store: DocumentStore = Depends(get_store),
    shipping: ShiprocketClient = Depends(get_shipping_client),
    current_user: dict = Depends(get_staff_user),
):
    order = store.get(ORDERS, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    shipment_id = (order.get("shipment") or {}).get("shipmentId")
    if not shipment_id:
        raise HTTPException(status_code=400, detail="Order has no shipment")
    label = await shipping.generate_label(str(shipment_id))
    return {"success": True, "labelUrl": label.get("label_url"), "label": label}


@router.get("/shipping/pickup-locations")
async def pickup_locations(
    shipping: ShiprocketClient = Depends(get_shipping_client),
    current_user: dict = Depends(get_staff_user),
):
    data = await shipping.get_pickup_locations()
    return {"success": True, "locations": (data.get("data") or {}).get("shipping_address") or []}


# -------------------------------
# Products
# -------------------------------
@router.post("/products", status_code=201)
async def create_product(
    body: ProductCreate,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    now = utcnow()
    data = {**body.to_document(), "soldCount": 0, "rating": 0, "reviewCount": 0, "createdAt": now, "updatedAt": now}
    product_id = store.create(PRODUCTS, data)
    clear_cache_pattern("products")
    clear_cache_pattern("categories")
    logger.info("Product %s created by %s", product_id, current_user["uid"])
    return {"success": True, "message": "Product created", "product": product_to_view({"id": product_id, **data})}


@router.put("/products/{product_id}")
async def update_product(
    product_id: str,
    body: ProductUpdate,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    existing = store.get(PRODUCTS, product_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Product not found")
    updates = body.to_document(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    updates["updatedAt"] = utcnow()
    store.update(PRODUCTS, product_id, updates)
    clear_cache_pattern("products")
    clear_cache_pattern("categories")
    return {"success": True, "message": "Product updated", "product": product_to_view({**existing, **updates})}


@router.delete("/products/{product_id}")
async def delete_product(
    product_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    if store.get(PRODUCTS, product_id) is None:
        raise HTTPException(status_code=404, detail="Product not found")
    # Orders and reviews keep referencing the product, so it is only deactivated
    store.update(PRODUCTS, product_id, {"isActive": False, "updatedAt": utcnow()})
    clear_cache_pattern("products")
    clear_cache_pattern("categories")
    return {"success": True, "message": "Product deleted"}


@router.post("/products/inventory")
async def update_inventory(
    body: InventoryAdjust,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    return {"success": True, "message": "Inventory updated successfully", **adjust_inventory(store, body)}


# -------------------------------
# Coupons
# -------------------------------
@router.get("/coupons")
async def list_coupons(
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    found = coupons.list_coupons(store)
    return {"success": True, "coupons": found, "count": len(found)}


@router.post("/coupons", status_code=201)
async def create_coupon(
    body: Dict[str, Any] = Body(...),
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    if not coupons.normalize_code(body.get("code", "")):
        raise HTTPException(status_code=400, detail="Coupon code is required")
    coupon = coupons.create_coupon(store, body)
    return {"success": True, "message": "Coupon created", "coupon": coupon.model_dump(by_alias=True)}


@router.put("/coupons/{code}")
async def update_coupon(
    code: str,
    body: Dict[str, Any] = Body(...),
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    coupon = coupons.update_coupon(store, code, body)
    return {"success": True, "message": "Coupon updated", "coupon": coupon.model_dump(by_alias=True)}


@router.delete("/coupons/{code}")
async def delete_coupon(
    code: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    coupons.delete_coupon(store, code)
    return {"success": True, "message": "Coupon deleted"}


@router.get("/coupons/{code}/stats")
async def coupon_stats(
    code: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    return {"success": True, **coupons.coupon_stats(store, code)}


# -------------------------------
# Users
# -------------------------------
@router.get("/users")
async def list_users(
    role: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    users = store.query(USERS, {"role": role} if role else None, order_by="createdAt", descending=True)
    if search:
        s = search.lower()
        users = [
            u for u in users
            if s in (u.get("email") or "").lower()
            or s in f"{u.get('firstName', '')} {u.get('lastName', '')}".lower()
        ]
    views = [
        {**public_user(u), "isActive": u.get("isActive", True), "createdAt": ts_to_iso(u.get("createdAt"))}
        for u in users
    ]
    return {"success": True, **paginate(views, page, limit, "users")}


@router.put("/users/{uid}")
async def update_user(
    uid: str,
    body: UserAdminUpdate,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    user = store.get(USERS, uid)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if uid == current_user["uid"] and (body.role not in (None, "admin") or body.is_active is False):
        raise HTTPException(status_code=400, detail="You cannot demote or deactivate your own account")
    updates = body.to_document(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    updates["updatedAt"] = utcnow()
    store.update(USERS, uid, updates)
    logger.info("User %s updated by %s: %s", uid, current_user["uid"], sorted(updates))
    user = {**user, **updates}
    return {
        "success": True,
        "message": "User updated",
        "user": {**public_user(user), "isActive": user.get("isActive", True)},
    }


# -------------------------------
# Reviews
# -------------------------------
@router.get("/reviews")
async def list_reviews(
    status: str = Query("pending", pattern="^(pending|approved|rejected)$"),
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    reviews = store.query(REVIEWS, {"status": status}, order_by="createdAt", descending=True)
    return {"success": True, "reviews": [review_to_view(r) for r in reviews], "count": len(reviews)}


@router.put("/reviews/{review_id}")
async def moderate_review(
    review_id: str,
    body: ReviewModeration,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    review = store.get(REVIEWS, review_id)
    if review is None:
        raise HTTPException(status_code=404, detail="Review not found")
    store.update(REVIEWS, review_id, {
        "status": body.status,
        "moderatedBy": current_user["uid"],
        "moderatedAt": utcnow(),
    })
    refresh_product_rating(store, review["productId"])
    return {"success": True, "message": f"Review {body.status}"}


@router.delete("/reviews/{review_id}")
async def delete_review(
    review_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    review = store.get(REVIEWS, review_id)
    if review is None:
        raise HTTPException(status_code=404, detail="Review not found")
    store.delete(REVIEWS, review_id)
    refresh_product_rating(store, review["productId"])
    return {"success": True, "message": "Review deleted"}


# -------------------------------
# Pages
# -------------------------------
@router.get("/pages")
async def list_pages(
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    pages = store.query(PAGES, order_by="updatedAt", descending=True)
    return {"success": True, "pages": [{**p, "updatedAt": ts_to_iso(p.get("updatedAt"))} for p in pages]}


@router.put("/pages/{slug}")
async def upsert_page(
    slug: str,
    body: PageUpsert,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    if body.slug != slug:
        raise HTTPException(status_code=400, detail="Slug in body does not match URL")
    existing = store.get(PAGES, slug)
    now = utcnow()
    data = {**body.to_document(), "updatedAt": now, "updatedBy": current_user["uid"]}
    data["createdAt"] = existing.get("createdAt", now) if existing else now
    store.set(PAGES, slug, data)
    clear_cache_pattern(f"pages_{slug}")
    return {"success": True, "message": "Page saved", "created": existing is None}


@router.delete("/pages/{slug}")
async def delete_page(
    slug: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    if store.get(PAGES, slug) is None:
        raise HTTPException(status_code=404, detail="Page not found")
    store.delete(PAGES, slug)
    clear_cache_pattern(f"pages_{slug}")
    return {"success": True, "message": "Page deleted"}


# -------------------------------
# Popups
# -------------------------------
@router.get("/popups")
async def list_popups(
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    popups = store.query(POPUPS, order_by="priority", descending=True)
    return {"success": True, "popups": popups, "count": len(popups)}


@router.post("/popups", status_code=201)
async def create_popup(
    body: PopupUpsert,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    now = utcnow()
    popup_id = uuid.uuid4().hex[:20]
    store.create(POPUPS, {**body.to_document(), "createdAt": now, "updatedAt": now}, doc_id=popup_id)
    return {"success": True, "message": "Popup created", "id": popup_id}


@router.put("/popups/{popup_id}")
async def update_popup(
    popup_id: str,
    body: PopupUpsert,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_staff_user),
):
    existing = store.get(POPUPS, popup_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Popup not found")
    store.set(POPUPS, popup_id, {**body.to_document(), "createdAt": existing.get("createdAt"), "updatedAt": utcnow()})
    return {"success": True, "message": "Popup updated"}


@router.delete("/popups/{popup_id}")
async def delete_popup(
    popup_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    if store.get(POPUPS, popup_id) is None:
        raise HTTPException(status_code=404, detail="Popup not found")
    store.delete(POPUPS, popup_id)
    return {"success": True, "message": "Popup deleted"}
