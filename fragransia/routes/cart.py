from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_store
from ..schemas import CartAdd, CartUpdate
from ..security import ensure_owner, get_current_user
from ..store import DocumentStore, utcnow

CART = "cart"
PRODUCTS = "products"

router = APIRouter(prefix="/api/cart", tags=["cart"])


def _available_product(store: DocumentStore, product_id: str) -> Dict[str, Any]:
    product = store.get(PRODUCTS, product_id)
    if not product or not product.get("isActive", True):
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def _check_stock(product: Dict[str, Any], quantity: int) -> None:
    inventory = int(product.get("inventory", 0))
    if inventory < quantity:
        raise HTTPException(status_code=400, detail=f"Only {inventory} items available in stock")


def add_to_cart(store: DocumentStore, user_id: str, product_id: str, quantity: int = 1, size=None) -> Dict[str, Any]:
    product = _available_product(store, product_id)
    now = utcnow()
    existing = [
        c for c in store.query(CART, {"userId": user_id, "productId": product_id})
        if c.get("size") == size
    ]
    if existing:
        item = existing[0]
        new_qty = int(item.get("quantity", 0)) + quantity
        _check_stock(product, new_qty)
        store.update(CART, item["id"], {"quantity": new_qty, "updatedAt": now})
        return {**item, "quantity": new_qty}

    _check_stock(product, quantity)
    data = {
        "userId": user_id,
        "productId": product_id,
        "quantity": quantity,
        "size": size,
        "addedAt": now,
        "updatedAt": now,
    }
    cart_id = store.create(CART, data)
    return {"id": cart_id, **data}


def _owned_item(store: DocumentStore, cart_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    item = store.get(CART, cart_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Cart item not found")
    ensure_owner(user, item.get("userId"))
    return item


@router.post("/add", status_code=201)
async def add_item(
    body: CartAdd,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    item = add_to_cart(store, current_user["uid"], body.product_id, body.quantity, body.size)
    return {"success": True, "message": "Item added to cart", "item": item}


@router.put("/update/{cart_id}")
async def update_item(
    cart_id: str,
    body: CartUpdate,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    item = _owned_item(store, cart_id, current_user)
    _check_stock(_available_product(store, item["productId"]), body.quantity)
    store.update(CART, cart_id, {"quantity": body.quantity, "updatedAt": utcnow()})
    return {"success": True, "message": "Cart updated", "item": {**item, "quantity": body.quantity}}


@router.delete("/remove/{cart_id}")
async def remove_item(
    cart_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    _owned_item(store, cart_id, current_user)
    store.delete(CART, cart_id)
    return {"success": True, "message": "Item removed from cart"}


@router.get("")
async def get_cart(
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    items: List[Dict[str, Any]] = []
    subtotal = 0.0
    for c in store.query(CART, {"userId": current_user["uid"]}, order_by="addedAt", descending=True):
        product = store.get(PRODUCTS, c["productId"])
        if not product or not product.get("isActive", True):
            continue
        line_total = float(product.get("price", 0)) * int(c.get("quantity", 1))
        subtotal += line_total
        items.append({
            "id": c["id"],
            "productId": c["productId"],
            "name": product.get("name"),
            "image": (product.get("images") or [None])[0],
            "price": product.get("price"),
            "quantity": c.get("quantity", 1),
            "size": c.get("size"),
            "inStock": int(product.get("inventory", 0)) >= int(c.get("quantity", 1)),
            "lineTotal": round(line_total, 2),
        })
    return {
        "success": True,
        "items": items,
        "summary": {
            "itemCount": sum(int(i["quantity"]) for i in items),
            "subtotal": round(subtotal, 2),
        },
    }


@router.delete("/clear")
async def clear_cart(
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    items = store.query(CART, {"userId": current_user["uid"]})
    for c in items:
        store.delete(CART, c["id"])
    return {"success": True, "message": "Cart cleared", "removed": len(items)}


@router.get("/count")
async def cart_count(
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    items = store.query(CART, {"userId": current_user["uid"]})
    return {"success": True, "count": sum(int(c.get("quantity", 1)) for c in items)}
