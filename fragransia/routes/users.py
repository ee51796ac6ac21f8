import uuid
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_store
from ..schemas import Address, PreferencesUpdate, ProfileUpdate, WishlistAdd
from ..security import USERS, get_current_user, public_user
from ..store import DocumentStore, utcnow
from ..views import product_to_view, ts_to_iso
from .cart import add_to_cart

PRODUCTS = "products"

router = APIRouter(prefix="/api/users", tags=["users"])


# -------------------------------
# Profile
# -------------------------------
@router.get("/profile")
async def get_profile(current_user: dict = Depends(get_current_user)):
    return {
        "success": True,
        "user": {
            **public_user(current_user),
            "addresses": current_user.get("addresses") or [],
            "preferences": current_user.get("preferences") or {},
            "createdAt": ts_to_iso(current_user.get("createdAt")),
            "lastLogin": ts_to_iso(current_user.get("lastLogin")),
        },
    }


@router.put("/profile")
async def update_profile(
    body: ProfileUpdate,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    updates = body.to_document(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    updates["updatedAt"] = utcnow()
    store.update(USERS, current_user["uid"], updates)
    return {"success": True, "message": "Profile updated", "user": public_user({**current_user, **updates})}


# -------------------------------
# Addresses
# -------------------------------
def _save_addresses(store: DocumentStore, uid: str, addresses: List[Dict[str, Any]]) -> None:
    store.update(USERS, uid, {"addresses": addresses, "updatedAt": utcnow()})


def _with_single_default(addresses: List[Dict[str, Any]], default_id: str) -> List[Dict[str, Any]]:
    return [{**a, "isDefault": a["id"] == default_id} for a in addresses]


@router.get("/addresses")
async def list_addresses(current_user: dict = Depends(get_current_user)):
    return {"success": True, "addresses": current_user.get("addresses") or []}


@router.post("/addresses", status_code=201)
async def add_address(
    body: Address,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    addresses = list(current_user.get("addresses") or [])
    address = {"id": uuid.uuid4().hex[:12], **body.to_document()}
    addresses.append(address)
    if address["isDefault"] or len(addresses) == 1:
        addresses = _with_single_default(addresses, address["id"])
    _save_addresses(store, current_user["uid"], addresses)
    return {"success": True, "message": "Address added", "addresses": addresses}


@router.put("/addresses/{address_id}")
async def update_address(
    address_id: str,
    body: Address,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    addresses = list(current_user.get("addresses") or [])
    if not any(a.get("id") == address_id for a in addresses):
        raise HTTPException(status_code=404, detail="Address not found")
    updated = {"id": address_id, **body.to_document()}
    addresses = [updated if a.get("id") == address_id else a for a in addresses]
    if updated["isDefault"]:
        addresses = _with_single_default(addresses, address_id)
    _save_addresses(store, current_user["uid"], addresses)
    return {"success": True, "message": "Address updated", "addresses": addresses}


@router.delete("/addresses/{address_id}")
async def delete_address(
    address_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    addresses = list(current_user.get("addresses") or [])
    removed = [a for a in addresses if a.get("id") == address_id]
    if not removed:
        raise HTTPException(status_code=404, detail="Address not found")
    addresses = [a for a in addresses if a.get("id") != address_id]
    if removed[0].get("isDefault") and addresses:
        addresses = _with_single_default(addresses, addresses[0]["id"])
    _save_addresses(store, current_user["uid"], addresses)
    return {"success": True, "message": "Address deleted", "addresses": addresses}


# -------------------------------
# Wishlist
# -------------------------------
@router.get("/wishlist")
async def get_wishlist(
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    products = []
    for product_id in current_user.get("wishlist") or []:
        p = store.get(PRODUCTS, product_id)
        if p and p.get("isActive", True):
            products.append(product_to_view(p))
    return {"success": True, "wishlist": products, "count": len(products)}


@router.post("/wishlist", status_code=201)
async def add_to_wishlist(
    body: WishlistAdd,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    if store.get(PRODUCTS, body.product_id) is None:
        raise HTTPException(status_code=404, detail="Product not found")
    wishlist = list(current_user.get("wishlist") or [])
    if body.product_id in wishlist:
        raise HTTPException(status_code=400, detail="Product already in wishlist")
    wishlist.append(body.product_id)
    store.update(USERS, current_user["uid"], {"wishlist": wishlist, "updatedAt": utcnow()})
    return {"success": True, "message": "Added to wishlist", "wishlist": wishlist}


@router.delete("/wishlist/{product_id}")
async def remove_from_wishlist(
    product_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    wishlist = list(current_user.get("wishlist") or [])
    if product_id not in wishlist:
        raise HTTPException(status_code=404, detail="Product not in wishlist")
    wishlist.remove(product_id)
    store.update(USERS, current_user["uid"], {"wishlist": wishlist, "updatedAt": utcnow()})
    return {"success": True, "message": "Removed from wishlist", "wishlist": wishlist}


@router.post("/wishlist/{product_id}/move-to-cart")
async def move_to_cart(
    product_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    wishlist = list(current_user.get("wishlist") or [])
    if product_id not in wishlist:
        raise HTTPException(status_code=404, detail="Product not in wishlist")
    item = add_to_cart(store, current_user["uid"], product_id, 1)
    wishlist.remove(product_id)
    store.update(USERS, current_user["uid"], {"wishlist": wishlist, "updatedAt": utcnow()})
    return {"success": True, "message": "Moved to cart", "item": item, "wishlist": wishlist}


# -------------------------------
# Preferences
# -------------------------------
@router.put("/preferences")
async def update_preferences(
    body: PreferencesUpdate,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    preferences = {**(current_user.get("preferences") or {}), **body.to_document(exclude_none=True)}
    store.update(USERS, current_user["uid"], {"preferences": preferences, "updatedAt": utcnow()})
    return {"success": True, "message": "Preferences updated", "preferences": preferences}
