from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..cache import get_cache, set_cache
from ..deps import get_store
from ..store import DocumentStore, to_datetime
from ..views import paginate, product_to_view, ts_to_iso

PRODUCTS = "products"
REVIEWS = "reviews"


def _created_ts(p) -> float:
    created = to_datetime(p.get("createdAt"))
    return created.timestamp() if created else 0.0


SORTS = {
    "newest": (_created_ts, True),
    "price-low": (lambda p: float(p.get("price", 0)), False),
    "price-high": (lambda p: float(p.get("price", 0)), True),
    "rating": (lambda p: float(p.get("rating", 0)), True),
    "name": (lambda p: (p.get("name") or "").lower(), False),
}

router = APIRouter(prefix="/api/products", tags=["products"])


def active_products(store: DocumentStore):
    cached = get_cache("products_all", "products")
    if cached is not None:
        return cached
    items = store.query(PRODUCTS, {"isActive": True})
    set_cache("products_all", items)
    return items


@router.get("")
async def list_products(
    category: Optional[str] = None,
    brand: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
    sort: str = Query("newest", pattern="^(newest|price-low|price-high|rating|name)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    store: DocumentStore = Depends(get_store),
):
    items = active_products(store)
    if category:
        items = [p for p in items if (p.get("category") or "").lower() == category.lower()]
    if brand:
        items = [p for p in items if (p.get("brand") or "").lower() == brand.lower()]
    if search:
        s = search.lower()
        items = [
            p for p in items
            if s in (p.get("name") or "").lower()
            or s in (p.get("description") or "").lower()
            or any(s in str(t).lower() for t in p.get("tags") or [])
        ]
    if min_price is not None:
        items = [p for p in items if float(p.get("price", 0)) >= min_price]
    if max_price is not None:
        items = [p for p in items if float(p.get("price", 0)) <= max_price]

    key, reverse = SORTS[sort]
    items = sorted(items, key=key, reverse=reverse)
    return {"success": True, **paginate([product_to_view(p) for p in items], page, limit, "products")}


@router.get("/categories/list")
async def list_categories(store: DocumentStore = Depends(get_store)):
    cached = get_cache("categories_all", "categories")
    if cached is not None:
        return {"success": True, "categories": cached}
    counts = {}
    for p in active_products(store):
        if p.get("category"):
            counts[p["category"]] = counts.get(p["category"], 0) + 1
    categories = [{"name": name, "count": count} for name, count in sorted(counts.items())]
    set_cache("categories_all", categories)
    return {"success": True, "categories": categories}


@router.get("/featured/list")
async def featured_products(
    limit: int = Query(8, ge=1, le=50),
    store: DocumentStore = Depends(get_store),
):
    items = [p for p in active_products(store) if p.get("isFeatured")]
    items.sort(key=lambda p: float(p.get("rating", 0)), reverse=True)
    return {"success": True, "products": [product_to_view(p) for p in items[:limit]]}


@router.get("/{product_id}")
async def get_product(product_id: str, store: DocumentStore = Depends(get_store)):
    cache_key = f"products_{product_id}"
    cached = get_cache(cache_key, "products")
    if cached is not None:
        return {"success": True, "product": cached}
    p = store.get(PRODUCTS, product_id)
    if not p or not p.get("isActive", True):
        raise HTTPException(status_code=404, detail="Product not found")
    view = product_to_view(p)
    set_cache(cache_key, view)
    return {"success": True, "product": view}


@router.get("/{product_id}/reviews")
async def product_reviews(
    product_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    store: DocumentStore = Depends(get_store),
):
    reviews = store.query(REVIEWS, {"productId": product_id, "status": "approved"}, order_by="createdAt", descending=True)
    views = [
        {
            "id": r["id"],
            "userName": r.get("userName"),
            "rating": r.get("rating"),
            "title": r.get("title"),
            "comment": r.get("comment"),
            "isVerifiedPurchase": bool(r.get("isVerifiedPurchase")),
            "helpfulCount": r.get("helpfulCount", 0),
            "createdAt": ts_to_iso(r.get("createdAt")),
        }
        for r in reviews
    ]
    return {"success": True, **paginate(views, page, limit, "reviews")}
