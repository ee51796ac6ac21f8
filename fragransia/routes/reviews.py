from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..cache import clear_cache_pattern
from ..deps import get_store
from ..logger import get_logger
from ..schemas import ReviewCreate, ReviewReport
from ..security import get_current_user
from ..store import DocumentStore, utcnow
from ..views import paginate, ts_to_iso

logger = get_logger("routes.reviews")

REVIEWS = "reviews"
PRODUCTS = "products"
ORDERS = "orders"

# Reported this many times, a review goes back to moderation
REPORT_THRESHOLD = 3

router = APIRouter(prefix="/api/reviews", tags=["reviews"])


def review_to_view(r: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "productId": r.get("productId"),
        "userName": r.get("userName"),
        "rating": r.get("rating"),
        "title": r.get("title"),
        "comment": r.get("comment"),
        "status": r.get("status"),
        "isVerifiedPurchase": bool(r.get("isVerifiedPurchase")),
        "helpfulCount": r.get("helpfulCount", 0),
        "createdAt": ts_to_iso(r.get("createdAt")),
    }


def refresh_product_rating(store: DocumentStore, product_id: str) -> None:
    """Recompute a product's rating and review count from its approved reviews."""
    approved = store.query(REVIEWS, {"productId": product_id, "status": "approved"})
    total = len(approved)
    avg = round(sum(int(r.get("rating", 0)) for r in approved) / total, 1) if total else 0.0
    if store.get(PRODUCTS, product_id) is not None:
        store.update(PRODUCTS, product_id, {"rating": avg, "reviewCount": total})
    clear_cache_pattern(f"products_{product_id}")
    clear_cache_pattern("products_all")


def _purchased(store: DocumentStore, user_id: str, product_id: str) -> bool:
    for order in store.query(ORDERS, {"userId": user_id}):
        if order.get("status") == "cancelled":
            continue
        if any(i.get("productId") == product_id for i in order.get("items") or []):
            return True
    return False


@router.post("", status_code=201)
async def submit_review(
    body: ReviewCreate,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    uid = current_user["uid"]
    if store.get(PRODUCTS, body.product_id) is None:
        raise HTTPException(status_code=404, detail="Product not found")
    if store.query(REVIEWS, {"productId": body.product_id, "userId": uid}, limit=1):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")

    name = f"{current_user.get('firstName', '')} {(current_user.get('lastName') or '')[:1]}".strip()
    review = {
        "productId": body.product_id,
        "userId": uid,
        "orderId": body.order_id,
        "userName": name or "Customer",
        "rating": body.rating,
        "title": body.title,
        "comment": body.comment,
        "status": "pending",
        "isVerifiedPurchase": _purchased(store, uid, body.product_id),
        "helpfulCount": 0,
        "helpfulBy": [],
        "reportCount": 0,
        "reports": [],
        "createdAt": utcnow(),
    }
    review_id = store.create(REVIEWS, review)
    logger.info("Review %s submitted for product %s", review_id, body.product_id)
    return {
        "success": True,
        "message": "Review submitted and pending moderation",
        "review": review_to_view({"id": review_id, **review}),
    }


@router.get("/product/{product_id}")
async def product_reviews(
    product_id: str,
    rating: Optional[int] = Query(None, ge=1, le=5),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    store: DocumentStore = Depends(get_store),
):
    filters = {"productId": product_id, "status": "approved"}
    if rating:
        filters["rating"] = rating
    reviews = store.query(REVIEWS, filters, order_by="createdAt", descending=True)
    breakdown = {str(star): 0 for star in range(1, 6)}
    for r in store.query(REVIEWS, {"productId": product_id, "status": "approved"}):
        breakdown[str(r.get("rating"))] = breakdown.get(str(r.get("rating")), 0) + 1
    return {
        "success": True,
        "ratingBreakdown": breakdown,
        **paginate([review_to_view(r) for r in reviews], page, limit, "reviews"),
    }


@router.get("/user/list")
async def my_reviews(
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    reviews = store.query(REVIEWS, {"userId": current_user["uid"]}, order_by="createdAt", descending=True)
    return {"success": True, "reviews": [review_to_view(r) for r in reviews]}


def _get_review(store: DocumentStore, review_id: str) -> Dict[str, Any]:
    review = store.get(REVIEWS, review_id)
    if review is None:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


@router.post("/{review_id}/helpful")
async def mark_helpful(
    review_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    review = _get_review(store, review_id)
    helpful_by = list(review.get("helpfulBy") or [])
    if current_user["uid"] in helpful_by:
        raise HTTPException(status_code=400, detail="You have already marked this review as helpful")
    helpful_by.append(current_user["uid"])
    store.update(REVIEWS, review_id, {"helpfulBy": helpful_by, "helpfulCount": len(helpful_by)})
    return {"success": True, "helpfulCount": len(helpful_by)}


@router.post("/{review_id}/report")
async def report_review(
    review_id: str,
    body: ReviewReport,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    review = _get_review(store, review_id)
    reports = list(review.get("reports") or [])
    if any(r.get("userId") == current_user["uid"] for r in reports):
        raise HTTPException(status_code=400, detail="You have already reported this review")
    reports.append({"userId": current_user["uid"], "reason": body.reason, "at": utcnow()})
    updates: Dict[str, Any] = {"reports": reports, "reportCount": len(reports)}
    if len(reports) >= REPORT_THRESHOLD and review.get("status") == "approved":
        updates["status"] = "pending"
    store.update(REVIEWS, review_id, updates)
    if updates.get("status") == "pending":
        refresh_product_rating(store, review["productId"])
    logger.warning("Review %s reported by %s", review_id, current_user["uid"])
    return {"success": True, "message": "Review reported"}
