from typing import Optional

from fastapi import APIRouter, Depends, Query

from .. import coupons
from ..deps import get_store
from ..schemas import CouponApplyRequest, CouponUseRequest, CouponValidateRequest
from ..security import ensure_owner, get_admin_user, get_current_user, get_optional_user, sensitive_operation_limit
from ..store import DocumentStore

router = APIRouter(prefix="/api/coupons", tags=["coupons"])


def _checked_user_id(requested: Optional[str], user: Optional[dict]) -> Optional[str]:
    """Per-user limits are checked for the signed-in user; only staff may ask about someone else."""
    if user is None:
        return None
    if requested and user.get("role") in ("admin", "staff"):
        return requested
    return user.get("uid")


@router.post("/apply", dependencies=[Depends(sensitive_operation_limit("coupon_apply"))])
async def apply_coupon(
    body: CouponApplyRequest,
    store: DocumentStore = Depends(get_store),
    user: Optional[dict] = Depends(get_optional_user),
):
    user_id = _checked_user_id(body.user_id, user)
    coupon, quote = coupons.apply_coupon(store, body.coupon_code, body.order_amount, user_id, body.cart_items)
    return {
        "success": True,
        "coupon": coupon.summary(),
        "discount": {
            "amount": quote.discount_amount,
            "percentage": quote.percentage,
            "freeItems": [f.to_document() for f in quote.free_items],
        },
        "orderSummary": {
            "originalAmount": quote.order_amount,
            "discountAmount": quote.discount_amount,
            "finalAmount": quote.final_amount,
        },
    }


@router.post("/validate")
async def validate_coupon(
    body: CouponValidateRequest,
    store: DocumentStore = Depends(get_store),
    user: Optional[dict] = Depends(get_optional_user),
):
    user_id = _checked_user_id(body.user_id, user)
    result = coupons.validate_coupon(store, body.coupon_code, body.order_amount, user_id)
    return {"success": True, **result}


@router.get("/available")
async def available_coupons(
    order_amount: Optional[float] = Query(None, alias="orderAmount", ge=0),
    store: DocumentStore = Depends(get_store),
    user: Optional[dict] = Depends(get_optional_user),
):
    found = coupons.available_coupons(store, (user or {}).get("uid"), order_amount)
    return {"success": True, "coupons": found, "count": len(found)}


@router.post("/use")
async def use_coupon(
    body: CouponUseRequest,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_current_user),
):
    user_id = body.user_id or current_user["uid"]
    ensure_owner(current_user, user_id)
    usage = coupons.redeem_coupon(store, body.coupon_code, user_id, body.order_id, body.discount_amount)
    return {"success": True, "message": "Coupon usage recorded successfully", "usage": usage}


@router.get("/stats/{code}")
async def coupon_stats(
    code: str,
    store: DocumentStore = Depends(get_store),
    current_user: dict = Depends(get_admin_user),
):
    return {"success": True, **coupons.coupon_stats(store, code)}
