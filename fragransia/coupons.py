"""
Coupon discount engine.

Eligibility is checked in a fixed order (exists, active, expiry, start,
minimum order, global usage, per-user usage) and the first failing check
decides the rejection. Redemption re-runs the checks inside a store
transaction together with the counter writes, so a coupon can never be
consumed beyond its usage limit.
"""
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .logger import get_logger
from .schemas import (
    BuyThreeSpecialCoupon,
    BuyTwoGetOneCoupon,
    CartLine,
    CouponBase,
    CouponQuote,
    FixedCoupon,
    FreeItem,
    FreeShippingCoupon,
    PercentageCoupon,
    parse_coupon,
)
from .store import DocumentStore, Transaction, to_datetime, utcnow

logger = get_logger("coupons")

COUPONS = "coupons"
COUPON_USAGE = "couponUsage"
COUPON_USER_USAGE = "couponUserUsage"

# Flat shipping charge waived by free-shipping coupons
SHIPPING_COST = 50.0

# reason -> (error title, HTTP status)
REJECTIONS: Dict[str, Tuple[str, int]] = {
    "not_found": ("Invalid coupon code", 404),
    "inactive": ("Coupon inactive", 400),
    "expired": ("Coupon expired", 400),
    "not_yet_active": ("Coupon not yet active", 400),
    "minimum_not_met": ("Minimum order amount not met", 400),
    "usage_limit_exceeded": ("Coupon usage limit exceeded", 400),
    "user_usage_limit_exceeded": ("User usage limit exceeded", 400),
    "already_redeemed": ("Coupon already redeemed", 409),
}


class CouponRejected(Exception):
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.error, self.status_code = REJECTIONS[reason]


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def round_money(amount: float) -> float:
    return float(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _user_usage_id(code: str, user_id: str) -> str:
    return f"{code}_{user_id}"


def _usage_id(code: str, order_id: str) -> str:
    return f"{code}_{order_id}"


# -------------------------------
# Lookup
# -------------------------------
def load_coupon(reader, code: str) -> CouponBase:
    """Fetch and validate a coupon; `reader` is a store or a transaction."""
    code = normalize_code(code)
    data = reader.get(COUPONS, code)
    if data is None:
        raise CouponRejected("not_found", "Coupon not found")
    return parse_coupon(code, data)


def user_usage_count(reader, code: str, user_id: Optional[str]) -> int:
    if not user_id:
        return 0
    counter = reader.get(COUPON_USER_USAGE, _user_usage_id(normalize_code(code), user_id))
    return int((counter or {}).get("count", 0))


# -------------------------------
# Eligibility
# -------------------------------
def eligibility_issues(
    coupon: CouponBase,
    order_amount: Optional[float] = None,
    now: Optional[datetime] = None,
    user_usage: Optional[int] = None,
) -> List[Tuple[str, str]]:
    """Every failing condition as (reason, message), in check order."""
    now = now or utcnow()
    issues: List[Tuple[str, str]] = []
    if not coupon.is_active:
        issues.append(("inactive", "This coupon is no longer active"))
    if coupon.expiry_date and now > coupon.expiry_date:
        issues.append(("expired", "This coupon has expired"))
    if coupon.start_date and now < coupon.start_date:
        issues.append(("not_yet_active", "This coupon is not yet active"))
    if order_amount is not None and coupon.min_order_amount and order_amount < coupon.min_order_amount:
        issues.append((
            "minimum_not_met",
            f"Minimum order amount of ₹{coupon.min_order_amount:g} required",
        ))
    # A zero or missing limit means unlimited
    if coupon.usage_limit and coupon.used_count >= coupon.usage_limit:
        issues.append(("usage_limit_exceeded", "This coupon has reached its usage limit"))
    if user_usage is not None and coupon.user_usage_limit and user_usage >= coupon.user_usage_limit:
        issues.append((
            "user_usage_limit_exceeded",
            "You have already used this coupon the maximum number of times",
        ))
    return issues


def check_eligibility(
    coupon: CouponBase,
    order_amount: Optional[float] = None,
    now: Optional[datetime] = None,
    user_usage: Optional[int] = None,
) -> None:
    issues = eligibility_issues(coupon, order_amount, now, user_usage)
    if issues:
        reason, message = issues[0]
        raise CouponRejected(reason, message)


# -------------------------------
# Discount calculation
# -------------------------------
def _runs(cart_items: Iterable[CartLine]) -> List[Tuple[CartLine, int]]:
    """(line, units) pairs; a line of quantity n stands for n identical units."""
    return [(line, int(line.quantity)) for line in cart_items if line.quantity > 0]


def _free_item(line: CartLine, quantity: int) -> FreeItem:
    return FreeItem(product_id=line.product_id, name=line.name, price=line.price, quantity=quantity)


def _multiples_of_three(start: int, end: int) -> int:
    # count of n in [start, end) with n % 3 == 0
    return max(0, (end + 2) // 3 - (start + 2) // 3)


def calculate_discount(
    coupon: CouponBase,
    order_amount: float,
    cart_items: Optional[List[CartLine]] = None,
) -> Tuple[float, List[FreeItem]]:
    discount = 0.0
    free_items: List[FreeItem] = []

    if isinstance(coupon, PercentageCoupon):
        discount = order_amount * coupon.value / 100
        if coupon.max_discount:
            discount = min(discount, coupon.max_discount)
    elif isinstance(coupon, FixedCoupon):
        discount = min(coupon.value, order_amount)
    elif isinstance(coupon, FreeShippingCoupon):
        discount = SHIPPING_COST
    elif isinstance(coupon, BuyTwoGetOneCoupon):
        # Units sorted by price; positions 0, 3, 6 ... are free, plus the
        # first unit of a trailing pair.
        runs = sorted(_runs(cart_items or []), key=lambda r: r[0].price)
        groups, remaining = divmod(sum(n for _, n in runs), 3)
        free_end = groups * 3 + (1 if remaining == 2 else 0)
        start = 0
        for line, n in runs:
            free = _multiples_of_three(start, min(start + n, free_end))
            if free:
                free_items.append(_free_item(line, free))
                discount += line.price * free
            start += n
    elif isinstance(coupon, BuyThreeSpecialCoupon):
        runs = _runs(cart_items or [])
        groups = sum(n for _, n in runs) // 3
        left = groups * 3
        grouped_total = 0.0
        for line, n in runs:
            take = min(n, left)
            grouped_total += line.price * take
            left -= take
        discount = max(0.0, grouped_total - groups * 3 * coupon.unit_special_price)

    return round_money(discount), free_items


def quote(
    coupon: CouponBase,
    order_amount: float,
    cart_items: Optional[List[CartLine]] = None,
) -> CouponQuote:
    discount, free_items = calculate_discount(coupon, order_amount, cart_items)
    percentage = round_money(discount / order_amount * 100) if order_amount > 0 else 0.0
    return CouponQuote(
        code=coupon.code,
        order_amount=order_amount,
        discount_amount=discount,
        percentage=percentage,
        free_items=free_items,
        final_amount=round_money(max(0.0, order_amount - discount)),
    )


# -------------------------------
# Read-only operations
# -------------------------------
def apply_coupon(
    store: DocumentStore,
    code: str,
    order_amount: float,
    user_id: Optional[str] = None,
    cart_items: Optional[List[CartLine]] = None,
    now: Optional[datetime] = None,
) -> Tuple[CouponBase, CouponQuote]:
    coupon = load_coupon(store, code)
    user_usage = user_usage_count(store, coupon.code, user_id) if user_id else None
    check_eligibility(coupon, order_amount, now, user_usage)
    return coupon, quote(coupon, order_amount, cart_items)


def validate_coupon(
    store: DocumentStore,
    code: str,
    order_amount: Optional[float] = None,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    coupon = load_coupon(store, code)
    user_usage = user_usage_count(store, coupon.code, user_id) if user_id else None
    issues = eligibility_issues(coupon, order_amount, now, user_usage)
    return {
        "valid": not issues,
        "coupon": coupon.summary(),
        "issues": [message for _, message in issues],
    }


def available_coupons(
    store: DocumentStore,
    user_id: Optional[str] = None,
    order_amount: Optional[float] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    out = []
    for doc in store.query(COUPONS, {"isActive": True}, order_by="expiryDate"):
        try:
            coupon = parse_coupon(doc["id"], doc)
        except ValidationError as e:
            logger.warning("Skipping malformed coupon %s: %s", doc["id"], e)
            continue
        user_usage = user_usage_count(store, coupon.code, user_id) if user_id else None
        if eligibility_issues(coupon, order_amount, now, user_usage):
            continue
        out.append(coupon.model_dump(by_alias=True))
    return out


def coupon_stats(store: DocumentStore, code: str) -> Dict[str, Any]:
    coupon = load_coupon(store, code)
    usages = store.query(COUPON_USAGE, {"couponCode": coupon.code})

    total_discount = sum(float(u.get("discountAmount", 0)) for u in usages)
    users = {u.get("userId") for u in usages}
    daily: Counter = Counter()
    for u in usages:
        used_at = to_datetime(u.get("usedAt"))
        if used_at:
            daily[used_at.date().isoformat()] += 1

    return {
        "coupon": coupon.model_dump(by_alias=True),
        "usage": {
            "totalUsage": len(usages),
            "totalDiscount": round_money(total_discount),
            "uniqueUsers": len(users),
            "averageDiscount": round_money(total_discount / len(usages)) if usages else 0,
        },
        "trends": {
            "dailyUsage": [{"date": d, "count": c} for d, c in sorted(daily.items())],
        },
    }


# -------------------------------
# Redemption (transactional)
# -------------------------------
@dataclass
class Redemption:
    coupon: CouponBase
    user_id: str
    order_id: str
    user_usage: int


def read_redemption(txn: Transaction, code: str, user_id: str, order_id: str) -> Redemption:
    """Transaction reads for a redemption; must run before any write in `txn`."""
    coupon = load_coupon(txn, code)
    if txn.get(COUPON_USAGE, _usage_id(coupon.code, order_id)) is not None:
        raise CouponRejected("already_redeemed", "This coupon has already been applied to this order")
    return Redemption(
        coupon=coupon,
        user_id=user_id,
        order_id=order_id,
        user_usage=user_usage_count(txn, coupon.code, user_id),
    )


def write_redemption(
    txn: Transaction,
    redemption: Redemption,
    discount_amount: float,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    coupon = redemption.coupon
    txn.update(COUPONS, coupon.code, {
        "usedCount": coupon.used_count + 1,
        "lastUsedAt": now,
    })
    txn.set(COUPON_USER_USAGE, _user_usage_id(coupon.code, redemption.user_id), {
        "couponCode": coupon.code,
        "userId": redemption.user_id,
        "count": redemption.user_usage + 1,
        "updatedAt": now,
    })
    usage = {
        "couponCode": coupon.code,
        "userId": redemption.user_id,
        "orderId": redemption.order_id,
        "discountAmount": round_money(discount_amount),
        "usedAt": now,
    }
    usage_id = txn.create(COUPON_USAGE, usage, doc_id=_usage_id(coupon.code, redemption.order_id))
    return {"id": usage_id, **usage}


def redeem_coupon(
    store: DocumentStore,
    code: str,
    user_id: str,
    order_id: str,
    discount_amount: float,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()

    def _redeem(txn: Transaction) -> Dict[str, Any]:
        redemption = read_redemption(txn, code, user_id, order_id)
        check_eligibility(redemption.coupon, None, now, redemption.user_usage)
        return write_redemption(txn, redemption, discount_amount, now)

    usage = store.run_transaction(_redeem)
    logger.info("Coupon %s redeemed by %s for order %s", usage["couponCode"], user_id, order_id)
    return usage


# -------------------------------
# Admin
# -------------------------------
def list_coupons(store: DocumentStore) -> List[Dict[str, Any]]:
    return store.query(COUPONS, order_by="createdAt", descending=True)


def create_coupon(store: DocumentStore, data: Dict[str, Any]) -> CouponBase:
    """Raises ValidationError on a malformed body and DocumentExists on a duplicate code."""
    code = normalize_code(data.get("code", ""))
    if not code:
        raise ValueError("Coupon code is required")
    coupon = parse_coupon(code, {**data, "usedCount": 0})
    now = utcnow()
    store.create(COUPONS, {**coupon.to_document(), "createdAt": now, "updatedAt": now}, doc_id=code)
    logger.info("Coupon %s created (%s)", code, coupon.type)
    return coupon


# Set only by redemption or at creation
_PROTECTED_FIELDS = ("code", "id", "usedCount", "createdAt")


def update_coupon(store: DocumentStore, code: str, patch: Dict[str, Any]) -> CouponBase:
    """Apply an admin patch; the redemption counter is re-read inside the write transaction."""
    code = normalize_code(code)
    patch = {k: v for k, v in patch.items() if k not in _PROTECTED_FIELDS}

    def _update(txn: Transaction) -> CouponBase:
        existing = txn.get(COUPONS, code)
        if existing is None:
            raise CouponRejected("not_found", "Coupon not found")
        coupon = parse_coupon(code, {**existing, **patch})
        # Rebuilt from the model so fields of a previous type are dropped
        txn.set(COUPONS, code, {
            **coupon.to_document(),
            "createdAt": existing.get("createdAt"),
            "updatedAt": utcnow(),
        })
        return coupon

    coupon = store.run_transaction(_update)
    logger.info("Coupon %s updated (%s)", code, coupon.type)
    return coupon


def delete_coupon(store: DocumentStore, code: str) -> None:
    code = normalize_code(code)
    if store.get(COUPONS, code) is None:
        raise CouponRejected("not_found", "Coupon not found")
    store.delete(COUPONS, code)
