import threading
from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import add_coupon
from fragransia import coupons
from fragransia.coupons import (
    COUPON_USAGE,
    COUPONS,
    CouponRejected,
    apply_coupon,
    calculate_discount,
    check_eligibility,
    create_coupon,
    redeem_coupon,
    update_coupon,
    validate_coupon,
)
from fragransia.schemas import MAX_LINE_QUANTITY, CartLine, parse_coupon
from fragransia.store import utcnow


def _coupon(code="TEST", **data):
    return parse_coupon(code, {"type": "percentage", "value": 10, **data})


def _lines(*prices):
    return [CartLine(product_id=f"p{i}", name=f"Item {i}", price=p, quantity=1) for i, p in enumerate(prices)]


# -------------------------------
# Discount calculation
# -------------------------------
def test_percentage_discount():
    discount, free = calculate_discount(_coupon(value=5), 2000)
    assert discount == 100
    assert free == []


def test_percentage_discount_capped_by_max_discount():
    discount, _ = calculate_discount(_coupon(value=50, maxDiscount=300), 2000)
    assert discount == 300

    q = coupons.quote(_coupon(value=10, maxDiscount=100), 2000)
    assert (q.discount_amount, q.final_amount) == (100, 1900)


def test_fixed_discount_never_exceeds_order_amount():
    coupon = parse_coupon("FLAT500", {"type": "fixed", "value": 500})
    q = coupons.quote(coupon, 300)
    assert q.discount_amount == 300
    assert q.final_amount == 0


def test_free_shipping_waives_flat_shipping_charge():
    coupon = parse_coupon("SHIPFREE", {"type": "freeShipping"})
    discount, _ = calculate_discount(coupon, 999)
    assert discount == coupons.SHIPPING_COST == 50


def test_buy2get1_frees_cheapest_of_three():
    coupon = parse_coupon("B2G1", {"type": "buy2get1"})
    discount, free = calculate_discount(coupon, 600, _lines(300, 100, 200))
    assert discount == 100
    assert [f.price for f in free] == [100]


def test_buy2get1_expands_quantities_into_units():
    coupon = parse_coupon("B2G1", {"type": "buy2get1"})
    lines = [
        CartLine(product_id="a", price=500, quantity=4),
        CartLine(product_id="b", price=200, quantity=2),
    ]
    # units sorted: 200 200 500 | 500 500 500 -> one free per full group
    discount, free = calculate_discount(coupon, 2400, lines)
    assert discount == 700
    assert len(free) == 2


def test_buy2get1_pair_remainder_gets_next_unit_free():
    coupon = parse_coupon("B2G1", {"type": "buy2get1"})
    discount, free = calculate_discount(coupon, 1000, _lines(100, 200, 300, 400, 500))
    # groups: [100,200,300] frees 100; remainder [400,500] frees 400
    assert discount == 500
    assert [f.price for f in free] == [100, 400]


def test_buy2get1_with_fewer_than_two_units_gives_nothing():
    coupon = parse_coupon("B2G1", {"type": "buy2get1"})
    assert calculate_discount(coupon, 300, _lines(300)) == (0, [])


def test_buy2get1_large_quantities_are_counted_not_expanded():
    coupon = parse_coupon("B2G1", {"type": "buy2get1"})
    lines = [CartLine(product_id="mini", price=10, quantity=MAX_LINE_QUANTITY)]
    discount, free = calculate_discount(coupon, 10 * MAX_LINE_QUANTITY, lines)
    # 100 units: 33 full groups and one unit left over
    assert discount == 330
    assert [(f.product_id, f.quantity) for f in free] == [("mini", 33)]


def test_cart_line_quantity_is_bounded():
    with pytest.raises(ValidationError):
        CartLine(price=10, quantity=MAX_LINE_QUANTITY + 1)


def test_buy3special_prices_each_group_of_three():
    coupon = parse_coupon("TRIO", {"type": "buy3special", "specialPrice": 999})
    discount, _ = calculate_discount(coupon, 4500, _lines(1500, 1500, 1500))
    assert discount == 4500 - 3 * 999


def test_buy3special_never_negative():
    coupon = parse_coupon("TRIO", {"type": "buy3special", "specialPrice": 999})
    discount, _ = calculate_discount(coupon, 300, _lines(100, 100, 100))
    assert discount == 0


def test_quote_percentage_and_final_amount():
    q = coupons.quote(_coupon(value=5), 2000)
    assert q.discount_amount == 100
    assert q.percentage == 5
    assert q.final_amount == 1900


def test_unknown_coupon_type_fails_validation():
    with pytest.raises(ValidationError):
        parse_coupon("BAD", {"type": "mystery", "value": 10})


def test_percentage_above_100_fails_validation():
    with pytest.raises(ValidationError):
        parse_coupon("BAD", {"type": "percentage", "value": 150})


# -------------------------------
# Eligibility
# -------------------------------
def test_expired_coupon_reports_expired_before_later_checks():
    now = utcnow()
    coupon = _coupon(
        expiryDate=now - timedelta(days=1),
        minOrderAmount=5000,
        usageLimit=1,
        usedCount=1,
    )
    with pytest.raises(CouponRejected) as exc:
        check_eligibility(coupon, 100, now)
    assert exc.value.reason == "expired"
    assert exc.value.status_code == 400


def test_inactive_coupon_rejected():
    with pytest.raises(CouponRejected) as exc:
        check_eligibility(_coupon(isActive=False), 100)
    assert exc.value.reason == "inactive"


def test_not_yet_active_coupon_rejected():
    with pytest.raises(CouponRejected) as exc:
        check_eligibility(_coupon(startDate=utcnow() + timedelta(days=2)), 100)
    assert exc.value.reason == "not_yet_active"


def test_minimum_order_amount():
    coupon = _coupon(minOrderAmount=1000)
    with pytest.raises(CouponRejected) as exc:
        check_eligibility(coupon, 999)
    assert exc.value.reason == "minimum_not_met"
    check_eligibility(coupon, 1000)


def test_zero_usage_limit_means_unlimited():
    check_eligibility(_coupon(usageLimit=0, usedCount=500, userUsageLimit=0), 100, user_usage=20)


def test_user_usage_limit():
    with pytest.raises(CouponRejected) as exc:
        check_eligibility(_coupon(userUsageLimit=1), 100, user_usage=1)
    assert exc.value.reason == "user_usage_limit_exceeded"


# -------------------------------
# Store-backed operations
# -------------------------------
def test_apply_unknown_code_is_not_found(store):
    with pytest.raises(CouponRejected) as exc:
        apply_coupon(store, "nope", 1000)
    assert exc.value.reason == "not_found"
    assert exc.value.status_code == 404


def test_apply_normalizes_code(store):
    add_coupon(store, "SAVE5", value=5)
    coupon, q = apply_coupon(store, "  save5 ", 2000)
    assert coupon.code == "SAVE5"
    assert q.discount_amount == 100


def test_validate_does_not_consume_usage(store):
    add_coupon(store, "SAVE10", usageLimit=3)
    first = validate_coupon(store, "SAVE10", 500)
    second = validate_coupon(store, "SAVE10", 500)
    assert first == second
    assert first["valid"] is True
    assert store.get(COUPONS, "SAVE10")["usedCount"] == 0


def test_validate_lists_every_issue(store):
    add_coupon(store, "OLD", expiryDate=utcnow() - timedelta(days=1), minOrderAmount=1000)
    result = validate_coupon(store, "OLD", 10)
    assert result["valid"] is False
    assert len(result["issues"]) == 2


def test_redeem_records_usage_and_counters(store):
    add_coupon(store, "SAVE10")
    usage = redeem_coupon(store, "save10", "user-1", "order-1", 120.0)
    assert usage["couponCode"] == "SAVE10"
    assert store.get(COUPONS, "SAVE10")["usedCount"] == 1
    assert coupons.user_usage_count(store, "SAVE10", "user-1") == 1
    assert len(store.query(COUPON_USAGE, {"couponCode": "SAVE10"})) == 1


def test_redeem_twice_for_same_order_is_rejected(store):
    add_coupon(store, "SAVE10")
    redeem_coupon(store, "SAVE10", "user-1", "order-1", 50)
    with pytest.raises(CouponRejected) as exc:
        redeem_coupon(store, "SAVE10", "user-1", "order-1", 50)
    assert exc.value.reason == "already_redeemed"
    assert exc.value.status_code == 409
    assert store.get(COUPONS, "SAVE10")["usedCount"] == 1


def test_redeem_respects_user_usage_limit(store):
    add_coupon(store, "ONCE", userUsageLimit=1)
    redeem_coupon(store, "ONCE", "user-1", "order-1", 10)
    with pytest.raises(CouponRejected) as exc:
        redeem_coupon(store, "ONCE", "user-1", "order-2", 10)
    assert exc.value.reason == "user_usage_limit_exceeded"
    redeem_coupon(store, "ONCE", "user-2", "order-3", 10)


def test_concurrent_redemptions_never_exceed_usage_limit(store):
    add_coupon(store, "LIMITED", usageLimit=1)
    results = []
    barrier = threading.Barrier(2)

    def _redeem(n):
        barrier.wait()
        try:
            redeem_coupon(store, "LIMITED", f"user-{n}", f"order-{n}", 10)
            results.append("ok")
        except CouponRejected as e:
            results.append(e.reason)

    threads = [threading.Thread(target=_redeem, args=(n,)) for n in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["ok", "usage_limit_exceeded"]
    assert store.get(COUPONS, "LIMITED")["usedCount"] == 1


def test_available_coupons_skips_ineligible(store):
    add_coupon(store, "OPEN")
    add_coupon(store, "BIGSPEND", minOrderAmount=5000)
    add_coupon(store, "OFF", isActive=False)
    codes = {c["code"] for c in coupons.available_coupons(store, order_amount=1000)}
    assert codes == {"OPEN"}


def test_coupon_stats(store):
    add_coupon(store, "SAVE10")
    redeem_coupon(store, "SAVE10", "user-1", "order-1", 100)
    redeem_coupon(store, "SAVE10", "user-1", "order-2", 50)
    stats = coupons.coupon_stats(store, "SAVE10")
    assert stats["usage"]["totalUsage"] == 2
    assert stats["usage"]["totalDiscount"] == 150
    assert stats["usage"]["uniqueUsers"] == 1
    assert stats["usage"]["averageDiscount"] == 75


def test_create_coupon_rejects_duplicates(store):
    from fragransia.store import DocumentExists

    create_coupon(store, {"code": "new10", "type": "percentage", "value": 10})
    assert store.get(COUPONS, "NEW10")["usedCount"] == 0
    with pytest.raises(DocumentExists):
        create_coupon(store, {"code": "NEW10", "type": "fixed", "value": 100})


def test_admin_edit_keeps_redemptions_made_meanwhile(store, monkeypatch):
    add_coupon(store, "SAVE10", usageLimit=5)
    parse = coupons.parse_coupon
    redeemer = []

    def _parse_while_redeeming(code, data):
        if not redeemer:
            # a customer redeems while the edit is in flight
            t = threading.Thread(target=redeem_coupon, args=(store, "SAVE10", "user-1", "order-1", 10))
            redeemer.append(t)
            t.start()
            t.join(timeout=0.5)
        return parse(code, data)

    monkeypatch.setattr(coupons, "parse_coupon", _parse_while_redeeming)
    update_coupon(store, "SAVE10", {"value": 15, "usedCount": 0})
    redeemer[0].join()

    stored = store.get(COUPONS, "SAVE10")
    assert stored["value"] == 15
    assert stored["usedCount"] == 1


def test_changing_coupon_type_drops_old_fields(store):
    add_coupon(store, "SWITCH", maxDiscount=300)
    coupon = update_coupon(store, "switch", {"type": "fixed", "value": 100})
    assert coupon.type == "fixed"
    stored = store.get(COUPONS, "SWITCH")
    assert "maxDiscount" not in stored
    assert stored["createdAt"] is not None
