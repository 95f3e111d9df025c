"""
Coupon usage registration tests.

The usage counter is best-effort: concurrent registrations may overshoot
max_uses. Tests assert the single-writer behaviour and the non-strict bound.
"""
from concurrent.futures import ThreadPoolExecutor

from pixsettle.features.coupons.service import get_coupon, register_coupon_usage


def test_increment_without_cap(seed_coupon):
    seed_coupon("c_free", used_count=5, max_uses=None)

    coupon = register_coupon_usage("c_free")

    assert coupon.used_count == 6
    assert coupon.is_active is True


def test_reaching_cap_deactivates(seed_coupon):
    seed_coupon("c_cap", used_count=2, max_uses=3)

    coupon = register_coupon_usage("c_cap")

    assert coupon.used_count == 3
    assert coupon.is_active is False


def test_below_cap_stays_active(seed_coupon):
    seed_coupon("c_cap", used_count=0, max_uses=3)

    coupon = register_coupon_usage("c_cap")

    assert coupon.used_count == 1
    assert coupon.is_active is True


def test_usage_past_cap_still_counts(seed_coupon):
    seed_coupon("c_over", used_count=3, max_uses=3, is_active=False)

    coupon = register_coupon_usage("c_over")

    assert coupon.used_count == 4
    assert coupon.is_active is False


def test_missing_or_empty_coupon_is_noop(seed_coupon):
    assert register_coupon_usage(None) is None
    assert register_coupon_usage("") is None
    assert register_coupon_usage("does_not_exist") is None


def test_concurrent_usage_is_best_effort(seed_coupon):
    """Known non-strict bound: parallel usage may pass max_uses but is never lost."""
    seed_coupon("c_race", used_count=0, max_uses=2)

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(register_coupon_usage, ["c_race"] * 4))

    coupon = get_coupon("c_race")
    assert coupon.used_count >= 2
    assert coupon.used_count <= 4
    assert coupon.is_active is False
