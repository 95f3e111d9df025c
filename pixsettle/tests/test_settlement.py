"""
Settlement tests: ordering, idempotence, races and partial failures.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from pixsettle.core.config import settings
from pixsettle.core.database import get_db_session, payments
from pixsettle.core.errors import PlanActivationError
from pixsettle.core.metrics import coupon_usage_failures_total, payment_settlements_total
from pixsettle.features.coupons.service import get_coupon
from pixsettle.features.payments.repository import get_payment
from pixsettle.features.payments.settlement import settle_payment
from pixsettle.features.plans.service import get_user_plan_state


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
PAID_AT = datetime(2024, 6, 1, 11, 58, tzinfo=timezone.utc)


@pytest.fixture
def pending(seed_user, seed_plan, seed_coupon, seed_payment):
    seed_plan("plan_monthly", duration_days=30)
    seed_user("user_alice")
    seed_coupon("coupon_promo", used_count=2, max_uses=3)
    seed_payment(
        "payment_1",
        coupon_id="coupon_promo",
        provider="pagseguro",
        provider_order_id="ORDE_1",
    )
    return get_payment("payment_1")


def test_settles_payment_coupon_and_plan(pending):
    result = settle_payment(pending, PAID_AT, "ref_1", now=NOW)

    assert result.settled
    assert result.duration_days == 30
    assert result.plan_expires_at == NOW + timedelta(days=30)
    assert result.coupon_registered

    stored = get_payment("payment_1")
    assert stored.status.value == "PAID"
    assert stored.paid_at == PAID_AT
    assert stored.provider_reference_id == "ref_1"

    coupon = get_coupon("coupon_promo")
    assert coupon.used_count == 3
    assert coupon.is_active is False

    assert get_user_plan_state("user_alice").plan_expires_at == NOW + timedelta(days=30)
    assert payment_settlements_total.value({"provider": "pagseguro"}) == 1


def test_paid_at_defaults_to_now(pending):
    settle_payment(pending, None, now=NOW)

    assert get_payment("payment_1").paid_at == NOW


def test_second_settlement_is_a_noop(pending):
    settle_payment(pending, PAID_AT, now=NOW)

    # Stale snapshot still says PENDING; the conditional update must refuse
    again = settle_payment(pending, PAID_AT + timedelta(minutes=5), now=NOW + timedelta(days=1))

    assert not again.settled
    assert again.status == "PAID"
    assert get_payment("payment_1").paid_at == PAID_AT
    assert get_coupon("coupon_promo").used_count == 3
    assert get_user_plan_state("user_alice").plan_expires_at == NOW + timedelta(days=30)


def test_already_paid_snapshot_returns_immediately(pending):
    settle_payment(pending, PAID_AT, now=NOW)
    paid = get_payment("payment_1")

    with patch("pixsettle.features.payments.settlement.resolve_plan_duration") as resolve:
        result = settle_payment(paid, PAID_AT, now=NOW)

    assert not result.settled
    resolve.assert_not_called()


def test_concurrent_settlements_apply_once(pending):
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: settle_payment(pending, PAID_AT, now=NOW), range(4)))

    assert sum(1 for r in results if r.settled) == 1
    assert get_coupon("coupon_promo").used_count == 3
    assert get_user_plan_state("user_alice").plan_expires_at == NOW + timedelta(days=30)


def test_reference_backfill_does_not_overwrite(seed_user, seed_plan, seed_payment):
    seed_plan("plan_monthly")
    seed_user("user_alice")
    seed_payment("payment_1", provider_order_id="ORDE_1", provider_reference_id="ref_original")

    settle_payment(get_payment("payment_1"), PAID_AT, "ref_other", now=NOW)

    assert get_payment("payment_1").provider_reference_id == "ref_original"


def test_coupon_failure_is_swallowed(pending):
    with patch(
        "pixsettle.features.payments.settlement.register_coupon_usage",
        side_effect=RuntimeError("coupon store down"),
    ):
        result = settle_payment(pending, PAID_AT, now=NOW)

    assert result.settled
    assert not result.coupon_registered
    assert get_payment("payment_1").status.value == "PAID"
    assert get_user_plan_state("user_alice").plan_id == "plan_monthly"
    assert coupon_usage_failures_total.value() == 1


def test_plan_activation_failure_propagates_and_payment_stays_paid(pending):
    with patch(
        "pixsettle.features.payments.settlement.activate_user_plan",
        side_effect=PlanActivationError("boom"),
    ):
        with pytest.raises(PlanActivationError):
            settle_payment(pending, PAID_AT, now=NOW)

    assert get_payment("payment_1").status.value == "PAID"


def test_duration_lookup_failure_leaves_payment_pending(pending):
    with patch(
        "pixsettle.features.payments.settlement.resolve_plan_duration",
        side_effect=RuntimeError("db gone"),
    ):
        with pytest.raises(RuntimeError):
            settle_payment(pending, PAID_AT, now=NOW)

    assert get_payment("payment_1").status.value == "PENDING"


def test_deleted_plan_uses_fallback_duration(seed_user, seed_payment, monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_PLAN_DURATION_DAYS", 15)
    seed_user("user_alice")
    seed_payment("payment_1", plan_id="gone_plan", provider_order_id="ORDE_1")

    result = settle_payment(get_payment("payment_1"), PAID_AT, now=NOW)

    assert result.duration_days == 15
    assert result.plan_expires_at == NOW + timedelta(days=15)


def test_lifetime_plan_settlement(seed_user, seed_plan, seed_payment):
    seed_plan("plan_life", duration_days=0)
    seed_user("user_alice", plan_id="plan_monthly", plan_expires_at=NOW + timedelta(days=3))
    seed_payment("payment_1", plan_id="plan_life", provider_order_id="ORDE_1")

    result = settle_payment(get_payment("payment_1"), PAID_AT, now=NOW)

    assert result.plan_expires_at is None
    state = get_user_plan_state("user_alice")
    assert state.plan_id == "plan_life"
    assert state.plan_expires_at is None


def test_non_pending_payment_is_not_settled(seed_user, seed_plan, seed_payment):
    seed_plan("plan_monthly")
    seed_user("user_alice")
    seed_payment("payment_1", status="CANCELLED", provider_order_id="ORDE_1")

    result = settle_payment(get_payment("payment_1"), PAID_AT, now=NOW)

    assert not result.settled
    assert result.status == "CANCELLED"
    with get_db_session() as session:
        status = session.execute(select(payments.c.status).where(payments.c.payment_id == "payment_1")).scalar()
    assert status == "CANCELLED"
    assert get_user_plan_state("user_alice").plan_id is None
