"""
Settlement: the PENDING -> PAID transition and its cascade.

Steps, each in its own transaction and in this order:

1. Resolve plan duration (joined value, plan lookup, configured fallback).
   Failure propagates; nothing has been written yet.
2. Conditional UPDATE status=PAID WHERE status=PENDING. Losing that race
   (or replaying a settled payment) ends the call as "already confirmed".
   A CANCELLED or EXPIRED payment is left alone and its status reported.
3. Register coupon usage. Failure is logged and swallowed.
4. Activate or extend the user's plan. Failure propagates as
   PlanActivationError; the payment stays PAID.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from pixsettle.core.logging import log_event
from pixsettle.core.metrics import coupon_usage_failures_total, payment_settlements_total
from pixsettle.features.coupons.service import register_coupon_usage
from pixsettle.features.payments import repository
from pixsettle.features.plans.service import activate_user_plan, resolve_plan_duration
from pixsettle.models.payment import Payment


@dataclass
class SettlementResult:
    payment_id: str
    settled: bool  # False when another delivery already made the transition
    paid_at: Optional[datetime] = None
    duration_days: Optional[int] = None
    plan_expires_at: Optional[datetime] = None
    coupon_registered: bool = False
    # Stored status after the call; only differs from PAID when the payment
    # was cancelled or expired before the paid notification arrived
    status: str = "PAID"


def settle_payment(
    payment: Payment,
    paid_at: Optional[datetime] = None,
    reference_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> SettlementResult:
    """
    Settle a payment exactly once.

    Args:
        payment: Payment as loaded by the resolver (may be stale)
        paid_at: Provider-reported payment time; defaults to now
        reference_id: Secondary reference to backfill when none is stored
        now: Clock override for tests

    Returns:
        SettlementResult; settled=False means the payment was already PAID,
        or is no longer PENDING (see status)
    """
    now = now or datetime.now(timezone.utc)
    provider = payment.provider.value if payment.provider else "unknown"

    if payment.is_paid:
        return SettlementResult(payment_id=payment.payment_id, settled=False, paid_at=payment.paid_at)

    duration_days = resolve_plan_duration(payment.plan_id, payment.plan_duration_days)

    effective_paid_at = paid_at or now
    if not repository.mark_payment_paid(payment.payment_id, effective_paid_at, reference_id):
        current = repository.get_payment(payment.payment_id)
        stored_status = current.status.value if current else payment.status.value
        if stored_status == "PAID":
            log_event("info", "settlement.already_paid", payment_id=payment.payment_id, provider=provider)
        else:
            log_event(
                "warning",
                "settlement.not_pending",
                payment_id=payment.payment_id,
                provider=provider,
                error_code="payment_not_pending",
                extra={"stored_status": stored_status},
            )
        return SettlementResult(payment_id=payment.payment_id, settled=False, status=stored_status)

    log_event(
        "info",
        "settlement.marked_paid",
        payment_id=payment.payment_id,
        user_id=payment.user_id,
        provider=provider,
        extra={"paid_at": effective_paid_at.isoformat(), "reference_backfill": bool(reference_id)},
    )

    coupon_registered = False
    if payment.coupon_id:
        try:
            coupon_registered = register_coupon_usage(payment.coupon_id) is not None
        except Exception:
            coupon_usage_failures_total.inc()
            log_event(
                "error",
                "settlement.coupon_usage_failed",
                payment_id=payment.payment_id,
                error_code="coupon_usage_failed",
                extra={"coupon_id": payment.coupon_id},
                exc_info=True,
            )

    expires_at = activate_user_plan(payment.user_id, payment.plan_id, duration_days, now=now)

    payment_settlements_total.inc(labels={"provider": provider})
    log_event(
        "info",
        "settlement.completed",
        payment_id=payment.payment_id,
        user_id=payment.user_id,
        provider=provider,
        extra={"duration_days": duration_days, "coupon_registered": coupon_registered},
    )

    return SettlementResult(
        payment_id=payment.payment_id,
        settled=True,
        paid_at=effective_paid_at,
        duration_days=duration_days,
        plan_expires_at=expires_at,
        coupon_registered=coupon_registered,
    )
