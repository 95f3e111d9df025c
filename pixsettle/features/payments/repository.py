"""
pixsettle/features/payments/repository.py

Payment record store access (SQLAlchemy Core).

Every function opens its own session so each settlement step commits
independently.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import func, insert, or_, select, update

from pixsettle.core.database import get_db_session, payments, plans, payment_webhook_events
from pixsettle.models.payment import Payment, PaymentMethod, PaymentStatus, infer_provider


def _payment_query():
    """Payments outer-joined to plans so the duration travels with the row."""
    return (
        select(
            payments,
            plans.c.plan_id.label("joined_plan_id"),
            plans.c.duration_days.label("plan_duration_days"),
        )
        .select_from(payments.outerjoin(plans, payments.c.plan_id == plans.c.plan_id))
    )


def _row_to_payment(row) -> Payment:
    # A joined plan with no duration is a lifetime plan; no joined plan means unknown
    if row.joined_plan_id is None:
        duration = None
    else:
        duration = row.plan_duration_days or 0

    return Payment(
        payment_id=row.payment_id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        coupon_id=row.coupon_id,
        method=PaymentMethod(row.method),
        provider=infer_provider(row.provider, row.provider_order_id),
        status=PaymentStatus(row.status),
        amount=row.amount,
        provider_order_id=row.provider_order_id,
        provider_reference_id=row.provider_reference_id,
        paid_at=row.paid_at,
        created_at=row.created_at,
        plan_duration_days=duration,
    )


def get_payment(payment_id: str) -> Optional[Payment]:
    with get_db_session() as session:
        row = session.execute(
            _payment_query().where(payments.c.payment_id == payment_id)
        ).first()
        return _row_to_payment(row) if row else None


def find_pix_payments(order_ids: Sequence[str], reference_ids: Sequence[str]) -> List[Payment]:
    """
    PIX payments whose provider_order_id is in order_ids or whose
    provider_reference_id is in reference_ids.

    Returns every distinct match so the caller can detect conflicts.
    """
    clauses = []
    if order_ids:
        clauses.append(payments.c.provider_order_id.in_(list(order_ids)))
    if reference_ids:
        clauses.append(payments.c.provider_reference_id.in_(list(reference_ids)))
    if not clauses:
        return []

    with get_db_session() as session:
        rows = session.execute(
            _payment_query()
            .where(payments.c.method == PaymentMethod.PIX.value)
            .where(or_(*clauses))
            .order_by(payments.c.created_at)
        ).all()
        return [_row_to_payment(row) for row in rows]


def mark_payment_paid(payment_id: str, paid_at: datetime, reference_id: Optional[str] = None) -> bool:
    """
    Conditionally move a payment from PENDING to PAID.

    Runs as a single UPDATE ... WHERE status = 'PENDING'; the reference id is
    only written when none is stored yet. Returns True when this call made
    the transition, False when the payment was not PENDING (already paid,
    or never pending).
    """
    values = {
        "status": PaymentStatus.PAID.value,
        "paid_at": paid_at,
        "updated_at": datetime.now(timezone.utc),
    }
    if reference_id:
        values["provider_reference_id"] = func.coalesce(payments.c.provider_reference_id, reference_id)

    with get_db_session() as session:
        result = session.execute(
            update(payments)
            .where(payments.c.payment_id == payment_id)
            .where(payments.c.status == PaymentStatus.PENDING.value)
            .values(**values)
        )
        return result.rowcount == 1


def list_pending_pix_payments(limit: int = 100) -> List[Payment]:
    """Oldest PENDING PIX payments that carry a provider order id."""
    with get_db_session() as session:
        rows = session.execute(
            _payment_query()
            .where(payments.c.method == PaymentMethod.PIX.value)
            .where(payments.c.status == PaymentStatus.PENDING.value)
            .where(payments.c.provider_order_id.isnot(None))
            .order_by(payments.c.created_at, payments.c.payment_id)
            .limit(limit)
        ).all()
        return [_row_to_payment(row) for row in rows]


def record_webhook_event(
    provider: str,
    event_type: Optional[str],
    payment_id: Optional[str],
    payload_hash: str,
    outcome: str,
) -> None:
    with get_db_session() as session:
        session.execute(
            insert(payment_webhook_events).values(
                provider=provider,
                event_type=(event_type or "")[:100] or None,
                payment_id=payment_id,
                payload_hash=payload_hash,
                outcome=outcome,
                received_at=datetime.now(timezone.utc),
            )
        )
