"""
pixsettle/features/coupons/service.py

Coupon usage registration.
"""

from typing import Optional

from sqlalchemy import and_, case, false, select, update

from pixsettle.core.database import coupons, get_db_session
from pixsettle.core.logging import log_event
from pixsettle.models.coupon import Coupon


def get_coupon(coupon_id: str) -> Optional[Coupon]:
    with get_db_session() as session:
        row = session.execute(
            select(coupons).where(coupons.c.coupon_id == coupon_id)
        ).first()
        if not row:
            return None
        return Coupon(
            coupon_id=row.coupon_id,
            code=row.code,
            used_count=row.used_count,
            max_uses=row.max_uses,
            is_active=row.is_active,
            expires_at=row.expires_at,
        )


def register_coupon_usage(coupon_id: Optional[str]) -> Optional[Coupon]:
    """
    Count one use of a coupon.

    Increments used_count and, when max_uses is set and the new count reaches
    it, deactivates the coupon in the same UPDATE. There is no lock: parallel
    settlements of one coupon can each read the pre-increment row, so
    used_count may overshoot max_uses by the number of racing updates.

    Returns the updated coupon, or None when coupon_id is empty or unknown.
    Database errors propagate to the caller.
    """
    if not coupon_id:
        return None

    next_count = coupons.c.used_count + 1
    with get_db_session() as session:
        result = session.execute(
            update(coupons)
            .where(coupons.c.coupon_id == coupon_id)
            .values(
                used_count=next_count,
                is_active=case(
                    (and_(coupons.c.max_uses.isnot(None), next_count >= coupons.c.max_uses), false()),
                    else_=coupons.c.is_active,
                ),
            )
        )
        if result.rowcount == 0:
            log_event("warning", "coupon.not_found", extra={"coupon_id": coupon_id})
            return None

    coupon = get_coupon(coupon_id)
    if coupon is not None:
        log_event(
            "info",
            "coupon.usage_registered",
            extra={
                "coupon_id": coupon_id,
                "used_count": coupon.used_count,
                "deactivated": not coupon.is_active,
            },
        )
    return coupon
