"""
pixsettle/features/plans/service.py

Plan lookup and plan activation.

Handles:
- Plan lookup by id
- Three-tier plan duration resolution (embedded join, lookup, fallback)
- Plan activation/extension on the user aggregate
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update

from pixsettle.core.config import settings
from pixsettle.core.database import get_db_session, plans, users
from pixsettle.core.errors import PlanActivationError
from pixsettle.core.logging import log_event
from pixsettle.models.plan import Plan
from pixsettle.models.user_plan import UserPlanState


def get_plan(plan_id: str) -> Optional[Plan]:
    """Get plan by ID."""
    with get_db_session() as session:
        row = session.execute(
            select(plans).where(plans.c.plan_id == plan_id)
        ).first()

        if not row:
            return None

        return Plan(
            plan_id=row.plan_id,
            name=row.name,
            price=row.price or 0.0,
            duration_days=row.duration_days,
            is_active=row.is_active,
            created_at=row.created_at,
        )


def resolve_plan_duration(plan_id: str, embedded_duration: Optional[int] = None) -> int:
    """
    Resolve the number of days a payment grants.

    Order of preference:
    1. Duration already loaded with the payment (plan join)
    2. Fresh lookup by plan_id
    3. DEFAULT_PLAN_DURATION_DAYS (the plan may have been deleted)

    A plan that exists with no duration is a lifetime grant (0).
    """
    if embedded_duration is not None:
        return embedded_duration

    plan = get_plan(plan_id)
    if plan is not None:
        return plan.duration_days or 0

    log_event(
        "warning",
        "plan.duration_fallback",
        extra={"plan_id": plan_id, "fallback_days": settings.DEFAULT_PLAN_DURATION_DAYS},
    )
    return settings.DEFAULT_PLAN_DURATION_DAYS


def get_user_plan_state(user_id: str) -> Optional[UserPlanState]:
    """Get the user's current plan columns, or None if the user does not exist."""
    with get_db_session() as session:
        row = session.execute(
            select(users.c.user_id, users.c.plan_id, users.c.plan_expires_at)
            .where(users.c.user_id == user_id)
        ).first()

        if not row:
            return None

        return UserPlanState(
            user_id=row.user_id,
            plan_id=row.plan_id,
            plan_expires_at=row.plan_expires_at,
        )


def _plan_zone(tz_name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(tz_name or settings.PLAN_TIMEZONE)


def compute_plan_expiration(
    current: UserPlanState,
    plan_id: str,
    duration_days: int,
    now: datetime,
    tz_name: Optional[str] = None,
) -> Optional[datetime]:
    """
    Compute the new expiration for a grant of duration_days on plan_id.

    - duration_days <= 0 is a lifetime grant: returns None.
    - Same plan, still active: the grant stacks on the existing expiration.
    - Otherwise (plan switch, lapsed plan, lifetime holder, no plan): counts from now.

    Days are added in the plan timezone's wall clock so the time of day
    survives daylight-saving transitions. The result is returned in UTC.
    """
    if duration_days <= 0:
        return None

    base = now
    if current.plan_id == plan_id and current.plan_expires_at is not None and current.is_active_at(now):
        base = current.plan_expires_at

    zone = _plan_zone(tz_name)
    local_base = base.astimezone(zone)
    # Aware + timedelta keeps the wall-clock time; the offset is recomputed below
    local_expiration = local_base + timedelta(days=duration_days)
    return local_expiration.astimezone(timezone.utc)


def activate_user_plan(
    user_id: str,
    plan_id: str,
    duration_days: int,
    *,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Activate or extend plan_id for user_id.

    Persists plan_id and the computed expiration (None for a lifetime grant)
    and returns the expiration.

    Raises:
        PlanActivationError: If the user does not exist or the write fails
    """
    now = now or datetime.now(timezone.utc)

    try:
        with get_db_session() as session:
            row = session.execute(
                select(users.c.user_id, users.c.plan_id, users.c.plan_expires_at)
                .where(users.c.user_id == user_id)
            ).first()
            if not row:
                raise PlanActivationError(f"User {user_id} not found for plan activation")

            current = UserPlanState(
                user_id=row.user_id,
                plan_id=row.plan_id,
                plan_expires_at=row.plan_expires_at,
            )
            expires_at = compute_plan_expiration(current, plan_id, duration_days, now)

            session.execute(
                update(users)
                .where(users.c.user_id == user_id)
                .values(plan_id=plan_id, plan_expires_at=expires_at)
            )
    except PlanActivationError:
        raise
    except Exception as exc:
        log_event(
            "error",
            "plan.activation_failed",
            user_id=user_id,
            error_code="plan_activation_failed",
            extra={"plan_id": plan_id},
            exc_info=True,
        )
        raise PlanActivationError(f"Plan activation failed for user {user_id}") from exc

    log_event(
        "info",
        "plan.activated",
        user_id=user_id,
        extra={
            "plan_id": plan_id,
            "duration_days": duration_days,
            "expires_at": expires_at.isoformat() if expires_at else "lifetime",
            "renewal": current.plan_id == plan_id,
        },
    )
    return expires_at
