"""
pixsettle/models/user_plan.py

A user's plan state as mutated by plan activation.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UserPlanState(BaseModel):
    """
    plan_id is the source of truth for plan presence.

    A user with plan_id set and plan_expires_at None holds a lifetime grant;
    a user with plan_id None has no plan at all.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_id: Optional[str] = None
    plan_expires_at: Optional[datetime] = None

    @property
    def is_lifetime(self) -> bool:
        return self.plan_id is not None and self.plan_expires_at is None

    def is_active_at(self, now: datetime) -> bool:
        if self.plan_id is None:
            return False
        return self.plan_expires_at is None or self.plan_expires_at > now
