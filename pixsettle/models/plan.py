"""
pixsettle/models/plan.py

Plan reference data. duration_days of 0 or None is a lifetime grant.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price: float = 0.0
    duration_days: Optional[int] = None
    is_active: bool = True
    created_at: Optional[datetime] = None

    @property
    def is_lifetime(self) -> bool:
        return not self.duration_days or self.duration_days <= 0
