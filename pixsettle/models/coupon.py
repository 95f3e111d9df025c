"""
pixsettle/models/coupon.py
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Coupon(BaseModel):
    """
    Discount coupon usage state.

    is_active flips to False when used_count reaches max_uses. Concurrent
    settlements of the same coupon may push used_count past max_uses.
    """
    model_config = ConfigDict(frozen=True)

    coupon_id: str
    code: str
    used_count: int = 0
    max_uses: Optional[int] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
