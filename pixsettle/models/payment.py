"""
pixsettle/models/payment.py

Payment model as seen by the settlement engine.

A payment is created PENDING by checkout and moves to PAID exactly once.
Only PIX payments carry provider identifiers.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class PaymentMethod(str, Enum):
    PIX = "PIX"
    BITCOIN = "BITCOIN"
    CARD = "CARD"


class PaymentProvider(str, Enum):
    ASAAS = "asaas"
    PAGSEGURO = "pagseguro"


# Stored order id prefixes used to infer the provider on legacy rows
_PAGSEGURO_PREFIXES = ("ORDE_", "ORD-", "CHAR_", "CHG-")
_ASAAS_PREFIXES = ("pay_",)


def infer_provider(provider: Optional[str], provider_order_id: Optional[str]) -> Optional[PaymentProvider]:
    """Resolve the provider from the stored column, else from the order id prefix."""
    if provider:
        try:
            return PaymentProvider(provider.strip().lower())
        except ValueError:
            return None
    if not provider_order_id:
        return None
    if provider_order_id.startswith(_PAGSEGURO_PREFIXES):
        return PaymentProvider.PAGSEGURO
    if provider_order_id.startswith(_ASAAS_PREFIXES):
        return PaymentProvider.ASAAS
    return None


class Payment(BaseModel):
    """
    Payment snapshot loaded by the resolver.

    plan_duration_days is the duration read through the plan join at load
    time; it is None when the plan row no longer exists.
    """
    model_config = ConfigDict(frozen=True)

    payment_id: str
    user_id: str
    plan_id: str
    coupon_id: Optional[str] = None
    method: PaymentMethod
    provider: Optional[PaymentProvider] = None
    status: PaymentStatus
    amount: Optional[float] = None
    provider_order_id: Optional[str] = None
    provider_reference_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    plan_duration_days: Optional[int] = None

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID
