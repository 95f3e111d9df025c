"""
Admin-only payment operations.
Requires X-Admin-Key header for all endpoints.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from pixsettle.core.admin_auth import AdminActor, require_admin
from pixsettle.features.payments.reconcile_job import reconcile_payment, run_reconcile_job

logger = logging.getLogger("pixsettle.admin_payments")

router = APIRouter(tags=["admin"])


class ReconcileRunResponse(BaseModel):
    checked: int
    settled: int
    still_pending: int
    errors: int
    timestamp: str


class PaymentReconcileResponse(BaseModel):
    payment_id: str
    outcome: str
    status: Optional[str] = None
    remote_error: Optional[str] = None


@router.post("/v1/admin/payments/reconcile", response_model=ReconcileRunResponse)
def reconcile_pending_payments(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    actor: AdminActor = Depends(require_admin),
):
    """Sweep pending PIX payments against provider status APIs."""
    logger.info(f"[admin] reconcile sweep by {actor.actor_id}, limit={limit}")
    return run_reconcile_job(limit=limit)


@router.post("/v1/admin/payments/{payment_id}/reconcile", response_model=PaymentReconcileResponse)
def reconcile_single_payment(
    payment_id: str,
    actor: AdminActor = Depends(require_admin),
):
    """Check one payment against its provider and settle it if paid."""
    logger.info(f"[admin] reconcile {payment_id} by {actor.actor_id}")
    return reconcile_payment(payment_id)
