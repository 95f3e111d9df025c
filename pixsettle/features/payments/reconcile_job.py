"""
Pending-payment reconciliation.

Sweeps PENDING PIX payments, asks each provider for the current status and
settles the ones that were paid but never notified (lost or rejected
webhooks). Uses the same settlement path as the webhook.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pixsettle.core.config import settings
from pixsettle.core.errors import PaymentNotFoundError
from pixsettle.core.logging import log_event
from pixsettle.core.metrics import reconcile_last_checked, reconcile_last_settled
from pixsettle.features.payments import repository
from pixsettle.features.payments.reconciler import ClientFactory, reconcile_stored_payment
from pixsettle.features.payments.remote_status import RemoteStatusError, get_status_client
from pixsettle.features.payments.settlement import settle_payment
from pixsettle.models.payment import Payment


def _reconcile_one(payment: Payment, now: datetime, client_factory: ClientFactory) -> Dict[str, Any]:
    result = reconcile_stored_payment(payment, client_factory=client_factory)
    if not result.is_paid:
        return {"payment_id": payment.payment_id, "outcome": "not_paid", "status": result.status}

    settlement = settle_payment(payment, result.paid_at, result.reference_id, now=now)
    if settlement.settled:
        outcome = "settled"
    elif settlement.status == "PAID":
        outcome = "already_confirmed"
    else:
        outcome = "not_paid"
    return {"payment_id": payment.payment_id, "outcome": outcome, "status": settlement.status}


def run_reconcile_job(
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> Dict[str, Any]:
    """
    Reconcile up to `limit` pending PIX payments, oldest first.

    Per-payment failures are counted and logged; the sweep continues.
    """
    now = now or datetime.now(timezone.utc)
    limit = limit or settings.RECONCILE_BATCH_LIMIT

    pending = repository.list_pending_pix_payments(limit=limit)
    settled = 0
    still_pending = 0
    errors = 0

    for payment in pending:
        try:
            outcome = _reconcile_one(payment, now, client_factory or get_status_client)
        except RemoteStatusError as e:
            errors += 1
            log_event(
                "warning",
                "reconcile_job.remote_failed",
                payment_id=payment.payment_id,
                provider=payment.provider.value if payment.provider else None,
                error_code="remote_status_error",
                extra={"error": str(e)},
            )
            continue
        except Exception:
            errors += 1
            log_event(
                "error",
                "reconcile_job.payment_failed",
                payment_id=payment.payment_id,
                error_code="reconcile_failed",
                exc_info=True,
            )
            continue

        if outcome["outcome"] == "not_paid":
            still_pending += 1
        elif outcome["outcome"] == "settled":
            settled += 1

    reconcile_last_checked.set(len(pending))
    reconcile_last_settled.set(settled)
    log_event(
        "info",
        "reconcile_job.complete",
        extra={"checked": len(pending), "settled": settled, "still_pending": still_pending, "errors": errors},
    )

    return {
        "checked": len(pending),
        "settled": settled,
        "still_pending": still_pending,
        "errors": errors,
        "timestamp": now.isoformat(),
    }


def reconcile_payment(
    payment_id: str,
    *,
    now: Optional[datetime] = None,
    client_factory: Optional[ClientFactory] = None,
) -> Dict[str, Any]:
    """
    Check one payment against its provider and settle it if paid.

    Raises:
        PaymentNotFoundError: Unknown payment_id
    """
    now = now or datetime.now(timezone.utc)
    payment = repository.get_payment(payment_id)
    if payment is None:
        raise PaymentNotFoundError("Payment not found")

    if payment.is_paid:
        return {"payment_id": payment_id, "outcome": "already_confirmed", "status": "PAID"}

    try:
        return _reconcile_one(payment, now, client_factory or get_status_client)
    except RemoteStatusError as e:
        log_event(
            "warning",
            "reconcile.remote_failed",
            payment_id=payment_id,
            provider=payment.provider.value if payment.provider else None,
            error_code="remote_status_error",
            extra={"error": str(e)},
        )
        return {
            "payment_id": payment_id,
            "outcome": "not_paid",
            "status": payment.status.value,
            "remote_error": str(e),
        }
