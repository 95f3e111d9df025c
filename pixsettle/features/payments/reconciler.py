"""
Status reconciliation: is this payment definitively paid?

Two passes:
1. Payload only: every status-like field the notification carries is
   normalized and checked against PAID_STATUSES.
2. Remote fallback: when the payload is inconclusive and an id is known,
   ask the provider. A failed or empty remote answer stays inconclusive.

A remote "paid" is authoritative even when the payload said otherwise.
"""
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Tuple, Union
from datetime import datetime

from pixsettle.core.logging import log_event
from pixsettle.features.payments.providers import AsaasNotification, PagSeguroNotification
from pixsettle.features.payments.remote_status import (
    RemoteStatusClient,
    RemoteStatusError,
    get_status_client,
)
from pixsettle.models.payment import Payment, PaymentProvider


PAID_STATUSES = frozenset({"PAID", "CONFIRMED", "RECEIVED", "RECEIVED_IN_CASH"})

ClientFactory = Callable[[Optional[PaymentProvider]], Optional[RemoteStatusClient]]


def normalize_status(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.strip().upper() or None


def is_paid_status(statuses: Iterable[Optional[str]]) -> bool:
    return any(normalize_status(s) in PAID_STATUSES for s in statuses)


@dataclass(frozen=True)
class ReconciliationResult:
    is_paid: bool
    paid_at: Optional[datetime] = None
    reference_id: Optional[str] = None
    # Last status seen (payload or remote); reported back in "not yet paid" replies
    status: Optional[str] = None
    source: str = "payload"  # payload | remote | none
    remote_checked: bool = False
    remote_error: Optional[str] = None
    statuses: Tuple[str, ...] = field(default_factory=tuple)


def _query_remote(
    provider: Optional[PaymentProvider],
    lookup_id: str,
    payment: Payment,
    client_factory: ClientFactory,
):
    """Returns (RemoteStatus | None, error message | None, whether a query was made)."""
    client = client_factory(provider)
    if client is None:
        return None, None, False
    try:
        return client.get_status(lookup_id), None, True
    except RemoteStatusError as exc:
        log_event(
            "warning",
            "reconcile.remote_failed",
            payment_id=payment.payment_id,
            provider=provider.value if provider else None,
            error_code="remote_status_error",
            extra={"lookup_id": lookup_id, "error": str(exc)},
        )
        return None, str(exc), True


def reconcile_status(
    notification: Union[AsaasNotification, PagSeguroNotification],
    payment: Payment,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> ReconciliationResult:
    """Decide whether a notification proves the payment is paid."""
    payload_statuses = tuple(notification.status_candidates())
    if is_paid_status(payload_statuses):
        return ReconciliationResult(
            is_paid=True,
            paid_at=notification.paid_at(),
            reference_id=notification.identifiers().reference_id,
            status=normalize_status(payload_statuses[0]),
            source="payload",
            statuses=payload_statuses,
        )

    identifiers = notification.identifiers()
    lookup_id = identifiers.remote_lookup_id or payment.provider_order_id
    last_status = normalize_status(payload_statuses[0]) if payload_statuses else None
    if not lookup_id:
        return ReconciliationResult(is_paid=False, status=last_status, source="none", statuses=payload_statuses)

    provider = notification.provider
    remote, error, queried = _query_remote(provider, lookup_id, payment, client_factory or get_status_client)
    if remote is None:
        return ReconciliationResult(
            is_paid=False,
            status=last_status,
            source="none",
            remote_checked=queried and error is None,
            remote_error=error,
            statuses=payload_statuses,
        )

    remote_statuses = remote.candidate_statuses()
    status = normalize_status(remote_statuses[0]) if remote_statuses else last_status
    if is_paid_status(remote_statuses):
        log_event(
            "info",
            "reconcile.remote_paid",
            payment_id=payment.payment_id,
            provider=provider.value,
            extra={"payload_statuses": ",".join(payload_statuses) or "-", "remote_status": status},
        )
        return ReconciliationResult(
            is_paid=True,
            paid_at=remote.paid_at,
            reference_id=remote.reference_id or identifiers.reference_id,
            status=status,
            source="remote",
            remote_checked=True,
            statuses=payload_statuses + remote_statuses,
        )

    return ReconciliationResult(
        is_paid=False,
        status=status,
        source="remote",
        remote_checked=True,
        statuses=payload_statuses + remote_statuses,
    )


def reconcile_stored_payment(
    payment: Payment,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> ReconciliationResult:
    """
    Remote-only reconciliation for a stored payment (no webhook payload).

    Used by the pending-payment sweep and the single-payment check.

    Raises:
        RemoteStatusError: Propagated so the sweep can count the failure
    """
    if not payment.provider_order_id:
        return ReconciliationResult(is_paid=False, status=payment.status.value, source="none")

    client = (client_factory or get_status_client)(payment.provider)
    if client is None:
        return ReconciliationResult(is_paid=False, status=payment.status.value, source="none")

    remote = client.get_status(payment.provider_order_id)
    if remote is None:
        return ReconciliationResult(
            is_paid=False, status=payment.status.value, source="none", remote_checked=True
        )

    remote_statuses = remote.candidate_statuses()
    return ReconciliationResult(
        is_paid=is_paid_status(remote_statuses),
        paid_at=remote.paid_at,
        reference_id=remote.reference_id,
        status=normalize_status(remote_statuses[0]) if remote_statuses else None,
        source="remote",
        remote_checked=True,
        statuses=remote_statuses,
    )
