"""
Payment resolution: provider identifiers -> one stored PIX payment.
"""
from typing import Optional

from pixsettle.core.errors import MissingIdentifierError, PaymentIntegrityError, PaymentNotFoundError
from pixsettle.core.logging import log_event
from pixsettle.features.payments import repository
from pixsettle.features.payments.providers import WebhookIdentifiers
from pixsettle.models.payment import Payment


def resolve_payment(identifiers: WebhookIdentifiers, *, provider: Optional[str] = None) -> Payment:
    """
    Find the single PIX payment matching any of the identifiers.

    Order and charge ids match provider_order_id; the reference id matches
    provider_reference_id. Uniqueness of both columns among PIX payments is
    enforced by partial unique indexes, so more than one hit means two
    different identifiers point at two different payments.

    Raises:
        MissingIdentifierError: No identifier was extracted (400)
        PaymentNotFoundError: Nothing matched (404)
        PaymentIntegrityError: More than one payment matched (500)
    """
    if identifiers.is_empty:
        raise MissingIdentifierError("Webhook carries no payment identifier")

    matches = repository.find_pix_payments(identifiers.provider_ids, identifiers.reference_ids)

    if not matches:
        log_event(
            "warning",
            "payment.not_found",
            provider=provider,
            extra={
                "order_id": identifiers.order_id,
                "charge_id": identifiers.charge_id,
                "reference_id": identifiers.reference_id,
            },
        )
        raise PaymentNotFoundError("Payment not found")

    if len(matches) > 1:
        log_event(
            "error",
            "payment.identifier_conflict",
            provider=provider,
            error_code=PaymentIntegrityError.code,
            extra={"payment_ids": ",".join(p.payment_id for p in matches)},
        )
        raise PaymentIntegrityError("Webhook identifiers match more than one payment")

    return matches[0]
