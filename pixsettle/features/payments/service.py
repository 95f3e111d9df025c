"""
Payment webhook processing.

Flow: classify -> authenticate -> resolve -> already-paid short-circuit ->
reconcile (payload, then remote) -> not-paid short-circuit -> settle.

Client errors (unclassifiable, no identifiers, unknown payment, bad
credential) raise AppError subclasses before anything is written.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pixsettle.core.errors import WebhookClassificationError
from pixsettle.core.logging import log_event
from pixsettle.core.metrics import payment_webhooks_total
from pixsettle.features.payments import repository
from pixsettle.features.payments.providers import (
    UnknownNotification,
    classify_webhook,
    decode_body,
    verify_webhook_authenticity,
)
from pixsettle.features.payments.reconciler import ClientFactory, reconcile_status
from pixsettle.features.payments.remote_status import get_status_client
from pixsettle.features.payments.resolver import resolve_payment
from pixsettle.features.payments.settlement import settle_payment


OUTCOME_ALREADY_CONFIRMED = "already_confirmed"
OUTCOME_NOT_PAID = "not_paid"
OUTCOME_SETTLED = "settled"

MESSAGES = {
    OUTCOME_ALREADY_CONFIRMED: "Payment already confirmed",
    OUTCOME_NOT_PAID: "Payment not yet paid",
    OUTCOME_SETTLED: "Payment confirmed and plan activated",
}


@dataclass
class WebhookOutcome:
    outcome: str
    payment_id: str
    provider: str
    status: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": True, "message": MESSAGES[self.outcome]}
        if self.outcome == OUTCOME_NOT_PAID:
            body["status"] = self.status
        return body


def payload_hash(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body or b"").hexdigest()


def _record_event(outcome: WebhookOutcome, event_type: Optional[str], body_hash: str) -> None:
    """Append to the webhook event log; never affects the response."""
    try:
        repository.record_webhook_event(
            provider=outcome.provider,
            event_type=event_type,
            payment_id=outcome.payment_id,
            payload_hash=body_hash,
            outcome=outcome.outcome,
        )
    except Exception:
        log_event(
            "error",
            "webhook.event_log_failed",
            payment_id=outcome.payment_id,
            provider=outcome.provider,
            error_code="event_log_failed",
            exc_info=True,
        )


def process_payment_webhook(
    headers: Mapping[str, str],
    raw_body: bytes,
    *,
    now: Optional[datetime] = None,
    client_factory: Optional[ClientFactory] = None,
) -> WebhookOutcome:
    """
    Handle one webhook delivery end to end.

    Args:
        headers: Request headers (any case)
        raw_body: Raw request body, used for JSON decoding, signatures and hashing
        now: Clock override for tests
        client_factory: Remote status client lookup (patched in tests)

    Returns:
        WebhookOutcome describing the 200 response

    Raises:
        WebhookClassificationError: 400
        MissingIdentifierError: 400
        WebhookAuthError: 401
        PaymentNotFoundError: 404
        PaymentIntegrityError / PlanActivationError: 500
    """
    now = now or datetime.now(timezone.utc)
    lowered = {str(k).lower(): v for k, v in headers.items()}

    notification = classify_webhook(lowered, decode_body(raw_body))
    if isinstance(notification, UnknownNotification):
        payment_webhooks_total.inc(labels={"provider": "unknown", "outcome": "unrecognized"})
        log_event("warning", "webhook.unrecognized", extra={"reason": notification.reason})
        raise WebhookClassificationError("Unrecognized webhook payload")

    provider = notification.provider.value
    event_type = notification.event_type
    verify_webhook_authenticity(notification, lowered, raw_body)

    identifiers = notification.identifiers()
    log_event(
        "info",
        "webhook.received",
        provider=provider,
        event_type=event_type,
        extra={
            "order_id": identifiers.order_id,
            "charge_id": identifiers.charge_id,
            "reference_id": identifiers.reference_id,
        },
    )

    payment = resolve_payment(identifiers, provider=provider)
    body_hash = payload_hash(raw_body)

    if payment.is_paid:
        outcome = WebhookOutcome(OUTCOME_ALREADY_CONFIRMED, payment.payment_id, provider)
    else:
        result = reconcile_status(notification, payment, client_factory=client_factory or get_status_client)
        reconcile_extra = {"source": result.source, "remote_checked": result.remote_checked}
        if not result.is_paid:
            outcome = WebhookOutcome(
                OUTCOME_NOT_PAID,
                payment.payment_id,
                provider,
                status=result.status,
                extra={**reconcile_extra, "remote_error": result.remote_error},
            )
        else:
            settlement = settle_payment(payment, result.paid_at, result.reference_id, now=now)
            if settlement.settled:
                outcome_name = OUTCOME_SETTLED
            elif settlement.status == "PAID":
                outcome_name = OUTCOME_ALREADY_CONFIRMED
            else:
                # Cancelled or expired locally; the provider's paid signal is not applied
                outcome_name = OUTCOME_NOT_PAID
            outcome = WebhookOutcome(
                outcome_name,
                payment.payment_id,
                provider,
                status=settlement.status,
                extra=reconcile_extra,
            )

    _record_event(outcome, event_type, body_hash)
    payment_webhooks_total.inc(labels={"provider": provider, "outcome": outcome.outcome})
    log_event(
        "info",
        f"webhook.{outcome.outcome}",
        payment_id=payment.payment_id,
        user_id=payment.user_id,
        provider=provider,
        event_type=event_type,
        extra={k: v for k, v in outcome.extra.items() if v is not None},
    )
    return outcome
