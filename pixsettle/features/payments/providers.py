"""
Webhook classification for the supported PIX providers.

Inbound notifications are sorted into a closed set of variants:

- AsaasNotification: {"event": "...", "payment": {...}}
- PagSeguroNotification: order/charge documents (order, charge, charges[])
- UnknownNotification: anything else

Classification is by payload shape first; headers are a secondary signal
because replayed and test traffic often arrives without them.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from pixsettle.core.config import settings
from pixsettle.core.errors import WebhookAuthError
from pixsettle.core.logging import log_event
from pixsettle.models.payment import PaymentProvider


CHARGE_ID_PREFIXES = ("CHAR_", "CHG-")
ORDER_ID_PREFIXES = ("ORDE_", "ORD-")
PAGSEGURO_TAGS = {"pagseguro", "pagbank"}
PAGSEGURO_SIGNATURE_HEADER = "x-authenticity-token"
ASAAS_TOKEN_HEADER = "asaas-access-token"

# Asaas events that by themselves mean the money arrived
ASAAS_PAID_EVENTS = {
    "PAYMENT_CONFIRMED": "CONFIRMED",
    "PAYMENT_RECEIVED": "RECEIVED",
}


def _to_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _dicts_only(value: Any) -> List[Any]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _dict_or_none(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


OptStr = Annotated[Optional[str], BeforeValidator(_to_str)]


def parse_provider_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Accepts ISO-8601 datetimes (with or without offset) and date-only values,
    which are read as midnight UTC. Naive datetimes are taken as UTC.
    Returns None for anything unparseable.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class WebhookIdentifiers:
    """Candidate identifiers pulled from a notification (any subset may be present)."""
    order_id: Optional[str] = None
    charge_id: Optional[str] = None
    reference_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.order_id or self.charge_id or self.reference_id)

    @property
    def provider_ids(self) -> Tuple[str, ...]:
        """Ids matched against payments.provider_order_id."""
        return tuple(dict.fromkeys(i for i in (self.order_id, self.charge_id) if i))

    @property
    def reference_ids(self) -> Tuple[str, ...]:
        return (self.reference_id,) if self.reference_id else ()

    @property
    def remote_lookup_id(self) -> Optional[str]:
        """Id to query the provider API with: charge first, then order."""
        return self.charge_id or self.order_id


# --- Asaas -------------------------------------------------------------------

class AsaasPayment(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: OptStr = None
    status: OptStr = None
    external_reference: OptStr = Field(None, alias="externalReference")
    confirmed_date: OptStr = Field(None, alias="confirmedDate")
    client_payment_date: OptStr = Field(None, alias="clientPaymentDate")
    payment_date: OptStr = Field(None, alias="paymentDate")


class AsaasNotification(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    provider: Literal[PaymentProvider.ASAAS] = PaymentProvider.ASAAS
    event: OptStr = None
    payment: AsaasPayment

    @property
    def event_type(self) -> Optional[str]:
        return self.event

    def identifiers(self) -> WebhookIdentifiers:
        return WebhookIdentifiers(
            order_id=self.payment.id,
            reference_id=self.payment.external_reference,
        )

    def status_candidates(self) -> List[str]:
        candidates = []
        if self.event and self.event.upper() in ASAAS_PAID_EVENTS:
            candidates.append(ASAAS_PAID_EVENTS[self.event.upper()])
        if self.payment.status:
            candidates.append(self.payment.status)
        return candidates

    def paid_at(self) -> Optional[datetime]:
        for value in (
            self.payment.confirmed_date,
            self.payment.client_payment_date,
            self.payment.payment_date,
        ):
            parsed = parse_provider_timestamp(value)
            if parsed is not None:
                return parsed
        return None


# --- PagSeguro / PagBank -----------------------------------------------------

class PagSeguroCharge(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: OptStr = None
    reference_id: OptStr = None
    status: OptStr = None
    paid_at: OptStr = None


class PagSeguroOrder(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: OptStr = None
    reference_id: OptStr = None
    status: OptStr = None
    charges: Annotated[List[PagSeguroCharge], BeforeValidator(_dicts_only)] = []


class PagSeguroNotification(BaseModel):
    """
    PagSeguro order or charge notification.

    The top level is itself an order (or, for charge events, a charge);
    `order` and `charge` appear when the document is wrapped.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    provider: Literal[PaymentProvider.PAGSEGURO] = PaymentProvider.PAGSEGURO
    id: OptStr = None
    reference_id: OptStr = None
    status: OptStr = None
    charge_paid_at: OptStr = Field(None, alias="paid_at")
    order: Annotated[Optional[PagSeguroOrder], BeforeValidator(_dict_or_none)] = None
    charge: Annotated[Optional[PagSeguroCharge], BeforeValidator(_dict_or_none)] = None
    charges: Annotated[List[PagSeguroCharge], BeforeValidator(_dicts_only)] = []

    def _first_charge(self) -> Optional[PagSeguroCharge]:
        if self.charges:
            return self.charges[0]
        if self.order is not None and self.order.charges:
            return self.order.charges[0]
        return None

    @property
    def _top_level_is_charge(self) -> bool:
        return bool(self.id and self.id.startswith(CHARGE_ID_PREFIXES))

    @property
    def event_type(self) -> Optional[str]:
        kind = "charge" if (self.charge is not None or self._top_level_is_charge) else "order"
        statuses = self.status_candidates()
        return f"{kind}.{statuses[0].lower()}" if statuses else kind

    def identifiers(self) -> WebhookIdentifiers:
        order_id = None
        if self.order is not None and self.order.id:
            order_id = self.order.id
        elif self.id and not self._top_level_is_charge:
            order_id = self.id

        charge_id = None
        first = self._first_charge()
        if self.charge is not None and self.charge.id:
            charge_id = self.charge.id
        elif first is not None and first.id:
            charge_id = first.id
        elif self._top_level_is_charge:
            charge_id = self.id

        reference_id = next(
            (
                ref
                for ref in (
                    self.reference_id,
                    self.order.reference_id if self.order else None,
                    self.charge.reference_id if self.charge else None,
                    first.reference_id if first else None,
                )
                if ref
            ),
            None,
        )
        return WebhookIdentifiers(order_id=order_id, charge_id=charge_id, reference_id=reference_id)

    def status_candidates(self) -> List[str]:
        first = self._first_charge()
        statuses = [
            self.status,
            self.charge.status if self.charge else None,
            self.order.status if self.order else None,
            first.status if first else None,
        ]
        return [s for s in statuses if s]

    def paid_at(self) -> Optional[datetime]:
        first = self._first_charge()
        for value in (
            self.charge.paid_at if self.charge else None,
            first.paid_at if first else None,
            self.charge_paid_at if self._top_level_is_charge else None,
        ):
            parsed = parse_provider_timestamp(value)
            if parsed is not None:
                return parsed
        return None


class UnknownNotification(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: Literal["unknown"] = "unknown"
    reason: str


Notification = Union[AsaasNotification, PagSeguroNotification, UnknownNotification]


# --- Classification ----------------------------------------------------------

def _looks_like_pagseguro(body: Dict[str, Any]) -> bool:
    if isinstance(body.get("order"), dict) or isinstance(body.get("charge"), dict):
        return True
    if isinstance(body.get("charges"), list):
        return True
    top_id = _to_str(body.get("id"))
    return bool(top_id and top_id.startswith(ORDER_ID_PREFIXES + CHARGE_ID_PREFIXES))


def _looks_like_asaas(body: Dict[str, Any]) -> bool:
    return "event" in body and isinstance(body.get("payment"), dict)


def decode_body(raw_body: bytes) -> Any:
    """Decode a JSON body; returns None when it is not valid JSON."""
    if not raw_body:
        return None
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None


def classify_webhook(headers: Dict[str, str], body: Any) -> Notification:
    """
    Decide which provider produced a webhook and decode it with that provider's schema.

    Precedence: explicit body tag, then body shape (PagSeguro order/charge
    documents before the Asaas event envelope), then the PagSeguro signature
    header. Header names are expected lowercased.
    """
    if not isinstance(body, dict):
        return UnknownNotification(reason="body is not a JSON object")

    tag = _to_str(body.get("provider"))
    tag = tag.lower() if tag else None

    if tag in PAGSEGURO_TAGS or _looks_like_pagseguro(body):
        target = PagSeguroNotification
    elif _looks_like_asaas(body):
        target = AsaasNotification
    elif PAGSEGURO_SIGNATURE_HEADER in headers:
        target = PagSeguroNotification
    else:
        return UnknownNotification(reason="no recognized provider shape")

    fields = {k: v for k, v in body.items() if k != "provider"}
    try:
        return target.model_validate(fields)
    except ValidationError as exc:
        log_event(
            "warning",
            "webhook.schema_mismatch",
            provider=target.model_fields["provider"].default.value,
            extra={"errors": exc.error_count()},
        )
        return UnknownNotification(reason="payload does not match provider schema")


def verify_webhook_authenticity(
    notification: Union[AsaasNotification, PagSeguroNotification],
    headers: Dict[str, str],
    raw_body: bytes,
) -> None:
    """
    Check the provider's webhook credential when one is configured.

    Asaas echoes the configured token in `asaas-access-token`; PagSeguro signs
    with sha256("{token}-{raw body}") in `x-authenticity-token`.

    Raises:
        WebhookAuthError: Credential configured and missing or mismatched
    """
    if isinstance(notification, AsaasNotification):
        token = settings.ASAAS_WEBHOOK_TOKEN
        received = headers.get(ASAAS_TOKEN_HEADER, "").strip()
        expected = token
    else:
        token = settings.PAGSEGURO_WEBHOOK_TOKEN
        received = headers.get(PAGSEGURO_SIGNATURE_HEADER, "").strip().lower()
        expected = pagseguro_signature(token, raw_body) if token else None

    if not token:
        log_event("warning", "webhook.auth_unconfigured", provider=notification.provider.value)
        return

    if not received or not hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8")):
        raise WebhookAuthError("Webhook credential missing or invalid")


def pagseguro_signature(token: str, raw_body: bytes) -> str:
    signed = f"{token}-{raw_body.decode('utf-8', errors='replace')}"
    return hashlib.sha256(signed.encode("utf-8")).hexdigest()
