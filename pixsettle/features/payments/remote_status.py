"""
Remote payment status clients.

One client per provider answers "what does the provider say about this id?"
with a normalized RemoteStatus. A 404 from the provider is reported as None;
every other failure raises RemoteStatusError. Neither is ever a settlement
signal on its own.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Tuple

import httpx

from pixsettle.core.config import settings, pagseguro_key
from pixsettle.core.logging import log_event
from pixsettle.core.metrics import remote_status_queries_total
from pixsettle.features.payments.providers import CHARGE_ID_PREFIXES, parse_provider_timestamp
from pixsettle.models.payment import PaymentProvider


PAGSEGURO_SANDBOX_URL = "https://sandbox.api.pagseguro.com"
PAGSEGURO_PRODUCTION_URL = "https://api.pagseguro.com"


@dataclass(frozen=True)
class RemoteStatus:
    """Normalized provider answer."""
    status: Optional[str]
    paid_at: Optional[datetime] = None
    reference_id: Optional[str] = None
    charge_status: Optional[str] = None

    def candidate_statuses(self) -> Tuple[str, ...]:
        return tuple(s for s in (self.status, self.charge_status) if s)


class RemoteStatusError(Exception):
    """Provider status query failed (transport, timeout, non-2xx, bad body)."""
    pass


class RemoteStatusClient(Protocol):
    provider: PaymentProvider

    def get_status(self, provider_id: str) -> Optional[RemoteStatus]:
        """
        Fetch the provider's view of a payment.

        Returns:
            RemoteStatus, or None if the provider does not know the id

        Raises:
            RemoteStatusError: Query failed
        """
        ...


def _str_or_none(value) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


class _HttpStatusClient:
    provider: PaymentProvider

    def __init__(
        self,
        base_url: str,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.REMOTE_STATUS_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> dict:
        raise NotImplementedError

    def _fetch(self, path: str) -> Optional[dict]:
        result = "error"
        try:
            with httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = client.get(path, headers=self._headers())

            if response.status_code == 404:
                result = "not_found"
                return None
            if response.status_code >= 400:
                raise RemoteStatusError(f"{self.provider.value} returned HTTP {response.status_code}")
            try:
                data = response.json()
            except ValueError as exc:
                raise RemoteStatusError(f"{self.provider.value} returned a non-JSON body") from exc
            if not isinstance(data, dict):
                raise RemoteStatusError(f"{self.provider.value} returned an unexpected body")
            result = "ok"
            return data
        except httpx.HTTPError as exc:
            raise RemoteStatusError(f"{self.provider.value} request failed: {type(exc).__name__}") from exc
        finally:
            remote_status_queries_total.inc(labels={"provider": self.provider.value, "result": result})


class AsaasStatusClient(_HttpStatusClient):
    provider = PaymentProvider.ASAAS

    def __init__(self, api_key: str, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or settings.ASAAS_API_URL, **kwargs)
        self._api_key = api_key

    def _headers(self) -> dict:
        return {"access_token": self._api_key, "accept": "application/json"}

    def get_status(self, provider_id: str) -> Optional[RemoteStatus]:
        data = self._fetch(f"/payments/{provider_id}")
        if data is None:
            return None
        paid_at = None
        for key in ("confirmedDate", "clientPaymentDate", "paymentDate"):
            paid_at = parse_provider_timestamp(_str_or_none(data.get(key)))
            if paid_at is not None:
                break
        return RemoteStatus(
            status=_str_or_none(data.get("status")),
            paid_at=paid_at,
            reference_id=_str_or_none(data.get("externalReference")),
        )


class PagSeguroStatusClient(_HttpStatusClient):
    """Reads /charges/{id} for charge ids, /orders/{id} otherwise (first charge wins)."""
    provider = PaymentProvider.PAGSEGURO

    def __init__(self, token: str, sandbox: Optional[bool] = None, base_url: Optional[str] = None, **kwargs):
        if base_url is None:
            use_sandbox = settings.PAGSEGURO_SANDBOX if sandbox is None else sandbox
            base_url = PAGSEGURO_SANDBOX_URL if use_sandbox else PAGSEGURO_PRODUCTION_URL
        super().__init__(base_url, **kwargs)
        self._token = token

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._token}", "accept": "application/json"}

    def get_status(self, provider_id: str) -> Optional[RemoteStatus]:
        if provider_id.startswith(CHARGE_ID_PREFIXES):
            data = self._fetch(f"/charges/{provider_id}")
            if data is None:
                return None
            return RemoteStatus(
                status=_str_or_none(data.get("status")),
                paid_at=parse_provider_timestamp(_str_or_none(data.get("paid_at"))),
                reference_id=_str_or_none(data.get("reference_id")),
            )

        data = self._fetch(f"/orders/{provider_id}")
        if data is None:
            return None
        charges = [c for c in (data.get("charges") or []) if isinstance(c, dict)]
        first = charges[0] if charges else {}
        return RemoteStatus(
            status=_str_or_none(data.get("status")),
            charge_status=_str_or_none(first.get("status")),
            paid_at=parse_provider_timestamp(_str_or_none(first.get("paid_at"))),
            reference_id=_str_or_none(data.get("reference_id")) or _str_or_none(first.get("reference_id")),
        )


def get_status_client(provider: Optional[PaymentProvider]) -> Optional[RemoteStatusClient]:
    """
    Get the configured status client for a provider.

    Returns None when the provider is unknown or its credentials are not
    configured; callers skip the remote pass in that case.
    """
    if provider == PaymentProvider.ASAAS:
        if not settings.ASAAS_API_KEY:
            log_event("warning", "remote_status.unconfigured", provider=provider.value)
            return None
        return AsaasStatusClient(settings.ASAAS_API_KEY)

    if provider == PaymentProvider.PAGSEGURO:
        token = pagseguro_key()
        if not token:
            log_event("warning", "remote_status.unconfigured", provider=provider.value)
            return None
        return PagSeguroStatusClient(token)

    return None
