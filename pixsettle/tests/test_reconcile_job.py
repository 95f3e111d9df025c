"""
Pending-payment reconciliation job and admin routes.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from pixsettle.core.config import settings
from pixsettle.core.errors import PaymentNotFoundError
from pixsettle.core.metrics import reconcile_last_checked
from pixsettle.features.payments.reconcile_job import reconcile_payment, run_reconcile_job
from pixsettle.features.payments.remote_status import RemoteStatus, RemoteStatusError
from pixsettle.features.payments.repository import get_payment
from pixsettle.main import app

client = TestClient(app)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeStatusClient:
    """Answers by provider id from a fixed table; values may be exceptions."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    def get_status(self, provider_id):
        self.calls.append(provider_id)
        answer = self.answers.get(provider_id)
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def pending_payments(seed_user, seed_plan, seed_payment):
    seed_plan("plan_monthly", duration_days=30)
    seed_user("user_alice")
    seed_payment("p_paid", provider_order_id="ORDE_paid", created_at=NOW - timedelta(hours=3))
    seed_payment("p_waiting", provider_order_id="ORDE_waiting", created_at=NOW - timedelta(hours=2))
    seed_payment("p_broken", provider_order_id="ORDE_broken", created_at=NOW - timedelta(hours=1))
    seed_payment("p_no_order", created_at=NOW - timedelta(hours=4))
    seed_payment("p_done", status="PAID", provider_order_id="ORDE_done", paid_at=NOW)
    return FakeStatusClient({
        "ORDE_paid": RemoteStatus(status="PAID", paid_at=NOW - timedelta(minutes=30)),
        "ORDE_waiting": RemoteStatus(status="WAITING"),
        "ORDE_broken": RemoteStatusError("pagseguro returned HTTP 502"),
    })


def test_sweep_settles_paid_and_counts_the_rest(pending_payments):
    result = run_reconcile_job(now=NOW, limit=10, client_factory=lambda provider: pending_payments)

    assert result == {
        "checked": 3,
        "settled": 1,
        "still_pending": 1,
        "errors": 1,
        "timestamp": NOW.isoformat(),
    }
    assert pending_payments.calls == ["ORDE_paid", "ORDE_waiting", "ORDE_broken"]
    paid = get_payment("p_paid")
    assert paid.status.value == "PAID"
    assert paid.paid_at == NOW - timedelta(minutes=30)
    assert get_payment("p_waiting").status.value == "PENDING"
    assert reconcile_last_checked.value() == 3


def test_sweep_respects_limit_oldest_first(pending_payments):
    result = run_reconcile_job(now=NOW, limit=1, client_factory=lambda provider: pending_payments)

    assert result["checked"] == 1
    assert pending_payments.calls == ["ORDE_paid"]


def test_sweep_uses_configured_batch_limit(pending_payments, monkeypatch):
    monkeypatch.setattr(settings, "RECONCILE_BATCH_LIMIT", 2)

    result = run_reconcile_job(now=NOW, client_factory=lambda provider: pending_payments)

    assert result["checked"] == 2


def test_sweep_continues_after_unexpected_error(pending_payments):
    broken = Mock()
    broken.get_status.side_effect = RuntimeError("bug")

    result = run_reconcile_job(now=NOW, client_factory=lambda provider: broken)

    assert result["errors"] == 3
    assert result["settled"] == 0


def test_reconcile_single_payment(pending_payments):
    outcome = reconcile_payment("p_paid", now=NOW, client_factory=lambda provider: pending_payments)

    assert outcome == {"payment_id": "p_paid", "outcome": "settled", "status": "PAID"}


def test_reconcile_single_already_paid(pending_payments):
    outcome = reconcile_payment("p_done", client_factory=lambda provider: pending_payments)

    assert outcome["outcome"] == "already_confirmed"
    assert pending_payments.calls == []


def test_reconcile_single_remote_failure(pending_payments):
    outcome = reconcile_payment("p_broken", client_factory=lambda provider: pending_payments)

    assert outcome["outcome"] == "not_paid"
    assert outcome["remote_error"] == "pagseguro returned HTTP 502"


def test_reconcile_single_unknown_payment():
    with pytest.raises(PaymentNotFoundError):
        reconcile_payment("nope")


def test_admin_routes_require_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", "admin-secret")

    missing = client.post("/v1/admin/payments/reconcile")
    wrong = client.post("/v1/admin/payments/reconcile", headers={"X-Admin-Key": "guess"})
    single = client.post("/v1/admin/payments/p_paid/reconcile")

    assert missing.status_code == 403
    assert wrong.status_code == 403
    assert single.status_code == 403
    assert missing.json()["error"]["code"] == "admin_forbidden"


def test_admin_routes_refused_when_key_unset():
    resp = client.post("/v1/admin/payments/reconcile", headers={"X-Admin-Key": "anything"})

    assert resp.status_code == 403


def test_admin_sweep_route(pending_payments, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", "admin-secret")
    # Without provider credentials no client is configured: nothing settles
    resp = client.post("/v1/admin/payments/reconcile?limit=5", headers={"X-Admin-Key": "admin-secret"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["checked"] == 3
    assert body["settled"] == 0
    assert body["still_pending"] == 3


def test_admin_single_route_unknown_payment(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", "admin-secret")

    resp = client.post("/v1/admin/payments/nope/reconcile", headers={"X-Admin-Key": "admin-secret"})

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "payment_not_found"


def test_admin_single_route_settles(pending_payments, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", "admin-secret")
    monkeypatch.setattr(
        "pixsettle.features.payments.reconcile_job.get_status_client",
        lambda provider: pending_payments,
    )

    resp = client.post("/v1/admin/payments/p_paid/reconcile", headers={"X-Admin-Key": "admin-secret"})

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "settled"


def test_reconcile_single_cancelled_payment_stays_cancelled(seed_user, seed_plan, seed_payment):
    seed_plan("plan_monthly")
    seed_user("user_alice")
    seed_payment("p_cancelled", status="CANCELLED", provider_order_id="ORDE_cancelled")
    remote = FakeStatusClient({"ORDE_cancelled": RemoteStatus(status="PAID", paid_at=NOW)})

    outcome = reconcile_payment("p_cancelled", now=NOW, client_factory=lambda provider: remote)

    assert outcome == {"payment_id": "p_cancelled", "outcome": "not_paid", "status": "CANCELLED"}
    assert get_payment("p_cancelled").status.value == "CANCELLED"
