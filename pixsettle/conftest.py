# pixsettle/conftest.py
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import insert

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from pixsettle.core.config import settings
from pixsettle.core.database import (
    clear_all_tables,
    coupons,
    create_all_tables,
    get_db_session,
    init_engine,
    payments,
    plans,
    users,
)
from pixsettle.core.metrics import METRICS


@pytest.fixture(scope="session", autouse=True)
def db_url(tmp_path_factory):
    """
    Point the engine at a throwaway SQLite file for the whole session.

    A file (not :memory:) so connections from the TestClient threadpool see
    the same database.
    """
    path = tmp_path_factory.mktemp("db") / "pixsettle_test.db"
    url = f"sqlite:///{path}"
    init_engine(url)
    create_all_tables()
    yield url


@pytest.fixture(scope="function", autouse=True)
def reset_state(monkeypatch):
    """Empty every table, zero metrics and drop provider credentials before each test."""
    clear_all_tables()
    METRICS.reset()
    for key in (
        "ASAAS_API_KEY",
        "ASAAS_WEBHOOK_TOKEN",
        "PAGSEGURO_APP_KEY",
        "PAGSEGURO_TOKEN",
        "PAGSEGURO_WEBHOOK_TOKEN",
        "ADMIN_KEY",
    ):
        monkeypatch.setattr(settings, key, None)
    monkeypatch.setattr(settings, "DEFAULT_PLAN_DURATION_DAYS", 30)
    monkeypatch.setattr(settings, "PLAN_TIMEZONE", "America/Sao_Paulo")
    yield


@pytest.fixture
def seed_plan():
    def _seed(plan_id="plan_monthly", duration_days=30, name=None, price=19.9):
        with get_db_session() as session:
            session.execute(
                insert(plans).values(
                    plan_id=plan_id,
                    name=name or plan_id.replace("_", " ").title(),
                    price=price,
                    duration_days=duration_days,
                )
            )
        return plan_id
    return _seed


@pytest.fixture
def seed_user():
    def _seed(user_id="user_alice", plan_id=None, plan_expires_at=None):
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    email=f"{user_id}@example.com",
                    plan_id=plan_id,
                    plan_expires_at=plan_expires_at,
                )
            )
        return user_id
    return _seed


@pytest.fixture
def seed_coupon():
    def _seed(coupon_id="coupon_promo", code=None, used_count=0, max_uses=None, is_active=True):
        with get_db_session() as session:
            session.execute(
                insert(coupons).values(
                    coupon_id=coupon_id,
                    code=code or coupon_id.upper(),
                    discount_type="PERCENTAGE",
                    discount_value=10,
                    used_count=used_count,
                    max_uses=max_uses,
                    is_active=is_active,
                )
            )
        return coupon_id
    return _seed


@pytest.fixture
def seed_payment():
    def _seed(
        payment_id="payment_1",
        user_id="user_alice",
        plan_id="plan_monthly",
        coupon_id=None,
        method="PIX",
        provider=None,
        status="PENDING",
        provider_order_id=None,
        provider_reference_id=None,
        paid_at=None,
        created_at=None,
    ):
        with get_db_session() as session:
            session.execute(
                insert(payments).values(
                    payment_id=payment_id,
                    user_id=user_id,
                    plan_id=plan_id,
                    coupon_id=coupon_id,
                    method=method,
                    provider=provider,
                    status=status,
                    amount=19.9,
                    provider_order_id=provider_order_id,
                    provider_reference_id=provider_reference_id,
                    paid_at=paid_at,
                    created_at=created_at or datetime.now(timezone.utc),
                )
            )
        return payment_id
    return _seed
