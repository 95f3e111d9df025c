"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for users, plans, coupons and payments
"""
from typing import Optional
from contextlib import contextmanager
from datetime import timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Numeric, Index, ForeignKey, text, true
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator
import logging
import os

from pixsettle.core.config import settings

logger = logging.getLogger("pixsettle")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops tzinfo on storage, so values are normalized to UTC on the
    way in and re-tagged as UTC on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # Request handlers run in a threadpool; SQLite connections must be shareable
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": POOL_TIMEOUT},
            echo=False,
        )
    else:
        # Create engine with connection pooling
        _engine = create_engine(
            url,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def clear_all_tables():
    """Delete every row, children first. Only use in tests."""
    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Plans sold by the storefront. duration_days of 0/NULL is a lifetime grant.
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(100), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('price', Numeric(10, 2, asdecimal=False), nullable=False, server_default='0'),
    Column('duration_days', Integer, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', UTCDateTime, server_default=func.now(), nullable=False),
)

# Users (owned by the account service; settlement only touches the plan columns).
# plan_id is the source of truth for plan presence; a NULL plan_expires_at with
# a plan_id set is a lifetime grant.
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True, unique=True),
    Column('plan_id', String(100), nullable=True),
    Column('plan_expires_at', UTCDateTime, nullable=True),
    Column('created_at', UTCDateTime, server_default=func.now(), nullable=False),
    Index('idx_users_plan_id', 'plan_id'),
)

# Discount coupons
coupons = Table(
    'coupons',
    metadata,
    Column('coupon_id', String(100), primary_key=True),
    Column('code', String(100), nullable=False, unique=True),
    Column('discount_type', String(20), nullable=False, server_default='PERCENTAGE'),
    Column('discount_value', Numeric(10, 2, asdecimal=False), nullable=False, server_default='0'),
    Column('used_count', Integer, nullable=False, server_default='0'),
    Column('max_uses', Integer, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('expires_at', UTCDateTime, nullable=True),
    Column('created_at', UTCDateTime, server_default=func.now(), nullable=False),
)

# Payments. plan_id carries no foreign key: the plan row may be gone by the
# time a webhook settles the payment.
payments = Table(
    'payments',
    metadata,
    Column('payment_id', String(100), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('plan_id', String(100), nullable=False),
    Column('coupon_id', String(100), ForeignKey('coupons.coupon_id', ondelete='SET NULL'), nullable=True),
    Column('method', String(20), nullable=False),  # PIX, BITCOIN, CARD
    Column('provider', String(20), nullable=True),  # asaas, pagseguro
    Column('status', String(20), nullable=False, server_default='PENDING', index=True),
    Column('amount', Numeric(10, 2, asdecimal=False), nullable=True),
    Column('provider_order_id', String(100), nullable=True),
    Column('provider_reference_id', String(100), nullable=True),
    Column('paid_at', UTCDateTime, nullable=True),
    Column('created_at', UTCDateTime, server_default=func.now(), nullable=False),
    Column('updated_at', UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False),
    # Provider identifiers are unique among PIX payments only
    Index(
        'uq_payments_pix_provider_order_id',
        'provider_order_id',
        unique=True,
        postgresql_where=text("method = 'PIX'"),
        sqlite_where=text("method = 'PIX'"),
    ),
    Index(
        'uq_payments_pix_provider_reference_id',
        'provider_reference_id',
        unique=True,
        postgresql_where=text("method = 'PIX'"),
        sqlite_where=text("method = 'PIX'"),
    ),
    Index('idx_payments_status_created', 'status', 'created_at'),
)

# Webhook deliveries that resolved to a payment
payment_webhook_events = Table(
    'payment_webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider', String(20), nullable=False),
    Column('event_type', String(100), nullable=True),
    Column('payment_id', String(100), nullable=True, index=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('outcome', String(50), nullable=False),
    Column('received_at', UTCDateTime, server_default=func.now(), nullable=False),
    Index('idx_payment_webhook_events_received_at', 'received_at'),
)
