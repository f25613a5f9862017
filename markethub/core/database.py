"""
Database engine, sessions and table definitions.

- One MetaData holding user_usage, billing_events and products
- Engine built from TEST_DATABASE_URL (tests) or DATABASE_URL
- PostgreSQL in production; SQLite accepted for local runs and tests
- dialect_insert() for INSERT ... ON CONFLICT upserts on either dialect
"""
from contextlib import contextmanager
from typing import Optional
import logging
import os

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import func

from markethub.core.config import settings


logger = logging.getLogger(__name__)

metadata = MetaData()

POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600

# Seconds a SQLite writer waits for the lock held by a concurrent transaction
SQLITE_BUSY_TIMEOUT = 30

_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL when set, otherwise DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """Build the pooled engine and session factory."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}

    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
    )
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    logger.info("[db] engine initialised", extra={"dialect": _engine.dialect.name})
    return _engine


def dispose_engine() -> None:
    """Close pooled connections; the next use re-initialises the engine."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Transactional session scope.

        with get_db_session() as session:
            session.execute(...)

    Commits on clean exit, rolls back and re-raises on any exception.
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dialect_insert(session: Session, table: Table):
    """INSERT construct with on_conflict_do_* for the session's dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect!r}")


def create_all_tables():
    """Create missing tables; existing tables are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables():
    """Drop every table. Tests and local development only."""
    metadata.drop_all(bind=get_engine())


def reset_database():
    """Drop and recreate every table. Tests only."""
    drop_all_tables()
    create_all_tables()


# Usage metering: one row per user (tier, counters, billing linkage, coupon audit)
user_usage = Table(
    'user_usage',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('tier', String(20), nullable=False, server_default='free'),
    Column('tier_source', String(20), nullable=False, server_default='default'),
    Column('subscribed', Boolean, nullable=False, server_default='0'),
    Column('products_count', Integer, nullable=False, server_default='0'),
    Column('images_count', Integer, nullable=False, server_default='0'),
    Column('copies_count', Integer, nullable=False, server_default='0'),
    Column('content_marketing_count', Integer, nullable=False, server_default='0'),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=True),
    Column('subscription_end_date', DateTime(timezone=True), nullable=True),
    Column('coupon_applied', String(100), nullable=True),
    Column('coupon_applied_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Upserts conflict on user_id
    UniqueConstraint('user_id', name='uq_user_usage_user_id'),
    # Webhook intake resolves users by Stripe customer
    Index('idx_user_usage_stripe_customer', 'stripe_customer_id'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)

# Products created through the metered `products` action
products = Table(
    'products',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('name', Text, nullable=False),
    Column('description', Text, nullable=True),
    Column('image_url', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # list-by-owner pattern: (user_id, created_at)
    Index('idx_products_user_created', 'user_id', 'created_at'),
)
