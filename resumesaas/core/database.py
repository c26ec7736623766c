"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Ledger table definitions (subscriptions, usage events, payment events)
- Generated document storage
"""
import logging
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    event,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from resumesaas.core.config import settings
from resumesaas.core.errors import StorageUnavailableError

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30  # seconds a writer waits for the database lock

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _enable_sqlite_immediate_transactions(engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite's deferred BEGIN lets two readers race to upgrade; BEGIN IMMEDIATE
    serializes writers instead, so concurrent debits queue behind the lock.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


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

    if _engine is not None:
        _engine.dispose()

    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT} if is_sqlite else {}

    # Create engine with connection pooling
    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query logging
    )
    if is_sqlite:
        _enable_sqlite_immediate_transactions(_engine)

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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


def _rollback_quietly(session: Session) -> None:
    try:
        session.rollback()
    except (OperationalError, InterfaceError):
        logger.warning("database.rollback_failed", exc_info=True)


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success, rolls back on error. Connectivity failures surface as
    StorageUnavailableError so callers can never mistake them for "no usage".

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except (OperationalError, InterfaceError) as exc:
        _rollback_quietly(session)
        logger.error("database.unavailable", exc_info=True)
        raise StorageUnavailableError("Ledger store unavailable") from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(session: Optional[Session] = None):
    """Reuse the caller's session (no commit) or open a new committed one."""
    if session is not None:
        yield session
        return
    with get_db_session() as own_session:
        yield own_session


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Billing customers (Stripe customer per user)
billing_customers = Table(
    'billing_customers',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('stripe_customer_id', String(100), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_customers_stripe_id', 'stripe_customer_id'),
)

# Subscriptions: one row per user, written by the payment synchronizer.
# ledger_version is the optimistic-concurrency token every debit must match.
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('plan_id', String(50), nullable=False),
    Column('status', String(20), nullable=False),  # active, past_due, canceled, free
    Column('external_customer_ref', String(100), nullable=True),
    Column('external_subscription_ref', String(100), nullable=True, unique=True),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    # Placeholder period from a checkout event that carried none
    Column('period_provisional', Boolean, nullable=False, server_default='0'),
    Column('ledger_version', Integer, nullable=False, server_default='0'),
    # Time of the last subscription-state write; NULL for rows created by a debit
    Column('updated_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscriptions_plan_id', 'plan_id'),
    Index('idx_subscriptions_customer_ref', 'external_customer_ref'),
)

# Usage events: append-only credit ledger (debits positive, refunds negative)
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('credits', Integer, nullable=False),
    Column('kind', String(20), nullable=False, server_default='debit'),  # debit, refund
    Column('refund_of', Integer, nullable=True, unique=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('period_end', DateTime(timezone=True), nullable=False),
    Column('metadata', JSON, nullable=True),
    # Balance query pattern: (user_id, period_start)
    Index('idx_usage_events_user_period', 'user_id', 'period_start'),
    Index('idx_usage_events_user_occurred', 'user_id', 'occurred_at'),
)

# Payment events (webhook idempotency)
payment_events = Table(
    'payment_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('user_id', String(100), nullable=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default='0'),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('event_id', name='uq_payment_events_event_id'),
    Index('idx_payment_events_received_at', 'received_at'),
    Index('idx_payment_events_processed', 'processed'),
)

# Admin audit log
billing_admin_audit = Table(
    'billing_admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),
    Column('action', String(100), nullable=False),  # "sync_subscription", "set_subscription", "refund_usage"
    Column('target_user_id', String(100), nullable=True),
    Column('target_resource', String(200), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_admin_audit_action', 'action'),
    Index('idx_billing_admin_audit_user_id', 'target_user_id'),
    Index('idx_billing_admin_audit_created_at', 'created_at'),
)

# Generated documents: resumes, cover letters and other feature output per user
generated_documents = Table(
    'generated_documents',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('title', String(300), nullable=False),
    Column('content', Text, nullable=False),
    Column('inputs', JSON, nullable=True),  # request fields the content was generated from
    Column('request_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_generated_documents_user_created', 'user_id', 'created_at'),
    Index('idx_generated_documents_user_feature', 'user_id', 'feature'),
)
