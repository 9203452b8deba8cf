"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite file databases)
- Table definitions for the entitlement store
"""
from typing import Optional, Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, BigInteger, String, DateTime, Boolean, Text, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
import logging
import os

from paygate.core.config import settings


logger = logging.getLogger("paygate.database")

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


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
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
    test_url = os.getenv("TEST_DATABASE_URL")
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
        # File-backed SQLite shares connections across worker threads in tests
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
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


def dispose_engine() -> None:
    """Close pooled connections and forget the engine."""
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


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it."""
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dialect_insert(session: Session, table: Table):
    """Dialect-specific INSERT supporting on_conflict_do_nothing()."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"ON CONFLICT inserts not supported for dialect {name}")


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Protected resources (gate chats) and their price configuration
resources = Table(
    'resources',
    metadata,
    Column('resource_id', BigInteger, primary_key=True, autoincrement=False),
    Column('title', Text, nullable=False),
    Column('price', BigInteger, nullable=False),  # nanotons
    Column('tolerance_bps', Integer, nullable=False, server_default='100'),
    Column('access_period_seconds', Integer, nullable=True),  # NULL = lifetime access
    Column('beneficiary_address', String(100), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('created_at', DateTime(timezone=True), default=utc_now, nullable=False),
    Column('updated_at', DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False),
    Index('idx_resources_is_active', 'is_active'),
)

# Factory-side record: one escrow contract per resource, write-once
deployed_contracts = Table(
    'deployed_contracts',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('resource_id', BigInteger, nullable=False),
    Column('contract_address', String(100), nullable=False),
    Column('deployed_at', DateTime(timezone=True), default=utc_now, nullable=False),
    UniqueConstraint('resource_id', name='uq_deployed_contracts_resource'),
    UniqueConstraint('contract_address', name='uq_deployed_contracts_address'),
)

# Entitlements: one row per (subject, resource)
entitlements = Table(
    'entitlements',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subject_id', BigInteger, nullable=False),
    Column('resource_id', BigInteger, nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, active, revoked
    Column('price_expected', BigInteger, nullable=False),
    Column('tolerance_bps', Integer, nullable=False, server_default='100'),
    Column('contract_address', String(100), nullable=True),
    Column('subject_address', String(100), nullable=True),
    Column('transaction_hash', String(128), nullable=True),
    Column('created_at', DateTime(timezone=True), default=utc_now, nullable=False),
    Column('activated_at', DateTime(timezone=True), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('revoked_at', DateTime(timezone=True), nullable=True),
    Column('revoked_reason', Text, nullable=True),
    # Set while an active time-bound row waits for a renewal payment
    Column('renewal_requested_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False),
    UniqueConstraint('subject_id', 'resource_id', name='uq_entitlements_subject_resource'),
    UniqueConstraint('transaction_hash', name='uq_entitlements_transaction_hash'),
    # Reconciler scan: pending rows inside the lookback window
    Index('idx_entitlements_status_created', 'status', 'created_at'),
)

# Append-only ledger of credited transactions
payments = Table(
    'payments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('entitlement_id', Integer, ForeignKey('entitlements.id', ondelete='SET NULL'), nullable=True, index=True),
    Column('transaction_hash', String(128), nullable=False),
    Column('amount', BigInteger, nullable=False),
    Column('from_address', String(100), nullable=True),
    Column('to_address', String(100), nullable=True),
    Column('confirmed_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), default=utc_now, nullable=False),
    UniqueConstraint('transaction_hash', name='uq_payments_transaction_hash'),
)

# Join requests waiting for payment (non-authoritative cache)
pending_access_requests = Table(
    'pending_access_requests',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subject_id', BigInteger, nullable=False),
    Column('resource_id', BigInteger, nullable=False),
    Column('requested_at', DateTime(timezone=True), default=utc_now, nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('payment_prompt_sent', Boolean, nullable=False, server_default='false'),
    UniqueConstraint('subject_id', 'resource_id', name='uq_pending_access_subject_resource'),
    Index('idx_pending_access_expires_at', 'expires_at'),
)

# Reconciler cycle history
reconciler_runs = Table(
    'reconciler_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),  # success, degraded, failed
    Column('stats_json', Text, nullable=True),
    Index('idx_reconciler_runs_started_at', 'started_at'),
)
