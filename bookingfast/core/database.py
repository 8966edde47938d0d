"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for SQLite test databases)
- Table definitions for the entitlement store
"""
from typing import Optional
from contextlib import contextmanager
import logging
import os

from sqlalchemy import (
    create_engine,
    event,
    false,
    true,
    MetaData,
    Table,
    Column,
    Integer,
    Numeric,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    text,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from bookingfast.core.config import settings

logger = logging.getLogger(__name__)

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


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


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
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
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


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits once on success and rolls back everything on error, so a block of
    writes is all-or-nothing.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


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
        logger.warning("Database connection check failed: %s", e)
        return False


# Users known to the engine (owners and invited team members)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=False, unique=True),
    Column('full_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Plugin catalog (managed externally, read-only for the engine)
plugins = Table(
    'plugins',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('slug', String(100), nullable=False, unique=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('icon', String(100), nullable=True),
    Column('category', String(100), nullable=False),
    Column('base_price', Numeric(10, 2), nullable=False, server_default='0'),
    Column('features', JSON, nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('is_featured', Boolean, nullable=False, server_default=false()),
    Column('stripe_price_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_plugins_active_featured', 'is_active', 'is_featured'),
)

# Live subscription per (owner, plugin); at most one row per pair
plugin_subscriptions = Table(
    'plugin_subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('owner_id', String(100), nullable=False, index=True),
    Column('plugin_id', String(100), ForeignKey('plugins.id', ondelete='CASCADE'), nullable=False),
    Column('status', String(20), nullable=False),  # trial, active, cancelled, expired
    Column('is_trial', Boolean, nullable=False, server_default=false()),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('trial_used', Boolean, nullable=False, server_default=false()),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('processor_ref', String(255), nullable=True),
    Column('activated_features', JSON, nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('owner_id', 'plugin_id', name='uq_plugin_subscriptions_owner_plugin'),
    Index('idx_plugin_subscriptions_owner_created', 'owner_id', 'created_at'),
    Index('idx_plugin_subscriptions_processor_ref', 'processor_ref'),
)

# Append-only trial ledger; survives deletion of the live subscription row
plugin_trial_history = Table(
    'plugin_trial_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_id', String(100), nullable=False),
    Column('plugin_id', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('trial_ends_at', DateTime(timezone=True), nullable=False),
    # The conditional write that makes a trial one-time
    UniqueConstraint('owner_id', 'plugin_id', name='uq_plugin_trial_history_owner_plugin'),
)

# Team members (deactivated, never hard-deleted, on removal)
team_members = Table(
    'team_members',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('owner_id', String(100), nullable=False, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('email', String(320), nullable=False),
    Column('full_name', Text, nullable=True),
    Column('role_name', String(50), nullable=False),
    Column('custom_permissions', JSON, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('invited_by', String(100), nullable=True),
    Column('invited_at', DateTime(timezone=True), nullable=False),
    Column('joined_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('owner_id', 'user_id', name='uq_team_members_owner_user'),
    Index('idx_team_members_owner_active', 'owner_id', 'is_active'),
)

# Per-member, per-plugin access flag; only ever restricts owner access
team_member_plugin_permissions = Table(
    'team_member_plugin_permissions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('member_id', String(36), ForeignKey('team_members.id', ondelete='CASCADE'), nullable=False),
    Column('owner_id', String(100), nullable=False),
    Column('plugin_id', String(100), ForeignKey('plugins.id', ondelete='CASCADE'), nullable=False),
    Column('can_access', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('member_id', 'owner_id', 'plugin_id', name='uq_member_plugin_permissions'),
    Index('idx_member_plugin_permissions_owner_plugin', 'owner_id', 'plugin_id'),
)

# Billing customers (Stripe)
billing_customers = Table(
    'billing_customers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_id', String(100), nullable=False, unique=True, index=True),
    Column('stripe_customer_id', String(100), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True, index=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default=false(), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
)
