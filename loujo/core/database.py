"""
Database configuration and connection management.

This module provides:
- Table definitions for user subscription documents, schools,
  the webhook idempotency ledger and claims sync bookkeeping
- A Database object owning the SQLAlchemy engine and session factory
  (constructed by the process entry point and injected, never global)
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, false, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


class Database:
    """Owns one engine and its session factory."""

    def __init__(self, url: str, *, echo: bool = False):
        if not url:
            raise ValueError(
                "DATABASE_URL is not configured. "
                "Set DATABASE_URL in environment or .env file."
            )
        self.url = url
        if url.startswith("sqlite"):
            self.engine: Engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                echo=echo,
            )
        else:
            self.engine = create_engine(
                url,
                pool_size=POOL_SIZE,
                max_overflow=MAX_OVERFLOW,
                pool_timeout=POOL_TIMEOUT,
                pool_recycle=POOL_RECYCLE,
                pool_pre_ping=True,
                echo=echo,
            )
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
        )

    @contextmanager
    def session(self):
        """
        Context manager for database sessions.

        Usage:
            with db.session() as session:
                session.execute(...)
                session.commit()
        """
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all_tables(self) -> None:
        """Create all tables defined in metadata (idempotent)."""
        metadata.create_all(bind=self.engine)

    def drop_all_tables(self) -> None:
        """
        Drop all tables defined in metadata.

        WARNING: This is destructive! Only use in tests or development.
        """
        metadata.drop_all(bind=self.engine)

    def check_connection(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    def dispose(self) -> None:
        self.engine.dispose()


def create_database(url: Optional[str], *, create_tables: bool = True) -> Database:
    db = Database(url)
    if create_tables:
        db.create_all_tables()
    return db


# User documents: identity uid is the canonical key; provider ids are secondary indexes
users = Table(
    'users',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('role', String(32), nullable=False, server_default='unset'),
    Column('school_id', String(64), nullable=True),
    Column('school_name', Text, nullable=True),
    Column('plan_kind', String(16), nullable=False, server_default='none'),
    Column('provider', String(32), nullable=True),
    Column('subscription_id', String(128), nullable=True, unique=True),
    Column('ended_subscription_id', String(128), nullable=True),
    Column('subscription_status', String(32), nullable=False, server_default='none'),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('monthly_quota', Integer, nullable=False, server_default='0'),
    Column('generations_this_month', Integer, nullable=False, server_default='0'),
    Column('last_quota_reset', DateTime(timezone=True), nullable=True),
    Column('provider_customer_id', String(128), nullable=True),
    Column('is_school_admin_subscribed', Boolean, nullable=False, server_default=false()),
    Column('is_parent_subscribed', Boolean, nullable=False, server_default=false()),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_ended_subscription_id', 'ended_subscription_id'),
    Index('idx_users_provider_customer_id', 'provider_customer_id'),
)

# Schools (add-only; one owned school per admin)
schools = Table(
    'schools',
    metadata,
    Column('school_id', String(64), primary_key=True),
    Column('name', Text, nullable=False),
    Column('primary_admin_uid', String(128), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Webhook idempotency ledger: one row per reconciled event key
subscription_events = Table(
    'subscription_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_key', String(200), nullable=False, unique=True),
    Column('provider', String(32), nullable=False),
    Column('provider_event_id', String(128), nullable=True),
    Column('event_type', String(64), nullable=False),
    Column('subscription_id', String(128), nullable=True),
    Column('user_id', String(128), nullable=True),
    Column('outcome', String(64), nullable=False),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscription_events_subscription_id', 'subscription_id'),
    Index('idx_subscription_events_user_id', 'user_id'),
)

# Identity-provider claims push bookkeeping (for the sweep)
claims_sync = Table(
    'claims_sync',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('last_sync_at', DateTime(timezone=True), nullable=True),
    Column('last_error', Text, nullable=True),
    Column('last_error_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
