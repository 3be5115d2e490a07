"""
Database configuration and connection management.

This module provides:
- SQLAlchemy table definitions for users, plans, family members and payment events
- The Database object injected into every service (engine + session factory)
- SQLite pragmas (WAL journal, foreign keys) for the default single-file store
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, event, MetaData, Table, Column, Integer, String, DateTime, Numeric, Text, Index, ForeignKey, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from savepad.core.config import settings

logger = logging.getLogger("savepad")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration (server databases only)
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def build_engine(url: str):
    """Create an engine suited to the URL.

    In-memory SQLite shares one connection across threads (StaticPool) so
    FastAPI's threadpool sees the same data; file SQLite and server
    databases use regular pooling.
    """
    if _is_sqlite(url):
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        event.listen(engine, "connect", _sqlite_pragmas)
        return engine

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


class Database:
    """
    Storage capability handed to each service at construction.

    Usage:
        db = Database("sqlite:///./savepad.db")
        with db.session() as session:
            session.execute(...)
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or get_database_url()
        if not self.url:
            raise ValueError(
                "DATABASE_URL is not configured. "
                "Set DATABASE_URL in environment or .env file."
            )
        self.engine = build_engine(self.url)
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
        )

    @contextmanager
    def session(self):
        """Transactional session: commits on success, rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def session_or(self, session=None):
        """Join the caller's session when given, otherwise open a transactional one."""
        if session is not None:
            yield session
        else:
            with self.session() as own:
                yield own

    def create_all(self) -> None:
        """
        Create all tables defined in metadata.

        This is idempotent - tables that already exist will not be recreated.
        """
        metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """
        Drop all tables defined in metadata.

        WARNING: This is destructive! Only use in tests or development.
        """
        metadata.drop_all(bind=self.engine)

    def check_connection(self) -> bool:
        """
        Check if database connection is available.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        except Exception as e:
            logger.warning(f"Database connection check failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()


# Users: registered accounts, invite placeholders and WhatsApp-linked members
users = Table(
    'users',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', Text, nullable=True),
    Column('email', String(255), nullable=True, unique=True),
    Column('phone', String(32), nullable=True, unique=True),
    Column('password_hash', String(255), nullable=True),
    Column('status', String(30), nullable=False, server_default='registered'),
    Column('verification_code', String(12), nullable=True, index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('verified_at', DateTime(timezone=True), nullable=True),
    Index('idx_users_created_at', 'created_at'),
)

# Plans: one row per checkout, owned by a canonical user id
plans = Table(
    'plans',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id'), nullable=False, index=True),
    Column('type', String(50), nullable=False),
    Column('mode', String(20), nullable=False, server_default='individual'),
    Column('status', String(50), nullable=False, server_default='pending', index=True),
    Column('recurrence', String(20), nullable=True),
    Column('amount', Numeric(10, 2, asdecimal=False), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('checkout_id', String(100), nullable=True, index=True),  # provider preference id
    Column('preapproval_id', String(100), nullable=True, unique=True),  # provider recurring subscription id
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Composite index for "latest plan for owner with status" lookups
    Index('idx_plans_user_status', 'user_id', 'status'),
)

# Family memberships: member_id is NULL while the invite waits for the phone to be linked
family_members = Table(
    'family_members',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_id', Integer, ForeignKey('users.id'), nullable=False, index=True),
    Column('member_id', Integer, ForeignKey('users.id'), nullable=True, index=True),
    Column('name', Text, nullable=True),  # display name snapshot at invite time
    Column('whatsapp_number', String(32), nullable=True, index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('owner_id', 'member_id', name='uq_family_members_owner_member'),
    UniqueConstraint('owner_id', 'whatsapp_number', name='uq_family_members_owner_phone'),
)

# Payment events: one row per (payment, status) the reconciler applied
payment_events = Table(
    'payment_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('payment_id', String(100), nullable=False, index=True),
    Column('event_type', String(50), nullable=False),
    Column('status', String(50), nullable=False),
    Column('plan_id', Integer, ForeignKey('plans.id'), nullable=True),
    Column('user_id', Integer, ForeignKey('users.id'), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('payment_id', 'status', name='uq_payment_events_payment_status'),
)
