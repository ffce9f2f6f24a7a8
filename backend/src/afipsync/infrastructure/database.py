"""
Database configuration and session management with SQLAlchemy.

Uses async SQLAlchemy for non-blocking database operations.
The ``orders`` table is the invoicing ledger: one row per exchange
order, keyed by ``order_number``.

Design Decisions:
- AsyncSession for non-blocking operations
- ``order_number`` primary key is the idempotency guard, enforced by
  the database rather than by application checks
- ``success`` is tri-state: NULL pending, true invoiced, false failed
- SQLite (aiosqlite) by default, PostgreSQL (asyncpg) in production
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from afipsync.config import get_settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class OrderRow(Base):
    """
    Ledger row for one exchange order.

    Created when the order is first fetched (pending), then moved to a
    terminal state exactly once by the reconciliation run or by a
    manual entry.
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "processing_method IN ('automatic', 'manual')",
            name="ck_orders_processing_method",
        ),
    )

    order_number: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Order snapshot (NULL for manual entries of orders never fetched)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(28, 8))
    price: Mapped[Decimal | None] = mapped_column(Numeric(28, 8))
    total_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    asset: Mapped[str | None] = mapped_column(String(16))
    fiat: Mapped[str | None] = mapped_column(String(8))
    trade_type: Mapped[str | None] = mapped_column(String(4))
    create_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    buyer_nickname: Mapped[str | None] = mapped_column(String(128))
    seller_nickname: Mapped[str | None] = mapped_column(String(128))

    # Processing outcome
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    success: Mapped[bool | None] = mapped_column(Boolean, index=True)
    cae: Mapped[str | None] = mapped_column(String(14))
    cae_expiration: Mapped[date | None] = mapped_column(Date)
    voucher_number: Mapped[int | None] = mapped_column(Integer)
    invoice_date: Mapped[date | None] = mapped_column(Date)
    processing_method: Mapped[str | None] = mapped_column(String(16))
    error_message: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)

    # Submission tracking (which sales point / voucher an attempt targeted)
    sales_point: Mapped[int | None] = mapped_column(Integer)
    invoice_type: Mapped[int | None] = mapped_column(Integer)
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expected_voucher: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# Engine and session factory (initialized lazily)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_for(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
    )


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for(settings.database_url, echo=settings.debug)
        logger.info(f"Database engine created for {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory for creating database sessions."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Initialize database tables.

    Call this on startup to ensure tables exist.
    In production, use Alembic migrations instead.
    """
    engine = engine or get_engine()
    if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
        Path(engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


async def close_db() -> None:
    """Close database connections on shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
    logger.info("Database connections closed")
