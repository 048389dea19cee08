"""SQLAlchemy async engine, session factory, and ORM table definitions."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, func
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from cgm_sync.config import get_settings


# ── Base ──────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


# ── ORM tables ────────────────────────────────────────────────

class CredentialRow(Base):
    """Dexcom OAuth credential pair, one row per user."""

    __tablename__ = "dexcom_credentials"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    refresh_token_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_refresh: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class GlucoseReadingRow(Base):
    """Persisted EGV.  ``id`` is ``<user_id>_<system_time epoch ms>``."""

    __tablename__ = "glucose_readings"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    system_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    display_time: Mapped[datetime] = mapped_column(DateTime)
    value: Mapped[float] = mapped_column(Float)
    unit: Mapped[str] = mapped_column(String(16), default="mg/dL")
    trend: Mapped[str] = mapped_column(String(32), default="none")
    trend_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RateLimitLedgerRow(Base):
    """Global rolling-window call ledger guarded by a version counter."""

    __tablename__ = "rate_limit_ledger"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    calls_json: Mapped[str] = mapped_column(Text, default="[]")  # epoch ms, ascending
    last_call: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class HealthMetricRow(Base):
    """Append-only diagnostic record of a vendor-facing operation."""

    __tablename__ = "health_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation: Mapped[str] = mapped_column(String(64), index=True)
    success: Mapped[bool] = mapped_column(Boolean)
    response_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


# ── Engine & session ──────────────────────────────────────────

def create_engine(database_url: str) -> AsyncEngine:
    """Build an async engine; in-memory SQLite shares one connection."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            return create_async_engine(
                database_url,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        # URL format: sqlite+aiosqlite:///path/to/db
        db_path = Path(database_url.split("///", 1)[-1])
        db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (idempotent)."""
    if engine is None:
        engine = create_engine(get_settings().database_url)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        finally:
            await engine.dispose()
        return
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
