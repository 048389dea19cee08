"""Data-access layer — thin async wrappers around SQLAlchemy queries."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Sequence, TypeVar

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from cgm_sync.models import CredentialRecord, GlucoseReading, HealthMetric
from cgm_sync.storage.database import (
    Base,
    CredentialRow,
    GlucoseReadingRow,
    HealthMetricRow,
    RateLimitLedgerRow,
)
from cgm_sync.timewindow import Clock, as_utc, from_epoch_millis, utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_UPSERT_CHUNK = 500


class BaseRepository:
    """Shared base holding the session factory used by every repository."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock


async def _upsert(
    session: AsyncSession,
    model: type[Base],
    rows: list[dict[str, Any]],
    key: str,
) -> None:
    """``INSERT … ON CONFLICT (key) DO UPDATE`` for SQLite and PostgreSQL.

    Other dialects fall back to ``Session.merge`` row by row.
    """
    if not rows:
        return
    dialect = session.bind.dialect.name
    if dialect in ("sqlite", "postgresql"):
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        for i in range(0, len(rows), _UPSERT_CHUNK):
            stmt = insert(model).values(rows[i : i + _UPSERT_CHUNK])
            stmt = stmt.on_conflict_do_update(
                index_elements=[key],
                set_={col: stmt.excluded[col] for col in rows[0] if col != key},
            )
            await session.execute(stmt)
        return
    for values in rows:
        await session.merge(model(**values))


# ── Credentials ───────────────────────────────────────────────


def _credential_from_row(row: CredentialRow) -> CredentialRecord:
    return CredentialRecord(
        user_id=row.user_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=as_utc(row.expires_at),
        refresh_token_created_at=as_utc(row.refresh_token_created_at),
        last_refresh=as_utc(row.last_refresh) if row.last_refresh else None,
    )


class CredentialRepository(BaseRepository):
    """One Dexcom credential record per user; saves always overwrite."""

    async def get(self, user_id: str) -> CredentialRecord | None:
        async with self._session_factory() as session:
            row = await session.get(CredentialRow, user_id)
            return _credential_from_row(row) if row else None

    async def save(self, record: CredentialRecord) -> None:
        values = {
            "user_id": record.user_id,
            "access_token": record.access_token,
            "refresh_token": record.refresh_token,
            "expires_at": record.expires_at,
            "refresh_token_created_at": record.refresh_token_created_at,
            "last_refresh": record.last_refresh,
            "updated_at": self._clock(),
        }
        async with self._session_factory() as session, session.begin():
            await _upsert(session, CredentialRow, [values], "user_id")
        logger.info("credentials.saved", user=record.user_id)

    async def delete(self, user_id: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(CredentialRow).where(CredentialRow.user_id == user_id)
            )
        deleted = bool(result.rowcount)
        logger.info("credentials.deleted", user=user_id, existed=deleted)
        return deleted

    async def list_all(self) -> list[CredentialRecord]:
        async with self._session_factory() as session:
            result = await session.execute(select(CredentialRow).order_by(CredentialRow.user_id))
            return [_credential_from_row(row) for row in result.scalars().all()]


# ── Glucose readings ──────────────────────────────────────────


def _reading_from_row(row: GlucoseReadingRow) -> GlucoseReading:
    return GlucoseReading(
        user_id=row.user_id,
        system_time=as_utc(row.system_time),
        display_time=row.display_time,
        value=row.value,
        unit=row.unit,
        trend=row.trend,
        trend_rate=row.trend_rate,
    )


class ReadingRepository(BaseRepository):
    """Glucose readings keyed by ``(user_id, system_time)``."""

    async def upsert_batch(self, readings: Sequence[GlucoseReading]) -> int:
        """Merge-write every reading in one transaction.

        A later write for the same ``(user_id, system_time)`` replaces the
        earlier content instead of adding a second row.
        """
        if not readings:
            return 0
        now = self._clock()
        # Last write wins inside a single batch as well.
        rows = {
            r.reading_id: {
                "id": r.reading_id,
                "user_id": r.user_id,
                "system_time": r.system_time,
                "display_time": r.display_time,
                "value": r.value,
                "unit": r.unit,
                "trend": r.trend,
                "trend_rate": r.trend_rate,
                "recorded_at": now,
            }
            for r in readings
        }
        async with self._session_factory() as session, session.begin():
            await _upsert(session, GlucoseReadingRow, list(rows.values()), "id")
        return len(rows)

    async def list_range(
        self,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[GlucoseReading]:
        stmt = select(GlucoseReadingRow).where(GlucoseReadingRow.user_id == user_id)
        if start is not None:
            stmt = stmt.where(GlucoseReadingRow.system_time >= start)
        if end is not None:
            stmt = stmt.where(GlucoseReadingRow.system_time <= end)
        stmt = stmt.order_by(GlucoseReadingRow.system_time.asc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_reading_from_row(row) for row in result.scalars().all()]

    async def count_for_user(self, user_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(GlucoseReadingRow)
            .where(GlucoseReadingRow.user_id == user_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar() or 0


# ── Rate-limit ledger ─────────────────────────────────────────


LedgerUpdate = Callable[[list[int]], tuple[list[int] | None, T]]


class RateLimitLedgerRepository(BaseRepository):
    """The single shared call ledger.

    :meth:`transact` runs read-modify-write under the ledger's version
    counter; a concurrent writer makes the commit fail and the whole
    transaction is replayed with fresh data.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        key: str = "global",
        max_attempts: int = 5,
        clock: Clock = utcnow,
    ) -> None:
        super().__init__(session_factory, clock=clock)
        self._key = key
        self._max_attempts = max(1, max_attempts)

    async def transact(self, update: LedgerUpdate[T]) -> T:
        """Apply ``update`` to the current call list atomically.

        ``update`` receives the stored epoch-ms timestamps and returns
        ``(new_calls, result)``; ``new_calls=None`` leaves the ledger as is.
        Raises the last :class:`SQLAlchemyError` once attempts run out.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._session_factory() as session, session.begin():
                    row = await session.get(RateLimitLedgerRow, self._key, with_for_update=True)
                    calls = json.loads(row.calls_json) if row is not None else []
                    new_calls, result = update(calls)
                    if new_calls is not None:
                        last_call = from_epoch_millis(new_calls[-1]) if new_calls else None
                        if row is None:
                            session.add(
                                RateLimitLedgerRow(
                                    id=self._key,
                                    calls_json=json.dumps(new_calls),
                                    last_call=last_call,
                                )
                            )
                        else:
                            row.calls_json = json.dumps(new_calls)
                            row.last_call = last_call
                return result
            except (StaleDataError, IntegrityError):
                if attempt >= self._max_attempts:
                    raise
                logger.debug("rate_ledger.conflict_retry", attempt=attempt)

    async def read(self) -> list[int]:
        async with self._session_factory() as session:
            row = await session.get(RateLimitLedgerRow, self._key)
            return json.loads(row.calls_json) if row is not None else []


# ── Health metrics ────────────────────────────────────────────


class HealthMetricRepository(BaseRepository):
    """Append-only operational metrics; recording never fails the caller."""

    async def record(self, metric: HealthMetric) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    HealthMetricRow(
                        operation=metric.operation,
                        success=metric.success,
                        response_time_ms=metric.response_time_ms,
                        error=metric.error,
                        timestamp=metric.timestamp,
                    )
                )
        except SQLAlchemyError as exc:
            logger.error("health_metric.record_failed", operation=metric.operation, error=str(exc))

    async def list_recent(self, operation: str | None = None, limit: int = 50) -> list[HealthMetric]:
        stmt = select(HealthMetricRow).order_by(HealthMetricRow.id.desc()).limit(limit)
        if operation is not None:
            stmt = stmt.where(HealthMetricRow.operation == operation)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                HealthMetric(
                    operation=row.operation,
                    success=row.success,
                    response_time_ms=row.response_time_ms,
                    error=row.error,
                    timestamp=as_utc(row.timestamp),
                )
                for row in result.scalars().all()
            ]
