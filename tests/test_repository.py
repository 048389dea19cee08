"""Tests for the SQLAlchemy repositories."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from cgm_sync.models import GlucoseReading, HealthMetric
from cgm_sync.storage.database import CredentialRow, GlucoseReadingRow, RateLimitLedgerRow
from cgm_sync.storage.repository import RateLimitLedgerRepository
from cgm_sync.timewindow import as_utc

from conftest import NOW, make_record


def _reading(user_id: str, minutes: int, value: float = 100.0, trend: str = "flat") -> GlucoseReading:
    system_time = NOW + timedelta(minutes=minutes)
    return GlucoseReading(
        user_id=user_id,
        system_time=system_time,
        display_time=system_time.replace(tzinfo=None) - timedelta(hours=4),
        value=value,
        trend=trend,
    )


class TestCredentialRepository:
    @pytest.mark.asyncio
    async def test_save_and_get(self, credentials):
        await credentials.save(make_record("u1"))
        stored = await credentials.get("u1")
        assert stored is not None
        assert stored.access_token == "access-u1"
        assert stored.expires_at == NOW + timedelta(hours=2)
        assert stored.expires_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_save_overwrites(self, credentials):
        await credentials.save(make_record("u1"))
        await credentials.save(make_record("u1", access_token="second"))
        assert (await credentials.get("u1")).access_token == "second"
        assert len(await credentials.list_all()) == 1

    @pytest.mark.asyncio
    async def test_delete(self, credentials):
        await credentials.save(make_record("u1"))
        assert await credentials.delete("u1") is True
        assert await credentials.get("u1") is None
        assert await credentials.delete("u1") is False

    @pytest.mark.asyncio
    async def test_missing_user(self, credentials):
        assert await credentials.get("nobody") is None


class TestReadingRepository:
    @pytest.mark.asyncio
    async def test_same_instant_is_stored_once(self, readings):
        await readings.upsert_batch([_reading("u1", 0, value=100, trend="flat")])
        await readings.upsert_batch([_reading("u1", 0, value=150, trend="singleUp")])

        stored = await readings.list_range("u1")
        assert len(stored) == 1
        assert stored[0].value == 150
        assert stored[0].trend == "singleUp"

    @pytest.mark.asyncio
    async def test_duplicates_inside_one_batch(self, readings):
        count = await readings.upsert_batch(
            [_reading("u1", 0, value=90), _reading("u1", 0, value=95), _reading("u1", 5)]
        )
        assert count == 2
        assert await readings.count_for_user("u1") == 2

    @pytest.mark.asyncio
    async def test_users_are_partitioned(self, readings):
        await readings.upsert_batch([_reading("u1", 0), _reading("u2", 0)])
        assert await readings.count_for_user("u1") == 1
        assert await readings.count_for_user("u2") == 1

    @pytest.mark.asyncio
    async def test_list_range_sorted_and_bounded(self, readings):
        await readings.upsert_batch([_reading("u1", 10), _reading("u1", 0), _reading("u1", 20)])
        stored = await readings.list_range("u1", NOW + timedelta(minutes=5), NOW + timedelta(minutes=20))
        assert [r.system_time for r in stored] == [
            NOW + timedelta(minutes=10),
            NOW + timedelta(minutes=20),
        ]

    def test_reading_id_is_deterministic(self):
        reading = _reading("u1", 0)
        assert reading.reading_id == f"u1_{int(NOW.timestamp()) * 1000}"

    @pytest.mark.asyncio
    async def test_empty_batch(self, readings):
        assert await readings.upsert_batch([]) == 0


class TestHealthMetricRepository:
    @pytest.mark.asyncio
    async def test_record_and_list(self, health):
        await health.record(
            HealthMetric(operation="dexcom_glucose_fetch", success=True, response_time_ms=12, timestamp=NOW)
        )
        await health.record(
            HealthMetric(operation="oauth_token_exchange", success=False, error="boom", timestamp=NOW)
        )
        recent = await health.list_recent()
        assert [m.operation for m in recent] == ["oauth_token_exchange", "dexcom_glucose_fetch"]
        only_fetch = await health.list_recent(operation="dexcom_glucose_fetch")
        assert len(only_fetch) == 1
        assert only_fetch[0].timestamp == datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class TestRowTimestamps:
    @pytest.mark.asyncio
    async def test_credential_updated_at_follows_clock(self, credentials, session_factory, clock):
        await credentials.save(make_record("u1"))
        clock.advance(minutes=30)
        await credentials.save(make_record("u1", access_token="second"))

        async with session_factory() as session:
            row = await session.get(CredentialRow, "u1")
        assert as_utc(row.updated_at) == NOW + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_reading_recorded_at_follows_clock(self, readings, session_factory, clock):
        clock.advance(hours=1)
        await readings.upsert_batch([_reading("u1", 0), _reading("u1", 5)])

        async with session_factory() as session:
            result = await session.execute(select(GlucoseReadingRow.recorded_at))
            stamps = {as_utc(value) for value in result.scalars().all()}
        assert stamps == {NOW + timedelta(hours=1)}


def _append(calls: list[int]) -> tuple[list[int], int]:
    new_calls = calls + [len(calls)]
    return new_calls, len(new_calls)


class TestRateLimitLedgerRepository:
    @pytest.mark.asyncio
    async def test_transact_and_read(self, ledger):
        assert await ledger.read() == []
        assert await ledger.transact(_append) == 1
        assert await ledger.transact(_append) == 2
        assert await ledger.read() == [0, 1]

    @pytest.mark.asyncio
    async def test_no_write_leaves_ledger_alone(self, ledger):
        await ledger.transact(_append)
        assert await ledger.transact(lambda calls: (None, "denied")) == "denied"
        assert await ledger.read() == [0]

    @pytest.mark.asyncio
    async def test_version_conflict_is_replayed(self, session_factory, competing_writer):
        ledger = RateLimitLedgerRepository(session_factory, max_attempts=3)
        await ledger.transact(_append)

        competing_writer["remaining"] = 2
        assert await ledger.transact(_append) == 2
        assert competing_writer["remaining"] == 0
        assert await ledger.read() == [0, 1]

    @pytest.mark.asyncio
    async def test_conflicts_past_max_attempts_raise(self, session_factory, competing_writer):
        ledger = RateLimitLedgerRepository(session_factory, max_attempts=1)
        await ledger.transact(_append)

        competing_writer["remaining"] = 1
        with pytest.raises(SQLAlchemyError):
            await ledger.transact(_append)
        assert await ledger.read() == [0]

        async with session_factory() as session:
            row = await session.get(RateLimitLedgerRow, "global")
        assert row.version == 1
