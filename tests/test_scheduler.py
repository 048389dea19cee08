"""Tests for the scheduled glucose sweep."""

from datetime import timedelta

import pytest

from cgm_sync.scheduler.service import SchedulerService

from conftest import NOW, egv, make_record


@pytest.fixture
def scheduler(service, clock) -> SchedulerService:
    # Sequential so the shared in-memory connection never interleaves transactions.
    return SchedulerService(service.synchronizer, service.credentials, max_concurrent=1, clock=clock)


class TestSweep:
    @pytest.mark.asyncio
    async def test_no_users(self, scheduler):
        stats = await scheduler.run_sweep()
        assert stats["total_runs"] == 1
        assert stats["last_users"] == 0
        assert stats["last_readings_count"] == 0

    @pytest.mark.asyncio
    async def test_one_failing_user_does_not_stop_the_others(
        self, scheduler, credentials, readings, fake_dexcom
    ):
        for user_id in ("u1", "u2", "u3"):
            await credentials.save(make_record(user_id))
            fake_dexcom.egvs_by_token[f"access-{user_id}"] = {
                "records": [egv(NOW - timedelta(minutes=10)), egv(NOW - timedelta(minutes=5))]
            }
        fake_dexcom.failing_tokens.add("access-u2")

        stats = await scheduler.run_sweep()

        assert stats["last_users"] == 3
        assert stats["last_errors"] == 1
        assert stats["last_readings_count"] == 4
        assert await readings.count_for_user("u1") == 2
        assert await readings.count_for_user("u2") == 0
        assert await readings.count_for_user("u3") == 2

    @pytest.mark.asyncio
    async def test_refresh_failure_is_isolated(self, scheduler, credentials, readings, fake_dexcom):
        await credentials.save(make_record("u1"))
        await credentials.save(make_record("u2", expires_in=timedelta(minutes=-1)))
        fake_dexcom.token_status = 401
        fake_dexcom.egvs_payload = {"records": [egv(NOW)]}

        stats = await scheduler.run_sweep()

        assert stats["last_errors"] == 1
        assert await readings.count_for_user("u1") == 1

    @pytest.mark.asyncio
    async def test_sweep_looks_back_one_hour(self, scheduler, credentials, fake_dexcom):
        await credentials.save(make_record("u1"))
        await scheduler.run_sweep()
        assert fake_dexcom.egvs_params[-1] == {
            "startDate": "2024-06-01T11:00:00",
            "endDate": "2024-06-01T12:00:00",
        }

    @pytest.mark.asyncio
    async def test_stats_accumulate(self, scheduler):
        await scheduler.run_sweep()
        stats = await scheduler.run_sweep()
        assert stats["total_runs"] == 2
        assert stats["last_run"] == NOW.isoformat()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler):
        await scheduler.start()
        assert scheduler.is_running
        await scheduler.stop()
        assert not scheduler.is_running
