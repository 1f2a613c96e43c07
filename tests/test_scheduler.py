"""
Listen2Me - Scheduler Tests
===========================
"""

import asyncio
from datetime import timedelta

import pytest

from listen2me.core.pipeline.batcher import AnalysisBatcher
from listen2me.core.pipeline.lifecycle import EventLifecycleManager
from listen2me.core.pipeline.scheduler import Scheduler

from tests.conftest import NOW_TS, make_ingested


@pytest.fixture
def scheduler(storage, llm, clock) -> Scheduler:
    batcher = AnalysisBatcher(storage=storage, llm=llm, clock=clock)
    lifecycle = EventLifecycleManager(storage, clock)
    return Scheduler(batcher=batcher, lifecycle=lifecycle, clock=clock)


class TestScheduler:

    def test_defaults(self, scheduler: Scheduler):
        status = scheduler.get_status()
        assert status["is_running"] is False
        assert status["timezone"] == "Asia/Shanghai"
        assert status["jobs"]["analysis"]["interval_minutes"] == 30
        assert status["jobs"]["expiration_check"]["interval_minutes"] == 60

    async def test_start_and_stop(self, scheduler: Scheduler):
        scheduler.start()
        try:
            status = scheduler.get_status()
            assert status["is_running"] is True
            assert status["jobs"]["analysis"]["running"] is True
        finally:
            await scheduler.stop()

        status = scheduler.get_status()
        assert status["is_running"] is False
        assert status["jobs"]["analysis"]["running"] is False

    @pytest.mark.parametrize("minutes", [0, 1441, -5])
    def test_interval_bounds(self, scheduler: Scheduler, minutes):
        with pytest.raises(ValueError):
            scheduler.update_analysis_interval(minutes)
        assert scheduler.analysis_job.interval_minutes == 30

    async def test_update_interval_restarts_timer(self, scheduler: Scheduler):
        scheduler.start()
        try:
            old_task = scheduler.analysis_job.task
            scheduler.update_analysis_interval(1440)
            assert scheduler.analysis_job.interval_minutes == 1440
            assert scheduler.analysis_job.task is not old_task
        finally:
            await scheduler.stop()

    async def test_trigger_analysis(self, scheduler: Scheduler, storage):
        await storage.insert_message(make_ingested("hello", NOW_TS))

        result = await scheduler.trigger_analysis()

        assert result["status"] == "completed"
        assert result["message_count"] == 1
        assert await storage.count_unprocessed() == 0

    async def test_trigger_expiration_check(self, scheduler: Scheduler):
        result = await scheduler.trigger_expiration_check()
        assert result["expired_count"] == 0

    async def test_job_failure_is_logged_not_raised(self, scheduler: Scheduler, monkeypatch):
        async def broken():
            raise RuntimeError("model down")

        monkeypatch.setattr(scheduler.batcher, "run_analysis_pass", broken)

        await scheduler._execute(scheduler.analysis_job)

        job = scheduler.analysis_job
        assert job.failure_count == 1
        assert job.last_error == "model down"
        assert job.is_executing is False

    async def test_successful_job_records_run(self, scheduler: Scheduler, clock):
        await scheduler._execute(scheduler.expiration_job)

        job = scheduler.expiration_job
        assert job.run_count == 1
        assert job.last_run == clock.now()

    async def test_next_run_uses_interval(self, scheduler: Scheduler, clock):
        scheduler.start()
        try:
            # let the loops reach their first sleep
            for _ in range(3):
                await asyncio.sleep(0)
            assert scheduler.analysis_job.next_run == clock.now() + timedelta(minutes=30)
        finally:
            await scheduler.stop()
