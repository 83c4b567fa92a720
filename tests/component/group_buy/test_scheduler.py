"""
Component Tests for JobScheduler

Background loops per job: start, repeated runs, failure survival, stop.
"""

import asyncio
from datetime import datetime, timezone

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.group_buy_service.jobs import ScheduledJob
from microservices.group_buy_service.models import JobRunResult
from microservices.group_buy_service.scheduler import JobScheduler


class CountingJob(ScheduledJob):
    """Counts runs; optionally raises on every run"""

    def __init__(self, name: str, error: Exception = None):
        super().__init__()
        self.name = name
        self.runs = 0
        self.error = error

    async def run_once(self) -> JobRunResult:
        self.runs += 1
        if self.error:
            raise self.error
        return JobRunResult(job_name=self.name, started_at=datetime.now(timezone.utc))


class TestJobScheduler:

    @pytest.mark.asyncio
    async def test_runs_each_job_repeatedly_until_stopped(self):
        fast = CountingJob("fast")
        slow = CountingJob("slow")
        scheduler = JobScheduler()
        scheduler.add_job(fast, interval_seconds=0.01)
        scheduler.add_job(slow, interval_seconds=10)

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert fast.runs >= 3
        assert slow.runs == 1
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_failing_job_keeps_its_loop_and_others_alive(self):
        broken = CountingJob("broken", error=RuntimeError("boom"))
        healthy = CountingJob("healthy")
        scheduler = JobScheduler()
        scheduler.add_job(broken, interval_seconds=0.01)
        scheduler.add_job(healthy, interval_seconds=0.01)

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert broken.runs >= 2
        assert healthy.runs >= 2

    @pytest.mark.asyncio
    async def test_cannot_add_jobs_while_running(self):
        scheduler = JobScheduler()
        scheduler.add_job(CountingJob("one"), interval_seconds=10)
        await scheduler.start()
        try:
            with pytest.raises(RuntimeError):
                scheduler.add_job(CountingJob("two"), interval_seconds=10)
        finally:
            await scheduler.stop()

    def test_get_job_by_name(self):
        job = CountingJob("grace_period_trigger")
        scheduler = JobScheduler()
        scheduler.add_job(job, interval_seconds=60)

        assert scheduler.get_job("grace_period_trigger") is job
        assert scheduler.get_job("unknown") is None
        assert scheduler.job_names == ["grace_period_trigger"]
