"""
Job Scheduler

Runs each scheduled job on its own asyncio task and interval, so a slow or
failing job never delays another.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .jobs import ScheduledJob

logger = logging.getLogger(__name__)


@dataclass
class ScheduledEntry:
    job: ScheduledJob
    interval_seconds: float


class JobScheduler:
    """Background runner for periodic jobs"""

    def __init__(self, entries: Optional[List[ScheduledEntry]] = None):
        self._entries: List[ScheduledEntry] = list(entries or [])
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False

    def add_job(self, job: ScheduledJob, interval_seconds: float) -> None:
        if self._running:
            raise RuntimeError("Cannot add jobs while the scheduler is running")
        self._entries.append(ScheduledEntry(job=job, interval_seconds=interval_seconds))

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def job_names(self) -> List[str]:
        return [entry.job.name for entry in self._entries]

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        for entry in self._entries:
            if entry.job.name == name:
                return entry.job
        return None

    async def start(self) -> None:
        """Start one background task per job"""
        if self._running:
            logger.warning("Job scheduler already running")
            return

        self._running = True
        for entry in self._entries:
            self._tasks[entry.job.name] = asyncio.create_task(
                self._run_loop(entry), name=f"job:{entry.job.name}"
            )
        logger.info(f"Job scheduler started with jobs: {', '.join(self.job_names)}")

    async def stop(self) -> None:
        """Cancel all job tasks and wait for them to finish"""
        self._running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Job scheduler stopped")

    async def _run_loop(self, entry: ScheduledEntry) -> None:
        while self._running:
            try:
                await entry.job.run_once()
            except Exception:
                logger.exception(f"Scheduled job {entry.job.name} iteration failed")
            await asyncio.sleep(entry.interval_seconds)
