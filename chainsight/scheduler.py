"""
Periodic job scheduler.

This module handles:
- One asyncio loop per job with its own stop token
- A shared worker pool bounding concurrent job runs
- Overlap protection per job
- Interval changes while running
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

JobAction = Callable[[], Awaitable[Any]]


@dataclass
class JobResult:
    """Outcome of one job run."""
    name: str
    started_at: datetime
    finished_at: datetime
    success: bool
    skipped: bool = False
    error: Optional[str] = None

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class PeriodicJob:
    """A named coroutine run every ``interval_seconds``."""
    name: str
    interval_seconds: float
    action: JobAction
    priority: int = 5
    run_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None
    running: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "priority": self.priority,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "skipped_count": self.skipped_count,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "running": self.running,
        }


@dataclass
class _JobHandle:
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


class Scheduler:
    """
    Runs periodic jobs on the event loop.

    Each job owns a stop token; ``stop()`` sets every token and waits for the
    loops to exit, so a run already in progress finishes normally.

    Features:
    - Bounded worker pool shared by all jobs
    - A job never overlaps with itself
    - Failures are recorded, never propagated to the loop
    - Live rescheduling
    """

    def __init__(
        self,
        max_concurrent_jobs: int = 4,
        on_result: Optional[Callable[[JobResult], None]] = None
    ):
        self.max_concurrent_jobs = max_concurrent_jobs
        self.on_result = on_result

        self.jobs: Dict[str, PeriodicJob] = {}
        self._handles: Dict[str, _JobHandle] = {}
        self._pool: Optional[asyncio.Semaphore] = None
        self.is_running = False

        logger.info(f"Initialized Scheduler with {max_concurrent_jobs} workers")

    @property
    def pool(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the running loop
        if self._pool is None:
            self._pool = asyncio.Semaphore(self.max_concurrent_jobs)
        return self._pool

    def add_job(self, job: PeriodicJob):
        """Register a job; its loop starts now if the scheduler is running."""
        if job.name in self.jobs:
            raise ValueError(f"Job {job.name} already registered")
        if job.interval_seconds <= 0:
            raise ValueError(f"Interval for {job.name} must be positive")

        self.jobs[job.name] = job
        if self.is_running:
            self._arm(job)
        logger.debug(f"Added job {job.name} every {job.interval_seconds:.0f}s")

    async def remove_job(self, name: str):
        job = self.jobs.pop(name, None)
        if job is None:
            raise KeyError(name)
        await self._disarm(name)

    async def reschedule(self, name: str, interval_seconds: float):
        """Change a job's interval, restarting its timer."""
        if name not in self.jobs:
            raise KeyError(name)
        if interval_seconds <= 0:
            raise ValueError(f"Interval for {name} must be positive")

        job = self.jobs[name]
        job.interval_seconds = interval_seconds
        if self.is_running:
            await self._disarm(name)
            self._arm(job)
        logger.info(f"Rescheduled {name} every {interval_seconds:.0f}s")

    def start(self):
        """Arm a timer for every registered job. No-op if already running."""
        if self.is_running:
            return
        self.is_running = True
        for job in self.jobs.values():
            self._arm(job)
        logger.info(f"Scheduler started with {len(self.jobs)} jobs")

    async def stop(self):
        """Disarm every timer and wait for in-flight runs to finish."""
        if not self.is_running:
            return
        self.is_running = False
        for handle in self._handles.values():
            handle.stop.set()

        tasks = [handle.task for handle in self._handles.values() if handle.task]
        self._handles.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def join(self):
        """Wait until every job loop has exited."""
        tasks = [handle.task for handle in self._handles.values() if handle.task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _arm(self, job: PeriodicJob):
        handle = _JobHandle()
        handle.task = asyncio.create_task(self._loop(job, handle.stop), name=f"job-{job.name}")
        self._handles[job.name] = handle

    async def _disarm(self, name: str):
        handle = self._handles.pop(name, None)
        if handle is None:
            return
        handle.stop.set()
        if handle.task:
            await asyncio.gather(handle.task, return_exceptions=True)

    async def _loop(self, job: PeriodicJob, stop: asyncio.Event):
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=job.interval_seconds)
            except asyncio.TimeoutError:
                await self.run_now(job.name)

    async def run_now(self, name: str) -> JobResult:
        """
        Run a job once, outside its timer.

        Args:
            name: Job name

        Returns:
            JobResult; a run requested while the job is busy is skipped
        """
        job = self.jobs[name]
        started_at = datetime.now()

        if job.running:
            job.skipped_count += 1
            logger.debug(f"Skipping {name}: previous run still in progress")
            return self._finish(JobResult(name, started_at, datetime.now(), False, skipped=True))

        job.running = True
        try:
            async with self.pool:
                start_time = time.time()
                try:
                    await job.action()
                except Exception as e:
                    job.failure_count += 1
                    job.last_error = str(e)
                    logger.error(f"Job {name} failed: {str(e)}")
                    result = JobResult(name, started_at, datetime.now(), False, error=str(e))
                else:
                    result = JobResult(name, started_at, datetime.now(), True)
                    logger.debug(f"Job {name} finished in {time.time() - start_time:.2f}s")
        finally:
            job.running = False
            job.run_count += 1
            job.last_run = datetime.now()

        return self._finish(result)

    def _finish(self, result: JobResult) -> JobResult:
        if self.on_result:
            self.on_result(result)
        return result

    def get_status(self) -> List[Dict[str, Any]]:
        return [job.to_dict() for job in self.jobs.values()]
