"""Tests for the periodic job scheduler."""

import asyncio

import pytest

from chainsight.scheduler import JobResult, PeriodicJob, Scheduler


class Recorder:
    def __init__(self, delay=0.0, error=None):
        self.delay = delay
        self.error = error
        self.runs = 0
        self.active = 0
        self.peak = 0

    async def __call__(self):
        self.runs += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error:
                raise self.error
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_run_now_records_success():
    results = []
    scheduler = Scheduler(on_result=results.append)
    action = Recorder()
    scheduler.add_job(PeriodicJob("price", 300, action, priority=1))

    result = await scheduler.run_now("price")

    assert isinstance(result, JobResult)
    assert result.success and not result.skipped
    assert results == [result]
    status = scheduler.get_status()[0]
    assert status["run_count"] == 1
    assert status["last_run"] is not None


@pytest.mark.asyncio
async def test_failures_are_recorded_not_raised():
    scheduler = Scheduler()
    scheduler.add_job(PeriodicJob("onchain", 300, Recorder(error=RuntimeError("boom"))))

    result = await scheduler.run_now("onchain")

    assert not result.success
    assert result.error == "boom"
    job = scheduler.jobs["onchain"]
    assert job.failure_count == 1
    assert job.last_error == "boom"


@pytest.mark.asyncio
async def test_a_job_never_overlaps_itself():
    scheduler = Scheduler()
    action = Recorder(delay=0.05)
    scheduler.add_job(PeriodicJob("artemis", 300, action))

    first, second = await asyncio.gather(scheduler.run_now("artemis"), scheduler.run_now("artemis"))

    assert first.success
    assert second.skipped
    assert action.runs == 1
    assert scheduler.jobs["artemis"].skipped_count == 1


@pytest.mark.asyncio
async def test_worker_pool_bounds_concurrency():
    scheduler = Scheduler(max_concurrent_jobs=2)
    action = Recorder(delay=0.02)
    for name in ("a", "b", "c", "d"):
        scheduler.add_job(PeriodicJob(name, 300, action))

    await asyncio.gather(*(scheduler.run_now(name) for name in ("a", "b", "c", "d")))

    assert action.runs == 4
    assert action.peak == 2


@pytest.mark.asyncio
async def test_started_jobs_fire_on_their_interval():
    scheduler = Scheduler()
    action = Recorder()
    scheduler.add_job(PeriodicJob("price", 0.02, action))

    scheduler.start()
    await asyncio.sleep(0.11)
    await scheduler.stop()

    assert action.runs >= 3
    runs = action.runs
    await asyncio.sleep(0.05)
    assert action.runs == runs


@pytest.mark.asyncio
async def test_stop_waits_for_the_running_iteration():
    scheduler = Scheduler()
    action = Recorder(delay=0.1)
    scheduler.add_job(PeriodicJob("onchain", 0.01, action))

    scheduler.start()
    await asyncio.sleep(0.03)
    await scheduler.stop()

    assert action.runs == 1
    assert action.active == 0
    assert not scheduler.jobs["onchain"].running


@pytest.mark.asyncio
async def test_reschedule_while_running():
    scheduler = Scheduler()
    action = Recorder()
    scheduler.add_job(PeriodicJob("signal", 60, action))
    scheduler.start()

    await scheduler.reschedule("signal", 0.02)
    await asyncio.sleep(0.07)
    await scheduler.stop()

    assert scheduler.jobs["signal"].interval_seconds == 0.02
    assert action.runs >= 2


@pytest.mark.asyncio
async def test_jobs_added_after_start_are_armed():
    scheduler = Scheduler()
    scheduler.start()
    action = Recorder()
    scheduler.add_job(PeriodicJob("volume", 0.02, action))

    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert action.runs >= 1


@pytest.mark.asyncio
async def test_removed_job_stops_firing():
    scheduler = Scheduler()
    action = Recorder()
    scheduler.add_job(PeriodicJob("anomaly", 0.02, action))
    scheduler.start()
    await asyncio.sleep(0.03)

    await scheduler.remove_job("anomaly")
    runs = action.runs
    await asyncio.sleep(0.05)

    assert action.runs == runs
    assert "anomaly" not in scheduler.jobs
    await scheduler.stop()


@pytest.mark.asyncio
async def test_invalid_registrations():
    scheduler = Scheduler()
    scheduler.add_job(PeriodicJob("price", 60, Recorder()))

    with pytest.raises(ValueError):
        scheduler.add_job(PeriodicJob("price", 60, Recorder()))
    with pytest.raises(ValueError):
        scheduler.add_job(PeriodicJob("technical", 0, Recorder()))
    with pytest.raises(ValueError):
        await scheduler.reschedule("price", -1)
    with pytest.raises(KeyError):
        await scheduler.reschedule("missing", 60)
    with pytest.raises(KeyError):
        await scheduler.remove_job("missing")


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent():
    scheduler = Scheduler()
    action = Recorder()
    scheduler.add_job(PeriodicJob("price", 60, action))

    scheduler.start()
    scheduler.start()
    assert len(scheduler._handles) == 1

    await scheduler.stop()
    await scheduler.stop()
    assert not scheduler.is_running
