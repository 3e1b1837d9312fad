#!/usr/bin/env python3
"""
Interval scheduler for the poll, retry-scan and housekeeping timers.

``IntervalScheduler.schedule(interval_seconds, fn)`` runs ``fn`` every
interval on the event loop and returns a job handle with ``cancel()``. A
tick is skipped while the previous run of the same job is still in flight,
so runs of one job never overlap. Errors raised by a run are logged and the
job keeps its schedule.
"""

import asyncio
import inspect
import traceback
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config import get_logger
from telemetry import trace_span

logger = get_logger("scheduler")

JobFunction = Callable[[], Union[Awaitable[Any], Any]]


class ScheduledJob:
    """Handle for one periodic job."""

    def __init__(self, name: str, interval_seconds: float, fn: JobFunction):
        self.name = name
        self.interval_seconds = interval_seconds
        self.fn = fn
        self.task: Optional[asyncio.Task] = None
        self.running = False
        self.runs = 0
        self.skipped = 0
        self.cancelled = False

    async def run_once(self) -> bool:
        """Run the job now unless a previous run is still in flight. Returns True if it ran."""
        if self.running:
            self.skipped += 1
            logger.warning(f"⏭️ Skipping {self.name}: previous run still in progress")
            return False
        self.running = True
        try:
            result = self.fn()
            if inspect.isawaitable(result):
                await result
            self.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"💥 Job {self.name} failed: {e}")
            logger.error(traceback.format_exc())
        finally:
            self.running = False
        return True

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


class IntervalScheduler:
    """Runs jobs on fixed intervals using asyncio tasks."""

    def __init__(self):
        self.jobs: List[ScheduledJob] = []
        self._inflight: Dict[ScheduledJob, asyncio.Task] = {}

    def schedule(self, interval_seconds: float, fn: JobFunction, name: Optional[str] = None) -> ScheduledJob:
        """Start running ``fn`` every ``interval_seconds``. The first run happens after one interval."""
        job = ScheduledJob(name or getattr(fn, "__name__", "job"), interval_seconds, fn)
        job.task = asyncio.get_running_loop().create_task(self._loop(job))
        self.jobs.append(job)
        logger.info(f"⏰ Scheduled {job.name} every {interval_seconds:g}s")
        return job

    @trace_span(
        "scheduler.tick",
        tracer_name="scheduler",
        attr_from_args=lambda self, job: {"job.name": job.name},
    )
    async def _tick(self, job: ScheduledJob) -> None:
        await job.run_once()

    async def _loop(self, job: ScheduledJob) -> None:
        try:
            while not job.cancelled:
                await asyncio.sleep(job.interval_seconds)
                if job.running:
                    await job.run_once()
                    continue
                # Runs in its own task so a slow run does not delay the next tick
                self._inflight[job] = asyncio.get_running_loop().create_task(self._tick(job))
        except asyncio.CancelledError:
            logger.debug(f"Job {job.name} cancelled")
        finally:
            inflight = self._inflight.pop(job, None)
            if inflight is not None and not inflight.done():
                inflight.cancel()

    def cancel_all(self) -> None:
        for job in self.jobs:
            job.cancel()
        self.jobs.clear()
