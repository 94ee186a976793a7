"""
scheduler.py - Visibility-aware background scheduler

Runs named periodic jobs (sync, update checks, throttle cleanup,
connectivity probes) on fixed tick boundaries. While the kiosk page is
hidden no new job run starts; paused ticks are dropped, not caught up.
A tick is also skipped while the previous run of the same job is
still in flight.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("Scheduler")

JobFn = Callable[[], Awaitable[object]]


@dataclass
class Job:
    name: str
    period_s: float
    fn: JobFn
    # Jobs that must keep running while hidden (e.g. connectivity probes).
    run_when_paused: bool = False
    next_due: float = 0.0
    running: Optional[asyncio.Task] = None
    runs: int = 0
    skipped: int = 0


@dataclass
class VisibilityState:
    hidden: bool = False
    changed_at: float = field(default_factory=time.monotonic)


class BackgroundScheduler:
    """
    Cooperative scheduler for the background context.

    `clock` is a monotonic seconds source and `sleep` an awaitable sleep;
    both are swappable so tick arithmetic can be driven directly.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sleep=asyncio.sleep,
                 resolution_s: float = 1.0):
        self.clock = clock
        self.sleep = sleep
        self.resolution_s = resolution_s
        self.jobs: Dict[str, Job] = {}
        self.visibility = VisibilityState(hidden=False, changed_at=clock())
        self._stopped = asyncio.Event()

    # ==================== Pause / Resume ====================

    @property
    def is_paused(self) -> bool:
        return self.visibility.hidden

    def pause(self):
        if self.visibility.hidden:
            return
        self.visibility = VisibilityState(hidden=True, changed_at=self.clock())
        logger.info("Paused (page hidden)")

    def resume(self):
        if not self.visibility.hidden:
            return
        self.visibility = VisibilityState(hidden=False, changed_at=self.clock())
        logger.info("Resumed (page visible)")

    def set_visibility(self, hidden: bool):
        if hidden:
            self.pause()
        else:
            self.resume()

    # ==================== Jobs ====================

    def add_job(self, name: str, period_ms: int, fn: JobFn, run_when_paused: bool = False,
                run_immediately: bool = False) -> Job:
        if period_ms <= 0:
            raise ValueError(f"Job '{name}' needs a positive period, got {period_ms}ms")
        period_s = period_ms / 1000
        now = self.clock()
        job = Job(
            name=name,
            period_s=period_s,
            fn=fn,
            run_when_paused=run_when_paused,
            next_due=now if run_immediately else now + period_s,
        )
        self.jobs[name] = job
        logger.info(f"Job '{name}' scheduled every {period_s:g}s")
        return job

    def tick(self) -> List[str]:
        """
        Start every job whose boundary has passed. Returns the names started.

        next_due always advances to the first boundary after now, so ticks
        missed while paused or busy are not replayed.
        """
        now = self.clock()
        started = []
        for job in list(self.jobs.values()):
            if now < job.next_due:
                continue

            missed = int((now - job.next_due) // job.period_s) + 1
            job.next_due += missed * job.period_s

            if self.is_paused and not job.run_when_paused:
                job.skipped += 1
                logger.debug(f"Skipping '{job.name}' (paused)")
                continue
            if job.running is not None and not job.running.done():
                job.skipped += 1
                logger.info(f"Skipping '{job.name}' (previous run still in flight)")
                continue

            job.running = asyncio.get_running_loop().create_task(self._run(job))
            started.append(job.name)
        return started

    async def _run(self, job: Job):
        job.runs += 1
        try:
            await job.fn()
        except Exception as e:
            # A failing job must not take the scheduler down with it.
            logger.error(f"Job '{job.name}' failed: {e}")

    async def run_forever(self):
        """Tick until stop() is called."""
        logger.info(f"Scheduler started with {len(self.jobs)} jobs")
        while not self._stopped.is_set():
            self.tick()
            await self.sleep(self.resolution_s)
        logger.info("Scheduler stopped")

    async def stop(self, wait: bool = True):
        self._stopped.set()
        if wait:
            running = [j.running for j in self.jobs.values() if j.running and not j.running.done()]
            if running:
                await asyncio.gather(*running, return_exceptions=True)

    def get_status(self) -> Dict:
        now = self.clock()
        return {
            "paused": self.is_paused,
            "jobs": {
                name: {
                    "period_s": job.period_s,
                    "due_in_s": round(max(0.0, job.next_due - now), 1),
                    "running": bool(job.running and not job.running.done()),
                    "runs": job.runs,
                    "skipped": job.skipped,
                }
                for name, job in self.jobs.items()
            },
        }
