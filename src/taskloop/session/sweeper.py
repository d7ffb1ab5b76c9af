"""
session/sweeper.py — Periodic Sweeper

Runs registered housekeeping jobs (session expiry, memory compaction) on
fixed intervals.

Two ways to drive it:
  - host-advanced: call tick() whenever convenient; every job whose
    next_run has passed runs once, synchronously
  - background: await start() to launch an asyncio tick loop, and
    await stop() to cancel it

A job that raises is logged and counted; it keeps its schedule.

Usage:
    sweeper = PeriodicSweeper(clock=time.time)
    sweeper.add("expire", 300, store.expire_sweep)
    sweeper.tick()           # host-driven
    await sweeper.start()    # or background
    await sweeper.stop()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from taskloop.observability.logger import get_logger

log = get_logger(__name__)


@dataclass
class SweepJob:
    name: str
    interval_seconds: float
    fn: Callable[[], Any]
    next_run: float
    run_count: int = 0
    error_count: int = 0
    last_run: Optional[float] = None
    last_result: Any = None
    last_error: Optional[str] = None


class PeriodicSweeper:
    """Interval job runner with a deterministic tick() and an optional async loop."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        tick_interval: float = 1.0,     # how often the background loop wakes
    ):
        self._clock = clock
        self._tick_interval = tick_interval
        self._jobs: dict[str, SweepJob] = {}
        self._ticker: Optional[asyncio.Task] = None

    # ── Job management ────────────────────────────────────────────────────────

    def add(
        self,
        name: str,
        interval_seconds: float,
        fn: Callable[[], Any],
        run_immediately: bool = False,
    ) -> SweepJob:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        now = self._clock()
        job = SweepJob(
            name=name,
            interval_seconds=interval_seconds,
            fn=fn,
            next_run=now if run_immediately else now + interval_seconds,
        )
        self._jobs[name] = job
        log.debug("sweeper.job_added", name=name, interval_seconds=interval_seconds)
        return job

    def remove(self, name: str) -> bool:
        return self._jobs.pop(name, None) is not None

    def get_job(self, name: str) -> Optional[SweepJob]:
        return self._jobs.get(name)

    def list_jobs(self) -> list[SweepJob]:
        return list(self._jobs.values())

    # ── Running ───────────────────────────────────────────────────────────────

    def tick(self, now: Optional[float] = None) -> dict[str, Any]:
        """Run every due job once. Returns {job name: result} for jobs that ran."""
        now = self._clock() if now is None else now
        results: dict[str, Any] = {}

        for job in list(self._jobs.values()):
            if job.next_run > now:
                continue
            job.last_run = now
            job.run_count += 1
            try:
                job.last_result = job.fn()
                job.last_error = None
                results[job.name] = job.last_result
                log.debug("sweeper.job_ran", name=job.name, result=job.last_result)
            except Exception as e:
                job.error_count += 1
                job.last_error = str(e)
                log.error("sweeper.job_failed", name=job.name, error=str(e))
            finally:
                job.next_run = now + job.interval_seconds

        return results

    async def start(self) -> None:
        if self.is_running:
            return
        log.info("sweeper.starting", jobs=list(self._jobs), tick_interval=self._tick_interval)
        self._ticker = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        if self._ticker:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None
            log.info("sweeper.stopped")

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            self.tick()
