"""
Tick scheduler: decides which jobs are due, runs their scripts, delivers the
message and records the outcome.

Recurring jobs fire at most once per matching minute: the minute bucket
(``now_ms // 60000``) is recorded before execution, and a job only fires when
the current bucket is strictly greater than its recorded one. One-time jobs
fire once ``now >= run_at`` and are removed after the scan, whatever the
delivery outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Callable, Dict, List, Optional

from herald.config import DEFAULT_JOB_TIMEOUT_SECONDS, DEFAULT_TICK_SECONDS
from herald.delivery import DeliveryChannel
from herald.errors import DeliveryTimeout
from herald.models import Job, RunRecord, ScriptResult
from herald.schedule import matches
from herald.scripts import run_scripts
from herald.store import JobStore, RunHistory
from herald.template import resolve_template
from herald.timespec import epoch_ms

MINUTE_MS = 60_000

Clock = Callable[[], int]

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    started_at: int
    fired: List[str] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    skipped: bool = False


def _discard_result(task: "asyncio.Future[None]") -> None:
    if not task.cancelled():
        task.exception()


class TickScheduler:
    def __init__(
        self,
        jobs: JobStore,
        history: RunHistory,
        channel: DeliveryChannel,
        *,
        clock: Optional[Clock] = None,
        tz: Optional[tzinfo] = None,
        scripts_enabled: Optional[Callable[[], bool]] = None,
        job_timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        sender: str = "cron",
        silent: bool = True,
    ):
        self.jobs = jobs
        self.history = history
        self.channel = channel
        self.clock: Clock = clock or epoch_ms
        self.tz = tz
        self.scripts_enabled: Callable[[], bool] = scripts_enabled or (lambda: False)
        self.job_timeout_seconds = job_timeout_seconds
        self.tick_seconds = tick_seconds
        self.sender = sender
        self.silent = silent
        # job name -> minute bucket of its last firing
        self.last_fired: Dict[str, int] = {}
        self.last_summary: Optional[TickSummary] = None
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def local_time(self, now_ms: int) -> datetime:
        return datetime.fromtimestamp(now_ms / 1000, tz=self.tz)

    def is_due(self, job: Job, now_ms: int) -> bool:
        if job.is_one_time:
            return now_ms >= job.run_at and job.name not in self.last_fired
        current_minute = now_ms // MINUTE_MS
        if current_minute <= self.last_fired.get(job.name, -1):
            return False
        return matches(job.schedule, self.local_time(now_ms))

    async def tick(self, now_ms: Optional[int] = None) -> TickSummary:
        now = self.clock() if now_ms is None else now_ms
        if self._tick_lock.locked():
            logger.warning("Previous tick still running; skipping tick at %s.", now)
            return TickSummary(started_at=now, skipped=True)
        async with self._tick_lock:
            summary = await self._scan(now)
        self.last_summary = summary
        return summary

    async def _scan(self, now: int) -> TickSummary:
        summary = TickSummary(started_at=now)
        try:
            jobs = self.jobs.list()
        except Exception as exc:
            logger.error("Unable to list jobs: %s", exc)
            return summary

        to_remove: List[str] = []
        for job in jobs:
            try:
                if not self.is_due(job, now):
                    continue
            except Exception as exc:
                logger.error("Unable to evaluate job %s: %s", job.name, exc)
                continue

            self.last_fired[job.name] = now // MINUTE_MS
            summary.fired.append(job.name)
            record = await self.execute(job)
            if record.status == "success":
                summary.succeeded.append(job.name)
            else:
                summary.failed.append(job.name)
            if job.once:
                to_remove.append(job.name)

        for name in to_remove:
            try:
                self.jobs.delete_by_name(name)
            except Exception as exc:
                logger.error("Failed to remove one-time job %s: %s", name, exc)
                continue
            self.last_fired.pop(name, None)
            summary.removed.append(name)
            logger.info("Auto-removed one-time job: %s", name)

        listed = {job.name for job in jobs}
        for name in [name for name in self.last_fired if name not in listed]:
            del self.last_fired[name]
        return summary

    async def execute(self, job: Job) -> RunRecord:
        """Run one attempt of ``job`` and append its RunRecord. Never raises."""
        logger.info("Running job: %s -> %s", job.name, job.session)
        started_at = self.clock()
        started = time.monotonic()
        message = job.message
        script_results: Optional[List[ScriptResult]] = None
        error: Optional[str] = None
        try:
            if job.scripts:
                if not self.scripts_enabled():
                    logger.info("Scripts disabled for %s; sending template unresolved.", job.name)
                else:
                    logger.info("Executing %s script(s) for %s", len(job.scripts), job.name)
                    script_results = await run_scripts(job.scripts)
                    message = resolve_template(job.message, script_results)
                    failed = [result for result in script_results if result.error]
                    if failed:
                        logger.warning("%s script(s) failed for %s", len(failed), job.name)
            await self._deliver(job, message)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
        duration_ms = int((time.monotonic() - started) * 1000)

        if error is None:
            logger.info("Completed: %s (%sms)", job.name, duration_ms)
        else:
            logger.error("Job error: %s - %s", job.name, error)

        record = RunRecord(
            cron_name=job.name,
            session=job.session,
            started_at=started_at,
            status="success" if error is None else "failure",
            duration_ms=duration_ms,
            message=message,
            error=error,
            script_results=script_results,
        )
        try:
            record = self.history.append(record)
        except Exception as exc:
            logger.error("Failed to record run of %s: %s", job.name, exc)
        return record

    async def _deliver(self, job: Job, message: str) -> None:
        delivery = asyncio.ensure_future(
            self.channel.deliver(job.session, message, sender=self.sender, silent=self.silent)
        )
        try:
            done, _ = await asyncio.wait({delivery}, timeout=self.job_timeout_seconds)
        except asyncio.CancelledError:
            delivery.cancel()
            raise
        if delivery not in done:
            delivery.cancel()
            delivery.add_done_callback(_discard_result)
            raise DeliveryTimeout(f"Job '{job.name}' timed out after {self.job_timeout_seconds:g}s")
        delivery.result()

    def start(self) -> None:
        """Schedule the tick loop on the running event loop; the first tick runs immediately."""
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None

    async def run_forever(self) -> None:
        self._stop_event.clear()
        await self._run_loop()

    async def _run_loop(self) -> None:
        logger.info("Starting tick loop, tick_seconds=%s", self.tick_seconds)
        while not self._stop_event.is_set():
            started = time.monotonic()
            await self.tick()
            delay = max(0.0, self.tick_seconds - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
        logger.info("Tick loop stopped.")
