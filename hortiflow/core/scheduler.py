"""HortiFlow Scheduler — APScheduler-based tick loop for the rules engine."""

import asyncio
import logging
from datetime import datetime, timezone

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES, JobEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from hortiflow.core.config import Settings
from hortiflow.core.engine import RulesEngine
from hortiflow.core.events import EngineEvent

logger = logging.getLogger("hortiflow.scheduler")

JOB_ID = "hortiflow_rules_tick"


class EngineScheduler:
    """Runs engine ticks on a fixed interval.

    Default interval: 30 seconds (configurable). A tick that overruns the
    interval is never started twice; the missed run is logged and counted and
    the next tick happens at the following interval boundary.
    """

    def __init__(self, engine: RulesEngine, settings: Settings):
        self.engine = engine
        self.settings = settings
        self.scheduler: AsyncIOScheduler | None = None
        self.overruns = 0
        self._tick_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    async def _run_tick(self):
        # The executor cancels job futures on shutdown; the tick runs in its own
        # task so that cancel only detaches the job from it.
        self._tick_task = asyncio.ensure_future(self._scheduled_tick())
        await asyncio.shield(self._tick_task)

    async def _scheduled_tick(self):
        try:
            await self.engine.run_tick()
        except Exception as e:
            self.engine.last_error = str(e)
            logger.error(f"Scheduled tick failed: {e}", exc_info=True)
        finally:
            self.engine.events.publish(EngineEvent.RULE_ENGINE_STATUS, self.status())

    async def _wait_idle(self):
        task = self._tick_task
        if task is not None and not task.done():
            await asyncio.shield(task)
        async with self.engine.lock:
            pass

    def _on_job_event(self, event: JobEvent):
        if event.code == EVENT_JOB_MAX_INSTANCES:
            self.overruns += 1
            self.engine.stats["skipped_ticks"] += 1
            logger.warning("Tick overran its interval — next run skipped")
        elif event.code == EVENT_JOB_ERROR:
            logger.error(f"Tick job raised: {event.exception}")

    def start(self):
        """Start the tick loop; the first tick runs immediately. No-op if already running."""
        if self.is_running:
            logger.info("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone=self.settings.timezone)
        self.scheduler.add_listener(self._on_job_event, EVENT_JOB_MAX_INSTANCES | EVENT_JOB_ERROR)
        self.scheduler.add_job(
            self._run_tick,
            "interval",
            seconds=self.settings.engine_interval_seconds,
            id=JOB_ID,
            name="HortiFlow Rules Tick",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started — interval: {self.settings.engine_interval_seconds} seconds")
        self.engine.events.publish(EngineEvent.RULE_ENGINE_STATUS, self.status())

    async def stop(self):
        """Stop scheduling new ticks and wait (bounded) for an in-flight tick. No-op if stopped."""
        if not self.is_running:
            return

        scheduler, self.scheduler = self.scheduler, None
        scheduler.remove_job(JOB_ID)

        timeout = self.settings.engine_stop_timeout_seconds
        try:
            await asyncio.wait_for(self._wait_idle(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"In-flight tick did not finish within {timeout:.0f}s — stopping anyway")

        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
        self.engine.events.publish(EngineEvent.RULE_ENGINE_STATUS, self.status())

    async def trigger_now(self) -> dict | None:
        """Manually run a tick (takes the same overlap guard as scheduled ticks)."""
        summary = await self.engine.run_tick()
        self.engine.events.publish(EngineEvent.RULE_ENGINE_STATUS, self.status())
        return summary

    def next_tick_at(self) -> datetime | None:
        if not self.is_running:
            return None
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def status(self) -> dict:
        return {
            "is_running": self.is_running,
            "interval_seconds": self.settings.engine_interval_seconds,
            "next_tick_at": self.next_tick_at(),
            "overruns": self.overruns,
            **self.engine.status(),
        }
