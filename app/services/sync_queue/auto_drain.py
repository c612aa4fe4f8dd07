"""
Server-resident auto-drain.

An APScheduler interval job checks the ``sync-processor`` lease row every few
seconds. When auto-drain is switched on, nobody holds the lease, no worker is
processing a job and the queue has eligible work, it runs one drain
session, which ends itself once the queue is idle. A tick that crashes is
logged by the job listener and the next tick simply tries again.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import Settings, get_settings
from app.core.utils import utcnow
from app.integrations.setup import MarketplaceRegistry
from app.services.sync_queue.drain_controller import DrainConfig, DrainController, DrainResult, new_processor_id
from app.services.sync_queue.lease import ProcessorLease
from app.services.sync_queue.queue import SyncQueueService

logger = logging.getLogger(__name__)

AUTO_DRAIN_JOB_ID = "sync_auto_drain"


class AutoDrainSupervisor:
    def __init__(
        self,
        session_factory,
        registry: MarketplaceRegistry,
        settings: Optional[Settings] = None,
        drain_config: Optional[DrainConfig] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.settings = settings or get_settings()
        self.drain_config = drain_config or DrainConfig.from_settings(self.settings)
        self.scheduler: Optional[AsyncIOScheduler] = None

        self.last_tick_at: Optional[datetime] = None
        self.last_result: Optional[DrainResult] = None
        self.last_error: Optional[str] = None
        self.sessions_run = 0

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def _job_listener(self, event):
        """Listen to job events for logging"""
        if event.code == EVENT_JOB_MAX_INSTANCES:
            logger.debug("Auto-drain tick skipped: previous session still running")
        elif event.exception:
            self.last_error = str(event.exception)
            logger.error(f"Auto-drain tick crashed: {event.exception}")

    async def tick(self) -> Optional[DrainResult]:
        """One supervisor check. Returns the drain result when a session ran."""
        self.last_tick_at = utcnow()

        async with self.session_factory() as session:
            lease_status = await ProcessorLease(
                session, ttl_seconds=self.settings.SYNC_LOCK_TTL_SECONDS
            ).status()
            if not lease_status["auto_drain_enabled"] or lease_status["held"]:
                return None
            queue = SyncQueueService(session, settings=self.settings)
            # A manual single-step runs without the lease
            if await queue.has_active_processing():
                logger.debug("Auto-drain tick skipped: a job is already processing")
                return None
            has_work = await queue.has_eligible_work(self.drain_config.marketplace)
        if not has_work:
            return None

        controller = DrainController(
            self.session_factory,
            self.registry,
            settings=self.settings,
            processor_id=new_processor_id("auto-drain"),
        )
        result = await controller.drain(self.drain_config)
        self.sessions_run += 1
        self.last_result = result
        self.last_error = None
        return result

    def start(self) -> None:
        if self.running:
            return
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_listener(self._job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES)
        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self.settings.AUTO_DRAIN_INTERVAL_SECONDS),
            id=AUTO_DRAIN_JOB_ID,
            name="Sync Queue Auto-Drain",
            replace_existing=True,
            max_instances=1,  # Only one drain session at a time
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Auto-drain supervisor started (every {self.settings.AUTO_DRAIN_INTERVAL_SECONDS}s)")

    def stop(self) -> None:
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Auto-drain supervisor stopped")
        self.scheduler = None

    def status(self) -> Dict[str, Any]:
        next_run = None
        if self.running:
            job = self.scheduler.get_job(AUTO_DRAIN_JOB_ID)
            next_run = job.next_run_time if job else None
        return {
            "running": self.running,
            "interval_seconds": self.settings.AUTO_DRAIN_INTERVAL_SECONDS,
            "next_run_time": next_run,
            "last_tick_at": self.last_tick_at,
            "sessions_run": self.sessions_run,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_error": self.last_error,
        }
