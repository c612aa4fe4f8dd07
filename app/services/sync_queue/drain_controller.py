"""
Drain controller: repeatedly claims and executes sync jobs.

One drain session runs system-wide, guarded by the ``sync-processor`` lease.
A session stops when the queue is idle, when the iteration cap is reached
(callers simply invoke it again), when too many consecutive jobs fail, or when
the lease is lost to another worker.
"""

import asyncio
import contextlib
import logging
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.core.config import Settings, get_settings
from app.core.enums import DrainStopReason, SyncErrorType
from app.core.utils import utcnow
from app.integrations.setup import MarketplaceRegistry
from app.services.sync_queue.lease import ProcessorLease
from app.services.sync_queue.processor import JobOutcome, SyncQueueProcessor
from app.services.sync_queue.queue import SyncQueueService

logger = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 20


@dataclass
class DrainConfig:
    concurrency: int = 1
    batch_size: int = 1
    item_delay: float = 2.0          # seconds between iterations
    max_iterations: int = 100
    max_consecutive_errors: int = 3
    marketplace: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "DrainConfig":
        config = cls(
            concurrency=settings.DRAIN_CONCURRENCY,
            batch_size=settings.DRAIN_BATCH_SIZE,
            item_delay=settings.DRAIN_ITEM_DELAY_MS / 1000.0,
            max_iterations=settings.DRAIN_MAX_ITERATIONS,
            max_consecutive_errors=settings.DRAIN_MAX_CONSECUTIVE_ERRORS,
        )
        return replace(config, **{k: v for k, v in overrides.items() if v is not None})

    def turbo(self, multiplier: int = 3) -> "DrainConfig":
        """Same limits, more parallelism and a shorter pause between iterations."""
        multiplier = max(int(multiplier), 1)
        return replace(
            self,
            concurrency=self.concurrency * multiplier,
            batch_size=self.batch_size * multiplier,
            item_delay=self.item_delay / multiplier,
        )


@dataclass
class StepResult:
    claimed: bool
    job_id: Optional[int] = None
    outcome: Optional[str] = None
    error_type: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: JobOutcome) -> "StepResult":
        return cls(claimed=True, job_id=outcome.job_id, outcome=outcome.outcome,
                   error_type=outcome.error_type, error=outcome.error)


@dataclass
class DrainResult:
    stop_reason: DrainStopReason
    processor_id: Optional[str] = None
    iterations: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    discarded: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def record(self, outcome: JobOutcome) -> None:
        self.processed += 1
        if outcome.succeeded:
            self.succeeded += 1
        elif outcome.outcome == "discarded":
            self.discarded += 1
        else:
            self.failed += 1
            if outcome.outcome == "dead_lettered":
                self.dead_lettered += 1
            if len(self.failures) < MAX_ERROR_DETAILS:
                self.failures.append({
                    "job_id": outcome.job_id,
                    "outcome": outcome.outcome,
                    "error_type": outcome.error_type,
                    "error": outcome.error,
                })

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["stop_reason"] = self.stop_reason.value
        return data


def new_processor_id(prefix: str = "drain") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class DrainController:
    def __init__(
        self,
        session_factory,
        registry: MarketplaceRegistry,
        settings: Optional[Settings] = None,
        processor_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.settings = settings or get_settings()
        self.processor_id = processor_id or new_processor_id()
        self.processor = SyncQueueProcessor(session_factory, registry, settings=self.settings)

    def _lease(self, session) -> ProcessorLease:
        return ProcessorLease(session, ttl_seconds=self.settings.SYNC_LOCK_TTL_SECONDS)

    async def _claim(self, marketplace: Optional[str] = None):
        async with self.session_factory() as session:
            return await SyncQueueService(session, settings=self.settings).claim_next(self.processor_id, marketplace)

    async def process_next(self, marketplace: Optional[str] = None) -> StepResult:
        """
        Claim and execute a single job.

        The claim itself is an atomic row update, so this is safe to call while
        a drain session holds the lease elsewhere.
        """
        job = await self._claim(marketplace)
        if job is None:
            return StepResult(claimed=False)
        outcome = await self.processor.process_job(job.id, self.processor_id)
        return StepResult.from_outcome(outcome)

    async def drain(self, config: Optional[DrainConfig] = None) -> DrainResult:
        config = config or DrainConfig.from_settings(self.settings)
        result = DrainResult(stop_reason=DrainStopReason.IDLE, processor_id=self.processor_id, started_at=utcnow())

        async with self.session_factory() as session:
            acquired = await self._lease(session).acquire(self.processor_id)
        if not acquired:
            result.stop_reason = DrainStopReason.LOCKED
            result.finished_at = utcnow()
            return result

        logger.info(f"Drain {self.processor_id} started (concurrency={config.concurrency}, "
                    f"batch={config.batch_size}, max_iterations={config.max_iterations})")
        try:
            result.stop_reason = await self._run(config, result)
        finally:
            async with self.session_factory() as session:
                await self._lease(session).release(self.processor_id)
            result.finished_at = utcnow()

        logger.info(f"Drain {self.processor_id} stopped ({result.stop_reason.value}): "
                    f"{result.succeeded} ok, {result.failed} failed, {result.dead_lettered} dead-lettered "
                    f"in {result.iterations} iteration(s)")
        return result

    async def _run(self, config: DrainConfig, result: DrainResult) -> DrainStopReason:
        semaphore = asyncio.Semaphore(max(config.concurrency, 1))
        consecutive_errors = 0

        async def run_one(job_id: int) -> JobOutcome:
            # Claimed jobs keep heartbeating while they wait for a slot
            waiting = asyncio.create_task(self.processor.heartbeat_loop(job_id, self.processor_id))
            try:
                await semaphore.acquire()
            finally:
                waiting.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await waiting
            try:
                return await self.processor.process_job(job_id, self.processor_id)
            finally:
                semaphore.release()

        while result.iterations < config.max_iterations:
            if result.iterations > 0:
                async with self.session_factory() as session:
                    if not await self._lease(session).renew(self.processor_id):
                        return DrainStopReason.LOCK_LOST

            job_ids = []
            for _ in range(max(config.batch_size, 1)):
                job = await self._claim(config.marketplace)
                if job is None:
                    break
                job_ids.append(job.id)
            if not job_ids:
                return DrainStopReason.IDLE

            outcomes = await asyncio.gather(*(run_one(job_id) for job_id in job_ids), return_exceptions=True)
            result.iterations += 1

            for job_id, outcome in zip(job_ids, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"Drain {self.processor_id}: job {job_id} crashed: {str(outcome)}")
                    outcome = JobOutcome(
                        job_id=job_id, outcome="error", error_type=SyncErrorType.UNKNOWN.value, error=str(outcome)
                    )
                result.record(outcome)
                if outcome.failed:
                    consecutive_errors += 1
                elif outcome.succeeded:
                    consecutive_errors = 0

            if consecutive_errors >= config.max_consecutive_errors:
                logger.error(f"Drain {self.processor_id}: {consecutive_errors} consecutive failures, opening circuit")
                return DrainStopReason.CIRCUIT_OPEN

            if config.item_delay > 0 and result.iterations < config.max_iterations:
                await asyncio.sleep(config.item_delay)

        return DrainStopReason.CAP_REACHED
