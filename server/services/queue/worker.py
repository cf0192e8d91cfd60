"""Queue worker - claims jobs and runs them through the workflow processor.

One concurrency slot per job, bounded by worker_concurrency. Lifecycle
events are published through the job event bridge.
"""

import asyncio
from contextlib import suppress
from typing import Any, Dict, Optional, Set

from constants import (
    EVENT_JOB_ACTIVE,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_FAILED,
    EVENT_JOB_RETRYING,
)
from core.exceptions import QueueError
from core.logging import get_logger, job_log_context
from services.status_broadcaster import JobEvent, JobEventBridge
from .models import Job, JobStatus
from .processor import WorkflowProcessor
from .queue import WorkflowQueue

logger = get_logger(__name__)


class Worker:
    """Polls the queue and processes jobs concurrently."""

    def __init__(self, queue: WorkflowQueue, processor: WorkflowProcessor,
                 bridge: JobEventBridge, concurrency: int = 4,
                 poll_interval: float = 0.5,
                 heartbeat_interval: Optional[float] = None):
        self.queue = queue
        self.processor = processor
        self.bridge = bridge
        self.concurrency = max(concurrency, 1)
        self.poll_interval = poll_interval
        # Renew well before the lease runs out
        self.heartbeat_interval = heartbeat_interval or max(queue.lease_ms / 3000, 1)
        self._slots = asyncio.Semaphore(self.concurrency)
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start the poll loop."""
        if self._running:
            logger.warning("Worker already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="queue-worker")
        logger.info("Worker started", queue=self.queue.name, concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop polling and wait for in-flight jobs to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Worker stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.queue.promote_due_repeats()
                while not self._slots.locked():
                    job = await self.queue.claim_next()
                    if job is None:
                        break
                    await self._slots.acquire()
                    task = asyncio.create_task(self._run_in_slot(job), name=f"job_{job.id}")
                    self._in_flight.add(task)
                    task.add_done_callback(self._in_flight.discard)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Worker poll iteration failed", error=str(e))

            await asyncio.sleep(self.poll_interval)

    async def _run_in_slot(self, job: Job) -> None:
        try:
            await self.run_job(job)
        finally:
            self._slots.release()

    async def process_next(self) -> Optional[Job]:
        """Promote repeats, claim one due job and run it inline."""
        await self.queue.promote_due_repeats()
        job = await self.queue.claim_next()
        if job is None:
            return None
        return await self.run_job(job)

    async def run_job(self, job: Job) -> Job:
        """Process a claimed job and record its outcome on the queue."""
        with job_log_context(job.id, job.workflow_id, attempt=job.attempts_made + 1):
            return await self._run_job(job)

    async def _run_job(self, job: Job) -> Job:
        logger.info("Processing job")
        await self._emit(job, EVENT_JOB_ACTIVE, JobStatus.ACTIVE.value)

        async def emit(event_type: str, data: Dict[str, Any]) -> None:
            await self._emit(job, event_type, JobStatus.ACTIVE.value, data=data,
                             error=data.get("error"))

        heartbeat = asyncio.create_task(self._keep_lease(job), name=f"lease_{job.id}")
        try:
            result = await self.processor.process(job, emit=emit)
        except asyncio.CancelledError:
            raise
        except QueueError as e:
            outcome = await self.queue.fail(job, str(e), retry=False)
        except Exception as e:
            logger.error("Job attempt failed", job_id=job.id, error=str(e))
            outcome = await self.queue.fail(job, str(e))
        else:
            outcome = await self.queue.complete(job, result)
            if outcome is not None:
                await self._emit(outcome, EVENT_JOB_COMPLETED, outcome.status.value, result=result)
                return outcome
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat

        if outcome is None:
            # Lease was taken back; the stored record belongs to whoever holds it now
            return await self.queue.get_job(job.id) or job

        if outcome.status == JobStatus.FAILED:
            await self._emit(outcome, EVENT_JOB_FAILED, outcome.status.value,
                             error=outcome.failed_reason)
        else:
            await self._emit(outcome, EVENT_JOB_RETRYING, outcome.status.value,
                             error=outcome.failed_reason,
                             data={"attemptsMade": outcome.attempts_made, "runAt": outcome.run_at})
        return outcome

    async def _keep_lease(self, job: Job) -> None:
        """Extend the job's lease until cancelled or the lease is lost."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                if not await self.queue.extend_lease(job):
                    logger.warning("Lease lost while running", job_id=job.id)
                    return
            except Exception as e:
                logger.error("Lease heartbeat failed", job_id=job.id, error=str(e))

    async def _emit(self, job: Job, event_type: str, status: str,
                    result: Optional[Dict[str, Any]] = None, error: Optional[str] = None,
                    data: Optional[Dict[str, Any]] = None) -> None:
        await self.bridge.publish(JobEvent(
            job_id=job.id,
            type=event_type,
            status=status,
            result=result,
            error=error,
            data=data or {},
        ))
