"""Stalled job sweeper.

Runs as a background task to:
- Detect active jobs whose lease expired (worker crashed or hung)
- Hand them back to the queue as a failed attempt, so retry/backoff applies
"""

import asyncio
from typing import List, Optional

from constants import EVENT_JOB_FAILED, EVENT_JOB_RETRYING
from core.logging import get_logger
from services.status_broadcaster import JobEvent, JobEventBridge
from .models import JobStatus
from .queue import WorkflowQueue

logger = get_logger(__name__)


class StalledJobSweeper:
    """Periodically recovers jobs stuck in the active set."""

    def __init__(self, queue: WorkflowQueue, bridge: Optional[JobEventBridge] = None,
                 sweep_interval: int = 30):
        """Initialize sweeper.

        Args:
            queue: WorkflowQueue to sweep
            bridge: Optional event bridge for retry/failure events
            sweep_interval: Seconds between sweep runs
        """
        self.queue = queue
        self.bridge = bridge
        self.sweep_interval = sweep_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the sweeper background task."""
        if self._running:
            logger.warning("Stalled job sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Stalled job sweeper started", sweep_interval=self.sweep_interval,
                    lease_ms=self.queue.lease_ms)

    async def stop(self) -> None:
        """Stop the sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Stalled job sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

            await asyncio.sleep(self.sweep_interval)

    async def sweep_once(self, now: Optional[int] = None) -> List[str]:
        """Single sweep iteration. Returns ids of recovered jobs."""
        stalled = await self.queue.stalled_jobs(now)
        if not stalled:
            return []

        logger.warning("Found stalled jobs", count=len(stalled))
        recovered = []
        for job_id in stalled:
            job = await self.queue.release_stalled(job_id)
            if job is None:
                continue
            recovered.append(job_id)

            if self.bridge:
                failed = job.status == JobStatus.FAILED
                await self.bridge.publish(JobEvent(
                    job_id=job.id,
                    type=EVENT_JOB_FAILED if failed else EVENT_JOB_RETRYING,
                    status=job.status.value,
                    error=job.failed_reason,
                ))
        return recovered
