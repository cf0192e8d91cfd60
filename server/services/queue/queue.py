"""Durable work queue on top of the cache service.

Redis key layout (prefix queue:{name}):
    :job:{id}   Job record (JSON)
    :due        Sorted set of runnable job ids scored by run-at millis
    :active     Sorted set of claimed job ids scored by lease deadline
    :repeat     Hash of repeat key -> RepeatingSchedule

Delivery is at-least-once. A job is claimed by removing it from :due (only
one caller can win ZREM) and leased in :active until it completes or fails.
Leases that expire are handed back by the stalled-job sweeper.
"""

from typing import Any, Dict, List, Optional

from core.cache import CacheService
from core.config import Settings
from core.exceptions import QueueError
from core.logging import get_logger
from .models import (
    BackoffPolicy,
    Job,
    JobStatus,
    RepeatingSchedule,
    RepeatOptions,
    now_ms,
)

logger = get_logger(__name__)

# Upper bound on due ids fetched per claim attempt
CLAIM_BATCH = 10


class WorkflowQueue:
    """Named job queue with retry/backoff and repeating jobs."""

    def __init__(self, cache: CacheService, settings: Settings):
        self.cache = cache
        self.name = settings.queue_name
        self.default_backoff = BackoffPolicy(
            attempts=settings.job_attempts,
            delay_ms=settings.job_backoff_delay_ms,
        )
        self.lease_ms = settings.stalled_job_timeout * 1000
        self.retention = settings.job_retention_seconds

        prefix = f"queue:{self.name}"
        self._due_key = f"{prefix}:due"
        self._active_key = f"{prefix}:active"
        self._repeat_key = f"{prefix}:repeat"
        self._job_prefix = f"{prefix}:job:"

    # =========================================================================
    # JOB RECORDS
    # =========================================================================

    def _job_key(self, job_id: str) -> str:
        return f"{self._job_prefix}{job_id}"

    async def _save(self, job: Job) -> None:
        ttl = self.retention if job.status.is_finished else None
        await self.cache.set(self._job_key(job.id), job.to_dict(), ttl=ttl)

    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self.cache.get(self._job_key(job_id))
        return Job.from_dict(data) if data else None

    # =========================================================================
    # PRODUCER
    # =========================================================================

    async def add(self, name: str, data: Dict[str, Any], job_id: Optional[str] = None,
                  delay_ms: int = 0, backoff: Optional[BackoffPolicy] = None,
                  repeat_key: Optional[str] = None) -> Job:
        """Add a job. Adding an id that is still pending returns the existing job."""
        job_id = job_id or f"job_{now_ms()}"
        existing = await self.get_job(job_id)
        if existing and not existing.status.is_finished:
            logger.info("Job id already queued, ignoring duplicate add", job_id=job_id,
                        status=existing.status.value)
            return existing

        backoff = backoff or self.default_backoff
        run_at = now_ms() + max(delay_ms, 0)
        job = Job(
            id=job_id,
            name=name,
            data=data,
            max_attempts=backoff.attempts,
            backoff_delay=backoff.delay_ms,
            status=JobStatus.DELAYED if delay_ms > 0 else JobStatus.WAITING,
            run_at=run_at,
            repeat_key=repeat_key,
        )
        await self._save(job)
        await self.cache.zset_add(self._due_key, job.id, run_at)

        logger.info("Job added", queue=self.name, job_id=job.id, status=job.status.value,
                    workflow_id=job.workflow_id)
        return job

    # =========================================================================
    # REPEATING JOBS
    # =========================================================================

    async def add_repeatable(self, name: str, data: Dict[str, Any], job_id: str,
                             options: RepeatOptions) -> RepeatingSchedule:
        """Register a repeating job template. The first instance is spawned at its next fire time."""
        next_run = options.next_run(now_ms())
        if next_run is None:
            raise QueueError(f"Repeat pattern {options.spec!r} never fires")

        schedule = RepeatingSchedule(
            key=RepeatingSchedule.make_key(name, job_id, options),
            name=name,
            id=job_id,
            data=data,
            pattern=options.pattern,
            every=options.every,
            tz=options.tz,
            next=next_run,
        )
        await self.cache.hash_set(self._repeat_key, schedule.key, schedule.to_dict())
        logger.info("Repeating job registered", key=schedule.key, job_id=job_id,
                    next_run=next_run)
        return schedule

    async def get_repeatable_jobs(self) -> List[RepeatingSchedule]:
        entries = await self.cache.hash_get_all(self._repeat_key)
        schedules = [RepeatingSchedule.from_dict(v) for v in entries.values()]
        return sorted(schedules, key=lambda s: s.next or 0)

    async def remove_repeatable_by_key(self, key: str) -> bool:
        removed = await self.cache.hash_delete(self._repeat_key, key)
        if removed:
            logger.info("Repeating job removed", key=key)
        else:
            logger.warning("Repeating job not found", key=key)
        return removed

    async def promote_due_repeats(self, now: Optional[int] = None) -> List[Job]:
        """Spawn a job instance for every repeating entry whose next run has come."""
        now = now if now is not None else now_ms()
        spawned = []

        for schedule in await self.get_repeatable_jobs():
            if schedule.next is None or schedule.next > now:
                continue

            fire_at = schedule.next
            job = await self.add(
                schedule.name,
                dict(schedule.data),
                job_id=f"repeat:{schedule.id}:{fire_at}",
                repeat_key=schedule.key,
            )
            spawned.append(job)

            schedule.next = schedule.options.next_run(max(now, fire_at))
            # Removed concurrently by a redeploy; do not resurrect it
            if await self.cache.hash_get(self._repeat_key, schedule.key) is None:
                continue
            if schedule.next is None:
                await self.remove_repeatable_by_key(schedule.key)
            else:
                await self.cache.hash_set(self._repeat_key, schedule.key, schedule.to_dict())

        return spawned

    # =========================================================================
    # CONSUMER
    # =========================================================================

    async def claim_next(self, now: Optional[int] = None) -> Optional[Job]:
        """Atomically claim the oldest due job and lease it."""
        now = now if now is not None else now_ms()
        candidates = await self.cache.zset_range_by_score(self._due_key, now, limit=CLAIM_BATCH)

        for job_id in candidates:
            if not await self.cache.zset_remove(self._due_key, job_id):
                continue    # Another consumer won

            job = await self.get_job(job_id)
            if job is None:
                logger.warning("Due entry without job record, dropping", job_id=job_id)
                continue

            job.status = JobStatus.ACTIVE
            job.processed_on = now
            await self._save(job)
            await self.cache.zset_add(self._active_key, job.id, now + self.lease_ms)
            return job

        return None

    async def extend_lease(self, job: Job, now: Optional[int] = None) -> bool:
        """Push the lease deadline of a running job forward.

        Returns False when the lease is no longer held (the sweeper took it).
        """
        now = now if now is not None else now_ms()
        if await self.cache.zset_score(self._active_key, job.id) is None:
            return False
        await self.cache.zset_add(self._active_key, job.id, now + self.lease_ms)
        return True

    async def complete(self, job: Job, result: Dict[str, Any]) -> Optional[Job]:
        """Record a successful run.

        Returns None when the lease was lost and the job is already running
        elsewhere or finished. If the sweeper only re-queued it, the pending
        retry is withdrawn and the completion is recorded on the stored job.
        """
        if not await self.cache.zset_remove(self._active_key, job.id):
            if not await self.cache.zset_remove(self._due_key, job.id):
                logger.warning("Lease lost, discarding result", job_id=job.id)
                return None
            job = await self.get_job(job.id) or job
            logger.warning("Lease lost, withdrew re-queued retry", job_id=job.id,
                           attempts=job.attempts_made)

        job.status = JobStatus.COMPLETED
        job.result = result
        job.failed_reason = None
        job.finished_on = now_ms()
        await self._save(job)
        logger.info("Job completed", job_id=job.id, workflow_id=job.workflow_id)
        return job

    async def fail(self, job: Job, error: str, retry: bool = True) -> Optional[Job]:
        """Record a failed attempt and either schedule a retry or fail permanently.

        Returns None when the lease was lost; the sweeper has already counted
        the attempt.
        """
        if not await self.cache.zset_remove(self._active_key, job.id):
            logger.warning("Lease lost, discarding failure", job_id=job.id, error=error)
            return None
        return await self._record_failure(job, error, retry)

    async def _record_failure(self, job: Job, error: str, retry: bool = True) -> Job:
        job.attempts_made += 1
        job.failed_reason = error

        if retry and job.backoff.should_retry(job.attempts_made):
            delay = job.backoff.calculate_delay(job.attempts_made)
            job.status = JobStatus.DELAYED
            job.run_at = now_ms() + delay
            await self._save(job)
            await self.cache.zset_add(self._due_key, job.id, job.run_at)
            logger.warning("Job failed, retrying", job_id=job.id, attempt=job.attempts_made,
                           max_attempts=job.max_attempts, delay_ms=delay, error=error)
            return job

        job.status = JobStatus.FAILED
        job.finished_on = now_ms()
        await self._save(job)
        logger.error("Job failed permanently", job_id=job.id, attempts=job.attempts_made,
                     error=error)
        return job

    async def stalled_jobs(self, now: Optional[int] = None) -> List[str]:
        """Ids of active jobs whose lease has expired."""
        now = now if now is not None else now_ms()
        return await self.cache.zset_range_by_score(self._active_key, now)

    async def release_stalled(self, job_id: str) -> Optional[Job]:
        """Take back an expired lease and count it as a failed attempt."""
        if not await self.cache.zset_remove(self._active_key, job_id):
            return None
        job = await self.get_job(job_id)
        if job is None or job.status != JobStatus.ACTIVE:
            return None
        return await self._record_failure(job, "Job stalled (lease expired)")

    async def counts(self) -> Dict[str, int]:
        return {
            "due": await self.cache.zset_size(self._due_key),
            "active": await self.cache.zset_size(self._active_key),
            "repeating": len(await self.cache.hash_get_all(self._repeat_key)),
        }
