"""Workflow scheduling on top of the job queue.

Immediate runs get a timestamp-derived id. Timer workflows get a stable id
derived from the workflow name so a redeploy replaces the existing repeating
entry instead of adding a second one.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from constants import IMMEDIATE_JOB_PREFIX, JOB_NAME, TIMER_JOB_PREFIX, TIMER_TRIGGER
from core.exceptions import ConfigNotFoundError, QueueError
from core.logging import get_logger
from services.config_store import WorkflowConfig, WorkflowConfigStore
from .models import RepeatingSchedule, RepeatOptions, now_ms
from .queue import WorkflowQueue

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r'[^a-zA-Z0-9]')


def safe_name(name: Optional[str]) -> str:
    """Workflow name reduced to [a-z0-9_]."""
    return _UNSAFE_CHARS.sub('_', name or 'default').lower()


def parse_repeat_options(trigger: Dict[str, Any]) -> RepeatOptions:
    """Build repeat options from a timer trigger descriptor.

    Accepts scheduleType "cron" with cronExpression, or "interval" with
    intervalMinutes. Anything else is an invalid timer configuration.
    """
    schedule_type = trigger.get('scheduleType')
    tz = trigger.get('timezone') or 'UTC'

    if schedule_type == 'cron' and trigger.get('cronExpression'):
        return RepeatOptions(pattern=str(trigger['cronExpression']).strip(), tz=tz)

    if schedule_type == 'interval' and trigger.get('intervalMinutes'):
        try:
            minutes = int(trigger['intervalMinutes'])
        except (TypeError, ValueError):
            raise QueueError(f"intervalMinutes must be an integer, got {trigger['intervalMinutes']!r}")
        return RepeatOptions(every=minutes * 60 * 1000, tz=tz)

    raise QueueError("Invalid timer configuration.")


class WorkflowScheduler:
    """Enqueue, trigger and manage repeating workflow jobs."""

    def __init__(self, queue: WorkflowQueue, config_store: WorkflowConfigStore):
        self.queue = queue
        self.config_store = config_store
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, workflow_id: str) -> asyncio.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = self._locks[workflow_id] = asyncio.Lock()
        return lock

    async def _immediate_id(self) -> str:
        """job_{millis}, bumped past ids already taken by a config or a job."""
        millis = now_ms()
        while True:
            candidate = f"{IMMEDIATE_JOB_PREFIX}_{millis}"
            if not (await self.config_store.exists(candidate)
                    or await self.queue.get_job(candidate)):
                return candidate
            millis += 1

    @staticmethod
    def _payload(workflow_id: str, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "workflowId": workflow_id,
            "context": context or {},
            "requestedAt": datetime.now(timezone.utc).isoformat(),
        }

    # =========================================================================
    # PRODUCER
    # =========================================================================

    async def enqueue(self, config: WorkflowConfig, context: Optional[Dict[str, Any]] = None) -> str:
        """Store the config and queue it. Returns the job id clients subscribe to.

        Raises:
            QueueError: invalid timer configuration (nothing is stored)
        """
        is_timer = config.trigger_type == TIMER_TRIGGER
        options = parse_repeat_options(config.trigger) if is_timer else None

        if is_timer:
            workflow_id = f"{TIMER_JOB_PREFIX}_{safe_name(config.workflow_name)}"
        else:
            workflow_id = await self._immediate_id()

        await self.config_store.save(workflow_id, config)
        payload = self._payload(workflow_id, context)

        if is_timer:
            await self.schedule_repeating(workflow_id, payload, options)
            return workflow_id

        job = await self.queue.add(JOB_NAME, payload, job_id=workflow_id)
        return job.id

    async def schedule_repeating(self, workflow_id: str, payload: Dict[str, Any],
                                 options: RepeatOptions) -> RepeatingSchedule:
        """Replace any repeating entry for workflow_id with one using options."""
        async with self._lock(workflow_id):
            replaced = False
            for schedule in await self.queue.get_repeatable_jobs():
                if schedule.id == workflow_id:
                    await self.queue.remove_repeatable_by_key(schedule.key)
                    replaced = True

            schedule = await self.queue.add_repeatable(JOB_NAME, payload, workflow_id, options)

        if replaced:
            logger.info("Updated existing schedule", workflow_id=workflow_id,
                        repeat=options.spec)
        else:
            logger.info("Scheduled new workflow", workflow_id=workflow_id, repeat=options.spec)
        return schedule

    async def trigger(self, workflow_id: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Queue an immediate run of an already stored config."""
        if not await self.config_store.exists(workflow_id):
            raise ConfigNotFoundError(workflow_id)
        job = await self.queue.add(JOB_NAME, self._payload(workflow_id, context),
                                   job_id=await self._immediate_id())
        return job.id

    async def hot_reload(self, workflow_id: str, config: WorkflowConfig) -> None:
        """Overwrite the stored config. Queue entries and repeat metadata stay as they are."""
        await self.config_store.save(workflow_id, config)
        logger.info("Workflow hot reloaded", workflow_id=workflow_id)

    # =========================================================================
    # REPEATING ENTRIES
    # =========================================================================

    async def list_repeating(self) -> List[Dict[str, Any]]:
        return [s.to_public_dict() for s in await self.queue.get_repeatable_jobs()]

    async def remove_repeating(self, key: str) -> bool:
        """Stop one repeating entry by its opaque key."""
        schedules = await self.queue.get_repeatable_jobs()
        workflow_id = next((s.id for s in schedules if s.key == key), None)
        if workflow_id is None:
            return False
        async with self._lock(workflow_id):
            removed = await self.queue.remove_repeatable_by_key(key)
        if removed:
            logger.info("Stopped schedule", key=key, workflow_id=workflow_id)
        return removed
