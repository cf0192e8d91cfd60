"""Job queue package.

- models.py: Job, BackoffPolicy, RepeatOptions, RepeatingSchedule
- queue.py: Durable queue over the cache service (claim, retry, repeat)
- scheduler.py: Workflow enqueue, redeploy and schedule management
- processor.py: Worker-side job expansion and execution
- worker.py: Poll loop with bounded concurrency
- recovery.py: Stalled job sweeper
"""

from .models import (
    BackoffPolicy,
    Job,
    JobStatus,
    RepeatingSchedule,
    RepeatOptions,
    build_cron_trigger,
)
from .queue import WorkflowQueue
from .scheduler import WorkflowScheduler, parse_repeat_options, safe_name
from .processor import WorkflowProcessor, row_context
from .worker import Worker
from .recovery import StalledJobSweeper

__all__ = [
    "BackoffPolicy",
    "Job",
    "JobStatus",
    "RepeatingSchedule",
    "RepeatOptions",
    "build_cron_trigger",
    "WorkflowQueue",
    "WorkflowScheduler",
    "parse_repeat_options",
    "safe_name",
    "WorkflowProcessor",
    "row_context",
    "Worker",
    "StalledJobSweeper",
]
