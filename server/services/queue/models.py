"""Job queue models.

All timestamps are epoch milliseconds, matching the ids the queue derives
from them (job_{millis}, repeat:{workflowId}:{millis}).
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from apscheduler.triggers.cron import CronTrigger

from core.exceptions import QueueError


def now_ms() -> int:
    return int(time.time() * 1000)


class JobStatus(str, Enum):
    """Job lifecycle states."""
    WAITING = "waiting"
    DELAYED = "delayed"        # Waiting out a retry backoff
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class BackoffPolicy:
    """Fixed attempt count with exponential backoff.

    Delay formula: delay_ms * 2 ^ (attempts_made - 1)
    """
    attempts: int = 3
    delay_ms: int = 1000

    def calculate_delay(self, attempts_made: int) -> int:
        """Delay before the next attempt, given how many attempts have failed."""
        return int(self.delay_ms * (2 ** max(attempts_made - 1, 0)))

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.attempts


@dataclass
class Job:
    """A queue entry. Carries only the workflow id and runtime context."""
    id: str
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_delay: int = 1000
    status: JobStatus = JobStatus.WAITING
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    run_at: Optional[int] = None
    repeat_key: Optional[str] = None

    @property
    def workflow_id(self) -> Optional[str]:
        return self.data.get("workflowId")

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(attempts=self.max_attempts, delay_ms=self.backoff_delay)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            data=data.get("data", {}),
            attempts_made=data.get("attempts_made", 0),
            max_attempts=data.get("max_attempts", 3),
            backoff_delay=data.get("backoff_delay", 1000),
            status=JobStatus(data.get("status", JobStatus.WAITING.value)),
            result=data.get("result"),
            failed_reason=data.get("failed_reason"),
            created_at=data.get("created_at", now_ms()),
            processed_on=data.get("processed_on"),
            finished_on=data.get("finished_on"),
            run_at=data.get("run_at"),
            repeat_key=data.get("repeat_key"),
        )


def build_cron_trigger(expression: str, tz: str = "UTC") -> CronTrigger:
    """Parse a 5-field (minute hour day month weekday) or 6-field
    (second minute hour day month weekday) cron expression."""
    parts = (expression or "").split()
    try:
        if len(parts) == 6:
            return CronTrigger(
                second=parts[0],
                minute=parts[1],
                hour=parts[2],
                day=parts[3],
                month=parts[4],
                day_of_week=parts[5],
                timezone=tz,
            )
        if len(parts) == 5:
            return CronTrigger(
                second='0',
                minute=parts[0],
                hour=parts[1],
                day=parts[2],
                month=parts[3],
                day_of_week=parts[4],
                timezone=tz,
            )
    except ValueError as e:
        raise QueueError(f"Invalid cron expression {expression!r}: {e}")
    raise QueueError(f"Cron expression must have 5 or 6 fields, got {expression!r}")


@dataclass
class RepeatOptions:
    """Either a cron pattern or a fixed interval in milliseconds."""
    pattern: Optional[str] = None
    every: Optional[int] = None
    tz: str = "UTC"

    def __post_init__(self):
        if bool(self.pattern) == bool(self.every):
            raise QueueError("Repeat options need exactly one of pattern or every")
        if self.every is not None and self.every <= 0:
            raise QueueError("Repeat interval must be positive")
        if self.pattern:
            # Fail at schedule time, not at first fire
            build_cron_trigger(self.pattern, self.tz)

    @property
    def spec(self) -> str:
        return self.pattern or str(self.every)

    def next_run(self, after_ms: int) -> Optional[int]:
        """First fire time strictly after after_ms, or None if the pattern never fires again."""
        if self.every:
            return after_ms + self.every

        trigger = build_cron_trigger(self.pattern, self.tz)
        after = datetime.fromtimestamp((after_ms + 1) / 1000, tz=timezone.utc)
        next_fire = trigger.get_next_fire_time(None, after)
        if next_fire is None:
            return None
        return int(next_fire.timestamp() * 1000)

    def describe(self) -> str:
        if self.pattern:
            return self.pattern
        minutes = self.every / 60000
        return f"Every {int(minutes) if minutes.is_integer() else minutes} mins"


@dataclass
class RepeatingSchedule:
    """A repeating job template. At most one per workflow id."""
    key: str
    name: str
    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    pattern: Optional[str] = None
    every: Optional[int] = None
    tz: str = "UTC"
    next: Optional[int] = None
    created_at: int = field(default_factory=now_ms)

    @staticmethod
    def make_key(name: str, workflow_id: str, options: RepeatOptions) -> str:
        return f"{name}:{workflow_id}:{options.spec}"

    @property
    def options(self) -> RepeatOptions:
        return RepeatOptions(pattern=self.pattern, every=self.every, tz=self.tz)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepeatingSchedule":
        return cls(
            key=data["key"],
            name=data.get("name", ""),
            id=data["id"],
            data=data.get("data", {}),
            pattern=data.get("pattern"),
            every=data.get("every"),
            tz=data.get("tz", "UTC"),
            next=data.get("next"),
            created_at=data.get("created_at", now_ms()),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Listing shape: key, name, id, pattern (or "Every N mins"), nextRun."""
        next_run = None
        if self.next is not None:
            next_run = datetime.fromtimestamp(self.next / 1000, tz=timezone.utc).isoformat()
        return {
            "key": self.key,
            "name": self.name,
            "id": self.id,
            "pattern": self.options.describe(),
            "every": self.every,
            "nextRun": next_run,
        }
