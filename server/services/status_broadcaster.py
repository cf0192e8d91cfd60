"""Job event bridge.

Workers publish job lifecycle events to the events channel. The API process
listens on that channel and forwards each event over WebSocket only to the
clients that subscribed to the event's job id.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import orjson
from fastapi import WebSocket

from core.cache import CacheService
from core.logging import get_logger

logger = get_logger(__name__)

WORKFLOW_UPDATE = "workflow_update"


@dataclass
class JobEvent:
    """One lifecycle event for one job."""
    job_id: str
    type: str
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "jobId": self.job_id,
            "type": self.type,
            "status": self.status,
            "timestamp": self.timestamp,
        }
        if self.result is not None:
            d["result"] = self.result
        if self.error is not None:
            d["error"] = self.error
        if self.data:
            d["data"] = self.data
        return d


class JobEventBridge:
    """Routes channel events to per-job WebSocket subscribers."""

    def __init__(self, cache: CacheService, channel: str):
        self.cache = cache
        self.channel = channel
        self._subscriptions: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    # =========================================================================
    # Publishing (worker side)
    # =========================================================================

    async def publish(self, event: JobEvent) -> int:
        """Publish an event. A publish failure never fails the job."""
        try:
            return await self.cache.publish(self.channel, event.to_dict())
        except Exception as e:
            logger.warning("Failed to publish job event", job_id=event.job_id,
                           event_type=event.type, error=str(e))
            return 0

    # =========================================================================
    # Subscriptions (API side)
    # =========================================================================

    async def subscribe(self, websocket: WebSocket, job_id: str) -> None:
        async with self._lock:
            self._subscriptions.setdefault(job_id, set()).add(websocket)
        logger.debug("Client watching job", job_id=job_id)

    async def unsubscribe(self, websocket: WebSocket, job_id: str) -> None:
        async with self._lock:
            watchers = self._subscriptions.get(job_id)
            if watchers is not None:
                watchers.discard(websocket)
                if not watchers:
                    del self._subscriptions[job_id]

    async def disconnect(self, websocket: WebSocket) -> None:
        """Drop a client from every job it watched."""
        async with self._lock:
            for job_id in list(self._subscriptions):
                self._subscriptions[job_id].discard(websocket)
                if not self._subscriptions[job_id]:
                    del self._subscriptions[job_id]

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscriptions.get(job_id, ()))

    async def dispatch(self, event: Dict[str, Any]) -> int:
        """Send an event to the clients watching its job. Returns deliveries."""
        job_id = event.get("jobId")
        if not job_id:
            logger.warning("Dropping event without jobId", event_type=event.get("type"))
            return 0

        async with self._lock:
            watchers = list(self._subscriptions.get(job_id, ()))
        if not watchers:
            return 0

        message = orjson.dumps({"type": WORKFLOW_UPDATE, "data": event}).decode()
        disconnected: Set[WebSocket] = set()

        async def send_to_client(connection: WebSocket):
            try:
                await connection.send_text(message)
            except Exception as e:
                logger.warning("Event send failed", job_id=job_id, error=str(e))
                disconnected.add(connection)

        async with asyncio.TaskGroup() as tg:
            for conn in watchers:
                tg.create_task(send_to_client(conn))

        for conn in disconnected:
            await self.disconnect(conn)
        return len(watchers) - len(disconnected)

    # =========================================================================
    # Channel listener
    # =========================================================================

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._listen(), name="job-event-bridge")
        logger.info("Job event bridge started", channel=self.channel)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Job event bridge stopped")

    async def _listen(self) -> None:
        while True:
            try:
                async for event in self.cache.subscribe(self.channel):
                    await self.dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Event listener failed, resubscribing", error=str(e))
                await asyncio.sleep(1)
