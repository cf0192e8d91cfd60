"""Shared fixtures for server tests.

Everything runs against the in-memory cache backend, so no Redis is needed.
"""

import os
from typing import Any, Dict, List

import pytest

# Must be set before the container builds its Settings singleton
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("EMBEDDED_WORKER", "false")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from core.cache import CacheService  # noqa: E402
from core.config import Settings  # noqa: E402
from services.config_store import WorkflowConfigStore  # noqa: E402
from services.execution import ChainExecutor  # noqa: E402
from services.handlers import handle_math, handle_merge  # noqa: E402
from services.node_executor import NodeRegistry  # noqa: E402
from services.queue import (  # noqa: E402
    WorkflowProcessor,
    WorkflowQueue,
    WorkflowScheduler,
)
from services.status_broadcaster import JobEventBridge  # noqa: E402


# ── Test doubles ────────────────────────────────────────────────


class FakeSheetsClient:
    """Stands in for SheetsClient; records writes instead of calling Google."""

    def __init__(self):
        self.rows: List[List[Any]] = []
        self.updates: List[Dict[str, Any]] = []
        self.fail_updates = False

    async def read_rows(self, spreadsheet_id: str, range_notation: str) -> List[List[Any]]:
        return [list(row) for row in self.rows]

    async def update_cell(self, spreadsheet_id: str, range_notation: str, value: Any) -> Dict[str, Any]:
        if self.fail_updates:
            raise RuntimeError("Sheets API unavailable")
        self.updates.append({
            "spreadsheetId": spreadsheet_id,
            "range": range_notation,
            "value": value,
        })
        return {"updatedCells": 1}


class FakeWebSocket:
    """Collects text frames sent by the event bridge."""

    def __init__(self, fail: bool = False):
        self.sent: List[str] = []
        self.fail = fail

    async def send_text(self, message: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(message)


async def echo_handler(node_id, node_type, parameters, context):
    """Returns its resolved inputs."""
    return dict(parameters)


async def failing_handler(node_id, node_type, parameters, context):
    raise RuntimeError(parameters.get("message", "boom"))


# ── Fixtures ────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        redis_enabled=False,
        embedded_worker=False,
        queue_name="test-workflows",
        job_attempts=3,
        job_backoff_delay_ms=1000,
        stalled_job_timeout=60,
    )


@pytest.fixture
async def cache(settings):
    cache = CacheService(settings)
    await cache.startup()
    yield cache
    await cache.shutdown()


@pytest.fixture
def config_store(cache) -> WorkflowConfigStore:
    return WorkflowConfigStore(cache)


@pytest.fixture
def queue(cache, settings) -> WorkflowQueue:
    return WorkflowQueue(cache, settings)


@pytest.fixture
def scheduler(queue, config_store) -> WorkflowScheduler:
    return WorkflowScheduler(queue, config_store)


@pytest.fixture
def registry() -> NodeRegistry:
    registry = NodeRegistry()
    registry.register("echo", echo_handler)
    registry.register("fail", failing_handler)
    registry.register("math", handle_math)
    registry.register("merge", handle_merge)
    return registry


@pytest.fixture
def executor(registry) -> ChainExecutor:
    return ChainExecutor(registry)


@pytest.fixture
def sheets() -> FakeSheetsClient:
    return FakeSheetsClient()


@pytest.fixture
def processor(config_store, executor, sheets) -> WorkflowProcessor:
    return WorkflowProcessor(config_store, executor, sheets, read_range="Sheet1!A2:Z")


@pytest.fixture
def bridge(cache) -> JobEventBridge:
    return JobEventBridge(cache, channel="test_events")


@pytest.fixture
def fake_websocket():
    return FakeWebSocket
