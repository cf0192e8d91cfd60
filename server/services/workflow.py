"""Workflow Service - Facade for deployment, scheduling and node testing.

This is a thin facade that delegates to specialized modules:
- GraphCompiler: canvas graph -> action tree
- WorkflowScheduler: config storage, immediate and repeating jobs
- NodeRegistry: single node execution for the test endpoint
"""

from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from core.exceptions import WorkflowError
from core.logging import get_logger
from services.compiler import FlowGraph, compile_graph
from services.config_store import WorkflowConfig
from services.execution.models import tree_to_dicts
from services.node_executor import NodeRegistry
from services.queue import Job, WorkflowQueue, WorkflowScheduler

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)

TEST_CONTEXT = {"TEST_MODE": True}


class UnknownNodeTypeError(WorkflowError):
    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type}")


class WorkflowService:
    """Producer-side workflow operations used by the API routers."""

    def __init__(self, scheduler: WorkflowScheduler, queue: WorkflowQueue,
                 registry: NodeRegistry, settings: "Settings"):
        self.scheduler = scheduler
        self.queue = queue
        self.registry = registry
        self.settings = settings

    # =========================================================================
    # DEPLOYMENT
    # =========================================================================

    async def trigger_workflow(self, config: Dict[str, Any],
                               context: Optional[Dict[str, Any]] = None) -> str:
        """Store a precompiled config and queue it. Returns the job id.

        Raises:
            ValueError: malformed config
            QueueError: invalid timer configuration
        """
        workflow_config = WorkflowConfig.from_dict(config)
        job_id = await self.scheduler.enqueue(workflow_config, context)
        logger.info("Workflow queued", job_id=job_id, trigger_type=workflow_config.trigger_type)
        return job_id

    def build_config(self, workflow_name: str, graph: Dict[str, Any],
                     global_settings: Optional[Dict[str, Any]] = None) -> WorkflowConfig:
        """Compile a graph into a workflow config.

        Raises:
            CompileError: invalid graph
        """
        flow_graph = FlowGraph.from_dict(graph)
        actions = compile_graph(flow_graph, strict=self.settings.strict_merge)
        trigger = flow_graph.trigger()
        global_settings = global_settings or {}

        return WorkflowConfig(
            workflow_name=workflow_name or "default",
            trigger={"type": trigger.type, **trigger.config},
            spreadsheet_id=global_settings.get("spreadsheetId"),
            column_mapping={str(k): str(v) for k, v in
                            (global_settings.get("columnMapping") or {}).items()},
            actions=tree_to_dicts(actions),
        )

    async def deploy(self, workflow_name: str, graph: Dict[str, Any],
                     global_settings: Optional[Dict[str, Any]] = None,
                     context: Optional[Dict[str, Any]] = None) -> Tuple[str, WorkflowConfig]:
        """Compile server-side, then enqueue like trigger_workflow."""
        config = self.build_config(workflow_name, graph, global_settings)
        job_id = await self.scheduler.enqueue(config, context)
        logger.info("Workflow deployed", job_id=job_id, workflow_name=workflow_name,
                    actions=len(config.actions))
        return job_id, config

    async def hot_reload(self, workflow_id: str, config: Dict[str, Any]) -> None:
        await self.scheduler.hot_reload(workflow_id, WorkflowConfig.from_dict(config))

    async def trigger_webhook(self, workflow_id: str, payload: Dict[str, Any]) -> str:
        """Run a stored config once with the request body as context."""
        return await self.scheduler.trigger(workflow_id, payload)

    # =========================================================================
    # SCHEDULES AND JOBS
    # =========================================================================

    async def list_schedules(self) -> List[Dict[str, Any]]:
        return await self.scheduler.list_repeating()

    async def remove_schedule(self, key: str) -> bool:
        return await self.scheduler.remove_repeating(key)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.queue.get_job(job_id)

    # =========================================================================
    # NODE TESTING
    # =========================================================================

    async def test_node(self, node_type: str, config: Dict[str, Any]) -> Any:
        """Run one registered executor against a mock context."""
        handler = self.registry.get(node_type)
        if handler is None:
            raise UnknownNodeTypeError(node_type)
        logger.info("Testing node", node_type=node_type)
        return await handler(f"test_{node_type}", node_type, dict(config or {}), dict(TEST_CONTEXT))
