"""Workflow producer routes: deploy, hot reload, schedules, node testing, jobs."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from core.container import container
from core.exceptions import CompileError, QueueError
from core.logging import get_logger
from services.execution import OPERATORS
from services.workflow import UnknownNodeTypeError, WorkflowService

logger = get_logger(__name__)
router = APIRouter(tags=["workflow"])


def _error(status_code: int, error: str, **extra: Any) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code,
                          content={"success": False, "error": error, **extra})


class TriggerWorkflowRequest(BaseModel):
    config: Optional[Dict[str, Any]] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class DeployRequest(BaseModel):
    workflowName: str = "default"
    graph: Dict[str, Any]
    globalSettings: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)


class HotReloadRequest(BaseModel):
    workflowId: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class TestNodeRequest(BaseModel):
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)


@router.post("/trigger-workflow", status_code=status.HTTP_202_ACCEPTED)
async def trigger_workflow(
    request: TriggerWorkflowRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Store a compiled config and queue it (repeating for timer triggers)."""
    if not request.config:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing workflow configuration.")

    try:
        job_id = await workflow_service.trigger_workflow(request.config, request.context)
    except (ValueError, QueueError) as e:
        logger.warning("Rejected workflow", error=str(e))
        return _error(status.HTTP_400_BAD_REQUEST, str(e))

    return {"success": True, "message": "Workflow queued successfully", "jobId": job_id}


@router.post("/deploy", status_code=status.HTTP_202_ACCEPTED)
async def deploy_workflow(
    request: DeployRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Compile a canvas graph server-side, then queue it."""
    try:
        job_id, config = await workflow_service.deploy(
            request.workflowName, request.graph, request.globalSettings, request.context
        )
    except CompileError as e:
        logger.warning("Graph compilation failed", error=str(e), node_id=e.node_id)
        return _error(status.HTTP_400_BAD_REQUEST, str(e), nodeId=e.node_id)
    except (ValueError, QueueError) as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))

    return {
        "success": True,
        "message": "Workflow deployed successfully",
        "jobId": job_id,
        "config": config.to_dict(),
    }


@router.put("/hot-reload")
async def hot_reload(
    request: HotReloadRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Overwrite a stored config; the next run picks it up."""
    if not request.workflowId or not request.config:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing workflowId or config")
    try:
        await workflow_service.hot_reload(request.workflowId, request.config)
    except ValueError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    return {"success": True}


@router.get("/schedules")
async def list_schedules(
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """List active repeating jobs."""
    return {"success": True, "jobs": await workflow_service.list_schedules()}


@router.delete("/schedules/{key:path}")
async def stop_schedule(
    key: str,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Stop a repeating job by its key (path parameter arrives URL-decoded)."""
    removed = await workflow_service.remove_schedule(key)
    if not removed:
        return _error(status.HTTP_404_NOT_FOUND, f"Schedule not found: {key}")
    return {"success": True, "message": "Schedule stopped successfully."}


@router.post("/test-node")
async def test_node(
    request: TestNodeRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Run a single registered node against a mock context."""
    try:
        result = await workflow_service.test_node(request.type, request.config)
    except UnknownNodeTypeError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    except Exception as e:
        logger.error("Test node failed", node_type=request.type, error=str(e))
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))
    return {"success": True, "data": result}


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Job record: status, attempts, result or failure reason."""
    job = await workflow_service.get_job(job_id)
    if job is None:
        return _error(status.HTTP_404_NOT_FOUND, f"Job not found: {job_id}")
    return {"success": True, "job": job.to_dict()}


@router.get("/operators")
async def list_operators():
    """Condition operators available to the logic editor."""
    return {"success": True, "operators": OPERATORS}


@router.get("/node-types")
async def list_node_types():
    """Registered action node types."""
    return {"success": True, "types": container.node_registry().types()}
