"""Webhook ingress: run a stored workflow with the request as context."""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import ORJSONResponse

from core.container import container
from core.exceptions import ConfigNotFoundError
from core.logging import get_logger
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.post("/{workflow_id}", status_code=status.HTTP_202_ACCEPTED)
async def handle_webhook(
    workflow_id: str,
    request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Queue an immediate run. A JSON object body becomes the run context;
    anything else is passed through under "body"."""
    body = await request.body()
    payload = None
    if body and "application/json" in request.headers.get("content-type", ""):
        try:
            payload = await request.json()
        except ValueError:
            logger.warning("Webhook body is not valid JSON", workflow_id=workflow_id)

    if isinstance(payload, dict):
        context = payload
    else:
        context = {"body": payload if payload is not None else body.decode('utf-8', errors='replace')}
    context.setdefault("query", dict(request.query_params))

    try:
        job_id = await workflow_service.trigger_webhook(workflow_id, context)
    except ConfigNotFoundError as e:
        return ORJSONResponse(status_code=status.HTTP_404_NOT_FOUND,
                              content={"success": False, "error": str(e)})

    logger.info("Webhook received", workflow_id=workflow_id, job_id=job_id)
    return {"success": True, "jobId": job_id}
